"""
smol-gpt-neo: GPT-Neo inference in pure PyTorch.

This package implements the GPT-Neo decoder (alternating global and local
attention layers), its key/value cache, and the glue a decoding loop needs
to run it step by step.

Key modules:
  - config:   Model and decoding configuration
  - model:    GPT-Neo architecture (masks, attention, blocks, LM head, KV cache)
  - generate: Generation adapter, sampling, greedy/beam decoding
  - device:   Hardware abstraction (CUDA/MPS/CPU)
  - utils:    Seeding, diagnostics, logging, weight loading
"""

__version__ = "0.1.0"
