"""
Utility functions for the GPT-Neo inference pipeline.

Cross-cutting pieces that don't belong to the model or the decoding loop:
seeding, parameter accounting, timing, the generation logger, and loading
published weights into the model.

Everything here is plain PyTorch + NumPy + standard library.
"""

import os
import pickle
import random
import time
from datetime import datetime
from typing import Mapping, Optional, Union

import numpy as np
import torch
import torch.nn as nn

from gpt_neo.config import GPTNeoConfig
from gpt_neo.device import estimate_kv_cache_mb
from gpt_neo.model import GPTNeoForCausalLM, WeightLoadError


# ═══════════════════════════════════════════════════════════════════════════
# REPRODUCIBILITY
# ═══════════════════════════════════════════════════════════════════════════

def set_seed(seed: int) -> None:
    """
    Seed Python, NumPy and PyTorch (CPU and CUDA) random number generators.

    Only random initialization and sampled decoding consume randomness;
    greedy and beam decoding in eval mode are deterministic without it.
    """
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


# ═══════════════════════════════════════════════════════════════════════════
# MODEL DIAGNOSTICS
# ═══════════════════════════════════════════════════════════════════════════

def count_parameters(model: nn.Module, trainable_only: bool = True) -> int:
    """
    Count the parameters of a model.

    nn.Module.parameters() yields a shared tensor once, and the LM head has
    no weight of its own, so GPT-Neo 125M reports 125,198,592.
    """
    if trainable_only:
        return sum(p.numel() for p in model.parameters() if p.requires_grad)
    return sum(p.numel() for p in model.parameters())


def print_model_summary(model: nn.Module) -> str:
    """
    Print parameters per GPT-Neo component and the memory they need.

    Accepts a GPTNeoModel or a GPTNeoForCausalLM. Blocks are tagged with
    their attention type:

      wte (token embedding)          38,597,376   30.8%
      wpe (position embedding)        1,572,864    1.3%
      h.0 (global)                    7,085,568    5.7%
      h.1 (local)                     7,085,568    5.7%
      ...
      ln_f                                1,536    0.0%

    The KV cache line is the memory one more token of context costs for a
    single sequence, in the weights' dtype.

    Returns:
        The summary as a string (also printed to stdout).
    """
    base = getattr(model, "transformer", model)
    config: GPTNeoConfig = base.config

    groups = [
        ("wte (token embedding)", base.wte),
        ("wpe (position embedding)", base.wpe),
    ]
    groups += [(f"h.{block.layer_id} ({block.attention_type.value})", block) for block in base.h]
    groups.append(("ln_f", base.ln_f))

    grand_total = count_parameters(model, trainable_only=False)
    dtype = base.wte.weight.dtype
    weight_mb = sum(p.numel() * p.element_size() for p in model.parameters()) / 1024**2
    kv_kb_per_token = estimate_kv_cache_mb(config, 1, 1, dtype) * 1024

    lines = ["=" * 60, f"GPT-Neo Parameter Summary ({dtype})", "=" * 60]
    for label, module in groups:
        n = sum(p.numel() for p in module.parameters())
        pct = 100.0 * n / grand_total if grand_total > 0 else 0
        lines.append(f"  {label:<28} {n:>14,d}  {pct:>5.1f}%")
    lines.append("-" * 60)
    lines.append(f"  {'TOTAL':<28} {grand_total:>14,d}")
    lines.append(f"  {'Weights':<28} {weight_mb:>11.1f} MB")
    lines.append(f"  {'KV cache per token':<28} {kv_kb_per_token:>11.1f} KB")
    lines.append("=" * 60)

    summary = "\n".join(lines)
    print(summary)
    return summary


# ═══════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Context manager measuring wall time of a block, in seconds.

        with Timer("Load weights") as t:
            load_weights(model, path)
        print(t)  # "Load weights: 0.8123s"

    Pass a CUDA device to synchronize before reading the clock; otherwise
    only the kernel launches would be timed.
    """

    def __init__(self, name: str = "Block", device: Optional[torch.device] = None):
        self.name = name
        self.device = device
        self.elapsed: float = 0.0

    def _sync(self) -> None:
        if self.device is not None and self.device.type == "cuda":
            torch.cuda.synchronize(self.device)

    def __enter__(self):
        self._sync()
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args):
        self._sync()
        self.elapsed = time.perf_counter() - self.start

    def __str__(self):
        return f"{self.name}: {self.elapsed:.4f}s"


# ═══════════════════════════════════════════════════════════════════════════
# GENERATION LOGGER
# ═══════════════════════════════════════════════════════════════════════════

class GenerationLogger:
    """
    Lightweight decoding logger that writes to console and optional log file.

    One line per decoding step (every `log_interval` steps):
      step    4/20 | cache    12 | finished 1/2

    The cache length grows by exactly one per step after prefill; a stall or
    jump there is the first thing to look at when generations go wrong.
    """

    def __init__(self, log_dir: Optional[str] = None, log_interval: int = 1):
        """
        Args:
            log_dir: Directory for log files. If None, only console output.
            log_interval: Log every N-th step.
        """
        self.log_interval = max(1, log_interval)
        self.log_file = None
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_path = os.path.join(log_dir, f"generate_{timestamp}.log")
            self.log_file = open(log_path, "w")
            print(f"Logging to: {log_path}")

    def _write(self, msg: str) -> None:
        print(msg)
        if self.log_file:
            self.log_file.write(msg + "\n")
            self.log_file.flush()

    def log_step(
        self,
        step: int,
        total_steps: int,
        cache_length: int,
        finished: int,
        batch_size: int,
    ) -> None:
        if step % self.log_interval != 0:
            return
        self._write(
            f"step {step:>4d}/{total_steps} | "
            f"cache {cache_length:>5d} | "
            f"finished {finished}/{batch_size}"
        )

    def log_result(self, result) -> None:
        """Log the summary of a GenerateResult."""
        self._write(f"{'─' * 60}\n{result.stats_string()}\n{'─' * 60}")

    def log_info(self, msg: str) -> None:
        self._write(f"[INFO] {msg}")

    def close(self) -> None:
        if self.log_file:
            self.log_file.close()
            self.log_file = None


# ═══════════════════════════════════════════════════════════════════════════
# WEIGHT LOADING
# ═══════════════════════════════════════════════════════════════════════════

# Present in published GPT-Neo weight files but not parameters of this model:
# the causal-mask buffers (recomputed on the fly here) and the tied LM head.
IGNORED_KEY_SUFFIXES = (".attn.attention.bias", ".attn.attention.masked_bias")
IGNORED_KEYS = ("lm_head.weight",)


def _is_ignored(key: str) -> bool:
    return key in IGNORED_KEYS or key.endswith(IGNORED_KEY_SUFFIXES)


def _read_state_dict(path: Union[str, os.PathLike]) -> Mapping[str, torch.Tensor]:
    try:
        loaded = torch.load(path, map_location="cpu", weights_only=True)
    except (OSError, EOFError, RuntimeError, pickle.UnpicklingError) as e:
        raise WeightLoadError(f"Could not read weights from {path}: {e}") from e
    if not isinstance(loaded, Mapping):
        raise WeightLoadError(
            f"{path} does not contain a state dict (got {type(loaded).__name__})"
        )
    return loaded


def load_weights(
    model: nn.Module,
    source: Union[str, os.PathLike, Mapping[str, torch.Tensor]],
    strict: bool = True,
) -> None:
    """
    Load a named-parameter store into `model`, all or nothing.

    The store is validated against the model's own state dict BEFORE any
    tensor is copied, so a failed load leaves the model untouched.

    Accepted inputs:
      - a state dict, or a path to one saved with torch.save
      - a checkpoint dict holding the state dict under "model_state_dict"
      - weights of a bare GPTNeoModel (no "transformer." prefix) when
        loading into a GPTNeoForCausalLM

    With strict=False, keys the model does not have are dropped instead of
    rejected. Missing keys and shape mismatches are always errors.

    Raises:
        WeightLoadError: unreadable file, missing keys, unexpected keys or
                         shape mismatches (all problems are reported at once).
    """
    if isinstance(source, (str, os.PathLike)):
        state_dict = _read_state_dict(source)
    else:
        state_dict = source
    if "model_state_dict" in state_dict:
        state_dict = state_dict["model_state_dict"]

    state_dict = {k: v for k, v in state_dict.items() if not _is_ignored(k)}
    if isinstance(model, GPTNeoForCausalLM) and not any(
        k.startswith("transformer.") for k in state_dict
    ):
        state_dict = {f"transformer.{k}": v for k, v in state_dict.items()}

    expected = model.state_dict()
    missing = sorted(set(expected) - set(state_dict))
    unexpected = sorted(set(state_dict) - set(expected))
    mismatched = [
        f"{k}: expected {tuple(expected[k].shape)}, got {tuple(state_dict[k].shape)}"
        for k in expected
        if k in state_dict and tuple(state_dict[k].shape) != tuple(expected[k].shape)
    ]

    problems = []
    if missing:
        problems.append(f"missing keys: {missing}")
    if unexpected and strict:
        problems.append(f"unexpected keys: {unexpected}")
    if mismatched:
        problems.append(f"shape mismatches: {mismatched}")
    if problems:
        raise WeightLoadError("Cannot load weights; " + "; ".join(problems))

    for k in unexpected:
        del state_dict[k]
    model.load_state_dict(state_dict, strict=True)


def from_pretrained(
    model_dir: str,
    device: Optional[torch.device] = None,
    weights_name: str = "pytorch_model.bin",
) -> GPTNeoForCausalLM:
    """
    Build a GPTNeoForCausalLM from a directory with config.json + weights.

    The directory layout is the one GPT-Neo checkpoints are published in.
    Downloading them is up to the caller.
    """
    config = GPTNeoConfig.load(os.path.join(model_dir, "config.json"))
    print(
        f"Model config: {config.hidden_size}d, {config.num_layers}L, "
        f"{config.num_heads}H, window {config.window_size}"
    )

    model = GPTNeoForCausalLM(config)
    weights_path = os.path.join(model_dir, weights_name)
    with Timer("Weights loaded") as t:
        load_weights(model, weights_path)
    print(f"{t} ({weights_path}, {count_parameters(model):,} parameters)")

    if device is not None:
        model = model.to(device)
    model.eval()
    return model
