"""
Configuration for the GPT-Neo model and the reference decoding loop.

This module is the SINGLE SOURCE OF TRUTH for all hyperparameters. No magic
numbers should appear anywhere else in the codebase: everything is defined
here and imported where needed.

ARCHITECTURE OVERVIEW:
  GPT-Neo (Black et al., EleutherAI, 2021) is a GPT-2/GPT-3 style model:
  - Decoder-only transformer (no encoder, no cross-attention)
  - Pre-normalization with LayerNorm
  - Learned absolute position embeddings
  - GELU feed-forward network
  - ALTERNATING attention layers: "global" layers attend to the full causal
    prefix, "local" layers only to the last `window_size` positions
  - Output projection tied to the token embedding
"""

import enum
import json
import os
from dataclasses import dataclass, field, asdict, fields
from typing import List, Optional


class AttentionLayerType(str, enum.Enum):
    """
    The two attention variants a GPT-Neo layer can use.

    The set is closed: every layer is exactly one of these, fixed at
    construction time. Values match the strings used in GPT-Neo config files.
    """

    GLOBAL = "global"
    LOCAL = "local"


ACTIVATION_NAMES = ("gelu", "gelu_new", "relu", "silu", "swish", "mish", "tanh")


@dataclass
class GPTNeoConfig:
    """
    Architecture hyperparameters for GPT-Neo.

    Defaults describe GPT-Neo 125M. Changing any architecture field creates a
    model that cannot load weights from a differently-configured model.

    PARAMETER COUNT BREAKDOWN (with defaults, 125M):
    ─────────────────────────────────────────────
    Token Embedding wte (vocab × hidden):     38,597,376
    Position Embedding wpe (2048 × hidden):    1,572,864
    12 Transformer Layers:                    85,026,816
      Per layer:
        q/k/v proj (3 × hidden²):              1,769,472
        out_proj (hidden² + hidden):             590,592
        c_fc (hidden × 4hidden + 4hidden):     2,362,368
        c_proj (4hidden × hidden + hidden):    2,360,064
        2× LayerNorm (2 × 2 × hidden):             3,072
    Final LayerNorm ln_f:                          1,536
    LM head:                                           0  (tied to wte)
    ─────────────────────────────────────────────
    TOTAL:                                   125,198,592
    """

    # ── Vocabulary ──────────────────────────────────────────────────────────
    # GPT-Neo reuses the GPT-2 byte-level BPE vocabulary (50257 entries).
    vocab_size: int = 50257

    # ── Model Dimensions ───────────────────────────────────────────────────
    hidden_size: int = 768
    num_layers: int = 12
    num_heads: int = 12

    # ── Attention Pattern ──────────────────────────────────────────────────
    # Compact form used by GPT-Neo config files: a list of
    # [pattern, repeat] pairs. [[["global", "local"], 6]] expands to
    # global, local, global, local, ... for 12 layers.
    attention_types: list = field(
        default_factory=lambda: [[["global", "local"], 6]]
    )

    # Number of preceding positions (including itself) a LOCAL layer sees.
    window_size: int = 256

    # ── Sequence Length ────────────────────────────────────────────────────
    # Size of the learned position embedding table. Also the hard upper
    # bound on prompt + generated length.
    max_position_embeddings: int = 2048

    # ── Feed-Forward Network ───────────────────────────────────────────────
    # None means the classic 4 × hidden_size.
    intermediate_size: Optional[int] = None
    activation_function: str = "gelu_new"

    # ── Regularization ─────────────────────────────────────────────────────
    # Dropout is only active in training mode (model.train()).
    embed_dropout: float = 0.0
    attention_dropout: float = 0.0
    resid_dropout: float = 0.0

    # ── Normalization / Init ───────────────────────────────────────────────
    layer_norm_epsilon: float = 1e-5
    initializer_range: float = 0.02

    # ── Masking ────────────────────────────────────────────────────────────
    # Additive bias for masked-out key positions. After softmax these get a
    # probability of ~exp(-1e4), i.e. zero for fp32/fp16 logits. This is an
    # approximation, not a structural exclusion: tune it if reference
    # outputs at another precision require it.
    mask_value: float = -1e4

    # GPT-Neo does NOT scale attention scores by 1/sqrt(head_dim). Pretrained
    # weights depend on that, so scaling is opt-in.
    scale_attention: bool = False

    # ── Special Tokens ─────────────────────────────────────────────────────
    bos_token_id: int = 50256
    eos_token_id: int = 50256
    pad_token_id: Optional[int] = None

    # ── Diagnostics ────────────────────────────────────────────────────────
    output_attentions: bool = False
    output_hidden_states: bool = False

    @property
    def head_dim(self) -> int:
        """Dimension of each attention head (hidden_size / num_heads)."""
        assert self.hidden_size % self.num_heads == 0, (
            f"hidden_size ({self.hidden_size}) must be divisible by "
            f"num_heads ({self.num_heads})"
        )
        return self.hidden_size // self.num_heads

    @property
    def ffn_dim(self) -> int:
        return self.intermediate_size or 4 * self.hidden_size

    @property
    def attention_layers(self) -> List[AttentionLayerType]:
        """
        Per-layer attention types, expanded from `attention_types`.

        [[["global", "local"], 2], [["global"], 1]]
          → [GLOBAL, LOCAL, GLOBAL, LOCAL, GLOBAL]
        """
        layers = []
        for pattern, repeat in self.attention_types:
            for _ in range(repeat):
                layers.extend(AttentionLayerType(name) for name in pattern)
        return layers

    @property
    def effective_pad_token_id(self) -> int:
        # GPT-Neo has no pad token; generation pads with EOS.
        return self.eos_token_id if self.pad_token_id is None else self.pad_token_id

    def validate(self) -> None:
        """
        Validate configuration constraints.

        Called before model creation to catch configuration errors early
        rather than getting cryptic shape mismatch errors deep in the model.
        """
        assert self.vocab_size > 0, "vocab_size must be positive"
        assert self.hidden_size > 0, "hidden_size must be positive"
        assert self.num_layers > 0, "num_layers must be positive"
        assert self.num_heads > 0, "num_heads must be positive"
        assert self.hidden_size % self.num_heads == 0, (
            f"hidden_size ({self.hidden_size}) must be divisible by "
            f"num_heads ({self.num_heads})"
        )
        assert self.window_size >= 1, (
            f"window_size must be >= 1, got {self.window_size}"
        )
        assert self.max_position_embeddings > 0, (
            "max_position_embeddings must be positive"
        )
        assert self.ffn_dim > 0, "intermediate_size must be positive"
        assert self.activation_function in ACTIVATION_NAMES, (
            f"Unknown activation '{self.activation_function}'. "
            f"Choose from: {list(ACTIVATION_NAMES)}"
        )
        for name in ("embed_dropout", "attention_dropout", "resid_dropout"):
            p = getattr(self, name)
            assert 0.0 <= p < 1.0, f"{name} must be in [0, 1), got {p}"
        assert self.mask_value < 0, "mask_value must be negative"
        for name in ("bos_token_id", "eos_token_id", "pad_token_id"):
            token_id = getattr(self, name)
            assert token_id is None or 0 <= token_id < self.vocab_size, (
                f"{name} ({token_id}) is outside the vocabulary (size {self.vocab_size})"
            )
        n_attention_layers = len(self.attention_layers)
        assert n_attention_layers == self.num_layers, (
            f"attention_types expands to {n_attention_layers} layers, "
            f"but num_layers is {self.num_layers}"
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "GPTNeoConfig":
        """
        Reconstruct from a dictionary.

        Unknown keys are ignored, so a Hugging Face GPT-Neo `config.json`
        (which also carries architectures, model_type, task params, ...)
        loads directly. An explicit per-layer `attention_layers` list takes
        precedence over the compact `attention_types` form.
        """
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in d.items() if k in known}
        if "attention_layers" in d and "attention_types" not in d:
            kwargs["attention_types"] = [[list(d["attention_layers"]), 1]]
        return cls(**kwargs)

    def save(self, path: str) -> None:
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "GPTNeoConfig":
        """Load configuration from JSON file."""
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))


@dataclass
class GenerateConfig:
    """
    Decoding hyperparameters for the reference generation loop.

    These control HOW tokens are chosen, not the model. Token ids left as
    None fall back to the model config's special tokens.
    """

    max_new_tokens: int = 20

    # ── Sampling ───────────────────────────────────────────────────────────
    # do_sample=False → greedy (argmax). Otherwise temperature → top-k →
    # top-p → multinomial, in that order.
    do_sample: bool = False
    temperature: float = 1.0
    top_k: int = 0        # 0 = disabled
    top_p: float = 1.0    # 1.0 = disabled

    # ── Beam Search ────────────────────────────────────────────────────────
    # num_beams > 1 switches to beam search (sampling options are ignored).
    # Final beam scores are divided by (generated_length ** length_penalty).
    num_beams: int = 1
    length_penalty: float = 1.0
    # Stop as soon as every beam of every prompt has produced EOS.
    early_stopping: bool = True

    # ── Special Tokens ─────────────────────────────────────────────────────
    eos_token_id: Optional[int] = None
    pad_token_id: Optional[int] = None

    # Seed for sampling; None leaves the global RNG untouched.
    seed: Optional[int] = None

    def validate(self) -> None:
        assert self.max_new_tokens >= 0, "max_new_tokens must be non-negative"
        assert self.temperature > 0.0, "temperature must be positive"
        assert self.top_k >= 0, "top_k must be non-negative"
        assert 0.0 < self.top_p <= 1.0, "top_p must be in (0, 1]"
        assert self.num_beams >= 1, "num_beams must be >= 1"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "GenerateConfig":
        return cls(**d)
