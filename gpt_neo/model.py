"""
GPT-Neo Model Architecture.

This is the CORE of the project: the forward pass of a GPT-Neo decoder and
the key/value cache that makes incremental decoding cheap.

ARCHITECTURE OVERVIEW (bottom-up reading order):
  1. LayerState: Per-layer key/value cache entry
  2. Attention masks: Global (padding only) and local (sliding window)
  3. Activations / MLP: GELU feed-forward network
  4. Attention: Multi-head causal self-attention with KV cache
  5. GPTNeoBlock: One decoder layer (LayerNorm → attn → LayerNorm → MLP)
  6. GPTNeoModel: Embeddings + N blocks + final LayerNorm
  7. GPTNeoForCausalLM: Language model head tied to the token embedding

WHAT MAKES GPT-NEO DIFFERENT FROM GPT-2:
  ┌─────────────────────┬──────────────────────┬────────────────────────────┐
  │ Component           │ GPT-2                │ GPT-Neo                    │
  ├─────────────────────┼──────────────────────┼────────────────────────────┤
  │ Attention pattern   │ Global in all layers │ Alternating global / local │
  │ Q/K/V projection    │ One fused c_attn     │ Separate, no bias          │
  │ Score scaling       │ 1/√d_k               │ None                       │
  │ Everything else     │ Pre-LN, GELU, tied   │ Same                       │
  └─────────────────────┴──────────────────────┴────────────────────────────┘

  A LOCAL layer lets position i see only positions j with i - j < window_size.
  A GLOBAL layer sees the whole causal prefix. Both share one set of masks per
  forward call; each layer picks the one matching its type.

PARAMETER NAMING:
  Module names follow the published GPT-Neo checkpoints
  (transformer.wte, transformer.h.0.attn.attention.q_proj, ...), so their
  state dicts load without any key remapping.
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from gpt_neo.config import AttentionLayerType, GPTNeoConfig


class InputConflictError(ValueError):
    """Raised when both or neither of input_ids / inputs_embeds are given."""


class IncompatibleCacheError(TypeError):
    """
    Raised when a cache object does not belong to this architecture.

    This is caller misuse (e.g. passing another model's cache), not a
    recoverable condition: continuing would silently produce wrong tokens.
    """


class WeightLoadError(RuntimeError):
    """Raised when a state dict does not match the model (missing, unexpected or malshaped)."""


# ═══════════════════════════════════════════════════════════════════════════
# 1. LayerState: Per-layer Key/Value Cache
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class LayerState:
    """
    Cached keys and values of one attention layer.

    Both tensors have shape (batch, num_heads, past_length, head_dim). After
    every forward call the layer returns a NEW LayerState whose tensors are
    the old ones with the step's keys/values concatenated on the sequence
    axis. The model never keeps a reference: the decoding loop owns the cache
    between steps.
    """

    prev_key: torch.Tensor
    prev_value: torch.Tensor

    @property
    def past_length(self) -> int:
        return self.prev_key.size(-2)

    @property
    def batch_size(self) -> int:
        return self.prev_key.size(0)

    def reorder_cache(self, beam_indices: torch.Tensor) -> None:
        """
        Select batch rows according to `beam_indices` (in place).

        After a beam search step, row b of the new cache must be the cache of
        the hypothesis that beam b extends, i.e. old row beam_indices[b].
        """
        self.prev_key = self.prev_key.index_select(0, beam_indices)
        self.prev_value = self.prev_value.index_select(0, beam_indices)


# One optional slot per layer; None means "no history yet".
Cache = Optional[List[Optional[LayerState]]]


def validate_cache(past: Cache) -> None:
    """Raise IncompatibleCacheError unless `past` is a GPT-Neo cache."""
    if past is None:
        return
    if not isinstance(past, (list, tuple)):
        raise IncompatibleCacheError(
            f"Cache of type {type(past).__name__} is not compatible with "
            f"GPT-Neo (expected a list of LayerState or None)"
        )
    for layer_idx, state in enumerate(past):
        if state is not None and not isinstance(state, LayerState):
            raise IncompatibleCacheError(
                f"Cache entry {layer_idx} has type {type(state).__name__}, "
                f"expected LayerState or None"
            )


def get_past_length(past: Cache) -> int:
    """Sequence length held by the first populated cache entry (0 if none)."""
    if past is None:
        return 0
    for state in past:
        if state is not None:
            return state.past_length
    return 0


def cache_is_populated(past: Cache) -> bool:
    return past is not None and any(state is not None for state in past)


# ═══════════════════════════════════════════════════════════════════════════
# 2. Attention Masks
# ═══════════════════════════════════════════════════════════════════════════
#
# Both masks use the same ADDITIVE encoding: 0 where a key may be attended,
# `mask_value` (-1e4 by default) where it may not. They are added to the raw
# attention scores before softmax, so masked keys end up with a probability
# of ~0 rather than being removed from the computation.
#
# Causality itself is enforced inside the attention layer (see
# GPTNeoSelfAttention._causal_pattern); the global mask only carries padding.

def local_attention_pattern(
    total_length: int,
    window_size: int,
    device: Optional[torch.device] = None,
) -> torch.Tensor:
    """
    Boolean (total_length, total_length) matrix of allowed local attention.

    allowed[i, j] is True iff j <= i (causal) and i - j < window_size.

    Example, total_length=5, window_size=2:
        [[1, 0, 0, 0, 0],
         [1, 1, 0, 0, 0],
         [0, 1, 1, 0, 0],
         [0, 0, 1, 1, 0],
         [0, 0, 0, 1, 1]]

    A window larger than total_length is plain causal masking.
    """
    if window_size < 1:
        raise ValueError(f"window_size must be >= 1, got {window_size}")
    positions = torch.arange(total_length, device=device)
    distance = positions.unsqueeze(1) - positions.unsqueeze(0)  # i - j
    return (distance >= 0) & (distance < window_size)


def build_global_attention_mask(
    attention_mask: Optional[torch.Tensor],
    batch_size: int,
    dtype: torch.dtype = torch.float32,
    mask_value: float = -1e4,
) -> Optional[torch.Tensor]:
    """
    Additive padding mask of shape (batch, 1, 1, total_length).

    Args:
        attention_mask: (batch, total_length) with 1 = attend, 0 = padding,
                        or None (everything attendable → no mask at all).
    """
    if attention_mask is None:
        return None
    mask = attention_mask.view(batch_size, -1)[:, None, None, :].to(dtype)
    return (1.0 - mask) * mask_value


def build_local_attention_mask(
    batch_size: int,
    query_length: int,
    total_length: int,
    window_size: int,
    device: Optional[torch.device] = None,
    dtype: torch.dtype = torch.float32,
    attention_mask: Optional[torch.Tensor] = None,
    mask_value: float = -1e4,
) -> torch.Tensor:
    """
    Additive sliding-window mask of shape (batch, 1, query_length, total_length).

    The queries computed in this call are the LAST `query_length` positions
    of the full sequence (the earlier ones live in the cache), so only the
    last `query_length` rows of the window pattern are kept. The padding
    mask, if given, removes padded keys on top of the window constraint.
    """
    assert 0 < query_length <= total_length, (
        f"query_length ({query_length}) must be in [1, total_length={total_length}]"
    )
    allowed = local_attention_pattern(total_length, window_size, device)
    allowed = allowed[total_length - query_length:]
    allowed = allowed[None, None, :, :].expand(batch_size, 1, query_length, total_length)
    if attention_mask is not None:
        padding = attention_mask.view(batch_size, -1).to(device=allowed.device).bool()
        allowed = allowed & padding[:, None, None, :]
    return (~allowed).to(dtype) * mask_value


# ═══════════════════════════════════════════════════════════════════════════
# 3. Activations and Feed-Forward Network
# ═══════════════════════════════════════════════════════════════════════════

def gelu_new(x: torch.Tensor) -> torch.Tensor:
    """
    Tanh approximation of GELU, as used by GPT-2 and GPT-Neo.

      GELU(x) ≈ 0.5 · x · (1 + tanh(√(2/π) · (x + 0.044715 · x³)))
    """
    return 0.5 * x * (1.0 + torch.tanh(
        math.sqrt(2.0 / math.pi) * (x + 0.044715 * torch.pow(x, 3.0))
    ))


ACTIVATIONS = {
    "gelu": F.gelu,
    "gelu_new": gelu_new,
    "relu": F.relu,
    "silu": F.silu,
    "swish": F.silu,
    "mish": F.mish,
    "tanh": torch.tanh,
}


class GPTNeoMLP(nn.Module):
    """
    Position-wise feed-forward network: c_fc → activation → c_proj → dropout.

    Expands to ffn_dim (4 × hidden by default), applies the nonlinearity,
    and projects back. Both linear layers have biases.
    """

    def __init__(self, config: GPTNeoConfig):
        super().__init__()
        self.c_fc = nn.Linear(config.hidden_size, config.ffn_dim)
        self.c_proj = nn.Linear(config.ffn_dim, config.hidden_size)
        self.act = ACTIVATIONS[config.activation_function]
        self.dropout = nn.Dropout(config.resid_dropout)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.dropout(self.c_proj(self.act(self.c_fc(x))))


# ═══════════════════════════════════════════════════════════════════════════
# 4. Causal Self-Attention with KV Cache
# ═══════════════════════════════════════════════════════════════════════════

class GPTNeoSelfAttention(nn.Module):
    """
    Multi-head causal self-attention with a key/value cache.

    The layer itself does not know whether it is global or local: that is
    decided entirely by the additive mask it receives. It always applies
    the causal (lower-triangular) constraint, then adds the mask.

    KV CACHE:
      Step 1 (prefill): keys/values for the whole prompt are computed and
        returned as LayerState(prev_key, prev_value).
      Step n: only the new token is projected. Its key/value are appended
        to the cached ones BEFORE scoring, so the new query sees the full
        history without recomputing it:

          key   = cat([prev_key,   k_new], dim=seq)   (batch, heads, past+1, d)
          value = cat([prev_value, v_new], dim=seq)

      The concatenated pair is always returned as the new LayerState, even
      when the caller ignores it.

    NUMERICS:
      Scores are computed in float32 regardless of the parameter dtype, and
      are NOT scaled by 1/√d_k (GPT-Neo was trained that way) unless
      config.scale_attention is set.
    """

    def __init__(self, config: GPTNeoConfig):
        super().__init__()
        self.num_heads = config.num_heads
        self.head_dim = config.head_dim
        self.hidden_size = config.hidden_size
        self.scale = 1.0 / math.sqrt(self.head_dim) if config.scale_attention else 1.0

        self.q_proj = nn.Linear(config.hidden_size, config.hidden_size, bias=False)
        self.k_proj = nn.Linear(config.hidden_size, config.hidden_size, bias=False)
        self.v_proj = nn.Linear(config.hidden_size, config.hidden_size, bias=False)
        self.out_proj = nn.Linear(config.hidden_size, config.hidden_size, bias=True)

        self.attn_dropout = nn.Dropout(config.attention_dropout)
        self.resid_dropout = nn.Dropout(config.resid_dropout)

        # Not saved with the weights: published files carry their own copy
        # under attn.attention.bias, which load_weights ignores.
        n = config.max_position_embeddings
        self.register_buffer(
            "causal_mask",
            torch.ones(n, n, dtype=torch.bool).tril(),
            persistent=False,
        )

    def _split_heads(self, x: torch.Tensor) -> torch.Tensor:
        # (batch, seq, hidden) → (batch, heads, seq, head_dim)
        batch_size, seq_len, _ = x.shape
        return x.view(batch_size, seq_len, self.num_heads, self.head_dim).transpose(1, 2)

    def _merge_heads(self, x: torch.Tensor) -> torch.Tensor:
        # (batch, heads, seq, head_dim) → (batch, seq, hidden)
        batch_size, _, seq_len, _ = x.shape
        return x.transpose(1, 2).contiguous().view(batch_size, seq_len, self.hidden_size)

    def _causal_pattern(self, query_length: int, key_length: int) -> torch.Tensor:
        # Queries are the last query_length positions of key_length.
        assert key_length <= self.causal_mask.size(0), (
            f"{key_length} keys exceed max_position_embeddings={self.causal_mask.size(0)}"
        )
        return self.causal_mask[key_length - query_length:key_length, :key_length]

    def forward(
        self,
        hidden_states: torch.Tensor,
        layer_state: Optional[LayerState] = None,
        attention_mask: Optional[torch.Tensor] = None,
        output_attentions: bool = False,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor], LayerState]:
        """
        Args:
            hidden_states: (batch, seq, hidden), already layer-normed.
            layer_state: Cached keys/values from previous steps, or None.
            attention_mask: Additive mask broadcastable to
                            (batch, heads, seq, past + seq), or None.
            output_attentions: Also return the post-softmax weights.

        Returns:
            (output (batch, seq, hidden),
             attention weights (batch, heads, seq, past + seq) or None,
             new LayerState)
        """
        query = self._split_heads(self.q_proj(hidden_states))
        key = self._split_heads(self.k_proj(hidden_states))
        value = self._split_heads(self.v_proj(hidden_states))

        if layer_state is not None:
            key = torch.cat([layer_state.prev_key, key], dim=-2)
            value = torch.cat([layer_state.prev_value, value], dim=-2)
        new_state = LayerState(prev_key=key, prev_value=value)

        query_length, key_length = query.size(-2), key.size(-2)

        scores = torch.matmul(query.float(), key.float().transpose(-1, -2))
        scores = scores * self.scale
        causal = self._causal_pattern(query_length, key_length)
        scores = scores.masked_fill(~causal, torch.finfo(scores.dtype).min)
        if attention_mask is not None:
            scores = scores + attention_mask

        weights = F.softmax(scores, dim=-1).to(value.dtype)
        weights = self.attn_dropout(weights)

        output = torch.matmul(weights, value)
        output = self.resid_dropout(self.out_proj(self._merge_heads(output)))

        return output, (weights if output_attentions else None), new_state


class GPTNeoAttention(nn.Module):
    """
    Tags a self-attention layer with its (fixed) attention type.

    The type comes from config.attention_layers[layer_id] and never changes.
    The model reads it to choose which mask to hand to this layer.
    """

    def __init__(self, config: GPTNeoConfig, layer_id: int):
        super().__init__()
        self.attention_type = config.attention_layers[layer_id]
        self.attention = GPTNeoSelfAttention(config)

    def forward(
        self,
        hidden_states: torch.Tensor,
        layer_state: Optional[LayerState] = None,
        attention_mask: Optional[torch.Tensor] = None,
        output_attentions: bool = False,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor], LayerState]:
        return self.attention(hidden_states, layer_state, attention_mask, output_attentions)


# ═══════════════════════════════════════════════════════════════════════════
# 5. Transformer Block (One Decoder Layer)
# ═══════════════════════════════════════════════════════════════════════════

class GPTNeoBlock(nn.Module):
    """
    A single GPT-Neo decoder layer.

    ARCHITECTURE (pre-norm, two residual connections):
      x ─┬─→ LayerNorm ─→ Attention ─→ + ─┬─→ LayerNorm ─→ MLP ─→ + ─→ out
         └────────────────────────────────┘└───────────────────────┘
    """

    def __init__(self, layer_id: int, config: GPTNeoConfig):
        super().__init__()
        self.layer_id = layer_id
        self.ln_1 = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_epsilon)
        self.attn = GPTNeoAttention(config, layer_id)
        self.ln_2 = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_epsilon)
        self.mlp = GPTNeoMLP(config)

    @property
    def attention_type(self) -> AttentionLayerType:
        return self.attn.attention_type

    def forward(
        self,
        hidden_states: torch.Tensor,
        layer_state: Optional[LayerState] = None,
        attention_mask: Optional[torch.Tensor] = None,
        output_attentions: bool = False,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor], LayerState]:
        attn_output, attn_weights, new_state = self.attn(
            self.ln_1(hidden_states), layer_state, attention_mask, output_attentions
        )
        hidden_states = hidden_states + attn_output
        hidden_states = hidden_states + self.mlp(self.ln_2(hidden_states))
        return hidden_states, attn_weights, new_state


# ═══════════════════════════════════════════════════════════════════════════
# 6. GPT-Neo Transformer Stack
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class GPTNeoModelOutput:
    """Output of GPTNeoModel.forward."""
    hidden_states: torch.Tensor                         # (..., seq, hidden)
    next_cache: Optional[List[Optional[LayerState]]]    # one entry per layer
    all_hidden_states: Optional[List[torch.Tensor]] = None
    all_attentions: Optional[List[torch.Tensor]] = None


class GPTNeoModel(nn.Module):
    """
    GPT-Neo transformer stack (no LM head).

    FULL ARCHITECTURE:
      Token IDs (batch, seq)
        │
        ▼
      wte(token) + wpe(position) [+ wte(token_type)] → dropout
        │
        ▼
      N× GPTNeoBlock, each using the GLOBAL or LOCAL mask for its type
        │
        ▼
      Final LayerNorm ln_f
        │
        ▼
      Hidden states (batch, seq, hidden)

    POSITIONS WITH A CACHE:
      With `past_length` tokens already cached, the new tokens sit at
      positions past_length .. past_length + seq - 1. Unless position_ids
      are given explicitly, that range is used for the position embedding.
      Generation with left padding passes explicit position ids instead
      (see gpt_neo.generate.compute_position_ids).
    """

    def __init__(self, config: GPTNeoConfig):
        super().__init__()
        config.validate()
        self.config = config

        self.wte = nn.Embedding(config.vocab_size, config.hidden_size)
        self.wpe = nn.Embedding(config.max_position_embeddings, config.hidden_size)
        self.drop = nn.Dropout(config.embed_dropout)
        self.h = nn.ModuleList([
            GPTNeoBlock(layer_id=i, config=config)
            for i in range(config.num_layers)
        ])
        self.ln_f = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_epsilon)

        self._has_local_layers = AttentionLayerType.LOCAL in config.attention_layers

        self.apply(self._init_weights)

    def _init_weights(self, module: nn.Module) -> None:
        """Normal(0, initializer_range) for weights, zeros for biases (GPT-2 convention)."""
        std = self.config.initializer_range
        if isinstance(module, nn.Linear):
            nn.init.normal_(module.weight, mean=0.0, std=std)
            if module.bias is not None:
                nn.init.zeros_(module.bias)
        elif isinstance(module, nn.Embedding):
            nn.init.normal_(module.weight, mean=0.0, std=std)
        elif isinstance(module, nn.LayerNorm):
            nn.init.ones_(module.weight)
            nn.init.zeros_(module.bias)

    def _check_cache_shapes(self, past: Cache, batch_size: int) -> None:
        if past is None:
            return
        assert len(past) == len(self.h), (
            f"Cache has {len(past)} entries but the model has {len(self.h)} layers"
        )
        populated = [state for state in past if state is not None]
        if not populated:
            return
        assert len(populated) == len(past), (
            f"Cache has {len(past) - len(populated)} empty entries out of {len(past)}; "
            f"entries must be all None or all populated"
        )
        past_length = populated[0].past_length
        for layer_idx, state in enumerate(past):
            assert state.batch_size == batch_size, (
                f"Cache entry {layer_idx} has batch size {state.batch_size}, "
                f"input has batch size {batch_size}"
            )
            assert state.past_length == past_length, (
                f"Cache entry {layer_idx} holds {state.past_length} positions, "
                f"entry 0 holds {past_length}"
            )

    def forward(
        self,
        input_ids: Optional[torch.Tensor] = None,
        inputs_embeds: Optional[torch.Tensor] = None,
        token_type_ids: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
        past_key_values: Cache = None,
        attention_mask: Optional[torch.Tensor] = None,
        output_attentions: Optional[bool] = None,
        output_hidden_states: Optional[bool] = None,
    ) -> GPTNeoModelOutput:
        """
        Run the transformer stack.

        Args:
            input_ids: Token ids (..., seq). Exactly one of input_ids and
                       inputs_embeds must be given.
            inputs_embeds: Pre-computed token embeddings (..., seq, hidden).
            token_type_ids: Optional ids embedded with the SAME table as
                            tokens and added to the input.
            position_ids: Optional positions (..., seq). Defaults to
                          past_length .. past_length + seq - 1.
            past_key_values: Cache from the previous step, one optional
                             LayerState per layer. Never modified.
            attention_mask: Padding mask (batch, past_length + seq),
                            1 = attend, 0 = padding.
            output_attentions / output_hidden_states: Override the config
                            defaults for diagnostics.

        Returns:
            GPTNeoModelOutput. `all_hidden_states` holds the input of every
            block followed by the output of the last block (before ln_f).

        Raises:
            InputConflictError: both or neither input given.
            IncompatibleCacheError: past_key_values is not a GPT-Neo cache.
        """
        if input_ids is not None and inputs_embeds is not None:
            raise InputConflictError("Only one of input_ids or inputs_embeds may be set")
        if input_ids is None and inputs_embeds is None:
            raise InputConflictError("At least one of input_ids or inputs_embeds must be set")
        validate_cache(past_key_values)

        if output_attentions is None:
            output_attentions = self.config.output_attentions
        if output_hidden_states is None:
            output_hidden_states = self.config.output_hidden_states

        # ── Step 1: Flatten extra leading dims to a single batch dim ───────
        if input_ids is not None:
            input_shape = input_ids.shape
            input_ids = input_ids.view(-1, input_shape[-1])
            inputs_embeds = self.wte(input_ids)
        else:
            input_shape = inputs_embeds.shape[:-1]
            inputs_embeds = inputs_embeds.view(-1, input_shape[-1], inputs_embeds.size(-1))

        batch_size, current_length = inputs_embeds.shape[:2]
        device = inputs_embeds.device

        self._check_cache_shapes(past_key_values, batch_size)
        past_length = get_past_length(past_key_values)
        total_length = past_length + current_length

        # ── Step 2: Positions ──────────────────────────────────────────────
        if position_ids is None:
            position_ids = torch.arange(
                past_length, total_length, dtype=torch.long, device=device
            ).unsqueeze(0)
        position_ids = position_ids.view(-1, current_length)

        # ── Step 3: Masks (built once, shared by all layers) ───────────────
        if attention_mask is not None:
            attention_mask = attention_mask.view(batch_size, -1)
            assert attention_mask.size(-1) == total_length, (
                f"attention_mask covers {attention_mask.size(-1)} positions, "
                f"expected past_length + seq = {total_length}"
            )
        global_mask = build_global_attention_mask(
            attention_mask, batch_size, torch.float32, self.config.mask_value
        )
        local_mask = None
        if self._has_local_layers:
            local_mask = build_local_attention_mask(
                batch_size,
                current_length,
                total_length,
                self.config.window_size,
                device,
                torch.float32,
                attention_mask,
                self.config.mask_value,
            )

        # ── Step 4: Embeddings ─────────────────────────────────────────────
        hidden_states = inputs_embeds + self.wpe(position_ids)
        if token_type_ids is not None:
            token_type_ids = token_type_ids.view(-1, current_length)
            hidden_states = hidden_states + self.wte(token_type_ids)
        hidden_states = self.drop(hidden_states)

        output_shape = tuple(input_shape) + (hidden_states.size(-1),)

        # ── Step 5: Blocks ─────────────────────────────────────────────────
        layer_states: Sequence[Optional[LayerState]] = (
            past_key_values if past_key_values is not None else [None] * len(self.h)
        )
        next_cache: List[Optional[LayerState]] = []
        all_hidden_states = [] if output_hidden_states else None
        all_attentions = [] if output_attentions else None

        for block, layer_state in zip(self.h, layer_states):
            if block.attention_type is AttentionLayerType.GLOBAL:
                mask = global_mask
            else:
                mask = local_mask

            if all_hidden_states is not None:
                all_hidden_states.append(hidden_states)

            hidden_states, attn_weights, new_state = block(
                hidden_states, layer_state, mask, output_attentions
            )
            next_cache.append(new_state)

            if all_attentions is not None:
                all_attentions.append(attn_weights)

        if all_hidden_states is not None:
            all_hidden_states.append(hidden_states)

        # ── Step 6: Final normalization, restore leading dims ──────────────
        hidden_states = self.ln_f(hidden_states).view(output_shape)

        return GPTNeoModelOutput(
            hidden_states=hidden_states,
            next_cache=next_cache,
            all_hidden_states=all_hidden_states,
            all_attentions=all_attentions,
        )


# ═══════════════════════════════════════════════════════════════════════════
# 7. Causal Language Model Head
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class GPTNeoLMOutput:
    """Output of GPTNeoForCausalLM.forward."""
    lm_logits: torch.Tensor                             # (..., seq, vocab_size)
    next_cache: Optional[List[Optional[LayerState]]]
    all_hidden_states: Optional[List[torch.Tensor]] = None
    all_attentions: Optional[List[torch.Tensor]] = None


class GPTNeoForCausalLM(nn.Module):
    """
    GPT-Neo with a language modeling head.

    WEIGHT TYING:
      There is no separate output projection. Logits are computed directly
      against the token embedding table:

        logits = hidden @ wte.weight.T        (..., seq, vocab_size)

      Reading wte.weight at call time (instead of keeping a copy) means the
      two can never drift apart.
    """

    def __init__(self, config: GPTNeoConfig):
        super().__init__()
        self.config = config
        self.transformer = GPTNeoModel(config)

    def get_input_embeddings(self) -> nn.Embedding:
        return self.transformer.wte

    def forward(
        self,
        input_ids: Optional[torch.Tensor] = None,
        inputs_embeds: Optional[torch.Tensor] = None,
        token_type_ids: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
        past_key_values: Cache = None,
        attention_mask: Optional[torch.Tensor] = None,
        output_attentions: Optional[bool] = None,
        output_hidden_states: Optional[bool] = None,
    ) -> GPTNeoLMOutput:
        """Same arguments as GPTNeoModel.forward; returns logits instead of hidden states."""
        base_output = self.transformer(
            input_ids=input_ids,
            inputs_embeds=inputs_embeds,
            token_type_ids=token_type_ids,
            position_ids=position_ids,
            past_key_values=past_key_values,
            attention_mask=attention_mask,
            output_attentions=output_attentions,
            output_hidden_states=output_hidden_states,
        )

        lm_logits = F.linear(base_output.hidden_states, self.transformer.wte.weight)

        return GPTNeoLMOutput(
            lm_logits=lm_logits,
            next_cache=base_output.next_cache,
            all_hidden_states=base_output.all_hidden_states,
            all_attentions=base_output.all_attentions,
        )
