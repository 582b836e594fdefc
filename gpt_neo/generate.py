"""
Generation adapter and reference decoding loop.

The model's forward pass (gpt_neo.model) knows nothing about decoding. This
module sits between the model and a decoding loop:

  ADAPTER (what any decoding loop needs from GPT-Neo):
    - compute_position_ids:           positions from a running attention mask
    - prepare_inputs_for_generation:  slice to the newest token once cached
    - decode_step:                    one forward call → (logits, next cache)
    - reorder_cache:                  permute cached rows after a beam step

  REFERENCE LOOP (a small driver built on the adapter):
    - generate:     greedy or temperature/top-k/top-p sampling
    - beam_search:  fixed-width beam search

PREFILL / DECODE:
  Step 1 has no cache: the whole (possibly left-padded) prompt goes through
  the model and every layer returns its keys/values.

  Step n has a cache: only the LAST column of input_ids is fed. The running
  attention mask still covers the full sequence, so the model knows which
  cached positions are padding.

    input_ids      [[pad, pad, The, cat],        attention_mask [[0, 0, 1, 1],
                    [A,   big, red, dog]]                        [1, 1, 1, 1]]
    position_ids   [[1,   1,   0,   1],
                    [0,   1,   2,   3]]

  Padded slots get position 1 (any valid index works, they are masked out);
  real tokens are numbered from 0 at the first real token, which is how
  pretrained GPT-Neo sees positions with left padding.
"""

import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

import torch
import torch.nn.functional as F

from gpt_neo.config import GenerateConfig
from gpt_neo.device import get_memory_usage
from gpt_neo.model import (
    Cache,
    GPTNeoForCausalLM,
    cache_is_populated,
    get_past_length,
    validate_cache,
)
from gpt_neo.utils import GenerationLogger


# ═══════════════════════════════════════════════════════════════════════════
# ADAPTER
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class PreparedInput:
    """Inputs for one decoding step, consumed by decode_step and discarded."""
    input_ids: torch.Tensor
    attention_mask: torch.Tensor
    position_ids: torch.Tensor
    past: Cache


def compute_position_ids(attention_mask: torch.Tensor) -> torch.Tensor:
    """
    Position ids for a left-padded batch: cumsum(mask) - 1, pads set to 1.

      attention_mask [0, 0, 1, 1, 1] → position_ids [1, 1, 0, 1, 2]
    """
    attention_mask = attention_mask.long()
    position_ids = attention_mask.cumsum(-1) - 1
    return position_ids.masked_fill(attention_mask == 0, 1)


def prepare_inputs_for_generation(
    input_ids: torch.Tensor,
    past: Cache,
    attention_mask: Optional[torch.Tensor] = None,
) -> PreparedInput:
    """
    Build the model inputs for the next decoding step.

    Args:
        input_ids: Full sequence so far (batch, seq), prompt + generated.
        past: Cache returned by the previous step, or None.
        attention_mask: (batch, seq) running padding mask. None = no padding.

    Returns:
        PreparedInput. If `past` holds at least one populated layer, the ids
        and position ids are cut to their last column (history is already
        in the cache); otherwise the full sequence is passed.

    Raises:
        IncompatibleCacheError: `past` is not a GPT-Neo cache.
    """
    validate_cache(past)
    if attention_mask is None:
        attention_mask = torch.ones_like(input_ids)

    position_ids = compute_position_ids(attention_mask)

    if cache_is_populated(past):
        return PreparedInput(
            input_ids=input_ids[:, -1:],
            attention_mask=attention_mask,
            position_ids=position_ids[:, -1:],
            past=past,
        )
    return PreparedInput(
        input_ids=input_ids,
        attention_mask=attention_mask,
        position_ids=position_ids,
        past=None,
    )


def decode_step(
    model: GPTNeoForCausalLM, prepared: PreparedInput
) -> Tuple[torch.Tensor, Cache]:
    """One forward call of the decoding loop: returns (logits, next cache)."""
    output = model(
        input_ids=prepared.input_ids,
        attention_mask=prepared.attention_mask,
        position_ids=prepared.position_ids,
        past_key_values=prepared.past,
    )
    return output.lm_logits, output.next_cache


def reorder_cache(past: Cache, beam_indices: torch.Tensor) -> None:
    """
    Permute the batch rows of every cached layer, in place.

    After a beam search step, beam b continues the hypothesis held in row
    beam_indices[b] of the previous step, so every layer's keys and values
    are re-indexed the same way. There is no encoder output to reorder in a
    decoder-only model, hence no return value.

    Raises:
        IncompatibleCacheError: `past` is not a GPT-Neo cache.
    """
    validate_cache(past)
    if past is None:
        return None
    for layer_state in past:
        if layer_state is not None:
            layer_state.reorder_cache(beam_indices)
    return None


# ═══════════════════════════════════════════════════════════════════════════
# SAMPLING
# ═══════════════════════════════════════════════════════════════════════════

def sample_top_p(probs: torch.Tensor, p: float) -> torch.Tensor:
    """
    Top-p (nucleus) sampling: keep the smallest set of tokens whose
    cumulative probability reaches p, renormalize, sample.

    EXAMPLE:
      probs  = [0.4, 0.3, 0.15, 0.1, 0.05]  (sorted descending)
      cumsum = [0.4, 0.7, 0.85, 0.95, 1.0]
      p = 0.9 → keep [0.4, 0.3, 0.15, 0.1] (the token crossing p is kept)

    Args:
        probs: (vocab_size,) or (batch, vocab_size) probabilities.
        p: Cumulative probability threshold in (0, 1].

    Returns:
        Sampled token index: a scalar tensor for 1-D input, (batch,) otherwise.
    """
    squeeze = probs.dim() == 1
    if squeeze:
        probs = probs.unsqueeze(0)

    probs_sorted, sorted_indices = torch.sort(probs, dim=-1, descending=True)
    cumsum = torch.cumsum(probs_sorted, dim=-1)

    # Shifted by one so the crossing token itself survives
    mask = cumsum - probs_sorted > p
    probs_sorted = probs_sorted.masked_fill(mask, 0.0)
    probs_sorted = probs_sorted / probs_sorted.sum(dim=-1, keepdim=True)

    sampled_idx = torch.multinomial(probs_sorted, num_samples=1)
    tokens = torch.gather(sorted_indices, -1, sampled_idx).squeeze(-1)
    return tokens.squeeze(0) if squeeze else tokens


def _sample_token(
    logits: torch.Tensor,
    do_sample: bool,
    temperature: float,
    top_k: int,
    top_p: float,
) -> torch.Tensor:
    """
    Pick one token per row from logits of shape (batch, vocab_size).

    Greedy (argmax) unless do_sample. Sampling applies, in order:
    temperature → top-k → top-p → multinomial.
    """
    if not do_sample:
        return logits.argmax(dim=-1)

    logits = logits / temperature

    if top_k > 0:
        top_k = min(top_k, logits.size(-1))
        kth_value = torch.topk(logits, top_k, dim=-1).values[..., -1:]
        logits = logits.masked_fill(logits < kth_value, float("-inf"))

    probs = F.softmax(logits, dim=-1)

    if top_p < 1.0:
        return sample_top_p(probs, top_p)
    return torch.multinomial(probs, num_samples=1).squeeze(-1)


# ═══════════════════════════════════════════════════════════════════════════
# REFERENCE DECODING LOOP
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class GenerateResult:
    """Generated sequences with inference metrics."""
    sequences: torch.Tensor     # (batch, prompt_len + generated) prompt included
    prompt_tokens: int          # padded prompt length
    generated_tokens: int       # decoding steps actually run
    prefill_ms: float           # time of the first forward call (ms)
    decode_ms: float            # time spent after the first call (ms)
    total_ms: float             # total wall time (ms)
    peak_memory_mb: float       # peak GPU memory during generation (0 if CPU)
    scores: Optional[torch.Tensor] = None  # (batch,) beam scores, beam search only

    @property
    def ttft_ms(self) -> float:
        """Time to first token, i.e. the prefill time."""
        return self.prefill_ms

    @property
    def decode_tok_per_sec(self) -> float:
        if self.decode_ms <= 0:
            return 0.0
        return max(self.generated_tokens - 1, 0) / (self.decode_ms / 1000)

    def new_tokens(self) -> torch.Tensor:
        """Only the generated part of each sequence."""
        return self.sequences[:, self.prompt_tokens:]

    def stats_string(self) -> str:
        lines = [
            f"Prompt tokens  : {self.prompt_tokens}",
            f"Output tokens  : {self.generated_tokens}",
            f"TTFT           : {self.ttft_ms:.1f} ms",
            f"Decode speed   : {self.decode_tok_per_sec:.1f} tok/s",
            f"Total time     : {self.total_ms:.1f} ms",
        ]
        if self.peak_memory_mb > 0:
            lines.append(f"Peak GPU mem   : {self.peak_memory_mb:.1f} MB")
        return "\n".join(lines)


def _special_tokens(model: GPTNeoForCausalLM, config: GenerateConfig) -> Tuple[int, int]:
    eos_id = model.config.eos_token_id if config.eos_token_id is None else config.eos_token_id
    pad_id = (
        model.config.effective_pad_token_id
        if config.pad_token_id is None else config.pad_token_id
    )
    return eos_id, pad_id


def _setup(
    model: GPTNeoForCausalLM,
    input_ids: torch.Tensor,
    attention_mask: Optional[torch.Tensor],
    config: GenerateConfig,
) -> torch.Tensor:
    """Shared preconditions for generate / beam_search; returns the mask."""
    config.validate()
    model.eval()
    assert input_ids.dim() == 2, "input_ids must have shape (batch, seq)"
    total = input_ids.size(1) + config.max_new_tokens
    assert total <= model.config.max_position_embeddings, (
        f"prompt + max_new_tokens = {total} exceeds "
        f"max_position_embeddings ({model.config.max_position_embeddings})"
    )
    if attention_mask is None:
        attention_mask = torch.ones_like(input_ids)
    assert attention_mask.shape == input_ids.shape, (
        "attention_mask must have the same shape as input_ids"
    )
    if config.seed is not None:
        torch.manual_seed(config.seed)
    if input_ids.device.type == "cuda":
        torch.cuda.reset_peak_memory_stats(input_ids.device)
    return attention_mask


def _elapsed_ms(device: torch.device, since: float) -> float:
    if device.type == "cuda":
        torch.cuda.synchronize(device)
    return (time.perf_counter() - since) * 1000


@torch.inference_mode()
def generate(
    model: GPTNeoForCausalLM,
    input_ids: torch.Tensor,
    attention_mask: Optional[torch.Tensor] = None,
    config: Optional[GenerateConfig] = None,
    logger: Optional[GenerationLogger] = None,
) -> GenerateResult:
    """
    Continue a batch of (left-padded) prompts.

    GENERATION ALGORITHM:
      1. PREFILL: forward the whole prompt, get caches + logits
      2. Pick the next token per row (greedy or sampled)
      3. Rows that already emitted EOS keep emitting pad_token_id
      4. Append the token, extend the attention mask with a 1
      5. DECODE: forward only the new token with the cache, go to 2
      Stop after max_new_tokens or when every row has emitted EOS.

    Delegates to beam_search when config.num_beams > 1.

    Args:
        model: GPTNeoForCausalLM (put into eval mode).
        input_ids: (batch, prompt_len) prompt ids, padding on the LEFT.
        attention_mask: (batch, prompt_len), 0 on padding. None = no padding.
        config: Decoding options; defaults to greedy, 20 new tokens.
        logger: Optional per-step progress logger.

    Returns:
        GenerateResult with sequences of shape (batch, prompt_len + steps).
    """
    config = config or GenerateConfig()
    if config.num_beams > 1:
        return beam_search(model, input_ids, attention_mask, config, logger)

    attention_mask = _setup(model, input_ids, attention_mask, config)
    eos_id, pad_id = _special_tokens(model, config)
    device = input_ids.device
    batch_size, prompt_len = input_ids.shape

    t_start = time.perf_counter()
    prefill_ms: Optional[float] = None
    finished = torch.zeros(batch_size, dtype=torch.bool, device=device)
    past: Cache = None
    steps = 0

    for _ in range(config.max_new_tokens):
        prepared = prepare_inputs_for_generation(input_ids, past, attention_mask)
        logits, past = decode_step(model, prepared)
        if prefill_ms is None:
            prefill_ms = _elapsed_ms(device, t_start)

        next_tokens = _sample_token(
            logits[:, -1, :].float(),
            config.do_sample,
            config.temperature,
            config.top_k,
            config.top_p,
        )
        next_tokens = next_tokens.masked_fill(finished, pad_id)

        input_ids = torch.cat([input_ids, next_tokens.unsqueeze(-1)], dim=-1)
        attention_mask = torch.cat(
            [attention_mask, attention_mask.new_ones((batch_size, 1))], dim=-1
        )
        finished = finished | (next_tokens == eos_id)
        steps += 1

        if logger is not None:
            logger.log_step(
                step=steps,
                total_steps=config.max_new_tokens,
                cache_length=get_past_length(past),
                finished=int(finished.sum().item()),
                batch_size=batch_size,
            )

        if finished.all():
            break

    total_ms = _elapsed_ms(device, t_start)
    prefill_ms = prefill_ms if prefill_ms is not None else total_ms

    return GenerateResult(
        sequences=input_ids,
        prompt_tokens=prompt_len,
        generated_tokens=steps,
        prefill_ms=prefill_ms,
        decode_ms=total_ms - prefill_ms,
        total_ms=total_ms,
        peak_memory_mb=get_memory_usage(device)["peak_mb"],
    )


@torch.inference_mode()
def beam_search(
    model: GPTNeoForCausalLM,
    input_ids: torch.Tensor,
    attention_mask: Optional[torch.Tensor] = None,
    config: Optional[GenerateConfig] = None,
    logger: Optional[GenerationLogger] = None,
) -> GenerateResult:
    """
    Fixed-width beam search over a batch of prompts.

    Each prompt is expanded to num_beams rows, so the model always runs on
    (batch × num_beams) rows. After every step the best num_beams
    continuations per prompt are kept; the rows they extend are gathered
    from input ids, attention mask AND the KV cache (reorder_cache).

    Beams that emitted EOS only extend with pad_token_id at zero cost, so
    their score is frozen. Final scores are divided by
    (generated_length ** length_penalty) and the best beam is returned.
    """
    config = config or GenerateConfig()
    attention_mask = _setup(model, input_ids, attention_mask, config)
    eos_id, pad_id = _special_tokens(model, config)
    device = input_ids.device
    batch_size, prompt_len = input_ids.shape
    num_beams = config.num_beams

    input_ids = input_ids.repeat_interleave(num_beams, dim=0)
    attention_mask = attention_mask.repeat_interleave(num_beams, dim=0)

    # All beams of a prompt start identical: only beam 0 may expand at step 1
    beam_scores = torch.zeros(batch_size, num_beams, device=device)
    beam_scores[:, 1:] = -1e9
    beam_scores = beam_scores.view(-1)

    finished = torch.zeros(batch_size * num_beams, dtype=torch.bool, device=device)
    lengths = torch.zeros(batch_size * num_beams, dtype=torch.long, device=device)
    batch_offsets = torch.arange(batch_size, device=device).unsqueeze(-1) * num_beams

    t_start = time.perf_counter()
    prefill_ms: Optional[float] = None
    past: Cache = None
    steps = 0

    for _ in range(config.max_new_tokens):
        prepared = prepare_inputs_for_generation(input_ids, past, attention_mask)
        logits, past = decode_step(model, prepared)
        if prefill_ms is None:
            prefill_ms = _elapsed_ms(device, t_start)

        log_probs = F.log_softmax(logits[:, -1, :].float(), dim=-1)
        vocab_size = log_probs.size(-1)
        if finished.any():
            pad_only = torch.full_like(log_probs[0], float("-inf"))
            pad_only[pad_id] = 0.0
            log_probs = torch.where(finished.unsqueeze(-1), pad_only, log_probs)

        candidate_scores = (beam_scores.unsqueeze(-1) + log_probs).view(
            batch_size, num_beams * vocab_size
        )
        top_scores, top_indices = torch.topk(candidate_scores, num_beams, dim=-1)
        source_beams = torch.div(top_indices, vocab_size, rounding_mode="floor")
        next_tokens = (top_indices % vocab_size).view(-1)
        beam_indices = (source_beams + batch_offsets).view(-1)

        input_ids = torch.cat(
            [input_ids.index_select(0, beam_indices), next_tokens.unsqueeze(-1)], dim=-1
        )
        attention_mask = torch.cat(
            [
                attention_mask.index_select(0, beam_indices),
                attention_mask.new_ones((batch_size * num_beams, 1)),
            ],
            dim=-1,
        )
        was_finished = finished.index_select(0, beam_indices)
        lengths = lengths.index_select(0, beam_indices) + (~was_finished).long()
        finished = was_finished | (next_tokens == eos_id)
        beam_scores = top_scores.view(-1)
        reorder_cache(past, beam_indices)
        steps += 1

        if logger is not None:
            logger.log_step(
                step=steps,
                total_steps=config.max_new_tokens,
                cache_length=get_past_length(past),
                finished=int(finished.sum().item()),
                batch_size=batch_size * num_beams,
            )

        if config.early_stopping and finished.all():
            break

    total_ms = _elapsed_ms(device, t_start)
    prefill_ms = prefill_ms if prefill_ms is not None else total_ms

    normalized = beam_scores / lengths.clamp(min=1).float().pow(config.length_penalty)
    normalized = normalized.view(batch_size, num_beams)
    best_scores, best_beams = normalized.max(dim=-1)
    sequences = input_ids.view(batch_size, num_beams, -1)
    sequences = sequences[torch.arange(batch_size, device=device), best_beams]

    return GenerateResult(
        sequences=sequences,
        prompt_tokens=prompt_len,
        generated_tokens=steps,
        prefill_ms=prefill_ms,
        decode_ms=total_ms - prefill_ms,
        total_ms=total_ms,
        peak_memory_mb=get_memory_usage(device)["peak_mb"],
        scores=best_scores,
    )


def generate_batch(
    model: GPTNeoForCausalLM,
    prompts: List[List[int]],
    config: Optional[GenerateConfig] = None,
    logger: Optional[GenerationLogger] = None,
) -> GenerateResult:
    """
    Left-pad variable-length prompts into one batch and generate.

    Args:
        prompts: Token id lists of any lengths (each non-empty).

    Returns:
        GenerateResult over the padded batch.
    """
    assert prompts and all(prompts), "prompts must be non-empty token lists"
    config = config or GenerateConfig()
    _, pad_id = _special_tokens(model, config)
    device = next(model.parameters()).device

    max_len = max(len(p) for p in prompts)
    input_ids = torch.full((len(prompts), max_len), pad_id, dtype=torch.long)
    attention_mask = torch.zeros((len(prompts), max_len), dtype=torch.long)
    for row, prompt in enumerate(prompts):
        input_ids[row, max_len - len(prompt):] = torch.tensor(prompt, dtype=torch.long)
        attention_mask[row, max_len - len(prompt):] = 1

    return generate(
        model,
        input_ids.to(device),
        attention_mask.to(device),
        config=config,
        logger=logger,
    )
