"""
Unit tests for the generation adapter and the decoding loops.

Tests verify:
  1. Position ids of left-padded rows start at 0 on the first real token
  2. Inputs are cut to the newest token once the cache is populated
  3. reorder_cache permutes every cached layer (identity, swap)
  4. Foreign cache objects are rejected
  5. Top-k / top-p / temperature sampling behave as documented
  6. Cached greedy decoding matches recomputing the whole sequence
  7. Beam search scores match the log-probabilities of the returned beam
  8. Left padding does not change what a prompt generates
"""

import sys
import os

import torch
import torch.nn.functional as F
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gpt_neo.config import GPTNeoConfig, GenerateConfig
from gpt_neo.model import GPTNeoForCausalLM, IncompatibleCacheError, LayerState
from gpt_neo.generate import (
    _sample_token,
    beam_search,
    compute_position_ids,
    decode_step,
    generate,
    generate_batch,
    prepare_inputs_for_generation,
    reorder_cache,
    sample_top_p,
)


@pytest.fixture
def tiny_model():
    """Create a tiny model for testing."""
    config = GPTNeoConfig(
        vocab_size=64,
        hidden_size=32,
        num_layers=4,
        num_heads=4,
        attention_types=[[["global", "local"], 2]],
        window_size=3,
        max_position_embeddings=32,
        bos_token_id=63,
        eos_token_id=63,
    )
    torch.manual_seed(0)
    model = GPTNeoForCausalLM(config)
    model.eval()
    return model


def fake_cache(batch_size, past_length, num_layers=4):
    """Cache with recognizable rows: keys of row b hold b, values hold b + 100."""
    rows = torch.arange(batch_size, dtype=torch.float32).view(batch_size, 1, 1, 1)
    return [
        LayerState(
            prev_key=rows.expand(batch_size, 2, past_length, 3).clone(),
            prev_value=(rows + 100).expand(batch_size, 2, past_length, 3).clone(),
        )
        for _ in range(num_layers)
    ]


def greedy_without_cache(model, input_ids, attention_mask, steps):
    """Reference: recompute the full sequence at every step."""
    with torch.no_grad():
        for _ in range(steps):
            logits = model(
                input_ids=input_ids,
                attention_mask=attention_mask,
                position_ids=compute_position_ids(attention_mask),
            ).lm_logits
            next_tokens = logits[:, -1, :].argmax(dim=-1, keepdim=True)
            input_ids = torch.cat([input_ids, next_tokens], dim=-1)
            attention_mask = torch.cat(
                [attention_mask, torch.ones_like(next_tokens)], dim=-1
            )
    return input_ids


class TestPositionIds:
    """Tests for position ids computed from the attention mask."""

    def test_left_padded_row(self):
        mask = torch.tensor([[0, 0, 1, 1, 1]])
        assert compute_position_ids(mask).tolist() == [[1, 1, 0, 1, 2]]

    def test_unpadded_row(self):
        mask = torch.ones(1, 4, dtype=torch.long)
        assert compute_position_ids(mask).tolist() == [[0, 1, 2, 3]]

    def test_float_mask(self):
        mask = torch.tensor([[0.0, 1.0, 1.0]])
        assert compute_position_ids(mask).tolist() == [[1, 0, 1]]


class TestPrepareInputs:
    """Tests for prepare_inputs_for_generation."""

    def test_without_cache_passes_full_sequence(self):
        ids = torch.tensor([[5, 6, 7], [8, 9, 10]])
        mask = torch.tensor([[0, 1, 1], [1, 1, 1]])
        prepared = prepare_inputs_for_generation(ids, None, mask)
        assert torch.equal(prepared.input_ids, ids)
        assert prepared.past is None
        assert prepared.position_ids.tolist() == [[1, 0, 1], [0, 1, 2]]

    def test_with_cache_keeps_last_column(self):
        ids = torch.tensor([[5, 6, 7, 8], [8, 9, 10, 11]])
        mask = torch.tensor([[0, 1, 1, 1], [1, 1, 1, 1]])
        cache = fake_cache(batch_size=2, past_length=3)
        prepared = prepare_inputs_for_generation(ids, cache, mask)
        assert prepared.input_ids.tolist() == [[8], [11]]
        assert prepared.position_ids.tolist() == [[2], [3]]
        assert torch.equal(prepared.attention_mask, mask)
        assert prepared.past is cache

    def test_empty_cache_entries_count_as_no_cache(self):
        ids = torch.tensor([[1, 2, 3]])
        prepared = prepare_inputs_for_generation(ids, [None, None, None, None])
        assert torch.equal(prepared.input_ids, ids)
        assert prepared.past is None

    def test_partially_populated_cache_rejected(self, tiny_model):
        ids = torch.tensor([[1, 2, 3]])
        with torch.no_grad():
            _, cache = decode_step(tiny_model, prepare_inputs_for_generation(ids[:, :2], None))
        cache[0] = None
        prepared = prepare_inputs_for_generation(ids, cache)
        with pytest.raises(AssertionError, match="all None or all populated"):
            decode_step(tiny_model, prepared)

    def test_missing_mask_means_no_padding(self):
        ids = torch.tensor([[1, 2, 3]])
        prepared = prepare_inputs_for_generation(ids, None)
        assert prepared.attention_mask.tolist() == [[1, 1, 1]]
        assert prepared.position_ids.tolist() == [[0, 1, 2]]

    def test_foreign_cache_rejected(self):
        ids = torch.tensor([[1, 2, 3]])
        with pytest.raises(IncompatibleCacheError):
            prepare_inputs_for_generation(ids, "not a cache")
        with pytest.raises(IncompatibleCacheError):
            prepare_inputs_for_generation(ids, [(torch.zeros(1), torch.zeros(1))])

    def test_foreign_cache_is_type_error(self):
        with pytest.raises(TypeError):
            prepare_inputs_for_generation(torch.tensor([[1]]), {"k": None})


class TestReorderCache:
    """Tests for beam reordering of the KV cache."""

    def test_identity(self):
        cache = fake_cache(batch_size=3, past_length=2)
        before = [state.prev_key.clone() for state in cache]
        assert reorder_cache(cache, torch.tensor([0, 1, 2])) is None
        for state, key in zip(cache, before):
            assert torch.equal(state.prev_key, key)

    def test_swap(self):
        cache = fake_cache(batch_size=2, past_length=2)
        reorder_cache(cache, torch.tensor([1, 0]))
        for state in cache:
            assert state.prev_key[0].unique().tolist() == [1.0]
            assert state.prev_key[1].unique().tolist() == [0.0]
            assert state.prev_value[0].unique().tolist() == [101.0]

    def test_duplicate_rows(self):
        cache = fake_cache(batch_size=2, past_length=2)
        reorder_cache(cache, torch.tensor([1, 1]))
        assert cache[0].prev_key.unique().tolist() == [1.0]

    def test_none_entries_and_empty_cache(self):
        cache = [None] + fake_cache(batch_size=2, past_length=1, num_layers=3)
        reorder_cache(cache, torch.tensor([1, 0]))
        assert cache[0] is None
        assert cache[1].prev_key[0].unique().tolist() == [1.0]
        assert reorder_cache(None, torch.tensor([0])) is None

    def test_foreign_cache_rejected(self):
        with pytest.raises(IncompatibleCacheError):
            reorder_cache([{"key": torch.zeros(1)}], torch.tensor([0]))


class TestDecodeStep:
    def test_prefill_then_step(self, tiny_model):
        ids = torch.randint(0, 64, (2, 5))
        with torch.no_grad():
            logits, cache = decode_step(tiny_model, prepare_inputs_for_generation(ids, None))
            assert logits.shape == (2, 5, 64)
            assert all(state.past_length == 5 for state in cache)

            ids = torch.cat([ids, logits[:, -1].argmax(-1, keepdim=True)], dim=-1)
            logits, cache = decode_step(tiny_model, prepare_inputs_for_generation(ids, cache))
        assert logits.shape == (2, 1, 64)
        assert all(state.past_length == 6 for state in cache)


class TestSampling:
    """Tests for token sampling functions."""

    def test_greedy_deterministic(self):
        logits = torch.tensor([[1.0, 5.0, 3.0, 2.0]])
        token1 = _sample_token(logits, do_sample=False, temperature=1.0, top_k=0, top_p=1.0)
        token2 = _sample_token(logits, do_sample=False, temperature=1.0, top_k=0, top_p=1.0)
        assert token1.tolist() == [1]
        assert token2.tolist() == [1]

    def test_batched_greedy(self):
        logits = torch.tensor([[1.0, 5.0, 3.0], [9.0, 0.0, 0.0]])
        tokens = _sample_token(logits, do_sample=False, temperature=1.0, top_k=0, top_p=1.0)
        assert tokens.tolist() == [1, 0]

    def test_temperature_sharpening(self):
        """Low temperature should make distribution sharper."""
        logits = torch.tensor([[1.0, 2.0, 3.0, 4.0]])
        samples_low = []
        for _ in range(100):
            t = _sample_token(logits.clone(), do_sample=True, temperature=0.01, top_k=0, top_p=1.0)
            samples_low.append(t.item())
        assert samples_low.count(3) > 90, "Low temperature should heavily favor argmax"

    def test_top_k_restricts_vocab(self):
        logits = torch.tensor([[10.0, 5.0, 3.0, 1.0, 0.5, 0.1]])
        samples = set()
        for _ in range(100):
            t = _sample_token(logits.clone(), do_sample=True, temperature=1.0, top_k=2, top_p=1.0)
            samples.add(t.item())
        assert samples.issubset({0, 1}), f"Top-k=2 sampled tokens outside top 2: {samples}"

    def test_top_p_basic(self):
        probs = torch.tensor([0.5, 0.4, 0.05, 0.03, 0.02])
        samples = set()
        for _ in range(100):
            samples.add(sample_top_p(probs.clone(), p=0.85).item())
        # cumsum reaches 0.9 after tokens 0 and 1
        assert samples.issubset({0, 1}), f"Top-p=0.85 sampled: {samples}"

    def test_top_p_includes_crossing_token(self):
        probs = torch.tensor([0.3, 0.3, 0.2, 0.1, 0.1])
        samples = set()
        for _ in range(200):
            samples.add(sample_top_p(probs.clone(), p=0.55).item())
        assert 0 in samples and 1 in samples

    def test_top_p_batched(self):
        probs = torch.tensor([[0.9, 0.05, 0.05], [0.0, 0.0, 1.0]])
        tokens = sample_top_p(probs, p=0.5)
        assert tokens.tolist() == [0, 2]

    def test_top_p_one_disables(self):
        probs = torch.tensor([0.25, 0.25, 0.25, 0.25])
        samples = set()
        for _ in range(200):
            samples.add(sample_top_p(probs.clone(), p=1.0).item())
        assert len(samples) == 4


class TestGenerate:
    """Tests for the reference greedy / sampling loop."""

    def test_output_shape_and_prompt_kept(self, tiny_model):
        ids = torch.randint(0, 63, (2, 4))
        result = generate(tiny_model, ids, config=GenerateConfig(max_new_tokens=6))
        assert result.prompt_tokens == 4
        assert result.sequences.size(1) == 4 + result.generated_tokens
        assert result.generated_tokens <= 6
        assert torch.equal(result.sequences[:, :4], ids)
        assert result.new_tokens().shape == (2, result.generated_tokens)

    def test_greedy_is_deterministic(self, tiny_model):
        ids = torch.randint(0, 63, (1, 5))
        config = GenerateConfig(max_new_tokens=8)
        a = generate(tiny_model, ids, config=config)
        b = generate(tiny_model, ids, config=config)
        assert torch.equal(a.sequences, b.sequences)

    def test_cached_greedy_matches_recompute(self, tiny_model):
        """Sequences longer than the local window exercise local-layer caching."""
        ids = torch.randint(0, 63, (2, 5))
        mask = torch.ones_like(ids)
        mask[1, :2] = 0
        config = GenerateConfig(max_new_tokens=8, eos_token_id=-1)
        result = generate(tiny_model, ids, mask, config=config)
        expected = greedy_without_cache(tiny_model, ids, mask, steps=8)
        assert torch.equal(result.sequences, expected)

    def test_stops_at_eos(self, tiny_model):
        ids = torch.randint(0, 63, (1, 4))
        with torch.no_grad():
            first = tiny_model(input_ids=ids).lm_logits[0, -1].argmax().item()
        result = generate(
            tiny_model, ids, config=GenerateConfig(max_new_tokens=10, eos_token_id=first)
        )
        assert result.generated_tokens == 1
        assert result.new_tokens().tolist() == [[first]]

    def test_finished_rows_emit_pad(self, tiny_model):
        ids = torch.randint(0, 63, (2, 4))
        with torch.no_grad():
            first = tiny_model(input_ids=ids).lm_logits[0, -1].argmax().item()
        config = GenerateConfig(max_new_tokens=5, eos_token_id=first, pad_token_id=0)
        new = generate(tiny_model, ids, config=config).new_tokens()
        assert new[0, 0].item() == first
        assert (new[0, 1:] == 0).all()

    def test_sampling_seed_reproducible(self, tiny_model):
        ids = torch.randint(0, 63, (2, 3))
        config = GenerateConfig(max_new_tokens=6, do_sample=True, top_k=10, seed=123)
        a = generate(tiny_model, ids, config=config)
        b = generate(tiny_model, ids, config=config)
        assert torch.equal(a.sequences, b.sequences)

    def test_zero_new_tokens(self, tiny_model):
        ids = torch.randint(0, 63, (1, 3))
        result = generate(tiny_model, ids, config=GenerateConfig(max_new_tokens=0))
        assert torch.equal(result.sequences, ids)
        assert result.generated_tokens == 0

    def test_position_budget(self, tiny_model):
        ids = torch.randint(0, 63, (1, 30))
        with pytest.raises(AssertionError):
            generate(tiny_model, ids, config=GenerateConfig(max_new_tokens=5))

    def test_stats(self, tiny_model):
        ids = torch.randint(0, 63, (1, 3))
        result = generate(tiny_model, ids, config=GenerateConfig(max_new_tokens=3))
        assert result.total_ms >= result.prefill_ms >= 0
        assert result.peak_memory_mb == 0.0
        assert "Prompt tokens" in result.stats_string()


class TestBeamSearch:
    """Tests for beam search and its use of reorder_cache."""

    def test_single_beam_equals_greedy(self, tiny_model):
        ids = torch.randint(0, 63, (2, 4))
        greedy = generate(tiny_model, ids, config=GenerateConfig(max_new_tokens=7))
        beam = beam_search(tiny_model, ids, config=GenerateConfig(max_new_tokens=7, num_beams=1))
        assert torch.equal(greedy.sequences, beam.sequences)

    def test_generate_delegates_to_beam_search(self, tiny_model):
        ids = torch.randint(0, 63, (1, 4))
        config = GenerateConfig(max_new_tokens=5, num_beams=3)
        assert torch.equal(
            generate(tiny_model, ids, config=config).sequences,
            beam_search(tiny_model, ids, config=config).sequences,
        )

    def test_scores_match_returned_sequences(self, tiny_model):
        """
        The reported score of the best beam must equal the mean log-probability
        of its tokens under a full (uncached) forward pass. This only holds if
        the cache rows followed their beams through every reorder.
        """
        prompt_len, steps = 4, 6
        ids = torch.randint(0, 63, (2, prompt_len))
        # eos_token_id=-1: no beam ever finishes, all run the full length
        config = GenerateConfig(max_new_tokens=steps, num_beams=4, eos_token_id=-1)
        result = beam_search(tiny_model, ids, config=config)

        assert result.sequences.shape == (2, prompt_len + steps)
        assert result.scores.shape == (2,)

        with torch.no_grad():
            log_probs = F.log_softmax(
                tiny_model(input_ids=result.sequences.clone()).lm_logits.float(), dim=-1
            )
        for b in range(2):
            seq = result.sequences[b]
            total = sum(
                log_probs[b, t - 1, seq[t]].item()
                for t in range(prompt_len, prompt_len + steps)
            )
            assert total / steps == pytest.approx(result.scores[b].item(), abs=1e-4)

    def test_one_step_picks_argmax(self, tiny_model):
        ids = torch.randint(0, 63, (1, 4))
        config = GenerateConfig(max_new_tokens=1, num_beams=3, eos_token_id=-1)
        beam = beam_search(tiny_model, ids, config=config)
        greedy = generate(tiny_model, ids, config=GenerateConfig(max_new_tokens=1))
        assert torch.equal(beam.sequences, greedy.sequences)


class TestGenerateBatch:
    """Tests for left-padded batching of variable-length prompts."""

    def test_left_padding_layout(self, tiny_model):
        prompts = [[5, 6, 7, 8, 9], [10, 11]]
        config = GenerateConfig(max_new_tokens=3, pad_token_id=0)
        result = generate_batch(tiny_model, prompts, config)
        assert result.prompt_tokens == 5
        assert result.sequences[0, :5].tolist() == [5, 6, 7, 8, 9]
        assert result.sequences[1, :5].tolist() == [0, 0, 0, 10, 11]

    def test_padding_does_not_change_output(self, tiny_model):
        prompts = [[5, 6, 7, 8, 9, 1, 2], [10, 11, 12]]
        config = GenerateConfig(max_new_tokens=6)
        batched = generate_batch(tiny_model, prompts, config)
        single = generate_batch(tiny_model, [prompts[1]], config)
        n = single.generated_tokens
        assert torch.equal(batched.new_tokens()[1, :n], single.new_tokens()[0])

    def test_empty_prompt_rejected(self, tiny_model):
        with pytest.raises(AssertionError):
            generate_batch(tiny_model, [[1, 2], []])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
