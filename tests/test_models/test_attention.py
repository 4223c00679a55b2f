"""
Tests for the attention core.

Run with: pytest tests/test_models/test_attention.py -v
"""

import pytest
import torch

from stackformer.models.attention import (
    MultiHeadAttention,
    T5RelativePositionBias,
    apply_attention_head_mask,
    attention_bias,
    build_causal_mask,
    expand_attention_mask,
    repeat_kv,
)
from stackformer.models.cache import AttentionCache
from stackformer.models.config import (
    AttentionConfig,
    RelativeAttentionBiasConfig,
    RotaryEmbeddingConfig,
)


class TestMaskHelpers:
    def test_causal_mask_without_offset(self):
        mask = build_causal_mask(3, 3)
        expected = torch.tensor(
            [[True, False, False], [True, True, False], [True, True, True]]
        )
        assert torch.equal(mask, expected)

    def test_causal_mask_rows_shift_with_offset(self):
        # Two new queries at absolute positions 3 and 4 over 5 keys
        mask = build_causal_mask(2, 5, offset=3)
        expected = torch.tensor(
            [[True, True, True, True, False], [True, True, True, True, True]]
        )
        assert torch.equal(mask, expected)

    def test_attention_bias_values(self):
        mask = torch.tensor([[True, False]])
        bias = attention_bias(mask, torch.float32)
        assert bias[0, 0] == 0
        assert bias[0, 1] == torch.finfo(torch.float32).min

    def test_expand_attention_mask_ranks(self):
        assert expand_attention_mask(torch.ones(2, 5)).shape == (2, 1, 1, 5)
        assert expand_attention_mask(torch.ones(2, 3, 5)).shape == (2, 1, 3, 5)
        with pytest.raises(ValueError):
            expand_attention_mask(torch.ones(5))

    def test_repeat_kv(self):
        kv = torch.randn(2, 2, 3, 4)
        repeated = repeat_kv(kv, 3)
        assert repeated.shape == (2, 6, 3, 4)
        # Heads are repeated in groups: kv head 0 serves query heads 0..2
        assert torch.equal(repeated[:, 0], kv[:, 0])
        assert torch.equal(repeated[:, 2], kv[:, 0])
        assert torch.equal(repeated[:, 3], kv[:, 1])
        assert repeat_kv(kv, 1) is kv

    def test_head_mask_broadcast(self):
        weights = torch.ones(2, 3, 4, 4)
        masked = apply_attention_head_mask(weights, torch.tensor([1.0, 0.0, 1.0]))
        assert masked[:, 1].abs().sum() == 0
        assert torch.equal(masked[:, 0], weights[:, 0])
        assert apply_attention_head_mask(weights, None) is weights


class TestT5RelativePositionBias:
    def test_output_shape(self):
        bias = T5RelativePositionBias(num_heads=4, num_buckets=8, max_distance=16)
        assert bias(5, 7).shape == (1, 4, 5, 7)

    def test_offset_matches_full_row(self):
        torch.manual_seed(0)
        bias = T5RelativePositionBias(num_heads=2, num_buckets=8, bidirectional=False)
        full = bias(6, 6)
        last_row = bias(1, 6, query_position_offset=5)
        assert torch.equal(last_row[:, :, 0], full[:, :, 5])

    def test_distant_positions_share_last_bucket(self):
        buckets = T5RelativePositionBias._relative_position_bucket(
            torch.tensor([-1000, -500]), bidirectional=False, num_buckets=8, max_distance=16
        )
        assert buckets.tolist() == [7, 7]


class TestMultiHeadAttention:
    def test_concrete_causal_scenario(self):
        """batch=1, seq=4, hidden=8, heads=2, causal, no cache, default masks."""
        torch.manual_seed(0)
        mha = MultiHeadAttention(AttentionConfig(hidden_size=8, num_heads=2, causal=True))
        x = torch.randn(1, 4, 8)

        out = mha(x, output_attentions=True)

        assert out.output.shape == (1, 4, 8)
        assert out.attention_weights.shape == (1, 2, 4, 4)
        future = torch.triu(torch.ones(4, 4, dtype=torch.bool), diagonal=1)
        assert torch.all(out.attention_weights[..., future] == 0)
        assert out.cache_entry is None

    def test_attention_weights_sum_to_one(self):
        mha = MultiHeadAttention(AttentionConfig(hidden_size=16, num_heads=4))
        x = torch.randn(2, 6, 16)
        weights = mha(x, output_attentions=True).attention_weights
        assert torch.allclose(weights.sum(dim=-1), torch.ones(2, 4, 6), atol=1e-6)

    def test_padding_mask(self):
        mha = MultiHeadAttention(AttentionConfig(hidden_size=16, num_heads=4))
        x = torch.randn(1, 5, 16)
        mask = torch.tensor([[1, 1, 1, 0, 0]])

        weights = mha(x, attention_mask=mask, output_attentions=True).attention_weights

        assert torch.all(weights[..., 3:] == 0)

    def test_fully_masked_row_is_uniform(self):
        mha = MultiHeadAttention(AttentionConfig(hidden_size=8, num_heads=2))
        x = torch.randn(1, 4, 8)
        mask = torch.zeros(1, 4)

        out = mha(x, attention_mask=mask, output_attentions=True)

        assert not torch.isnan(out.output).any()
        assert torch.allclose(out.attention_weights, torch.full((1, 2, 4, 4), 0.25))

    def test_fast_path_matches_explicit_weights(self):
        torch.manual_seed(1)
        config = AttentionConfig(hidden_size=16, num_heads=4, causal=True)
        mha = MultiHeadAttention(config).eval()
        x = torch.randn(2, 5, 16)
        mask = torch.tensor([[1, 1, 1, 1, 1], [1, 1, 1, 0, 0]])

        fast = mha(x, attention_mask=mask).output
        explicit = mha(x, attention_mask=mask, output_attentions=True).output

        assert torch.allclose(fast, explicit, atol=1e-6)

    def test_head_mask_removes_head_contribution(self):
        torch.manual_seed(2)
        mha = MultiHeadAttention(AttentionConfig(hidden_size=8, num_heads=2))
        x = torch.randn(2, 3, 8)
        head_mask = torch.tensor([1.0, 0.0])

        before = mha(x, head_mask=head_mask, output_attentions=True)
        # Whatever the output projection does with head 1, it receives zeros
        with torch.no_grad():
            mha.output.weight[:, 4:] = torch.randn(8, 4) * 100
        after = mha(x, head_mask=head_mask).output

        assert torch.all(before.attention_weights[:, 1] == 0)
        assert torch.allclose(before.output, after, atol=1e-6)

    def test_unscaled_scores(self):
        torch.manual_seed(3)
        scaled = MultiHeadAttention(AttentionConfig(hidden_size=8, num_heads=2))
        unscaled = MultiHeadAttention(
            AttentionConfig(hidden_size=8, num_heads=2, scale_attention_weights=False)
        )
        unscaled.load_state_dict(scaled.state_dict())
        x = torch.randn(1, 4, 8)

        assert scaled.scale == pytest.approx(0.5)
        assert unscaled.scale == 1.0
        assert not torch.allclose(scaled(x).output, unscaled(x).output)

    def test_cross_attention_shapes(self):
        mha = MultiHeadAttention(AttentionConfig(hidden_size=16, num_heads=4))
        query_source = torch.randn(2, 3, 16)
        key_value_source = torch.randn(2, 7, 16)

        out = mha(query_source, key_value_source, output_attentions=True)

        assert out.output.shape == (2, 3, 16)
        assert out.attention_weights.shape == (2, 4, 3, 7)

    def test_same_tensor_is_self_attention(self):
        """Passing the query source again as key/value source keeps the causal mask."""
        mha = MultiHeadAttention(AttentionConfig(hidden_size=8, num_heads=2, causal=True))
        x = torch.randn(1, 4, 8)

        implicit = mha(x, output_attentions=True)
        explicit = mha(x, x, output_attentions=True)

        assert torch.equal(implicit.attention_weights, explicit.attention_weights)

    def test_grouped_query_attention_cache_keeps_kv_heads(self):
        config = AttentionConfig(hidden_size=16, num_heads=4, num_key_value_heads=2)
        mha = MultiHeadAttention(config)
        empty = torch.zeros(2, 2, 0, 4)
        x = torch.randn(2, 3, 16)

        out = mha(x, cache_entry=AttentionCache(empty, empty), output_attentions=True)

        assert mha.key.out_features == 8
        assert out.cache_entry.key.shape == (2, 2, 3, 4)
        assert out.attention_weights.shape == (2, 4, 3, 3)

    def test_self_attention_cache_grows(self):
        mha = MultiHeadAttention(AttentionConfig(hidden_size=8, num_heads=2, causal=True))
        empty = torch.zeros(1, 2, 0, 4)
        entry = AttentionCache(empty, empty)

        for step in range(3):
            entry = mha(torch.randn(1, 1, 8), cache_entry=entry, offset=step).cache_entry
            assert entry.key.shape == (1, 2, step + 1, 4)

    def test_populated_cross_cache_is_reused(self):
        mha = MultiHeadAttention(AttentionConfig(hidden_size=8, num_heads=2))
        encoder_state = torch.randn(1, 5, 8)

        first = mha(torch.randn(1, 1, 8), encoder_state, cache_entry=AttentionCache())
        second = mha(torch.randn(1, 1, 8), encoder_state, cache_entry=first.cache_entry)

        assert first.cache_entry.populated
        assert second.cache_entry is first.cache_entry
        assert second.cache_entry.key is first.cache_entry.key

    def test_relative_bias_is_computed_and_returned(self):
        config = AttentionConfig(
            hidden_size=8, num_heads=2, relative_attention_bias=RelativeAttentionBiasConfig()
        )
        owner = MultiHeadAttention(config, has_relative_bias=True)
        borrower = MultiHeadAttention(config, has_relative_bias=False)
        x = torch.randn(1, 4, 8)

        bias = owner(x).relative_bias
        assert bias.shape == (1, 2, 4, 4)
        assert borrower.relative_attention_bias is None
        assert borrower(x, relative_bias=bias).relative_bias is bias

    def test_rotary_uses_offset(self):
        torch.manual_seed(4)
        config = AttentionConfig(
            hidden_size=8,
            num_heads=2,
            causal=True,
            rotary_embedding=RotaryEmbeddingConfig(max_positions=16),
        )
        mha = MultiHeadAttention(config)
        x = torch.randn(1, 3, 8)
        full = mha(x).output

        empty = torch.zeros(1, 2, 0, 4)
        entry = AttentionCache(empty, empty)
        steps = []
        for i in range(3):
            out = mha(x[:, i : i + 1], cache_entry=entry, offset=i)
            entry = out.cache_entry
            steps.append(out.output)

        assert torch.allclose(torch.cat(steps, dim=1), full, atol=1e-5)


class TestAttentionConfig:
    def test_defaults_are_derived(self):
        config = AttentionConfig(hidden_size=12, num_heads=3)
        assert config.attention_head_size == 4
        assert config.num_key_value_heads == 3

    def test_hidden_size_not_divisible(self):
        with pytest.raises(ValueError, match="num_heads"):
            AttentionConfig(hidden_size=10, num_heads=3)

    def test_explicit_head_size_allows_any_hidden_size(self):
        config = AttentionConfig(hidden_size=10, num_heads=3, attention_head_size=4)
        mha = MultiHeadAttention(config)
        out = mha(torch.randn(1, 2, 10)).output
        assert out.shape == (1, 2, 10)

    def test_key_value_heads_must_divide_heads(self):
        with pytest.raises(ValueError, match="num_key_value_heads"):
            AttentionConfig(hidden_size=12, num_heads=4, num_key_value_heads=3)

    def test_rotary_requires_even_head_size(self):
        with pytest.raises(ValueError, match="rotary_embedding"):
            AttentionConfig(
                hidden_size=9, num_heads=3, rotary_embedding=RotaryEmbeddingConfig()
            )

    def test_non_positive_sizes(self):
        with pytest.raises(ValueError, match="hidden_size"):
            AttentionConfig(hidden_size=0, num_heads=1)

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ValueError, match="unknown option"):
            AttentionConfig.from_dict({"hidden_size": 8, "num_heads": 2, "heads": 2})
