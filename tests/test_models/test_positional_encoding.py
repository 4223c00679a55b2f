# tests/test_models/test_positional_encoding.py

"""
Tests for positional encodings.
"""

import pytest
import torch

from stackformer.models.positional_encoding import (
    LearnedPositionalEncoding,
    RotaryEmbedding,
    default_position_ids,
    interpolate_position_embeddings,
)


class TestLearnedPositionalEncoding:
    def test_ids_are_shifted_by_offset(self):
        embedding = LearnedPositionalEncoding(max_positions=10, hidden_size=4, offset=2)
        assert embedding.embeddings.num_embeddings == 12

        out = embedding(torch.tensor([[0, 1]]))
        assert torch.equal(out[0, 0], embedding.embeddings.weight[2])
        assert torch.equal(out[0, 1], embedding.embeddings.weight[3])

    def test_default_position_ids(self):
        ids = default_position_ids(torch.zeros(2, 3, 8), offset=5)
        assert ids.tolist() == [[5, 6, 7], [5, 6, 7]]


class TestInterpolation:
    def test_same_size_is_identity(self):
        embeddings = torch.randn(1, 1 + 16, 8)
        out = interpolate_position_embeddings(embeddings, 28, image_size=28, patch_size=7)
        assert out is embeddings

    def test_resized_grid_keeps_class_token(self):
        embeddings = torch.randn(1, 1 + 4 * 4, 8)
        out = interpolate_position_embeddings(embeddings, (42, 28), image_size=28, patch_size=7)
        assert out.shape == (1, 1 + 6 * 4, 8)
        assert torch.equal(out[:, 0], embeddings[:, 0])

    def test_constant_grid_stays_constant(self):
        embeddings = torch.ones(1, 1 + 9, 4)
        out = interpolate_position_embeddings(embeddings, 30, image_size=15, patch_size=5)
        assert out.shape == (1, 1 + 36, 4)
        assert torch.allclose(out, torch.ones_like(out), atol=1e-5)


class TestRotaryEmbedding:
    def test_preserves_norm(self):
        rotary = RotaryEmbedding(head_dim=8, max_positions=32)
        q, k = torch.randn(1, 2, 5, 8), torch.randn(1, 2, 5, 8)
        q_rot, k_rot = rotary(q, k)
        assert torch.allclose(q_rot.norm(dim=-1), q.norm(dim=-1), atol=1e-5)
        assert torch.allclose(k_rot.norm(dim=-1), k.norm(dim=-1), atol=1e-5)

    def test_position_zero_is_identity(self):
        rotary = RotaryEmbedding(head_dim=4)
        q = torch.randn(1, 1, 1, 4)
        q_rot, _ = rotary(q, q)
        assert torch.allclose(q_rot, q)

    def test_offset_matches_position_ids(self):
        rotary = RotaryEmbedding(head_dim=8, max_positions=16)
        q, k = torch.randn(2, 2, 3, 8), torch.randn(2, 2, 3, 8)
        by_offset = rotary(q, k, offset=4)
        by_ids = rotary(q, k, position_ids=default_position_ids(torch.zeros(2, 3), offset=4))
        assert torch.allclose(by_offset[0], by_ids[0])
        assert torch.allclose(by_offset[1], by_ids[1])

    def test_scores_depend_on_relative_position(self):
        rotary = RotaryEmbedding(head_dim=8, max_positions=32)
        q, k = torch.randn(1, 1, 1, 8), torch.randn(1, 1, 1, 8)

        q_a, _ = rotary(q, q, offset=3)
        _, k_a = rotary(k, k, offset=1)
        q_b, _ = rotary(q, q, offset=10)
        _, k_b = rotary(k, k, offset=8)

        score_a = (q_a * k_a).sum()
        score_b = (q_b * k_b).sum()
        assert torch.allclose(score_a, score_b, atol=1e-5)

    def test_positions_beyond_table(self):
        rotary = RotaryEmbedding(head_dim=4, max_positions=4)
        q = torch.randn(1, 1, 5, 4)
        with pytest.raises(ValueError, match="max_positions"):
            rotary(q, q)
        with pytest.raises(ValueError, match="max_positions"):
            rotary(q[:, :, :1], q[:, :, :1], offset=4)
        with pytest.raises(ValueError, match="max_positions"):
            rotary(q[:, :, :2], q[:, :, :2], position_ids=torch.tensor([[3, 4]]))
