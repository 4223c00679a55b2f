"""
Positional encodings for the transformer stacks.

Three policies are provided:
- Learned absolute encodings added once before the block stack
- Learned grid embeddings resized with bicubic interpolation when a vision model
  sees a different resolution than it was trained at
- Rotary embeddings applied inside attention to queries and keys

All of them are offset-aware: during incremental decoding the first token of the
current forward pass sits at absolute position ``offset`` rather than 0.
"""

from typing import Optional, Tuple, Union

import torch
import torch.nn as nn
import torch.nn.functional as F


def default_position_ids(x: torch.Tensor, offset: int = 0) -> torch.Tensor:
    """Positions ``offset .. offset + seq_len - 1`` for every batch entry of ``x``."""
    batch_size, seq_len = x.shape[:2]
    positions = torch.arange(offset, offset + seq_len, dtype=torch.long, device=x.device)
    return positions.unsqueeze(0).expand(batch_size, -1)


class LearnedPositionalEncoding(nn.Module):
    """
    Learned absolute position embeddings looked up by position id.

    Args:
        max_positions: number of addressable positions
        hidden_size: embedding dimension
        offset: rows reserved at the start of the table; ids are shifted by it
                (mBART reserves 2)
    """

    def __init__(self, max_positions: int, hidden_size: int, offset: int = 0):
        super().__init__()
        self.offset = offset
        self.embeddings = nn.Embedding(max_positions + offset, hidden_size)

    def forward(self, position_ids: torch.Tensor) -> torch.Tensor:
        """position_ids: (batch, seq_len) -> (batch, seq_len, hidden_size)"""
        return self.embeddings(position_ids + self.offset)


def interpolate_position_embeddings(
    position_embeddings: torch.Tensor,
    input_size: Union[int, Tuple[int, int]],
    image_size: int,
    patch_size: int,
    num_prefix_tokens: int = 1,
) -> torch.Tensor:
    """
    Resize a square grid of learned patch position embeddings to a new resolution.

    The first ``num_prefix_tokens`` rows (class token) are kept as they are; the
    remaining ``(image_size // patch_size) ** 2`` rows are reshaped to 2-D,
    resized with bicubic interpolation and flattened back.

    Args:
        position_embeddings: (1, num_prefix_tokens + num_patches, hidden_size)
        input_size: spatial size of the live input, int or (height, width)
    """
    if isinstance(input_size, int):
        input_size = (input_size, input_size)

    original = image_size // patch_size
    resized = (input_size[0] // patch_size, input_size[1] // patch_size)
    if resized == (original, original):
        return position_embeddings

    hidden_size = position_embeddings.size(-1)
    prefix = position_embeddings[:, :num_prefix_tokens]
    grid = position_embeddings[:, num_prefix_tokens:]

    # (1, N, H) -> (1, H, side, side), interpolate in float32 for bicubic support
    grid = grid.reshape(1, original, original, hidden_size).permute(0, 3, 1, 2)
    grid = F.interpolate(grid.float(), size=resized, mode="bicubic", align_corners=False)
    grid = grid.to(position_embeddings.dtype).permute(0, 2, 3, 1).reshape(1, -1, hidden_size)

    return torch.cat([prefix, grid], dim=1)


class RotaryEmbedding(nn.Module):
    """
    Rotary Positional Embeddings (RoPE).

    Encodes relative positions by rotating the query and key vectors as a function
    of their absolute position.
    Reference: https://arxiv.org/abs/2104.09864
    """

    def __init__(self, head_dim: int, max_positions: int = 2048, base: float = 10000.0):
        super().__init__()
        inv_freq = 1.0 / (base ** (torch.arange(0, head_dim, 2).float() / head_dim))
        t = torch.arange(max_positions).type_as(inv_freq)
        freqs = torch.outer(t, inv_freq)
        emb = torch.cat((freqs, freqs), dim=-1)
        self.register_buffer("cos", emb.cos(), persistent=False)
        self.register_buffer("sin", emb.sin(), persistent=False)

    def forward(
        self,
        query: torch.Tensor,
        key: torch.Tensor,
        position_ids: Optional[torch.Tensor] = None,
        offset: int = 0,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Args:
            query: (batch, num_heads, seq_len, head_dim)
            key: (batch, num_kv_heads, seq_len, head_dim)
            position_ids: optional (batch, seq_len) absolute positions; defaults to
                          offset .. offset + seq_len - 1
        """
        max_positions = self.cos.size(0)
        if position_ids is None:
            seq_len = query.size(2)
            if offset + seq_len > max_positions:
                raise ValueError(
                    f"positions up to {offset + seq_len} exceed max_positions {max_positions}"
                )
            positions = torch.arange(offset, offset + seq_len, device=query.device)
            # (1, 1, seq_len, head_dim), broadcast over batch and heads
            cos = self.cos[positions][None, None]
            sin = self.sin[positions][None, None]
        else:
            if position_ids.numel() > 0 and int(position_ids.max()) >= max_positions:
                raise ValueError(
                    f"position id {int(position_ids.max())} exceeds max_positions {max_positions}"
                )
            # (batch, 1, seq_len, head_dim)
            cos = self.cos[position_ids].unsqueeze(1)
            sin = self.sin[position_ids].unsqueeze(1)

        cos = cos.to(query.dtype)
        sin = sin.to(query.dtype)
        return self._rotate(query, cos, sin), self._rotate(key, cos, sin)

    @staticmethod
    def _rotate(x: torch.Tensor, cos: torch.Tensor, sin: torch.Tensor) -> torch.Tensor:
        x1, x2 = x.chunk(2, dim=-1)
        return (x * cos) + (torch.cat((-x2, x1), dim=-1) * sin)
