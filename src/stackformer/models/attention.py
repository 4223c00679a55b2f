"""
Attention core shared by every transformer block.

This module implements:
- T5RelativePositionBias: learned, bucketed relative position bias
- MultiHeadAttention: self/cross attention with grouped-query heads, rotary
  embeddings, causal and padding masks, head masking and key/value caching
- Mask helpers used to turn boolean masks into additive score biases

Masks follow one convention throughout: True (or 1) = attend, False (or 0) = masked.
"""

import math
from typing import NamedTuple, Optional

import torch
import torch.nn as nn
import torch.nn.functional as F

from .cache import AttentionCache, cached_attention_key_values
from .config import AttentionConfig
from .positional_encoding import RotaryEmbedding


class AttentionOutput(NamedTuple):
    output: torch.Tensor
    attention_weights: Optional[torch.Tensor]
    cache_entry: Optional[AttentionCache]
    relative_bias: Optional[torch.Tensor]


# --------------- Mask helpers ---------------


def repeat_kv(hidden_state: torch.Tensor, num_repeats: int) -> torch.Tensor:
    """(batch, kv_heads, seq, head_dim) -> (batch, kv_heads * num_repeats, seq, head_dim)"""
    if num_repeats == 1:
        return hidden_state
    batch_size, num_kv_heads, seq_len, head_dim = hidden_state.shape
    hidden_state = hidden_state[:, :, None].expand(
        batch_size, num_kv_heads, num_repeats, seq_len, head_dim
    )
    return hidden_state.reshape(batch_size, num_kv_heads * num_repeats, seq_len, head_dim)


def expand_attention_mask(mask: torch.Tensor) -> torch.Tensor:
    """Broadcast a padding mask to (batch, 1, q_or_1, key_length)."""
    mask = mask.to(dtype=torch.bool)
    if mask.dim() == 2:
        return mask[:, None, None, :]
    if mask.dim() == 3:
        return mask[:, None]
    if mask.dim() == 4:
        return mask
    raise ValueError(f"attention mask must have rank 2, 3 or 4, got shape {tuple(mask.shape)}")


def build_causal_mask(
    query_length: int,
    key_length: int,
    offset: int = 0,
    device: Optional[torch.device] = None,
) -> torch.Tensor:
    """
    Boolean (query_length, key_length) mask where query ``i`` sits at absolute
    position ``offset + i`` and may attend to keys ``0 .. offset + i``.
    """
    query_positions = torch.arange(query_length, device=device)[:, None] + offset
    key_positions = torch.arange(key_length, device=device)[None, :]
    return key_positions <= query_positions


def attention_bias(mask: torch.Tensor, dtype: torch.dtype) -> torch.Tensor:
    """Additive bias: 0 where attending is allowed, the dtype's most negative value elsewhere."""
    bias = torch.zeros(mask.shape, dtype=dtype, device=mask.device)
    return bias.masked_fill(~mask, torch.finfo(dtype).min)


def apply_attention_head_mask(
    attention_weights: torch.Tensor, head_mask: Optional[torch.Tensor]
) -> torch.Tensor:
    """Multiply (batch, heads, q, k) weights by a (heads,) or (batch, heads) mask."""
    if head_mask is None:
        return attention_weights
    head_mask = head_mask.to(attention_weights.dtype)
    if head_mask.dim() == 1:
        head_mask = head_mask.view(1, -1, 1, 1)
    elif head_mask.dim() == 2:
        head_mask = head_mask[:, :, None, None]
    return attention_weights * head_mask


# --------------- Relative position bias ---------------


class T5RelativePositionBias(nn.Module):
    """
    T5-style relative position bias.

    Relative distances between query and key positions are bucketed (exact
    buckets for nearby tokens, logarithmically spaced buckets for distant ones)
    and each bucket has a learned bias per head. The bias is added to the
    attention scores before softmax.
    """

    def __init__(
        self,
        num_heads: int,
        num_buckets: int = 32,
        max_distance: int = 128,
        bidirectional: bool = True,
    ):
        super().__init__()
        self.num_heads = num_heads
        self.num_buckets = num_buckets
        self.max_distance = max_distance
        self.bidirectional = bidirectional

        self.relative_attention_bias = nn.Embedding(num_buckets, num_heads)

    @staticmethod
    def _relative_position_bucket(
        relative_position: torch.Tensor,
        bidirectional: bool = True,
        num_buckets: int = 32,
        max_distance: int = 128,
    ) -> torch.Tensor:
        relative_buckets = torch.zeros_like(relative_position, dtype=torch.long)

        if bidirectional:
            num_buckets //= 2
            relative_buckets += (relative_position > 0).long() * num_buckets
            relative_position = torch.abs(relative_position)
        else:
            relative_position = -torch.clamp(relative_position, max=0)

        max_exact = num_buckets // 2
        is_small = relative_position < max_exact

        # log(0) for the small positions is discarded by the where below
        log_ratio = torch.log(relative_position.float().clamp(min=1) / max_exact)
        relative_position_if_large = max_exact + (
            log_ratio / math.log(max_distance / max_exact) * (num_buckets - max_exact)
        ).long()
        relative_position_if_large = relative_position_if_large.clamp(max=num_buckets - 1)

        relative_buckets += torch.where(is_small, relative_position, relative_position_if_large)
        return relative_buckets

    def forward(
        self,
        query_length: int,
        key_length: int,
        device: Optional[torch.device] = None,
        query_position_offset: int = 0,
    ) -> torch.Tensor:
        """
        Args:
            query_position_offset: absolute position of the first query; during
                incremental decoding query_length is 1 and the offset is the
                number of cached positions

        Returns: (1, num_heads, query_length, key_length)
        """
        context_position = torch.arange(query_length, dtype=torch.long, device=device)[:, None]
        context_position = context_position + query_position_offset
        memory_position = torch.arange(key_length, dtype=torch.long, device=device)[None, :]

        buckets = self._relative_position_bucket(
            memory_position - context_position,
            bidirectional=self.bidirectional,
            num_buckets=self.num_buckets,
            max_distance=self.max_distance,
        )
        # (q, k, heads) -> (1, heads, q, k)
        return self.relative_attention_bias(buckets).permute(2, 0, 1).unsqueeze(0)


# --------------- Multi-Head Attention ---------------


class MultiHeadAttention(nn.Module):
    """
    Multi-head attention over a query source and a key/value source.

    The layer is self-attention when ``key_value_source`` is omitted or is the
    very same tensor as ``query_source``, and cross-attention otherwise.

    Args:
        config: validated AttentionConfig
        has_relative_bias: own a T5RelativePositionBias table. Only the first
            block of a stack owns one when the bias is shared.
    """

    def __init__(self, config: AttentionConfig, has_relative_bias: bool = False):
        super().__init__()
        self.config = config
        self.num_heads = config.num_heads
        self.num_key_value_heads = config.num_key_value_heads
        self.head_dim = config.attention_head_size
        self.num_kv_groups = self.num_heads // self.num_key_value_heads
        self.causal = config.causal
        self.scale = 1.0 / math.sqrt(self.head_dim) if config.scale_attention_weights else 1.0

        inner_size = self.num_heads * self.head_dim
        kv_size = self.num_key_value_heads * self.head_dim
        self.query = nn.Linear(config.hidden_size, inner_size, bias=config.query_use_bias)
        self.key = nn.Linear(config.hidden_size, kv_size, bias=config.key_use_bias)
        self.value = nn.Linear(config.hidden_size, kv_size, bias=config.value_use_bias)
        self.output = nn.Linear(inner_size, config.hidden_size, bias=config.output_use_bias)
        self.dropout = nn.Dropout(p=config.dropout_rate)

        self.rotary = None
        if config.rotary_embedding is not None:
            self.rotary = RotaryEmbedding(
                self.head_dim,
                max_positions=config.rotary_embedding.max_positions,
                base=config.rotary_embedding.base,
            )

        self.relative_attention_bias = None
        if has_relative_bias and config.relative_attention_bias is not None:
            bias_config = config.relative_attention_bias
            self.relative_attention_bias = T5RelativePositionBias(
                self.num_heads,
                num_buckets=bias_config.num_buckets,
                max_distance=bias_config.max_distance,
                bidirectional=bias_config.bidirectional,
            )

    def _split_heads(self, x: torch.Tensor, num_heads: int) -> torch.Tensor:
        batch_size, seq_len, _ = x.shape
        return x.view(batch_size, seq_len, num_heads, self.head_dim).transpose(1, 2)

    def forward(
        self,
        query_source: torch.Tensor,
        key_value_source: Optional[torch.Tensor] = None,
        attention_mask: Optional[torch.Tensor] = None,
        head_mask: Optional[torch.Tensor] = None,
        relative_bias: Optional[torch.Tensor] = None,
        cache_entry: Optional[AttentionCache] = None,
        offset: int = 0,
        position_ids: Optional[torch.Tensor] = None,
        output_attentions: bool = False,
    ) -> AttentionOutput:
        """
        Args:
            query_source: (batch, q_len, hidden_size)
            key_value_source: (batch, kv_len, hidden_size), None for self-attention
            attention_mask: padding mask over all keys, (batch, key_length) where
                key_length includes cached positions
            head_mask: (num_heads,) multiplier applied to the attention weights
            relative_bias: precomputed (1, heads, q_len, key_length) bias; when
                omitted and this layer owns a bias table, it is computed here
            cache_entry: AttentionCache for this layer, or None
            offset: absolute position of the first query token
            position_ids: (batch, q_len) absolute positions for rotary embeddings

        Returns:
            AttentionOutput(output, attention_weights, cache_entry, relative_bias)
        """
        is_self_attention = key_value_source is None or key_value_source is query_source
        if key_value_source is None:
            key_value_source = query_source

        query = self._split_heads(self.query(query_source), self.num_heads)

        if not is_self_attention and cache_entry is not None and cache_entry.populated:
            # Encoder output is fixed across decoding steps
            key, value = cache_entry.key, cache_entry.value
        else:
            key = self._split_heads(self.key(key_value_source), self.num_key_value_heads)
            value = self._split_heads(self.value(key_value_source), self.num_key_value_heads)

            if self.rotary is not None and is_self_attention:
                query, key = self.rotary(query, key, position_ids=position_ids, offset=offset)

            key, value, cache_entry = cached_attention_key_values(
                key, value, cache_entry, cross_attention=not is_self_attention
            )

        query_length, key_length = query.size(2), key.size(2)

        # Allowed positions, broadcastable to (batch, heads, q, k)
        allowed = None
        if attention_mask is not None:
            allowed = expand_attention_mask(attention_mask.to(query.device))
        if self.causal and is_self_attention:
            causal_mask = build_causal_mask(query_length, key_length, offset, query.device)
            allowed = causal_mask if allowed is None else allowed & causal_mask

        if relative_bias is None and self.relative_attention_bias is not None:
            relative_bias = self.relative_attention_bias(
                query_length, key_length, query.device, query_position_offset=offset
            )

        bias = None
        if allowed is not None:
            bias = attention_bias(allowed, query.dtype)
        if relative_bias is not None:
            relative_bias_cast = relative_bias.to(query.dtype)
            bias = relative_bias_cast if bias is None else bias + relative_bias_cast
        if bias is not None:
            # Keeps fully masked rows finite, so softmax spreads them uniformly
            bias = bias.clamp(min=torch.finfo(query.dtype).min)

        key = repeat_kv(key, self.num_kv_groups)
        value = repeat_kv(value, self.num_kv_groups)

        if output_attentions or head_mask is not None:
            scores = torch.matmul(query, key.transpose(-2, -1)) * self.scale
            if bias is not None:
                scores = (scores + bias).clamp(min=torch.finfo(scores.dtype).min)
            attention_weights = F.softmax(scores.float(), dim=-1).type_as(scores)
            attention_weights = self.dropout(attention_weights)
            attention_weights = apply_attention_head_mask(attention_weights, head_mask)
            context = torch.matmul(attention_weights, value)
        else:
            attention_weights = None
            context = F.scaled_dot_product_attention(
                query,
                key,
                value,
                attn_mask=bias,
                dropout_p=self.dropout.p if self.training else 0.0,
                is_causal=False,
                scale=self.scale,
            )

        batch_size = query_source.size(0)
        context = context.transpose(1, 2).reshape(batch_size, query_length, -1)
        output = self.output(context)

        return AttentionOutput(
            output=output,
            attention_weights=attention_weights if output_attentions else None,
            cache_entry=cache_entry,
            relative_bias=relative_bias,
        )

