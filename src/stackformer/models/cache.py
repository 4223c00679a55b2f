"""
Key/value cache for incremental (autoregressive) decoding.

The cache is an immutable value: every accessor returns a new cache instead of
mutating the one it was given, so a decoding session can keep older snapshots
around (e.g. to branch) without aliasing problems.

Layout:
- DecoderCache: one BlockCache per block, the running offset and the padding
  mask of every position processed so far
- BlockCache: independent self-attention and cross-attention entries
- AttentionCache: key/value tensors of shape (batch, num_kv_heads, cached_len, head_dim)

Every function accepts ``None`` in place of a cache and then does nothing,
returning ``None`` (or offset 0). Attention code can therefore be written once
and run both with and without caching.
"""

from dataclasses import dataclass, replace
from typing import Optional, Tuple

import torch


@dataclass(frozen=True)
class AttentionCache:
    key: Optional[torch.Tensor] = None
    value: Optional[torch.Tensor] = None

    @property
    def populated(self) -> bool:
        return self.key is not None


@dataclass(frozen=True)
class BlockCache:
    self_attention: AttentionCache
    cross_attention: AttentionCache


@dataclass(frozen=True)
class DecoderCache:
    """
    Attributes:
        blocks: per-block caches, indexed by block position in the stack
        offset: absolute position of the first token of the next forward pass
        attention_mask: (batch, offset) padding mask of the positions seen so far
        max_length: number of positions the cache was initialised for
        encoder_sequence_length: expected encoder length for cross-attention, if known
    """

    blocks: Tuple[BlockCache, ...]
    offset: int = 0
    attention_mask: Optional[torch.Tensor] = None
    max_length: Optional[int] = None
    encoder_sequence_length: Optional[int] = None


def init_cache(
    batch_size: int,
    max_length: int,
    *,
    hidden_size: int,
    num_heads: int,
    num_blocks: int,
    num_key_value_heads: Optional[int] = None,
    attention_head_size: Optional[int] = None,
    encoder_sequence_length: Optional[int] = None,
    device: Optional[torch.device] = None,
    dtype: Optional[torch.dtype] = None,
) -> DecoderCache:
    """
    Create an empty cache for ``num_blocks`` blocks.

    Self-attention entries start with zero cached positions; cross-attention
    entries start unpopulated and are filled from the encoder output on the
    first decoding step.
    """
    if max_length <= 0:
        raise ValueError(f"max_length must be positive, got {max_length}")
    if attention_head_size is None:
        if hidden_size % num_heads != 0:
            raise ValueError(
                f"hidden_size ({hidden_size}) must be divisible by num_heads ({num_heads})"
            )
        attention_head_size = hidden_size // num_heads
    num_key_value_heads = num_key_value_heads or num_heads

    empty = torch.zeros(
        batch_size, num_key_value_heads, 0, attention_head_size, device=device, dtype=dtype
    )
    block = BlockCache(
        self_attention=AttentionCache(key=empty, value=empty),
        cross_attention=AttentionCache(),
    )
    return DecoderCache(
        blocks=(block,) * num_blocks,
        offset=0,
        attention_mask=torch.zeros(batch_size, 0, dtype=torch.bool, device=device),
        max_length=max_length,
        encoder_sequence_length=encoder_sequence_length,
    )


def get_block_cache(cache: Optional[DecoderCache], idx: int) -> Optional[BlockCache]:
    if cache is None:
        return None
    return cache.blocks[idx]


def put_block_cache(
    cache: Optional[DecoderCache], idx: int, block_cache: Optional[BlockCache]
) -> Optional[DecoderCache]:
    if cache is None or block_cache is None:
        return cache

    cross = block_cache.cross_attention
    expected = cache.encoder_sequence_length
    if expected is not None and cross.populated and cross.key.size(2) != expected:
        raise ValueError(
            f"cross-attention cache of block {idx} has {cross.key.size(2)} positions, "
            f"the cache was initialised for encoder_sequence_length={expected}"
        )

    blocks = cache.blocks[:idx] + (block_cache,) + cache.blocks[idx + 1 :]
    return replace(cache, blocks=blocks)


def get_attention_caches(
    block_cache: Optional[BlockCache],
) -> Tuple[Optional[AttentionCache], Optional[AttentionCache]]:
    if block_cache is None:
        return None, None
    return block_cache.self_attention, block_cache.cross_attention


def put_attention_caches(
    block_cache: Optional[BlockCache],
    self_attention_cache: Optional[AttentionCache],
    cross_attention_cache: Optional[AttentionCache],
) -> Optional[BlockCache]:
    if block_cache is None:
        return None
    return BlockCache(
        self_attention=self_attention_cache or block_cache.self_attention,
        cross_attention=cross_attention_cache or block_cache.cross_attention,
    )


def get_cache_offset(cache: Optional[DecoderCache]) -> int:
    if cache is None:
        return 0
    return cache.offset


def update_cache_offset(
    cache: Optional[DecoderCache], processed: torch.Tensor
) -> Optional[DecoderCache]:
    """Advance the offset by the sequence length of ``processed`` (batch, seq, ...)."""
    if cache is None:
        return None

    offset = cache.offset + processed.size(1)
    if cache.max_length is not None and offset > cache.max_length:
        raise ValueError(
            f"cache offset {offset} exceeds max_length {cache.max_length} "
            "the cache was initialised with"
        )
    return replace(cache, offset=offset)


def cached_attention_mask(
    attention_mask: Optional[torch.Tensor], cache: Optional[DecoderCache]
) -> Tuple[Optional[torch.Tensor], Optional[DecoderCache]]:
    """
    Extend the cached padding mask with the mask of the current positions.

    Returns the (batch, offset + seq_len) mask covering every cached key and the
    cache holding it.
    """
    if cache is None:
        return attention_mask, None
    if attention_mask is None:
        raise ValueError("attention_mask is required when decoding with a cache")

    history = cache.attention_mask
    attention_mask = attention_mask.to(dtype=torch.bool)
    if history is not None:
        attention_mask = torch.cat([history.to(attention_mask.device), attention_mask], dim=1)
    return attention_mask, replace(cache, attention_mask=attention_mask)


def cached_attention_key_values(
    key: torch.Tensor,
    value: torch.Tensor,
    cache_entry: Optional[AttentionCache],
    cross_attention: bool = False,
) -> Tuple[torch.Tensor, torch.Tensor, Optional[AttentionCache]]:
    """
    Combine freshly projected keys/values with the cache.

    Self-attention appends the new positions to the cached prefix. Cross-attention
    stores the projections once; a populated entry is returned unchanged and the
    given key/value are ignored, since the encoder output does not change
    between decoding steps.
    """
    if cache_entry is None:
        return key, value, None

    if cross_attention:
        if cache_entry.populated:
            return cache_entry.key, cache_entry.value, cache_entry
        return key, value, AttentionCache(key=key, value=value)

    if cache_entry.populated:
        key = torch.cat([cache_entry.key.to(key.dtype), key], dim=2)
        value = torch.cat([cache_entry.value.to(value.dtype), value], dim=2)
    return key, value, AttentionCache(key=key, value=value)
