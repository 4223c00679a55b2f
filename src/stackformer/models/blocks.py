"""
Transformer blocks and block stacks.

Contains:
- LayerScale: learned per-channel residual scaling (CaiT / DINOv2)
- TransformerBlock: one block (self-attention, optional cross-attention, FFN)
  wired in one of three orderings
- TransformerBlocks: a stack of blocks threading hidden states, attention
  weights, the decoding cache and the relative bias from block to block

Block types:
- standard:              x = norm(x + attn(x)); x = norm(x + ffn(x))
- norm_first:            x = x + attn(norm(x)); x = x + ffn(norm(x))
- norm_first_with_scale: x = x + scale1 * attn(norm(x)); x = x + scale2 * ffn(norm(x))

The cross-attention sublayer (when present) follows the same ordering as the
self-attention sublayer but never carries a layer scale.
"""

from dataclasses import dataclass, replace
from typing import Callable, Dict, NamedTuple, Optional, Tuple

import torch
import torch.nn as nn

from .attention import AttentionOutput, MultiHeadAttention
from .cache import (
    BlockCache,
    DecoderCache,
    cached_attention_mask,
    get_attention_caches,
    get_block_cache,
    get_cache_offset,
    put_attention_caches,
    put_block_cache,
    update_cache_offset,
)
from .config import BlocksConfig
from .feedforward import build_ffn

AttendFn = Callable[[torch.Tensor], AttentionOutput]


class LayerScale(nn.Module):
    def __init__(self, hidden_size: int, init_value: float = 1.0):
        super().__init__()
        self.scale = nn.Parameter(torch.full((hidden_size,), float(init_value)))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x * self.scale


class BlockOutput(NamedTuple):
    hidden_state: torch.Tensor
    attention: Optional[torch.Tensor]
    cross_attention: Optional[torch.Tensor]
    cache: Optional[BlockCache]
    relative_bias: Optional[torch.Tensor]


# --------------- Block orderings ---------------
# Each strategy receives the block (for its norms, dropouts and ffn) and closures
# running the attention sublayers, and returns the new hidden state together with
# the raw attention outputs.

BlockResult = Tuple[torch.Tensor, AttentionOutput, Optional[AttentionOutput]]


def _standard_block(
    block: "TransformerBlock",
    hidden_state: torch.Tensor,
    attend: AttendFn,
    cross_attend: Optional[AttendFn],
) -> BlockResult:
    self_out = attend(hidden_state)
    hidden_state = block.self_attention_norm(
        hidden_state + block.self_attention_dropout(self_out.output)
    )

    cross_out = None
    if cross_attend is not None:
        cross_out = cross_attend(hidden_state)
        hidden_state = block.cross_attention_norm(
            hidden_state + block.cross_attention_dropout(cross_out.output)
        )

    hidden_state = block.output_norm(hidden_state + block.ffn(hidden_state))
    return hidden_state, self_out, cross_out


def _norm_first_block(
    block: "TransformerBlock",
    hidden_state: torch.Tensor,
    attend: AttendFn,
    cross_attend: Optional[AttendFn],
) -> BlockResult:
    self_out = attend(block.self_attention_norm(hidden_state))
    hidden_state = hidden_state + block.self_attention_dropout(self_out.output)

    cross_out = None
    if cross_attend is not None:
        cross_out = cross_attend(block.cross_attention_norm(hidden_state))
        hidden_state = hidden_state + block.cross_attention_dropout(cross_out.output)

    hidden_state = hidden_state + block.ffn(block.output_norm(hidden_state))
    return hidden_state, self_out, cross_out


def _norm_first_with_scale_block(
    block: "TransformerBlock",
    hidden_state: torch.Tensor,
    attend: AttendFn,
    cross_attend: Optional[AttendFn],
) -> BlockResult:
    self_out = attend(block.self_attention_norm(hidden_state))
    hidden_state = hidden_state + block.layer_scale1(block.self_attention_dropout(self_out.output))

    cross_out = None
    if cross_attend is not None:
        cross_out = cross_attend(block.cross_attention_norm(hidden_state))
        hidden_state = hidden_state + block.cross_attention_dropout(cross_out.output)

    hidden_state = hidden_state + block.layer_scale2(block.ffn(block.output_norm(hidden_state)))
    return hidden_state, self_out, cross_out


BLOCK_IMPLS: Dict[str, Callable[..., BlockResult]] = {
    "standard": _standard_block,
    "norm_first": _norm_first_block,
    "norm_first_with_scale": _norm_first_with_scale_block,
}


def build_norm(config: BlocksConfig) -> nn.Module:
    if config.norm == "rms":
        return nn.RMSNorm(config.hidden_size, eps=config.layer_norm_epsilon)
    return nn.LayerNorm(config.hidden_size, eps=config.layer_norm_epsilon)


# --------------- Transformer block ---------------


class TransformerBlock(nn.Module):
    """
    Single transformer block.

    Args:
        config: validated BlocksConfig shared by the whole stack
        has_relative_bias: own a relative position bias table (see MultiHeadAttention)
    """

    def __init__(self, config: BlocksConfig, has_relative_bias: bool = True):
        super().__init__()
        self.block_type = config.block_type
        self._impl = BLOCK_IMPLS[config.block_type]

        self.self_attention_norm = build_norm(config)
        self.self_attention = MultiHeadAttention(
            config.attention_config(), has_relative_bias=has_relative_bias
        )
        self.self_attention_dropout = nn.Dropout(config.dropout_rate)

        self.cross_attention = None
        if config.cross_attention:
            self.cross_attention_norm = build_norm(config)
            self.cross_attention = MultiHeadAttention(config.attention_config(cross_attention=True))
            self.cross_attention_dropout = nn.Dropout(config.dropout_rate)

        self.output_norm = build_norm(config)
        self.ffn = build_ffn(config.ffn, config.hidden_size, config.dropout_rate)

        if config.block_type == "norm_first_with_scale":
            self.layer_scale1 = LayerScale(config.hidden_size, config.layerscale_value)
            self.layer_scale2 = LayerScale(config.hidden_size, config.layerscale_value)

    def forward(
        self,
        hidden_state: torch.Tensor,
        attention_mask: Optional[torch.Tensor] = None,
        attention_head_mask: Optional[torch.Tensor] = None,
        relative_bias: Optional[torch.Tensor] = None,
        cross_hidden_state: Optional[torch.Tensor] = None,
        cross_attention_mask: Optional[torch.Tensor] = None,
        cross_attention_head_mask: Optional[torch.Tensor] = None,
        block_cache: Optional[BlockCache] = None,
        offset: int = 0,
        position_ids: Optional[torch.Tensor] = None,
        output_attentions: bool = False,
    ) -> BlockOutput:
        self_cache, cross_cache = get_attention_caches(block_cache)

        def attend(x: torch.Tensor) -> AttentionOutput:
            return self.self_attention(
                x,
                attention_mask=attention_mask,
                head_mask=attention_head_mask,
                relative_bias=relative_bias,
                cache_entry=self_cache,
                offset=offset,
                position_ids=position_ids,
                output_attentions=output_attentions,
            )

        cross_attend = None
        if self.cross_attention is not None and cross_hidden_state is not None:

            def cross_attend(x: torch.Tensor) -> AttentionOutput:
                return self.cross_attention(
                    x,
                    cross_hidden_state,
                    attention_mask=cross_attention_mask,
                    head_mask=cross_attention_head_mask,
                    cache_entry=cross_cache,
                    offset=offset,
                    output_attentions=output_attentions,
                )

        hidden_state, self_out, cross_out = self._impl(self, hidden_state, attend, cross_attend)

        block_cache = put_attention_caches(
            block_cache,
            self_out.cache_entry,
            cross_out.cache_entry if cross_out is not None else None,
        )
        return BlockOutput(
            hidden_state=hidden_state,
            attention=self_out.attention_weights,
            cross_attention=cross_out.attention_weights if cross_out is not None else None,
            cache=block_cache,
            relative_bias=self_out.relative_bias,
        )


# --------------- Block stack ---------------


@dataclass(frozen=True)
class BlocksState:
    """
    Accumulator threaded through the stack; also its return value.

    hidden_states / attentions / cross_attentions are tuples only when the
    caller asked for them, None otherwise. hidden_states starts with the input.
    """

    hidden_state: torch.Tensor
    hidden_states: Optional[Tuple[torch.Tensor, ...]] = None
    attentions: Optional[Tuple[torch.Tensor, ...]] = None
    cross_attentions: Optional[Tuple[Optional[torch.Tensor], ...]] = None
    cache: Optional[DecoderCache] = None
    attention_relative_bias: Optional[torch.Tensor] = None


def _append(history: Optional[tuple], item) -> Optional[tuple]:
    return None if history is None else history + (item,)


class TransformerBlocks(nn.Module):
    """
    Stack of ``config.num_blocks`` transformer blocks applied in index order.

    With ``share_attention_relative_bias`` only block 0 owns a relative bias
    table; the bias it computes is handed unchanged to every later block.
    """

    def __init__(self, config: BlocksConfig):
        super().__init__()
        self.config = config
        self.blocks = nn.ModuleList(
            [
                TransformerBlock(
                    config,
                    has_relative_bias=not (config.share_attention_relative_bias and idx > 0),
                )
                for idx in range(config.num_blocks)
            ]
        )

    def forward(
        self,
        hidden_state: torch.Tensor,
        attention_mask: Optional[torch.Tensor] = None,
        attention_head_mask: Optional[torch.Tensor] = None,
        attention_relative_bias: Optional[torch.Tensor] = None,
        cross_hidden_state: Optional[torch.Tensor] = None,
        cross_attention_mask: Optional[torch.Tensor] = None,
        cross_attention_head_mask: Optional[torch.Tensor] = None,
        cache: Optional[DecoderCache] = None,
        position_ids: Optional[torch.Tensor] = None,
        output_hidden_states: bool = False,
        output_attentions: bool = False,
    ) -> BlocksState:
        """
        Args:
            hidden_state: (batch, seq_len, hidden_size)
            attention_mask: (batch, seq_len) padding mask for the current positions
            attention_head_mask: (num_blocks, num_heads), row ``i`` goes to block ``i``
            attention_relative_bias: precomputed bias used instead of block 0's own
            cross_hidden_state: (batch, cross_len, hidden_size) encoder output
            cache: DecoderCache from init_cache or a previous call, None when not decoding

        Returns:
            BlocksState with the final hidden state, requested histories, the
            cache advanced past the processed positions and the relative bias
        """
        if cache is not None and attention_mask is None:
            attention_mask = torch.ones(
                hidden_state.shape[:2], dtype=torch.bool, device=hidden_state.device
            )
        # Covers cached keys too, so the same mask serves every block
        attention_mask, cache = cached_attention_mask(attention_mask, cache)
        offset = get_cache_offset(cache)

        state = BlocksState(
            hidden_state=hidden_state,
            hidden_states=(hidden_state,) if output_hidden_states else None,
            attentions=() if output_attentions else None,
            cross_attentions=() if output_attentions else None,
            cache=cache,
            attention_relative_bias=attention_relative_bias,
        )
        share_bias = self.config.share_attention_relative_bias

        for idx, block in enumerate(self.blocks):
            relative_bias = state.attention_relative_bias if share_bias and idx > 0 else None
            if relative_bias is None:
                relative_bias = attention_relative_bias

            block_output = block(
                state.hidden_state,
                attention_mask=attention_mask,
                attention_head_mask=_head_mask_row(attention_head_mask, idx),
                relative_bias=relative_bias,
                cross_hidden_state=cross_hidden_state,
                cross_attention_mask=cross_attention_mask,
                cross_attention_head_mask=_head_mask_row(cross_attention_head_mask, idx),
                block_cache=get_block_cache(state.cache, idx),
                offset=offset,
                position_ids=position_ids,
                output_attentions=output_attentions,
            )

            state = replace(
                state,
                hidden_state=block_output.hidden_state,
                hidden_states=_append(state.hidden_states, block_output.hidden_state),
                attentions=_append(state.attentions, block_output.attention),
                cross_attentions=_append(state.cross_attentions, block_output.cross_attention),
                cache=put_block_cache(state.cache, idx, block_output.cache),
                attention_relative_bias=block_output.relative_bias,
            )

        return replace(state, cache=update_cache_offset(state.cache, hidden_state))


def _head_mask_row(head_mask: Optional[torch.Tensor], idx: int) -> Optional[torch.Tensor]:
    if head_mask is None:
        return None
    return head_mask[idx]
