"""Typed configuration for the transformer building blocks and model assemblers.

Every structure validates itself once in ``__post_init__`` and raises a
``ValueError`` naming the offending option, so invalid combinations are
rejected before any tensor is allocated.

Includes:
- RotaryEmbeddingConfig / RelativeAttentionBiasConfig: positional signals used inside attention
- FFNConfig: standard feed-forward sublayer
- AttentionConfig: one multi-head attention layer
- BlocksConfig: a stack of transformer blocks
- DinoV2Config / MBartConfig: model assemblers built on top of the blocks
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from functools import partial
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Union

import torch.nn as nn

BlockType = Literal["standard", "norm_first", "norm_first_with_scale"]
NormType = Literal["layer_norm", "rms"]

BLOCK_TYPES = ("standard", "norm_first", "norm_first_with_scale")
NORM_TYPES = ("layer_norm", "rms")


def _check_positive(**options: Optional[float]) -> None:
    for name, value in options.items():
        if value is not None and value <= 0:
            raise ValueError(f"{name} must be positive, got {value}")


def _check_rate(**options: float) -> None:
    for name, value in options.items():
        if not 0 <= value <= 1:
            raise ValueError(f"{name} must be in [0, 1], got {value}")


class _FromDictMixin:
    """Strict construction from plain mappings (YAML, JSON).

    ``NESTED`` names the options whose mapping values are themselves built
    with ``from_dict`` of the given class.
    """

    NESTED: Dict[str, Any] = {}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]):
        known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"unknown option(s) for {cls.__name__}: {', '.join(unknown)}")
        options = dict(data)
        for name, config_class in cls.NESTED.items():
            if isinstance(options.get(name), Mapping):
                options[name] = config_class.from_dict(options[name])
        return cls(**options)


@dataclass
class RotaryEmbeddingConfig(_FromDictMixin):
    max_positions: int = 2048
    base: float = 10000.0

    def __post_init__(self):
        _check_positive(max_positions=self.max_positions, base=self.base)


@dataclass
class RelativeAttentionBiasConfig(_FromDictMixin):
    """T5-style bucketed relative position bias."""

    num_buckets: int = 32
    max_distance: int = 128
    bidirectional: bool = True

    def __post_init__(self):
        _check_positive(num_buckets=self.num_buckets, max_distance=self.max_distance)


@dataclass
class FFNConfig(_FromDictMixin):
    """Options for the standard two-layer feed-forward network."""

    intermediate_size: int
    activation: str = "gelu"
    activation_dropout_rate: float = 0.0

    def __post_init__(self):
        _check_positive(intermediate_size=self.intermediate_size)
        _check_rate(activation_dropout_rate=self.activation_dropout_rate)


@dataclass
class AttentionConfig(_FromDictMixin):
    """
    Configuration of a single multi-head attention layer.

    Args:
        hidden_size: size of the query source (and of the output)
        num_heads: number of query heads
        num_key_value_heads: number of key/value heads; fewer than num_heads
            enables grouped-query attention (default: num_heads)
        attention_head_size: per-head size (default: hidden_size // num_heads)
        dropout_rate: dropout applied to the attention weights
        scale_attention_weights: divide scores by sqrt(head size). T5 does not.
        causal: restrict every query to keys at or before its absolute position
        rotary_embedding: rotate queries/keys by absolute position
        relative_attention_bias: bucketed relative bias added to the scores
    """

    NESTED = {
        "rotary_embedding": RotaryEmbeddingConfig,
        "relative_attention_bias": RelativeAttentionBiasConfig,
    }

    hidden_size: int
    num_heads: int
    num_key_value_heads: Optional[int] = None
    attention_head_size: Optional[int] = None
    query_use_bias: bool = True
    key_use_bias: bool = True
    value_use_bias: bool = True
    output_use_bias: bool = True
    dropout_rate: float = 0.0
    scale_attention_weights: bool = True
    causal: bool = False
    rotary_embedding: Optional[RotaryEmbeddingConfig] = None
    relative_attention_bias: Optional[RelativeAttentionBiasConfig] = None

    def __post_init__(self):
        _check_positive(
            hidden_size=self.hidden_size,
            num_heads=self.num_heads,
            num_key_value_heads=self.num_key_value_heads,
            attention_head_size=self.attention_head_size,
        )
        _check_rate(dropout_rate=self.dropout_rate)

        if self.attention_head_size is None:
            if self.hidden_size % self.num_heads != 0:
                raise ValueError(
                    f"hidden_size ({self.hidden_size}) must be divisible by num_heads "
                    f"({self.num_heads}) unless attention_head_size is given"
                )
            self.attention_head_size = self.hidden_size // self.num_heads

        if self.num_key_value_heads is None:
            self.num_key_value_heads = self.num_heads
        if self.num_heads % self.num_key_value_heads != 0:
            raise ValueError(
                f"num_heads ({self.num_heads}) must be divisible by num_key_value_heads "
                f"({self.num_key_value_heads})"
            )

        if self.rotary_embedding is not None and self.attention_head_size % 2 != 0:
            raise ValueError(
                f"attention_head_size ({self.attention_head_size}) must be even "
                "when rotary_embedding is set"
            )


FFNOption = Union[FFNConfig, Callable[[], nn.Module]]


@dataclass
class BlocksConfig(_FromDictMixin):
    """
    Configuration of a stack of transformer blocks.

    ``ffn`` is either an :class:`FFNConfig` (standard MLP) or a zero-argument
    factory returning any module mapping ``(batch, seq, hidden_size)`` onto
    itself, e.g. ``functools.partial(SwiGLUFeedForward, hidden_size, mlp_ratio)``.
    """

    NESTED = {
        "ffn": FFNConfig,
        "rotary_embedding": RotaryEmbeddingConfig,
        "relative_attention_bias": RelativeAttentionBiasConfig,
    }

    num_blocks: int
    hidden_size: int
    num_attention_heads: int
    ffn: FFNOption
    num_key_value_heads: Optional[int] = None
    attention_head_size: Optional[int] = None
    block_type: BlockType = "standard"
    causal: bool = False
    cross_attention: bool = False
    dropout_rate: float = 0.0
    attention_dropout_rate: float = 0.0
    query_use_bias: bool = True
    key_use_bias: bool = True
    value_use_bias: bool = True
    output_use_bias: bool = True
    norm: NormType = "layer_norm"
    layer_norm_epsilon: float = 1e-5
    layerscale_value: float = 1.0
    scale_attention_weights: bool = True
    rotary_embedding: Optional[RotaryEmbeddingConfig] = None
    relative_attention_bias: Optional[RelativeAttentionBiasConfig] = None
    share_attention_relative_bias: bool = False

    def __post_init__(self):
        if self.num_blocks < 0:
            raise ValueError(f"num_blocks must be non-negative, got {self.num_blocks}")
        if self.block_type not in BLOCK_TYPES:
            raise ValueError(f"block_type must be one of {BLOCK_TYPES}, got {self.block_type!r}")
        if self.norm not in NORM_TYPES:
            raise ValueError(f"norm must be one of {NORM_TYPES}, got {self.norm!r}")
        if not (isinstance(self.ffn, FFNConfig) or callable(self.ffn)):
            raise ValueError("ffn must be an FFNConfig or a callable returning a module")
        if self.share_attention_relative_bias and self.relative_attention_bias is None:
            raise ValueError(
                "share_attention_relative_bias requires relative_attention_bias to be set"
            )
        _check_positive(layer_norm_epsilon=self.layer_norm_epsilon)
        _check_rate(
            dropout_rate=self.dropout_rate, attention_dropout_rate=self.attention_dropout_rate
        )
        # Fail here rather than inside the first block
        self.attention_config()

    def attention_config(self, cross_attention: bool = False) -> AttentionConfig:
        """Per-layer attention options. Cross-attention is never causal and
        carries no positional signal of its own."""
        return AttentionConfig(
            hidden_size=self.hidden_size,
            num_heads=self.num_attention_heads,
            num_key_value_heads=self.num_key_value_heads,
            attention_head_size=self.attention_head_size,
            query_use_bias=self.query_use_bias,
            key_use_bias=self.key_use_bias,
            value_use_bias=self.value_use_bias,
            output_use_bias=self.output_use_bias,
            dropout_rate=self.attention_dropout_rate,
            scale_attention_weights=self.scale_attention_weights,
            causal=self.causal and not cross_attention,
            rotary_embedding=None if cross_attention else self.rotary_embedding,
            relative_attention_bias=None if cross_attention else self.relative_attention_bias,
        )


# --------------- Model configurations ---------------


def from_transformers_config(cls, hf_config: Any, **overrides: Any):
    """Build one of our model configs from a ``transformers`` config object."""
    options: Dict[str, Any] = {}
    for name, source in cls.TRANSFORMERS_KEYS.items():
        value = getattr(hf_config, source, None)
        if value is not None:
            options[name] = value
    options.update(overrides)
    return cls(**options)


@dataclass
class DinoV2Config(_FromDictMixin):
    """Encoder-only vision transformer (DINOv2)."""

    TRANSFORMERS_KEYS = {
        "image_size": "image_size",
        "num_channels": "num_channels",
        "patch_size": "patch_size",
        "hidden_size": "hidden_size",
        "num_blocks": "num_hidden_layers",
        "num_attention_heads": "num_attention_heads",
        "mlp_ratio": "mlp_ratio",
        "use_qkv_bias": "qkv_bias",
        "activation": "hidden_act",
        "dropout_rate": "hidden_dropout_prob",
        "attention_dropout_rate": "attention_probs_dropout_prob",
        "layer_norm_epsilon": "layer_norm_eps",
        "initializer_scale": "initializer_range",
        "layerscale_value": "layerscale_value",
        "swiglu_ffn": "use_swiglu_ffn",
        "stage_names": "stage_names",
        "output_features": "out_features",
        "apply_layernorm": "apply_layernorm",
        "reshape_hidden_states": "reshape_hidden_states",
        "num_labels": "num_labels",
    }

    image_size: int = 518
    num_channels: int = 3
    patch_size: int = 14
    hidden_size: int = 384
    num_blocks: int = 12
    num_attention_heads: int = 12
    mlp_ratio: float = 4
    use_qkv_bias: bool = True
    activation: str = "gelu"
    dropout_rate: float = 0.0
    attention_dropout_rate: float = 0.0
    layer_norm_epsilon: float = 1e-6
    initializer_scale: float = 0.02
    layerscale_value: float = 1.0
    swiglu_ffn: bool = False
    stage_names: List[str] = field(default_factory=list)
    output_features: List[str] = field(default_factory=list)
    apply_layernorm: bool = True
    reshape_hidden_states: bool = True
    num_labels: int = 2
    output_hidden_states: bool = False
    output_attentions: bool = False

    def __post_init__(self):
        _check_positive(
            image_size=self.image_size,
            num_channels=self.num_channels,
            patch_size=self.patch_size,
            hidden_size=self.hidden_size,
            num_attention_heads=self.num_attention_heads,
            mlp_ratio=self.mlp_ratio,
            num_labels=self.num_labels,
        )
        if self.num_blocks < 0:
            raise ValueError(f"num_blocks must be non-negative, got {self.num_blocks}")
        if self.hidden_size % self.num_attention_heads != 0:
            raise ValueError(
                f"hidden_size ({self.hidden_size}) must be divisible by "
                f"num_attention_heads ({self.num_attention_heads})"
            )
        if self.image_size % self.patch_size != 0:
            raise ValueError(
                f"image_size ({self.image_size}) must be divisible by "
                f"patch_size ({self.patch_size})"
            )

        if not self.stage_names:
            self.stage_names = ["stem"] + [f"stage{i}" for i in range(1, self.num_blocks + 1)]
        if len(self.stage_names) != self.num_blocks + 1:
            raise ValueError(
                f"stage_names must have num_blocks + 1 ({self.num_blocks + 1}) entries, "
                f"got {len(self.stage_names)}"
            )
        if not self.output_features:
            self.output_features = [self.stage_names[-1]]
        unknown = [name for name in self.output_features if name not in self.stage_names]
        if unknown:
            raise ValueError(f"output_features contains unknown stages: {unknown}")

    def blocks_config(self) -> BlocksConfig:
        # Imported here to keep config free of module imports at load time
        from .feedforward import SwiGLUFeedForward

        ffn: FFNOption
        if self.swiglu_ffn:
            ffn = partial(SwiGLUFeedForward, self.hidden_size, self.mlp_ratio)
        else:
            ffn = FFNConfig(
                intermediate_size=int(self.hidden_size * self.mlp_ratio),
                activation=self.activation,
            )

        return BlocksConfig(
            num_blocks=self.num_blocks,
            hidden_size=self.hidden_size,
            num_attention_heads=self.num_attention_heads,
            ffn=ffn,
            block_type="norm_first_with_scale",
            dropout_rate=self.dropout_rate,
            attention_dropout_rate=self.attention_dropout_rate,
            query_use_bias=self.use_qkv_bias,
            key_use_bias=self.use_qkv_bias,
            value_use_bias=self.use_qkv_bias,
            layer_norm_epsilon=self.layer_norm_epsilon,
            layerscale_value=self.layerscale_value,
        )


@dataclass
class MBartConfig(_FromDictMixin):
    """Encoder-decoder sequence model (mBART)."""

    TRANSFORMERS_KEYS = {
        "vocab_size": "vocab_size",
        "max_positions": "max_position_embeddings",
        "hidden_size": "d_model",
        "encoder_num_blocks": "encoder_layers",
        "decoder_num_blocks": "decoder_layers",
        "encoder_num_attention_heads": "encoder_attention_heads",
        "decoder_num_attention_heads": "decoder_attention_heads",
        "encoder_intermediate_size": "encoder_ffn_dim",
        "decoder_intermediate_size": "decoder_ffn_dim",
        "scale_embedding": "scale_embedding",
        "activation": "activation_function",
        "dropout_rate": "dropout",
        "attention_dropout_rate": "attention_dropout",
        "activation_dropout_rate": "activation_dropout",
        "classifier_dropout_rate": "classifier_dropout",
        "initializer_scale": "init_std",
        "pad_token_id": "pad_token_id",
        "bos_token_id": "bos_token_id",
        "eos_token_id": "eos_token_id",
        "num_labels": "num_labels",
    }

    vocab_size: int = 50265
    max_positions: int = 1024
    hidden_size: int = 1024
    encoder_num_blocks: int = 12
    decoder_num_blocks: int = 12
    encoder_num_attention_heads: int = 16
    decoder_num_attention_heads: int = 16
    encoder_intermediate_size: int = 4096
    decoder_intermediate_size: int = 4096
    scale_embedding: bool = False
    activation: str = "gelu"
    dropout_rate: float = 0.1
    attention_dropout_rate: float = 0.0
    activation_dropout_rate: float = 0.0
    classifier_dropout_rate: float = 0.0
    initializer_scale: float = 0.02
    layer_norm_epsilon: float = 1e-5
    pad_token_id: int = 1
    bos_token_id: int = 0
    eos_token_id: int = 2
    num_labels: int = 2
    output_hidden_states: bool = False
    output_attentions: bool = False

    def __post_init__(self):
        _check_positive(
            vocab_size=self.vocab_size,
            max_positions=self.max_positions,
            hidden_size=self.hidden_size,
            encoder_num_attention_heads=self.encoder_num_attention_heads,
            decoder_num_attention_heads=self.decoder_num_attention_heads,
            encoder_intermediate_size=self.encoder_intermediate_size,
            decoder_intermediate_size=self.decoder_intermediate_size,
            num_labels=self.num_labels,
        )
        _check_rate(
            dropout_rate=self.dropout_rate,
            attention_dropout_rate=self.attention_dropout_rate,
            activation_dropout_rate=self.activation_dropout_rate,
            classifier_dropout_rate=self.classifier_dropout_rate,
        )
        for name in ("encoder_num_attention_heads", "decoder_num_attention_heads"):
            heads = getattr(self, name)
            if self.hidden_size % heads != 0:
                raise ValueError(
                    f"hidden_size ({self.hidden_size}) must be divisible by {name} ({heads})"
                )

    @property
    def embed_scale(self) -> float:
        return math.sqrt(self.hidden_size) if self.scale_embedding else 1.0

    def _blocks_config(self, prefix: str, **kwargs: Any) -> BlocksConfig:
        return BlocksConfig(
            num_blocks=getattr(self, f"{prefix}_num_blocks"),
            hidden_size=self.hidden_size,
            num_attention_heads=getattr(self, f"{prefix}_num_attention_heads"),
            ffn=FFNConfig(
                intermediate_size=getattr(self, f"{prefix}_intermediate_size"),
                activation=self.activation,
                activation_dropout_rate=self.activation_dropout_rate,
            ),
            block_type="norm_first",
            dropout_rate=self.dropout_rate,
            attention_dropout_rate=self.attention_dropout_rate,
            layer_norm_epsilon=self.layer_norm_epsilon,
            **kwargs,
        )

    def encoder_blocks_config(self) -> BlocksConfig:
        return self._blocks_config("encoder")

    def decoder_blocks_config(self) -> BlocksConfig:
        return self._blocks_config("decoder", causal=True, cross_attention=True)
