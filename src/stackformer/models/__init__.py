"""
stackformer transformer models.

This package provides a shared transformer engine and the models built on it:
- MultiHeadAttention, T5RelativePositionBias and the mask helpers
- Incremental decoding cache (init_cache and its accessors)
- TransformerBlock/TransformerBlocks with standard, norm_first and
  norm_first_with_scale orderings
- FeedForward, SwiGLUFeedForward and the positional encodings
- DINOv2 and mBART assemblers plus checkpoint mapping helpers
"""

from .attention import MultiHeadAttention, T5RelativePositionBias, build_causal_mask
from .blocks import BlocksState, TransformerBlock, TransformerBlocks
from .cache import AttentionCache, BlockCache, DecoderCache, init_cache
from .config import (
    AttentionConfig,
    BlocksConfig,
    DinoV2Config,
    FFNConfig,
    MBartConfig,
    RelativeAttentionBiasConfig,
    RotaryEmbeddingConfig,
)
from .dinov2 import DinoV2Backbone, DinoV2ForImageClassification, DinoV2Model
from .factory import build_model, from_pretrained, load_model_config, load_transformers_state_dict
from .feedforward import FeedForward, SwiGLUFeedForward
from .mbart import (
    MBartForCausalLM,
    MBartForConditionalGeneration,
    MBartForQuestionAnswering,
    MBartForSequenceClassification,
    MBartModel,
)
from .positional_encoding import LearnedPositionalEncoding, RotaryEmbedding

__all__ = [
    "MultiHeadAttention",
    "T5RelativePositionBias",
    "build_causal_mask",
    "TransformerBlock",
    "TransformerBlocks",
    "BlocksState",
    "AttentionCache",
    "BlockCache",
    "DecoderCache",
    "init_cache",
    "AttentionConfig",
    "BlocksConfig",
    "FFNConfig",
    "RotaryEmbeddingConfig",
    "RelativeAttentionBiasConfig",
    "DinoV2Config",
    "MBartConfig",
    "DinoV2Model",
    "DinoV2ForImageClassification",
    "DinoV2Backbone",
    "MBartModel",
    "MBartForConditionalGeneration",
    "MBartForSequenceClassification",
    "MBartForQuestionAnswering",
    "MBartForCausalLM",
    "FeedForward",
    "SwiGLUFeedForward",
    "LearnedPositionalEncoding",
    "RotaryEmbedding",
    "build_model",
    "from_pretrained",
    "load_model_config",
    "load_transformers_state_dict",
]
