"""Position-wise Feed-Forward Networks.

This module implements the FFN sublayers that plug into a transformer block:
- FeedForward: two linear layers with an activation in between
- SwiGLUFeedForward: gated variant used by DINOv2-giant style checkpoints

Both map (batch, seq_len, hidden_size) onto itself, so the block composer never
needs to know which one is active.
"""

import math
from typing import Callable, Union

import torch
import torch.nn as nn
import torch.nn.functional as F
from transformers.activations import ACT2FN

from .config import FFNConfig


def _round_half_up(x: float) -> int:
    return math.floor(x + 0.5)


def swiglu_hidden_features(hidden_size: int, mlp_ratio: float) -> int:
    """Gated width: two thirds of the expanded size, rounded up to a multiple of 8.

    Halves round away from zero, so a width of 12.5 becomes 13 rather than 12.
    """
    hidden_features = _round_half_up(hidden_size * mlp_ratio)
    return ((_round_half_up(hidden_features * 2 / 3) + 7) // 8) * 8


class FeedForward(nn.Module):
    """
    FFN(x) = dropout(act(x W_1 + b_1) W_2 + b_2)

    Args:
        activation: any name understood by transformers' ACT2FN (gelu, relu, silu, gelu_new, ...)
        activation_dropout_rate: dropout between the activation and the output projection
    """

    def __init__(
        self,
        hidden_size: int,
        intermediate_size: int,
        activation: str = "gelu",
        dropout_rate: float = 0.0,
        activation_dropout_rate: float = 0.0,
    ):
        super().__init__()
        if activation not in ACT2FN:
            raise ValueError(f"unknown activation {activation!r}")

        self.intermediate = nn.Linear(hidden_size, intermediate_size)
        self.activation = ACT2FN[activation]
        self.activation_dropout = nn.Dropout(activation_dropout_rate)
        self.output = nn.Linear(intermediate_size, hidden_size)
        self.dropout = nn.Dropout(dropout_rate)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = self.intermediate(x)  # (batch, seq_len, intermediate_size)
        x = self.activation(x)
        x = self.activation_dropout(x)
        x = self.output(x)  # (batch, seq_len, hidden_size)
        return self.dropout(x)


class SwiGLUFeedForward(nn.Module):
    """
    SwiGLU(x) = (SiLU(x W_a) * x W_b) W_out

    W_a and W_b are packed into a single ``weights_in`` projection whose output
    is split in half.
    """

    def __init__(self, hidden_size: int, mlp_ratio: float = 4):
        super().__init__()
        hidden_features = swiglu_hidden_features(hidden_size, mlp_ratio)
        self.weights_in = nn.Linear(hidden_size, 2 * hidden_features)
        self.weights_out = nn.Linear(hidden_features, hidden_size)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x1, x2 = self.weights_in(x).chunk(2, dim=-1)
        return self.weights_out(F.silu(x1) * x2)


def build_ffn(
    ffn: Union[FFNConfig, Callable[[], nn.Module]], hidden_size: int, dropout_rate: float = 0.0
) -> nn.Module:
    """Instantiate the feed-forward sublayer of a block from its config or factory."""
    if isinstance(ffn, FFNConfig):
        return FeedForward(
            hidden_size,
            ffn.intermediate_size,
            activation=ffn.activation,
            dropout_rate=dropout_rate,
            activation_dropout_rate=ffn.activation_dropout_rate,
        )
    module = ffn()
    if not isinstance(module, nn.Module):
        raise ValueError(f"ffn factory must return an nn.Module, got {type(module).__name__}")
    return module
