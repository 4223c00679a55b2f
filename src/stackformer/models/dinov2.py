"""
DINOv2 vision transformer assembled from the shared block stack.

Contains:
- DinoV2Embedder: patch embedding + class token + (interpolated) learned positions
- DinoV2Model: embedder -> norm_first_with_scale blocks -> final layer norm
- DinoV2ForImageClassification: linear head on [class token, mean patch token]
- DinoV2Backbone: per-stage feature maps for dense prediction heads

Images are (batch, channels, height, width) tensors. Height and width must be
multiples of the patch size.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import torch
import torch.nn as nn

from .blocks import TransformerBlocks
from .config import DinoV2Config
from .positional_encoding import interpolate_position_embeddings


@dataclass
class DinoV2Output:
    hidden_state: torch.Tensor
    pooled_state: torch.Tensor
    hidden_states: Optional[Tuple[torch.Tensor, ...]] = None
    attentions: Optional[Tuple[torch.Tensor, ...]] = None


@dataclass
class ImageClassificationOutput:
    logits: torch.Tensor
    hidden_states: Optional[Tuple[torch.Tensor, ...]] = None
    attentions: Optional[Tuple[torch.Tensor, ...]] = None


@dataclass
class BackboneOutput:
    feature_maps: Dict[str, torch.Tensor]
    hidden_states: Optional[Tuple[torch.Tensor, ...]] = None
    attentions: Optional[Tuple[torch.Tensor, ...]] = None


def check_pixel_values(pixel_values: torch.Tensor, patch_size: int) -> Tuple[int, int]:
    """Validate an image batch and return its (height, width)."""
    if pixel_values.dim() != 4:
        raise ValueError(
            "pixel_values must have shape (batch, channels, height, width), "
            f"got {tuple(pixel_values.shape)}"
        )
    height, width = pixel_values.shape[-2:]
    if height % patch_size != 0 or width % patch_size != 0:
        raise ValueError(
            f"image size {height}x{width} is not divisible by patch_size {patch_size}"
        )
    return height, width


class DinoV2Embedder(nn.Module):
    def __init__(self, config: DinoV2Config):
        super().__init__()
        self.config = config
        num_patches = (config.image_size // config.patch_size) ** 2

        self.patch_embedding = nn.Conv2d(
            config.num_channels,
            config.hidden_size,
            kernel_size=config.patch_size,
            stride=config.patch_size,
        )
        self.class_embedding = nn.Parameter(torch.zeros(1, 1, config.hidden_size))
        self.mask_token = nn.Parameter(torch.zeros(1, config.hidden_size))
        self.position_embedding = nn.Parameter(torch.zeros(1, num_patches + 1, config.hidden_size))
        self.dropout = nn.Dropout(config.dropout_rate)

    def forward(
        self, pixel_values: torch.Tensor, patch_mask: Optional[torch.Tensor] = None
    ) -> torch.Tensor:
        """
        Args:
            pixel_values: (batch, channels, height, width)
            patch_mask: optional (batch, num_patches) boolean mask; masked patches
                are replaced by the learned mask token

        Returns: (batch, 1 + num_patches, hidden_size)
        """
        height, width = check_pixel_values(pixel_values, self.config.patch_size)
        dtype = self.patch_embedding.weight.dtype

        # (B, H, h/p, w/p) -> (B, num_patches, H)
        embeddings = self.patch_embedding(pixel_values.to(dtype)).flatten(2).transpose(1, 2)

        if patch_mask is not None:
            mask = patch_mask.to(torch.bool).unsqueeze(-1)
            embeddings = torch.where(mask, self.mask_token.to(embeddings.dtype), embeddings)

        class_embedding = self.class_embedding.expand(embeddings.size(0), -1, -1)
        embeddings = torch.cat([class_embedding, embeddings], dim=1)

        position_embedding = interpolate_position_embeddings(
            self.position_embedding,
            (height, width),
            image_size=self.config.image_size,
            patch_size=self.config.patch_size,
        )
        return self.dropout(embeddings + position_embedding)


class DinoV2Model(nn.Module):
    """DINOv2 encoder. ``pooled_state`` is the normalized class token."""

    def __init__(self, config: DinoV2Config):
        super().__init__()
        self.config = config
        self.embedder = DinoV2Embedder(config)
        self.encoder = TransformerBlocks(config.blocks_config())
        self.norm = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_epsilon)
        self.apply(self._init_weights)
        self._init_embedder()

    def _init_weights(self, module: nn.Module) -> None:
        if isinstance(module, (nn.Linear, nn.Conv2d)):
            nn.init.trunc_normal_(module.weight, std=self.config.initializer_scale)
            if module.bias is not None:
                nn.init.zeros_(module.bias)
        elif isinstance(module, nn.LayerNorm):
            nn.init.ones_(module.weight)
            nn.init.zeros_(module.bias)

    def _init_embedder(self) -> None:
        std = self.config.initializer_scale
        nn.init.trunc_normal_(self.embedder.position_embedding, std=std)
        nn.init.trunc_normal_(self.embedder.class_embedding, std=std)

    def forward(
        self,
        pixel_values: torch.Tensor,
        patch_mask: Optional[torch.Tensor] = None,
        attention_head_mask: Optional[torch.Tensor] = None,
        output_hidden_states: Optional[bool] = None,
        output_attentions: Optional[bool] = None,
    ) -> DinoV2Output:
        if output_hidden_states is None:
            output_hidden_states = self.config.output_hidden_states
        if output_attentions is None:
            output_attentions = self.config.output_attentions

        embeddings = self.embedder(pixel_values, patch_mask=patch_mask)
        state = self.encoder(
            embeddings,
            attention_head_mask=attention_head_mask,
            output_hidden_states=output_hidden_states,
            output_attentions=output_attentions,
        )
        hidden_state = self.norm(state.hidden_state)

        return DinoV2Output(
            hidden_state=hidden_state,
            pooled_state=hidden_state[:, 0],
            hidden_states=state.hidden_states,
            attentions=state.attentions,
        )


class DinoV2ForImageClassification(nn.Module):
    def __init__(self, config: DinoV2Config):
        super().__init__()
        self.config = config
        self.model = DinoV2Model(config)
        self.classifier = nn.Linear(2 * config.hidden_size, config.num_labels)
        nn.init.trunc_normal_(self.classifier.weight, std=config.initializer_scale)
        nn.init.zeros_(self.classifier.bias)

    def forward(self, pixel_values: torch.Tensor, **kwargs) -> ImageClassificationOutput:
        outputs = self.model(pixel_values, **kwargs)
        class_token = outputs.hidden_state[:, 0]
        patch_tokens = outputs.hidden_state[:, 1:]
        features = torch.cat([class_token, patch_tokens.mean(dim=1)], dim=-1)

        return ImageClassificationOutput(
            logits=self.classifier(features),
            hidden_states=outputs.hidden_states,
            attentions=outputs.attentions,
        )


class DinoV2Backbone(nn.Module):
    """
    Feature maps of the stages listed in ``config.output_features``.

    Stage ``stem`` is the embedder output and ``stage{i}`` the output of block
    ``i``. Each selected stage is optionally layer-normalized and, with
    ``reshape_hidden_states``, turned into a (batch, hidden, h/p, w/p) map
    without the class token.
    """

    def __init__(self, config: DinoV2Config):
        super().__init__()
        self.config = config
        self.model = DinoV2Model(config)

    def feature_map(self, hidden_state: torch.Tensor, height: int, width: int) -> torch.Tensor:
        if self.config.apply_layernorm:
            hidden_state = self.model.norm(hidden_state)
        if not self.config.reshape_hidden_states:
            return hidden_state

        patch_size = self.config.patch_size
        if height % patch_size != 0 or width % patch_size != 0:
            raise ValueError(
                f"image size {height}x{width} is not divisible by patch_size {patch_size}"
            )
        batch_size = hidden_state.size(0)
        patches = hidden_state[:, 1:]
        return patches.reshape(
            batch_size, height // patch_size, width // patch_size, -1
        ).permute(0, 3, 1, 2)

    def forward(
        self,
        pixel_values: torch.Tensor,
        output_hidden_states: Optional[bool] = None,
        output_attentions: Optional[bool] = None,
    ) -> BackboneOutput:
        if output_hidden_states is None:
            output_hidden_states = self.config.output_hidden_states
        height, width = check_pixel_values(pixel_values, self.config.patch_size)

        outputs = self.model(
            pixel_values, output_hidden_states=True, output_attentions=output_attentions
        )
        feature_maps = {
            stage: self.feature_map(hidden_state, height, width)
            for stage, hidden_state in zip(self.config.stage_names, outputs.hidden_states)
            if stage in self.config.output_features
        }

        return BackboneOutput(
            feature_maps=feature_maps,
            hidden_states=outputs.hidden_states if output_hidden_states else None,
            attentions=outputs.attentions,
        )
