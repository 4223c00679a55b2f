"""Factory helpers: model configs from YAML, model construction and checkpoint mapping.

Parameter names of our modules differ from the names used by ``transformers``
checkpoints. Each architecture has a mapping table from our names to theirs.
Block-level entries use a ``{n}`` placeholder for the block index and may name
either a whole module (its parameters keep their leaf names) or a single
parameter.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple, Type, Union

import torch
import torch.nn as nn

from ..utils.config import load_yaml
from ..utils.io import load_state
from ..utils.logging import get_logger
from .config import DinoV2Config, MBartConfig, from_transformers_config
from .dinov2 import DinoV2Backbone, DinoV2ForImageClassification, DinoV2Model
from .mbart import (
    MBartForCausalLM,
    MBartForConditionalGeneration,
    MBartForQuestionAnswering,
    MBartForSequenceClassification,
    MBartModel,
)

logger = get_logger(__name__)

ModelConfig = Union[DinoV2Config, MBartConfig]

CONFIG_CLASSES: Dict[str, Type] = {
    "dinov2": DinoV2Config,
    "mbart": MBartConfig,
}

ARCHITECTURES: Dict[str, Dict[str, Type[nn.Module]]] = {
    "dinov2": {
        "base": DinoV2Model,
        "for_image_classification": DinoV2ForImageClassification,
        "backbone": DinoV2Backbone,
    },
    "mbart": {
        "base": MBartModel,
        "for_conditional_generation": MBartForConditionalGeneration,
        "for_sequence_classification": MBartForSequenceClassification,
        "for_question_answering": MBartForQuestionAnswering,
        "for_causal_language_modeling": MBartForCausalLM,
    },
}

# transformers class implementing each (family, architecture)
TRANSFORMERS_CLASSES: Dict[Tuple[str, str], str] = {
    ("dinov2", "base"): "Dinov2Model",
    ("dinov2", "for_image_classification"): "Dinov2ForImageClassification",
    ("dinov2", "backbone"): "Dinov2Backbone",
    ("mbart", "base"): "MBartModel",
    ("mbart", "for_conditional_generation"): "MBartForConditionalGeneration",
    ("mbart", "for_sequence_classification"): "MBartForSequenceClassification",
    ("mbart", "for_question_answering"): "MBartForQuestionAnswering",
    ("mbart", "for_causal_language_modeling"): "MBartForCausalLM",
}

# Prefixes under which a checkpoint may nest the base model
SOURCE_PREFIXES = ("dinov2.", "model.")

# Newer transformers releases store the DINOv2 attention projections under
# different names; each pair is (name in the mapping tables, newer name)
SOURCE_ALIASES = (
    (".attention.attention.query.", ".attention.q_proj."),
    (".attention.attention.key.", ".attention.k_proj."),
    (".attention.attention.value.", ".attention.v_proj."),
    (".attention.output.dense.", ".attention.o_proj."),
)

# Checkpoint entries that duplicate a tied weight
TIED_SOURCE_SUFFIXES = (
    "encoder.embed_tokens.weight",
    "decoder.embed_tokens.weight",
    "lm_head.weight",
)


def model_family(config: ModelConfig) -> str:
    for family, config_class in CONFIG_CLASSES.items():
        if isinstance(config, config_class):
            return family
    raise ValueError(f"unsupported config type {type(config).__name__}")


# --------------- Configuration ---------------


def load_model_config(path: Union[str, Path]) -> ModelConfig:
    """
    Load a model configuration from YAML.

    The root mapping names the model family under ``model`` and holds the
    options of the matching config class::

        model: dinov2
        hidden_size: 384
        num_blocks: 12
    """
    data = dict(load_yaml(path).data)
    family = data.pop("model", None)
    if family not in CONFIG_CLASSES:
        raise ValueError(
            f"model must be one of {sorted(CONFIG_CLASSES)} in '{path}', got {family!r}"
        )
    return CONFIG_CLASSES[family].from_dict(data)


def build_model(
    config: ModelConfig,
    architecture: str = "base",
    checkpoint: Optional[Union[str, Path]] = None,
) -> nn.Module:
    """Instantiate ``architecture`` for ``config``, optionally loading a saved state."""
    family = model_family(config)
    architectures = ARCHITECTURES[family]
    if architecture not in architectures:
        raise ValueError(
            f"architecture must be one of {sorted(architectures)} for {family}, "
            f"got {architecture!r}"
        )

    model = architectures[architecture](config)
    if checkpoint is not None:
        load_state(model, checkpoint)
        logger.info("Loaded %s %s weights from %s", family, architecture, checkpoint)
    return model


# --------------- Parameter mapping ---------------


def _prefixed(table: Mapping[str, str], target_prefix: str, source_prefix: str) -> Dict[str, str]:
    return {target_prefix + target: source_prefix + source for target, source in table.items()}


def _dinov2_mapping() -> Dict[str, str]:
    layer = "encoder.layer.{n}"
    return {
        "embedder.patch_embedding": "embeddings.patch_embeddings.projection",
        "embedder.class_embedding": "embeddings.cls_token",
        "embedder.mask_token": "embeddings.mask_token",
        "embedder.position_embedding": "embeddings.position_embeddings",
        "encoder.blocks.{n}.self_attention_norm": f"{layer}.norm1",
        "encoder.blocks.{n}.self_attention.query": f"{layer}.attention.attention.query",
        "encoder.blocks.{n}.self_attention.key": f"{layer}.attention.attention.key",
        "encoder.blocks.{n}.self_attention.value": f"{layer}.attention.attention.value",
        "encoder.blocks.{n}.self_attention.output": f"{layer}.attention.output.dense",
        "encoder.blocks.{n}.layer_scale1.scale": f"{layer}.layer_scale1.lambda1",
        "encoder.blocks.{n}.output_norm": f"{layer}.norm2",
        "encoder.blocks.{n}.ffn.intermediate": f"{layer}.mlp.fc1",
        "encoder.blocks.{n}.ffn.output": f"{layer}.mlp.fc2",
        "encoder.blocks.{n}.ffn.weights_in": f"{layer}.mlp.weights_in",
        "encoder.blocks.{n}.ffn.weights_out": f"{layer}.mlp.weights_out",
        "encoder.blocks.{n}.layer_scale2.scale": f"{layer}.layer_scale2.lambda1",
        "norm": "layernorm",
    }


def _mbart_stack_mapping(stack: str) -> Dict[str, str]:
    ours = f"{stack}.layers.blocks.{{n}}"
    theirs = f"{stack}.layers.{{n}}"
    table = {
        f"{stack}.embed_positions.embeddings": f"{stack}.embed_positions",
        f"{stack}.layernorm_embedding": f"{stack}.layernorm_embedding",
        f"{stack}.layer_norm": f"{stack}.layer_norm",
        f"{ours}.self_attention_norm": f"{theirs}.self_attn_layer_norm",
        f"{ours}.output_norm": f"{theirs}.final_layer_norm",
        f"{ours}.ffn.intermediate": f"{theirs}.fc1",
        f"{ours}.ffn.output": f"{theirs}.fc2",
    }
    attention_layers = [("self_attention", "self_attn")]
    if stack == "decoder":
        table[f"{ours}.cross_attention_norm"] = f"{theirs}.encoder_attn_layer_norm"
        attention_layers.append(("cross_attention", "encoder_attn"))
    for our_layer, their_layer in attention_layers:
        for our_proj, their_proj in [
            ("query", "q_proj"),
            ("key", "k_proj"),
            ("value", "v_proj"),
            ("output", "out_proj"),
        ]:
            table[f"{ours}.{our_layer}.{our_proj}"] = f"{theirs}.{their_layer}.{their_proj}"
    return table


def _mbart_mapping() -> Dict[str, str]:
    return {
        "shared": "shared",
        **_mbart_stack_mapping("encoder"),
        **_mbart_stack_mapping("decoder"),
    }


def params_mapping(model: nn.Module) -> Dict[str, str]:
    """Our parameter/module name -> ``transformers`` checkpoint name for ``model``."""
    if isinstance(model, DinoV2Model):
        return _dinov2_mapping()
    if isinstance(model, DinoV2ForImageClassification):
        return {**_prefixed(_dinov2_mapping(), "model.", "dinov2."), "classifier": "classifier"}
    if isinstance(model, DinoV2Backbone):
        return _prefixed(_dinov2_mapping(), "model.", "")

    if isinstance(model, MBartModel):
        return _mbart_mapping()
    if isinstance(model, MBartForConditionalGeneration):
        return {
            **_prefixed(_mbart_mapping(), "model.", "model."),
            "final_logits_bias": "final_logits_bias",
        }
    if isinstance(model, MBartForSequenceClassification):
        return {
            **_prefixed(_mbart_mapping(), "model.", "model."),
            "classification_head.dense": "classification_head.dense",
            "classification_head.out_proj": "classification_head.out_proj",
        }
    if isinstance(model, MBartForQuestionAnswering):
        return {**_prefixed(_mbart_mapping(), "model.", "model."), "qa_outputs": "qa_outputs"}
    if isinstance(model, MBartForCausalLM):
        return {
            "embed_tokens": "model.decoder.embed_tokens",
            **_prefixed(_mbart_stack_mapping("decoder"), "", "model."),
        }

    raise ValueError(f"no parameter mapping for {type(model).__name__}")


_BLOCK_INDEX = re.compile(r"\.blocks\.(\d+)\.")


def source_name(target_name: str, mapping: Mapping[str, str]) -> Optional[str]:
    """Checkpoint name for one of our state dict entries, None when unmapped."""
    match = _BLOCK_INDEX.search(target_name)
    index = match.group(1) if match else None
    pattern = _BLOCK_INDEX.sub(".blocks.{n}.", target_name, count=1)

    if pattern in mapping:
        return mapping[pattern].replace("{n}", index or "")
    module, _, leaf = pattern.rpartition(".")
    if module in mapping:
        return f"{mapping[module].replace('{n}', index or '')}.{leaf}"
    return None


def _resolve(name: str, state_dict: Mapping[str, torch.Tensor]) -> Optional[str]:
    names = [name]
    for old, new in SOURCE_ALIASES:
        if old in name:
            names.append(name.replace(old, new))

    candidates = []
    for alias in names:
        candidates.append(alias)
        for prefix in SOURCE_PREFIXES:
            if alias.startswith(prefix):
                candidates.append(alias[len(prefix) :])
            else:
                candidates.append(prefix + alias)
    for candidate in candidates:
        if candidate in state_dict:
            return candidate
    return None


@dataclass
class LoadResult:
    missing: List[str] = field(default_factory=list)
    unused: List[str] = field(default_factory=list)


def load_transformers_state_dict(
    model: nn.Module, state_dict: Mapping[str, torch.Tensor]
) -> LoadResult:
    """
    Copy a ``transformers`` state dict into ``model`` using its mapping table.

    Shape mismatches raise ``ValueError``. Parameters with no checkpoint entry
    keep their initialisation and are reported as missing; checkpoint entries
    nobody asked for (other than tied duplicates) are reported as unused.
    """
    mapping = params_mapping(model)
    result = LoadResult()
    used = set()

    with torch.no_grad():
        for target_name, target in model.state_dict().items():
            name = source_name(target_name, mapping)
            resolved = _resolve(name, state_dict) if name is not None else None
            if resolved is None:
                result.missing.append(target_name)
                continue

            tensor = state_dict[resolved]
            if tensor.shape != target.shape:
                raise ValueError(
                    f"shape mismatch for {target_name}: expected {tuple(target.shape)}, "
                    f"checkpoint entry {resolved} has {tuple(tensor.shape)}"
                )
            target.copy_(tensor.to(dtype=target.dtype, device=target.device))
            used.add(resolved)

    result.unused = sorted(
        name
        for name in state_dict
        if name not in used and not name.endswith(TIED_SOURCE_SUFFIXES)
    )

    logger.info("Transferred %d tensors into %s", len(used), type(model).__name__)
    if result.missing:
        logger.warning("Parameters missing from the checkpoint: %s", ", ".join(result.missing))
    if result.unused:
        logger.warning("Unused checkpoint entries: %s", ", ".join(result.unused))
    return result


def _architecture_of(hf_model: nn.Module) -> Tuple[str, str]:
    class_name = type(hf_model).__name__
    for key, name in TRANSFORMERS_CLASSES.items():
        if name == class_name:
            return key
    raise ValueError(f"unsupported transformers model {class_name}")


def from_pretrained(
    name_or_model: Union[str, nn.Module],
    architecture: Optional[str] = None,
    family: Optional[str] = None,
) -> nn.Module:
    """
    Build one of our models from a ``transformers`` model or hub name and copy its weights.

    When ``name_or_model`` is a string, ``family`` and ``architecture`` select
    the ``transformers`` class used to load it (family defaults to the
    checkpoint's ``model_type``).
    """
    if isinstance(name_or_model, str):
        import transformers

        if family is None:
            family = transformers.AutoConfig.from_pretrained(name_or_model).model_type
        key = (family, architecture or "base")
        if key not in TRANSFORMERS_CLASSES:
            raise ValueError(f"unsupported model {family!r} / architecture {key[1]!r}")
        logger.info("Loading %s from %s", TRANSFORMERS_CLASSES[key], name_or_model)
        hf_model = getattr(transformers, TRANSFORMERS_CLASSES[key]).from_pretrained(name_or_model)
    else:
        hf_model = name_or_model
        key = _architecture_of(hf_model)
        if architecture is not None and architecture != key[1]:
            raise ValueError(
                f"{type(hf_model).__name__} implements {key[1]!r}, not {architecture!r}"
            )

    family, architecture = key
    config = from_transformers_config(CONFIG_CLASSES[family], hf_model.config)
    model = build_model(config, architecture)
    load_transformers_state_dict(model, hf_model.state_dict())
    return model.eval()
