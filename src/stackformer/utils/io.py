"""
Checkpoint I/O for assembled models.

State dicts are stored with ``torch.save``. Keys are normalised on the way
in and out so checkpoints of ``torch.compile``-wrapped models load into plain
modules.
"""

from pathlib import Path
from typing import Dict, List, Tuple, Union

import torch

from .logging import get_logger

logger = get_logger(__name__)

COMPILE_PREFIX = "_orig_mod."


def clean_state_dict(state_dict: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
    """Strip the prefix torch.compile adds to parameter names."""
    return {key.replace(COMPILE_PREFIX, ""): value for key, value in state_dict.items()}


def save_state(model: torch.nn.Module, path: Union[str, Path]) -> None:
    destination = Path(path)
    destination.parent.mkdir(parents=True, exist_ok=True)
    torch.save(clean_state_dict(model.state_dict()), destination)
    logger.info("Saved %s parameters to %s", type(model).__name__, destination)


def load_state(
    model: torch.nn.Module, path: Union[str, Path], strict: bool = True
) -> Tuple[List[str], List[str]]:
    """
    Load a checkpoint written by ``save_state``.

    Returns:
        (missing_keys, unexpected_keys); both empty when ``strict``
    """
    state = torch.load(path, map_location="cpu", weights_only=True)
    result = model.load_state_dict(clean_state_dict(state), strict=strict)
    if result.missing_keys or result.unexpected_keys:
        logger.warning(
            "Loaded %s with %d missing and %d unexpected keys",
            path,
            len(result.missing_keys),
            len(result.unexpected_keys),
        )
    return list(result.missing_keys), list(result.unexpected_keys)
