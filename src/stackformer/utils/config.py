"""
YAML configuration loading.

Model configuration files are plain mappings; ``Config`` keeps the parsed
mapping.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Union

import yaml


@dataclass
class Config:
    data: Dict[str, Any]


def load_yaml(path: Union[str, Path]) -> Config:
    with Path(path).open("r", encoding="utf-8") as handle:
        content = yaml.safe_load(handle)
    if not isinstance(content, dict):
        raise ValueError(f"YAML configuration '{path}' must contain a mapping at the root")
    return Config(data=content)
