"""Convert a Hugging Face DINOv2 or mBART checkpoint into a stackformer state dict."""
from __future__ import annotations

import argparse
from dataclasses import asdict
from pathlib import Path

import yaml

from stackformer.models.factory import ARCHITECTURES, from_pretrained, model_family
from stackformer.utils.io import save_state
from stackformer.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


def parse_args() -> argparse.Namespace:
    architectures = sorted({name for table in ARCHITECTURES.values() for name in table})
    parser = argparse.ArgumentParser(description="Convert a transformers checkpoint")
    parser.add_argument("model", help="Hub name or local directory, e.g. facebook/dinov2-small.")
    parser.add_argument("--architecture", default="base", choices=architectures, help="Model head to build.")
    parser.add_argument("--family", default=None, help="Model family; defaults to the checkpoint's model_type.")
    parser.add_argument("--output", default="checkpoints/model.pt", help="Output path for the state dict.")
    parser.add_argument("--config-output", default=None, help="Where to write the YAML model config (default: next to --output).")
    return parser.parse_args()


def main() -> None:
    """Build the model from the checkpoint, then save its weights and YAML config."""
    configure_logging()
    args = parse_args()

    model = from_pretrained(args.model, architecture=args.architecture, family=args.family)

    output_path = Path(args.output)
    save_state(model, output_path)

    config_path = Path(args.config_output) if args.config_output else output_path.with_suffix(".yaml")
    config_path.parent.mkdir(parents=True, exist_ok=True)
    data = {"model": model_family(model.config), **asdict(model.config)}
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False)
    logger.info("Wrote model config to %s", config_path)


if __name__ == "__main__":
    main()
