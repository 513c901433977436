from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from sequencer.errors import ConfigurationError
from sequencer.models import PipelineSpec


def _format_error(error: dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error["loc"])
    return f"{location}: {error['msg']}" if location else error["msg"]


def parse_pipeline(data: dict[str, Any]) -> PipelineSpec:
    """Validate raw pipeline data. Raises ConfigurationError."""
    try:
        return PipelineSpec.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError([_format_error(e) for e in exc.errors()]) from exc


def load_pipeline(path: Path) -> PipelineSpec:
    """Load a TOML pipeline definition. The name defaults to the file stem."""
    try:
        data = tomllib.loads(path.read_text())
    except FileNotFoundError as exc:
        raise ConfigurationError(f"pipeline file not found: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"failed to parse {path}: {exc}") from exc
    data.setdefault("name", path.stem)
    return parse_pipeline(data)
