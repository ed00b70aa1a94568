from __future__ import annotations

import collections.abc
import os
import shutil
import typing
from pathlib import Path
from typing import Any, MutableMapping, Sequence

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel

from planner_sync.config.models import (
    AppConfig,
    ConfigLoadRequest,
)


def _read_yaml_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        _ensure_default_config(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Top-level YAML must be a mapping, got: {type(data).__name__}")
    return data


def _ensure_default_config(target_path: Path) -> None:
    example_path = Path("examples/config.yaml")
    if not example_path.exists():
        return
    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(example_path, target_path)


def _ensure_default_data_layout(yaml_path: Path) -> None:
    if yaml_path.parent.name != "config":
        return
    data_root = yaml_path.parent.parent
    for name in ("config", "cache", "logs"):
        (data_root / name).mkdir(parents=True, exist_ok=True)


def _env_var_name_to_segments(env_var_name: str, prefix: str) -> Sequence[str]:
    remainder = env_var_name[len(prefix) :]
    parts = [p for p in remainder.split("__") if p]
    if not parts:
        raise ValueError(f"Invalid environment variable override name: {env_var_name}")
    return [p.lower() for p in parts]


def _resolve_field(model: type[BaseModel], path: Sequence[str]) -> Any:
    """Return the annotation of the leaf at `path`, or raise KeyError for unknown paths."""
    current: Any = model
    annotation: Any = None
    for depth, segment in enumerate(path):
        if not (isinstance(current, type) and issubclass(current, BaseModel)):
            raise KeyError(f"Unknown configuration key path: {'.'.join(path)}")
        field = current.model_fields.get(segment)
        if field is None:
            raise KeyError(f"Unknown configuration key path: {'.'.join(path)}")
        annotation = field.annotation
        if depth < len(path) - 1:
            current = _unwrap_optional(annotation)
    return annotation


def _unwrap_optional(annotation: Any) -> Any:
    args = [a for a in typing.get_args(annotation) if a is not type(None)]
    if args and typing.get_origin(annotation) is typing.Union and len(args) == 1:
        return args[0]
    return annotation


def _is_sequence_annotation(annotation: Any) -> bool:
    origin = typing.get_origin(_unwrap_optional(annotation))
    return origin in (list, tuple, collections.abc.Sequence)


def _get_parent_mapping(config: MutableMapping[str, Any], path: Sequence[str]) -> MutableMapping[str, Any]:
    cur: MutableMapping[str, Any] = config
    for segment in path[:-1]:
        next_value = cur.setdefault(segment, {})
        if not isinstance(next_value, dict):
            dotted = ".".join(path)
            raise TypeError(f"Configuration key path does not point to a mapping: {dotted}")
        cur = next_value
    return cur


def _apply_env_overrides(config: MutableMapping[str, Any], env_prefix: str) -> None:
    for name, value in sorted(os.environ.items()):
        if not name.startswith(env_prefix):
            continue

        segments = _env_var_name_to_segments(name, env_prefix)
        annotation = _resolve_field(AppConfig, segments)
        parent = _get_parent_mapping(config, segments)

        # Sequences are comma separated; Pydantic coerces scalar strings later.
        if _is_sequence_annotation(annotation):
            parent[segments[-1]] = [item.strip() for item in value.split(",") if item.strip()]
        else:
            parent[segments[-1]] = value


class YamlConfigLoader:
    async def load(self, request: ConfigLoadRequest = ConfigLoadRequest()) -> AppConfig:
        yaml_path = Path(request.yaml_path)
        _ensure_default_data_layout(yaml_path)
        config = _read_yaml_config(yaml_path)

        if request.dotenv_path is not None and Path(request.dotenv_path).exists():
            load_dotenv(dotenv_path=request.dotenv_path, override=False)

        _apply_env_overrides(config, request.env_prefix)
        return AppConfig.model_validate(config)
