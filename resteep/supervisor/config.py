"""Supervisor configuration: optional JSON file plus command-line overrides."""

from __future__ import annotations

import json
from pathlib import Path
import shutil
import sys
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from resteep.contracts import DEFAULT_EXCLUDED_DIRS, DEFAULT_SOURCE_EXTENSIONS
from resteep.errors import ConfigError, ToolchainNotFoundError
from resteep.supervisor.models import ReloadStrategy

CONFIG_FILENAME = ".resteep.json"


# sys.flags attribute -> command-line option, repeated by the flag's level.
_FLAG_OPTIONS = (
    ("debug", "d"),
    ("dont_write_bytecode", "B"),
    ("no_user_site", "s"),
    ("no_site", "S"),
    ("ignore_environment", "E"),
    ("verbose", "v"),
    ("bytes_warning", "b"),
    ("quiet", "q"),
    ("optimize", "O"),
)


def current_interpreter_flags() -> list[str]:
    """Flags the running interpreter was started with (-O, -X, -W, ...)."""
    flags: list[str] = []
    isolated = bool(getattr(sys.flags, "isolated", 0))
    if isolated:
        flags.append("-I")
    for name, option in _FLAG_OPTIONS:
        # -I already implies -E and -s.
        if isolated and option in ("E", "s"):
            continue
        level = int(getattr(sys.flags, name, 0))
        if level > 0:
            flags.append("-" + option * level)
    if getattr(sys.flags, "safe_path", False) and not isolated:
        flags.append("-P")
    flags.extend(f"-W{option}" for option in sys.warnoptions)
    for key, value in getattr(sys, "_xoptions", {}).items():
        flags.append(f"-X{key}" if value is True else f"-X{key}={value}")
    return flags


class SupervisorConfig(BaseModel):
    target: Path
    args: list[str] = Field(default_factory=list)
    root: Path = Field(default_factory=Path.cwd)
    extensions: list[str] = Field(default_factory=lambda: list(DEFAULT_SOURCE_EXTENSIONS))
    excluded_dirs: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDED_DIRS))
    python: Optional[str] = None
    interpreter_flags: list[str] = Field(default_factory=current_interpreter_flags)
    strategy: ReloadStrategy = ReloadStrategy.SUBPROCESS
    log_file: Optional[Path] = None

    @field_validator("target")
    @classmethod
    def _target_exists(cls, value: Path) -> Path:
        target = value.expanduser().resolve()
        if not target.exists():
            raise ValueError(f"target not found: {value}")
        return target

    @field_validator("root")
    @classmethod
    def _root_is_dir(cls, value: Path) -> Path:
        root = value.expanduser().resolve()
        if not root.is_dir():
            raise ValueError(f"root is not a directory: {value}")
        return root

    @field_validator("extensions")
    @classmethod
    def _normalize_extensions(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        for raw in value:
            ext = str(raw).strip()
            if not ext:
                continue
            if not ext.startswith("."):
                ext = "." + ext
            if ext not in normalized:
                normalized.append(ext)
        if not normalized:
            raise ValueError("extensions must not be empty")
        return normalized


def load_config(path: Path | None = None, **overrides: Any) -> SupervisorConfig:
    """Load config from JSON (if present) and apply non-None overrides."""
    if path is None:
        root = overrides.get("root") or Path.cwd()
        path = Path(root) / CONFIG_FILENAME
    raw: dict[str, Any] = {}
    if path.exists():
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"failed to read {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"{path} must contain a JSON object")
    for key, value in overrides.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)) and not value:
            continue
        raw[key] = value
    try:
        return SupervisorConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration: {exc}") from exc


def resolve_python(config: SupervisorConfig) -> str:
    """Return the interpreter used to rebuild and run the target."""
    if config.python:
        found = shutil.which(config.python)
        if found is None:
            raise ToolchainNotFoundError(f"python interpreter not found: {config.python}")
        return found
    if sys.executable:
        return sys.executable
    found = shutil.which("python3")
    if found is None:
        raise ToolchainNotFoundError("python3 not found in PATH")
    return found
