"""
lib/config.py — engine configuration from environment and YAML.

Resolution order (first wins): explicit overrides → YAML file → environment
→ defaults.

Environment variables:
  MORA_SYNTH_MODELS   models directory holding styles.yaml   (default ./models)
  TORCH_DEVICE        compute device override                (default: auto)
  MORA_SYNTH_THREADS  intra-op threads per session, 0 = runtime default
  MORA_SYNTH_PRELOAD  load every registered style at startup (bool)
  MORA_SYNTH_WORKERS  worker threads for batch synthesis

YAML file (all keys optional)::

    models_dir: /models
    device: cuda:0
    num_threads: 4
    preload: true
    max_workers: 2
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

DEFAULT_MODELS_DIR = "models"
DEFAULT_MAX_WORKERS = 2


def _coerce_bool(field_name: str, value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if not lowered:
            return default
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"{field_name} must be a boolean")


def _coerce_int(field_name: str, value: Any, *, default: int) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field_name} must be an integer") from exc


@dataclass(slots=True, frozen=True)
class EngineConfig:
    models_dir: Path = Path(DEFAULT_MODELS_DIR)
    device: str | None = None        # None → runtime.get_device()
    num_threads: int = 0
    preload: bool = False
    max_workers: int = DEFAULT_MAX_WORKERS

    def __post_init__(self) -> None:
        if self.num_threads < 0:
            raise ValueError("num_threads must be >= 0")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")

    @classmethod
    def from_env(cls) -> "EngineConfig":
        device = os.getenv("TORCH_DEVICE", "").strip() or None
        return cls(
            models_dir=Path(os.getenv("MORA_SYNTH_MODELS") or DEFAULT_MODELS_DIR).expanduser(),
            device=device,
            num_threads=_coerce_int("MORA_SYNTH_THREADS", os.getenv("MORA_SYNTH_THREADS"), default=0),
            preload=_coerce_bool("MORA_SYNTH_PRELOAD", os.getenv("MORA_SYNTH_PRELOAD"), default=False),
            max_workers=_coerce_int(
                "MORA_SYNTH_WORKERS", os.getenv("MORA_SYNTH_WORKERS"), default=DEFAULT_MAX_WORKERS,
            ),
        )

    def merged(self, data: Mapping[str, Any]) -> "EngineConfig":
        """Return a copy with the non-null keys of *data* applied."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"unknown config key(s): {', '.join(unknown)}")

        changes: dict[str, Any] = {}
        for key, value in data.items():
            if value is None:
                continue
            if key == "models_dir":
                changes[key] = Path(str(value)).expanduser()
            elif key == "device":
                changes[key] = str(value).strip() or None
            elif key == "preload":
                changes[key] = _coerce_bool(key, value, default=self.preload)
            else:
                changes[key] = _coerce_int(key, value, default=getattr(self, key))
        return replace(self, **changes)


def load_config(path: Path | None = None, **overrides: Any) -> EngineConfig:
    """
    Build an EngineConfig: environment, then the YAML file at *path* (when
    given), then keyword *overrides* whose value is not None.
    """
    cfg = EngineConfig.from_env()
    if path is not None:
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as fh:
                data = yaml.safe_load(fh) or {}
        except FileNotFoundError as exc:
            raise ValueError(f"File not found: {path}") from exc
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise ValueError(f"{path}: expected a mapping at top level")
        cfg = cfg.merged(data)
    return cfg.merged(overrides)
