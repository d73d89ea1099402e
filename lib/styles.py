"""
lib/styles.py — style registry: which weight files serve which style id.

A models directory holds a ``styles.yaml`` manifest plus the weight files it
names (paths are relative to the manifest)::

    /models/
        styles.yaml
        predict_duration-0.onnx
        predict_intonation-0.onnx
        decode-0.onnx

``styles.yaml`` schema::

    styles:
      - id: 0                  # StyleId requested by callers
        name: normal
        speaker_id: 0          # id fed to the networks (default: id)
        backend: onnx          # onnx | torchscript
        models:
          predict_duration:   predict_duration-0.onnx
          predict_intonation: predict_intonation-0.onnx
          decode:             decode-0.onnx

Several styles may share weight files and differ only in ``speaker_id``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from errors import ModelLoadError, UnknownStyleError
from runtime import BACKENDS, GRAPHS_BY_KIND

MANIFEST_NAME = "styles.yaml"

_ALL_GRAPHS = tuple(g for graphs in GRAPHS_BY_KIND.values() for g in graphs)


@dataclass(slots=True, frozen=True)
class StyleEntry:
    style_id: int
    name: str
    speaker_id: int
    backend: str
    root: Path
    models: Mapping[str, str] = field(default_factory=dict)

    def graph_path(self, graph: str) -> Path:
        rel = self.models.get(graph)
        if not rel:
            raise ModelLoadError(f"style {self.style_id}: no {graph} model configured")
        path = Path(rel)
        return path if path.is_absolute() else self.root / path

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.style_id,
            "name": self.name,
            "speaker_id": self.speaker_id,
            "backend": self.backend,
            "models": dict(self.models),
        }


def parse_style_entry(data: Mapping[str, Any], root: Path) -> StyleEntry:
    """
    Validate one manifest entry.  Raises ``ValueError`` on schema problems.
    """
    if not isinstance(data, Mapping):
        raise ValueError("style entry must be a mapping")
    try:
        style_id = int(data["id"])
    except KeyError:
        raise ValueError("style entry is missing 'id'") from None
    except (TypeError, ValueError) as exc:
        raise ValueError(f"style id must be an integer, got {data.get('id')!r}") from exc

    speaker_raw = data.get("speaker_id", style_id)
    try:
        speaker_id = int(speaker_raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"style {style_id}: speaker_id must be an integer") from exc

    backend = str(data.get("backend") or "onnx").strip().lower()
    if backend not in BACKENDS:
        raise ValueError(
            f"style {style_id}: backend must be one of {', '.join(BACKENDS)}, got {backend!r}"
        )

    models = data.get("models") or {}
    if not isinstance(models, Mapping):
        raise ValueError(f"style {style_id}: 'models' must be a mapping")
    unknown = sorted(set(models) - set(_ALL_GRAPHS))
    if unknown:
        raise ValueError(f"style {style_id}: unknown model graph(s): {', '.join(unknown)}")
    missing = [g for g in _ALL_GRAPHS if not models.get(g)]
    if missing:
        raise ValueError(f"style {style_id}: missing model graph(s): {', '.join(missing)}")

    return StyleEntry(
        style_id=style_id,
        name=str(data.get("name") or f"style-{style_id}"),
        speaker_id=speaker_id,
        backend=backend,
        root=Path(root),
        models={str(k): str(v) for k, v in models.items()},
    )


class StyleRegistry:
    """
    Read-only mapping ``style_id → StyleEntry``; safe to share across threads.
    """

    def __init__(self, entries: Iterable[StyleEntry] = ()) -> None:
        self._entries: dict[int, StyleEntry] = {}
        for entry in entries:
            if entry.style_id in self._entries:
                raise ValueError(f"duplicate style id {entry.style_id}")
            self._entries[entry.style_id] = entry

    @classmethod
    def load(cls, models_dir: Path) -> "StyleRegistry":
        """
        Read ``<models_dir>/styles.yaml``.  A missing manifest yields an empty
        registry; a malformed one raises ``ValueError``.
        """
        root = Path(models_dir)
        manifest = root / MANIFEST_NAME
        if not manifest.exists():
            return cls()
        try:
            with open(manifest, encoding="utf-8") as fh:
                data = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {manifest}: {exc}") from exc
        styles = data.get("styles") if isinstance(data, Mapping) else None
        if not isinstance(styles, list):
            raise ValueError(f"{manifest}: 'styles' must be a list")
        return cls(parse_style_entry(s, root) for s in styles)

    @classmethod
    def from_entries(cls, entries: Iterable[Mapping[str, Any]], root: Path = Path(".")) -> "StyleRegistry":
        return cls(parse_style_entry(e, root) for e in entries)

    def __contains__(self, style_id: object) -> bool:
        return style_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, style_id: int) -> StyleEntry:
        try:
            return self._entries[style_id]
        except KeyError:
            raise UnknownStyleError(style_id) from None

    def style_ids(self) -> list[int]:
        return sorted(self._entries)

    def list_styles(self) -> list[dict[str, Any]]:
        """
        All entries sorted by id, each with a ``_ready`` flag telling whether
        every weight file exists on disk.
        """
        out: list[dict[str, Any]] = []
        for sid in self.style_ids():
            entry = self._entries[sid]
            d = entry.to_dict()
            d["_ready"] = all(entry.graph_path(g).exists() for g in _ALL_GRAPHS)
            out.append(d)
        return out
