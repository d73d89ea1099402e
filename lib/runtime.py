"""
lib/runtime.py — inference-executor boundary and model sessions.

Provides
--------
Device
    get_device() → str
    onnx_providers(device) → list

Executors (opaque, synchronous ``run(inputs) → outputs``)
    Executor          — protocol implemented by every backend
    OnnxExecutor      — onnxruntime.InferenceSession
    TorchScriptExecutor — torch.jit.load'ed module

Sessions
    ModelKind         — VARIANCE_PREDICTOR | WAVEFORM_DECODER
    GRAPHS_BY_KIND    — graph names each kind bundles
    ModelSession      — ready-to-run graphs for one (style, kind, device)
    load_session(entry, kind, device, num_threads) → ModelSession

A variance-predictor session bundles the ``predict_duration`` and
``predict_intonation`` graphs; a decoder session bundles ``decode``.
Executors must tolerate concurrent ``run`` calls; sessions are never
mutated after loading.
"""

from __future__ import annotations

import enum
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Protocol

import numpy as np
import torch

from errors import InferenceError, ModelLoadError

if TYPE_CHECKING:
    from styles import StyleEntry

logger = logging.getLogger(__name__)


class ModelKind(enum.Enum):
    VARIANCE_PREDICTOR = "variance_predictor"
    WAVEFORM_DECODER = "waveform_decoder"


GRAPHS_BY_KIND: dict[ModelKind, tuple[str, ...]] = {
    ModelKind.VARIANCE_PREDICTOR: ("predict_duration", "predict_intonation"),
    ModelKind.WAVEFORM_DECODER: ("decode",),
}

# Output names of each graph, used when a backend returns positional outputs.
GRAPH_OUTPUTS: dict[str, tuple[str, ...]] = {
    "predict_duration": ("phoneme_length",),
    "predict_intonation": ("f0_list",),
    "decode": ("wave",),
}

BACKENDS = ("onnx", "torchscript")


# ── device ─────────────────────────────────────────────────────────────────────

def get_device() -> str:
    """
    Select the best available compute device.

    Resolution order:
      1. ``TORCH_DEVICE`` env var  — explicit override.
      2. CUDA                      — when available.
      3. CPU                       — universal fallback.
    """
    override = os.getenv("TORCH_DEVICE", "").strip()
    if override:
        if override.startswith("cuda") and not torch.cuda.is_available():
            logger.warning(
                "TORCH_DEVICE is set to %s but this torch build has no CUDA "
                "support; falling back to CPU.", override,
            )
            return "cpu"
        return override
    return "cuda" if torch.cuda.is_available() else "cpu"


def onnx_providers(device: str) -> list[Any]:
    """
    ONNX Runtime execution providers for *device*, CPU always last.
    """
    import onnxruntime  # type: ignore

    cpu = ("CPUExecutionProvider", {"arena_extend_strategy": "kSameAsRequested"})
    available = onnxruntime.get_available_providers()
    if device.startswith("cuda"):
        if "CUDAExecutionProvider" in available:
            idx = int(device.split(":")[-1]) if ":" in device else 0
            return [
                ("CUDAExecutionProvider", {
                    "device_id": idx,
                    "arena_extend_strategy": "kSameAsRequested",
                    "cudnn_conv_algo_search": "DEFAULT",
                }),
                cpu,
            ]
        logger.warning("CUDAExecutionProvider is not available; using CPU for ONNX inference.")
    return [cpu]


# ── executors ──────────────────────────────────────────────────────────────────

class Executor(Protocol):
    def run(self, inputs: Mapping[str, np.ndarray]) -> dict[str, np.ndarray]: ...

    def close(self) -> None: ...


class OnnxExecutor:
    """``onnxruntime.InferenceSession`` wrapper; ``run`` is thread safe."""

    def __init__(self, path: Path, device: str = "cpu", num_threads: int = 0) -> None:
        import onnxruntime  # type: ignore

        opts = onnxruntime.SessionOptions()
        if num_threads > 0:
            opts.intra_op_num_threads = num_threads
        self.path = Path(path)
        self._session = onnxruntime.InferenceSession(
            str(self.path), sess_options=opts, providers=onnx_providers(device),
        )
        self._output_names = [o.name for o in self._session.get_outputs()]

    def run(self, inputs: Mapping[str, np.ndarray]) -> dict[str, np.ndarray]:
        outputs = self._session.run(self._output_names, dict(inputs))
        return dict(zip(self._output_names, outputs))

    def close(self) -> None:
        self._session = None


class TorchScriptExecutor:
    """
    TorchScript module wrapper.  Inputs are passed as keyword tensors; a
    module returning a bare tensor (or tuple) is mapped onto *output_names*.
    """

    def __init__(
        self,
        path: Path,
        output_names: tuple[str, ...],
        device: str = "cpu",
        num_threads: int = 0,
    ) -> None:
        if num_threads > 0:
            torch.set_num_threads(num_threads)
        self.path = Path(path)
        self.device = device
        self.output_names = output_names
        self._module = torch.jit.load(str(self.path), map_location=device).eval()

    def run(self, inputs: Mapping[str, np.ndarray]) -> dict[str, np.ndarray]:
        tensors = {
            name: torch.from_numpy(np.ascontiguousarray(value)).to(self.device)
            for name, value in inputs.items()
        }
        with torch.inference_mode():
            out = self._module(**tensors)

        if isinstance(out, dict):
            items = out.items()
        elif isinstance(out, (tuple, list)):
            items = zip(self.output_names, out)
        else:
            items = [(self.output_names[0], out)]
        return {name: t.detach().cpu().numpy() for name, t in items}

    def close(self) -> None:
        self._module = None


# ── sessions ───────────────────────────────────────────────────────────────────

@dataclass(slots=True)
class ModelSession:
    """
    A loaded, ready-to-run model bound to a style and a device.

    Owned by the SessionManager; pipeline stages only borrow it and call
    ``infer``.
    """
    style_id: int
    kind: ModelKind
    device: str
    speaker_id: int
    graphs: dict[str, Executor] = field(default_factory=dict)

    def speaker_tensor(self) -> np.ndarray:
        return np.array([self.speaker_id], dtype=np.int64)

    def infer(self, graph: str, inputs: Mapping[str, np.ndarray]) -> dict[str, np.ndarray]:
        """
        Run *graph*.  Any executor failure surfaces as ``InferenceError``.
        """
        executor = self.graphs.get(graph)
        if executor is None:
            raise InferenceError(
                f"{self.kind.value} session for style {self.style_id} has no graph {graph!r}"
            )
        try:
            outputs = executor.run(inputs)
        except InferenceError:
            raise
        except Exception as exc:
            raise InferenceError(
                f"{graph} failed for style {self.style_id} on {self.device}: {exc}"
            ) from exc
        expected = GRAPH_OUTPUTS.get(graph, ())
        missing = [name for name in expected if name not in outputs]
        if missing:
            raise InferenceError(f"{graph} returned no {', '.join(missing)} output")
        return outputs

    def close(self) -> None:
        for executor in self.graphs.values():
            executor.close()
        self.graphs.clear()


def _build_executor(backend: str, path: Path, graph: str, device: str, num_threads: int) -> Executor:
    if backend == "onnx":
        return OnnxExecutor(path, device=device, num_threads=num_threads)
    if backend == "torchscript":
        return TorchScriptExecutor(
            path, GRAPH_OUTPUTS.get(graph, (graph,)), device=device, num_threads=num_threads,
        )
    raise ModelLoadError(f"unknown backend {backend!r} (expected one of {', '.join(BACKENDS)})")


def load_session(
    entry: "StyleEntry",
    kind: ModelKind,
    device: str,
    num_threads: int = 0,
) -> ModelSession:
    """
    Load every graph *kind* needs for *entry* onto *device*.

    Raises ``ModelLoadError`` when a weight file is missing or the backend
    rejects it; graphs loaded before the failure are closed again.
    """
    session = ModelSession(
        style_id=entry.style_id,
        kind=kind,
        device=device,
        speaker_id=entry.speaker_id,
    )
    t0 = time.perf_counter()
    try:
        for graph in GRAPHS_BY_KIND[kind]:
            path = entry.graph_path(graph)
            if not path.exists():
                raise ModelLoadError(
                    f"style {entry.style_id}: weight file for {graph} not found: {path}"
                )
            try:
                session.graphs[graph] = _build_executor(
                    entry.backend, path, graph, device, num_threads,
                )
            except ModelLoadError:
                raise
            except Exception as exc:
                raise ModelLoadError(
                    f"style {entry.style_id}: could not load {graph} from {path}: {exc}"
                ) from exc
    except ModelLoadError:
        session.close()
        raise

    logger.info(
        "loaded %s for style %d (%s, %s) in %.2fs",
        kind.value, entry.style_id, entry.backend, device, time.perf_counter() - t0,
    )
    return session
