from pathlib import Path
import sys

import numpy as np
import pytest
import yaml


ROOT = Path(__file__).resolve().parents[1]
LIB = ROOT / "lib"
if str(LIB) not in sys.path:
    sys.path.insert(0, str(LIB))

import runtime  # noqa: E402
from errors import InferenceError, ModelLoadError, UnknownStyleError  # noqa: E402
from runtime import ModelKind, ModelSession, get_device, load_session  # noqa: E402
from styles import StyleRegistry, parse_style_entry  # noqa: E402

from fakes import MODEL_FILES, FakeExecutor  # noqa: E402


def _write_manifest(models_dir: Path, styles) -> Path:
    path = models_dir / "styles.yaml"
    path.write_text(yaml.safe_dump({"styles": styles}), encoding="utf-8")
    return path


def test_registry_loads_manifest(tmp_path: Path) -> None:
    _write_manifest(tmp_path, [
        {"id": 2, "name": "whisper", "speaker_id": 0, "models": MODEL_FILES},
        {"id": 0, "models": MODEL_FILES, "backend": "TorchScript"},
    ])
    registry = StyleRegistry.load(tmp_path)

    assert len(registry) == 2
    assert registry.style_ids() == [0, 2]
    assert 2 in registry and 5 not in registry
    assert registry.get(0).speaker_id == 0
    assert registry.get(0).backend == "torchscript"
    assert registry.get(0).name == "style-0"
    assert registry.get(2).graph_path("decode") == tmp_path / "decode.onnx"


def test_registry_missing_manifest_is_empty(tmp_path: Path) -> None:
    assert len(StyleRegistry.load(tmp_path)) == 0


def test_registry_rejects_invalid_yaml(tmp_path: Path) -> None:
    (tmp_path / "styles.yaml").write_text("styles: [\n  - id: 0\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Invalid YAML"):
        StyleRegistry.load(tmp_path)


def test_registry_rejects_duplicate_ids(tmp_path: Path) -> None:
    _write_manifest(tmp_path, [{"id": 1, "models": MODEL_FILES}] * 2)
    with pytest.raises(ValueError, match="duplicate"):
        StyleRegistry.load(tmp_path)


@pytest.mark.parametrize(
    "entry, message",
    [
        ({"models": MODEL_FILES}, "missing 'id'"),
        ({"id": "x", "models": MODEL_FILES}, "integer"),
        ({"id": 0, "backend": "tflite", "models": MODEL_FILES}, "backend"),
        ({"id": 0, "models": {"decode": "d.onnx"}}, "missing model graph"),
        ({"id": 0, "models": {**MODEL_FILES, "vocoder": "v.onnx"}}, "unknown model graph"),
    ],
)
def test_parse_style_entry_validation(entry, message) -> None:
    with pytest.raises(ValueError, match=message):
        parse_style_entry(entry, Path("."))


def test_get_unknown_style() -> None:
    registry = StyleRegistry.from_entries([{"id": 0, "models": MODEL_FILES}])
    with pytest.raises(UnknownStyleError):
        registry.get(1)


def test_list_styles_reports_readiness(tmp_path: Path) -> None:
    _write_manifest(tmp_path, [
        {"id": 0, "models": MODEL_FILES},
        {"id": 1, "models": {g: f"{g}-1.onnx" for g in MODEL_FILES}},
    ])
    for name in MODEL_FILES.values():
        (tmp_path / name).write_bytes(b"")
    listed = StyleRegistry.load(tmp_path).list_styles()
    assert [(s["id"], s["_ready"]) for s in listed] == [(0, True), (1, False)]


def test_load_session_missing_weights(tmp_path: Path) -> None:
    entry = parse_style_entry({"id": 0, "models": MODEL_FILES}, tmp_path)
    with pytest.raises(ModelLoadError, match="not found"):
        load_session(entry, ModelKind.WAVEFORM_DECODER, "cpu")


def test_load_session_closes_partial_graphs(tmp_path: Path, monkeypatch) -> None:
    for name in MODEL_FILES.values():
        (tmp_path / name).write_bytes(b"")
    built: list[FakeExecutor] = []

    def fake_build(backend, path, graph, device, num_threads):
        if graph == "predict_intonation":
            raise RuntimeError("corrupt graph")
        executor = FakeExecutor(graph)
        built.append(executor)
        return executor

    monkeypatch.setattr(runtime, "_build_executor", fake_build)
    entry = parse_style_entry({"id": 0, "models": MODEL_FILES}, tmp_path)
    with pytest.raises(ModelLoadError, match="corrupt graph"):
        load_session(entry, ModelKind.VARIANCE_PREDICTOR, "cpu")
    assert [e.graph for e in built] == ["predict_duration"]
    assert built[0].closed


def test_model_session_infer_wraps_errors() -> None:
    def boom(inputs):
        raise RuntimeError("kernel crashed")

    session = ModelSession(
        style_id=0, kind=ModelKind.WAVEFORM_DECODER, device="cpu", speaker_id=4,
        graphs={"decode": FakeExecutor("decode", boom)},
    )
    assert session.speaker_tensor().tolist() == [4]
    with pytest.raises(InferenceError, match="kernel crashed"):
        session.infer("decode", {})
    with pytest.raises(InferenceError, match="no graph"):
        session.infer("predict_duration", {})


def test_model_session_infer_requires_named_output() -> None:
    session = ModelSession(
        style_id=0, kind=ModelKind.WAVEFORM_DECODER, device="cpu", speaker_id=0,
        graphs={"decode": FakeExecutor("decode", lambda inputs: {"audio": np.zeros(1)})},
    )
    with pytest.raises(InferenceError, match="wave"):
        session.infer("decode", {})


def test_get_device_env_override(monkeypatch) -> None:
    monkeypatch.setenv("TORCH_DEVICE", "cpu")
    assert get_device() == "cpu"


def test_get_device_cuda_without_support_falls_back(monkeypatch) -> None:
    monkeypatch.setenv("TORCH_DEVICE", "cuda:1")
    monkeypatch.setattr(runtime.torch.cuda, "is_available", lambda: False)
    assert get_device() == "cpu"


def test_get_device_auto(monkeypatch) -> None:
    monkeypatch.delenv("TORCH_DEVICE", raising=False)
    monkeypatch.setattr(runtime.torch.cuda, "is_available", lambda: False)
    assert get_device() == "cpu"
