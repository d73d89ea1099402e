from pathlib import Path
import sys

import pytest


ROOT = Path(__file__).resolve().parents[1]
LIB = ROOT / "lib"
if str(LIB) not in sys.path:
    sys.path.insert(0, str(LIB))

from config import EngineConfig, load_config  # noqa: E402

_ENV = ("MORA_SYNTH_MODELS", "TORCH_DEVICE", "MORA_SYNTH_THREADS", "MORA_SYNTH_PRELOAD", "MORA_SYNTH_WORKERS")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    cfg = load_config()
    assert cfg == EngineConfig()
    assert cfg.models_dir == Path("models")
    assert cfg.device is None
    assert cfg.max_workers == 2


def test_from_env(monkeypatch) -> None:
    monkeypatch.setenv("MORA_SYNTH_MODELS", "/srv/models")
    monkeypatch.setenv("TORCH_DEVICE", "cuda:0")
    monkeypatch.setenv("MORA_SYNTH_THREADS", "4")
    monkeypatch.setenv("MORA_SYNTH_PRELOAD", "yes")
    monkeypatch.setenv("MORA_SYNTH_WORKERS", "6")
    cfg = EngineConfig.from_env()
    assert cfg.models_dir == Path("/srv/models")
    assert cfg.device == "cuda:0"
    assert cfg.num_threads == 4
    assert cfg.preload is True
    assert cfg.max_workers == 6


def test_invalid_env_values(monkeypatch) -> None:
    monkeypatch.setenv("MORA_SYNTH_PRELOAD", "maybe")
    with pytest.raises(ValueError, match="MORA_SYNTH_PRELOAD"):
        EngineConfig.from_env()
    monkeypatch.setenv("MORA_SYNTH_PRELOAD", "0")
    monkeypatch.setenv("MORA_SYNTH_THREADS", "four")
    with pytest.raises(ValueError, match="MORA_SYNTH_THREADS"):
        EngineConfig.from_env()


def test_yaml_overrides_env_and_kwargs_override_yaml(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("MORA_SYNTH_WORKERS", "5")
    monkeypatch.setenv("MORA_SYNTH_THREADS", "3")
    path = tmp_path / "engine.yaml"
    path.write_text("models_dir: /opt/voices\nmax_workers: 8\npreload: true\n", encoding="utf-8")

    cfg = load_config(path, max_workers=1, device=None)
    assert cfg.models_dir == Path("/opt/voices")
    assert cfg.preload is True
    assert cfg.num_threads == 3
    assert cfg.max_workers == 1


def test_yaml_errors(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="File not found"):
        load_config(tmp_path / "missing.yaml")

    bad = tmp_path / "bad.yaml"
    bad.write_text("models_dir: [unterminated\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Invalid YAML"):
        load_config(bad)

    listing = tmp_path / "list.yaml"
    listing.write_text("- models_dir\n", encoding="utf-8")
    with pytest.raises(ValueError, match="mapping"):
        load_config(listing)


def test_unknown_key_rejected(tmp_path: Path) -> None:
    path = tmp_path / "engine.yaml"
    path.write_text("model_dir: /typo\n", encoding="utf-8")
    with pytest.raises(ValueError, match="model_dir"):
        load_config(path)


@pytest.mark.parametrize("kwargs", [{"num_threads": -1}, {"max_workers": 0}])
def test_engine_config_validation(kwargs) -> None:
    with pytest.raises(ValueError):
        EngineConfig(**kwargs)
