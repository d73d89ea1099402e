from pathlib import Path
import sys
import threading

import pytest


ROOT = Path(__file__).resolve().parents[1]
LIB = ROOT / "lib"
if str(LIB) not in sys.path:
    sys.path.insert(0, str(LIB))

from errors import ModelLoadError, UnknownStyleError  # noqa: E402
from runtime import ModelKind  # noqa: E402
from sessions import SessionManager  # noqa: E402

from fakes import FakeLoader, make_registry, make_sessions  # noqa: E402

VP = ModelKind.VARIANCE_PREDICTOR
WD = ModelKind.WAVEFORM_DECODER


def _acquire_concurrently(sessions: SessionManager, keys: list[tuple[int, ModelKind]]):
    barrier = threading.Barrier(len(keys))
    results: list = [None] * len(keys)
    errors: list[BaseException] = []

    def worker(i: int, key) -> None:
        barrier.wait()
        try:
            results[i] = sessions.acquire(*key)
        except BaseException as exc:  # surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i, k)) for i, k in enumerate(keys)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert not errors
    return results


def test_concurrent_acquire_loads_once() -> None:
    loader = FakeLoader(delay=0.1)
    sessions = make_sessions(loader)
    results = _acquire_concurrently(sessions, [(0, VP)] * 8)

    assert loader.loads[(0, VP)] == 1
    assert all(r is results[0] for r in results)
    assert sessions.borrower_count(0, VP) == 8
    for r in results:
        sessions.release(r)
    assert sessions.borrower_count(0, VP) == 0


def test_independent_keys_load_in_parallel() -> None:
    loader = FakeLoader(delay=0.3)
    sessions = make_sessions(loader)
    _acquire_concurrently(sessions, [(0, VP), (1, VP)])
    assert loader.max_in_flight == 2


def test_unknown_style_never_reaches_loader() -> None:
    loader = FakeLoader()
    sessions = make_sessions(loader)
    with pytest.raises(UnknownStyleError) as excinfo:
        sessions.acquire(999, VP)
    assert excinfo.value.style_id == 999
    assert "999" in str(excinfo.value)
    assert not loader.loads


def test_failed_load_leaves_no_entry_and_retries() -> None:
    loader = FakeLoader(fail_styles=(1,))
    sessions = make_sessions(loader)
    with pytest.raises(ModelLoadError):
        sessions.acquire(1, WD)
    assert not sessions.is_loaded(1, WD)

    loader.fail_styles.clear()
    session = sessions.acquire(1, WD)
    assert sessions.is_loaded(1, WD)
    assert loader.loads[(1, WD)] == 2
    sessions.release(session)


def test_unexpected_loader_error_becomes_model_load_error() -> None:
    def broken(entry, kind, device):
        raise OSError("disk gone")

    sessions = SessionManager(make_registry(), loader=broken, device="cpu")
    with pytest.raises(ModelLoadError, match="disk gone"):
        sessions.acquire(0, VP)


def test_release_without_acquire_raises() -> None:
    sessions = make_sessions()
    session = sessions.acquire(0, WD)
    sessions.release(session)
    with pytest.raises(RuntimeError, match="without a matching acquire"):
        sessions.release(session)


def test_shutdown_during_borrow_releases_quietly() -> None:
    loader = FakeLoader()
    sessions = make_sessions(loader)
    with sessions.borrow(0, WD) as session:
        sessions.shutdown()
        assert sessions.loaded_keys() == []
    assert session.graphs == {}
    assert sessions.borrower_count(0, WD) == 0


def test_release_after_shutdown_keeps_reloaded_count() -> None:
    loader = FakeLoader()
    sessions = make_sessions(loader)
    old = sessions.acquire(0, WD)
    sessions.shutdown()
    fresh = sessions.acquire(0, WD)
    assert fresh is not old
    assert loader.loads[(0, WD)] == 2

    sessions.release(old)
    assert sessions.borrower_count(0, WD) == 1
    sessions.release(fresh)
    assert sessions.borrower_count(0, WD) == 0


def test_borrow_releases_on_error() -> None:
    sessions = make_sessions()
    with pytest.raises(ValueError):
        with sessions.borrow(0, VP):
            raise ValueError("stage failed")
    assert sessions.borrower_count(0, VP) == 0
    assert sessions.is_loaded(0, VP)


def test_preload_loads_every_kind() -> None:
    loader = FakeLoader()
    sessions = make_sessions(loader)
    sessions.preload()
    assert sessions.loaded_keys() == [(0, VP), (0, WD), (1, VP), (1, WD)]
    assert sessions.borrower_count(0, VP) == 0

    sessions.preload([0])
    assert loader.loads[(0, VP)] == 1


def test_unload_skips_borrowed_sessions() -> None:
    loader = FakeLoader()
    sessions = make_sessions(loader)
    sessions.preload([0])
    busy = sessions.acquire(0, VP)
    busy_graphs = list(busy.graphs.values())

    assert sessions.unload(0) == [WD]
    assert sessions.is_loaded(0, VP)
    assert not any(g.closed for g in busy_graphs)

    sessions.release(busy)
    assert sessions.unload(0) == [VP]
    assert all(g.closed for g in busy_graphs)
    assert sessions.loaded_keys() == []
    assert sessions.unload(0) == []


def test_unload_then_acquire_reloads() -> None:
    loader = FakeLoader()
    sessions = make_sessions(loader)
    sessions.preload([1])
    sessions.unload(1)
    with sessions.borrow(1, WD):
        pass
    assert loader.loads[(1, WD)] == 2


def test_shutdown_closes_everything() -> None:
    loader = FakeLoader()
    sessions = make_sessions(loader)
    sessions.preload()
    executors = [g for s in loader.sessions for g in s.graphs.values()]
    sessions.shutdown()
    assert sessions.loaded_keys() == []
    assert all(g.closed for g in executors)
