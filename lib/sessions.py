"""
lib/sessions.py — Session Manager: owns loaded model sessions per style.

Sessions are keyed by ``(style_id, ModelKind)``.  Loading is lazy (or eager
via ``preload``) and mutually exclusive per key: a second worker asking for a
key that is being loaded blocks on that key's lock and then reuses the
result.  Independent keys load in parallel.  Inference on a loaded session is
shared between workers; the manager only tracks how many borrowers hold it so
``unload`` never closes a session that is in use.

Usage::

    sessions = SessionManager(StyleRegistry.load(models_dir))
    with sessions.borrow(style_id, ModelKind.WAVEFORM_DECODER) as session:
        outputs = session.infer("decode", inputs)
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator

from errors import ModelLoadError
from runtime import ModelKind, ModelSession, get_device, load_session
from styles import StyleEntry, StyleRegistry

logger = logging.getLogger(__name__)

SessionKey = tuple[int, ModelKind]
Loader = Callable[[StyleEntry, ModelKind, str], ModelSession]


class SessionManager:
    def __init__(
        self,
        registry: StyleRegistry,
        loader: Loader | None = None,
        device: str | None = None,
        num_threads: int = 0,
    ) -> None:
        self.registry = registry
        self.device = device or get_device()
        self._num_threads = num_threads
        self._loader = loader or self._default_loader

        self._lock = threading.Lock()                      # guards the dicts below
        self._sessions: dict[SessionKey, ModelSession] = {}
        self._borrowers: dict[SessionKey, int] = {}
        self._key_locks: dict[SessionKey, threading.Lock] = {}

    def _default_loader(self, entry: StyleEntry, kind: ModelKind, device: str) -> ModelSession:
        return load_session(entry, kind, device, num_threads=self._num_threads)

    def _key_lock(self, key: SessionKey) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def _borrow_loaded(self, key: SessionKey) -> ModelSession | None:
        with self._lock:
            session = self._sessions.get(key)
            if session is not None:
                self._borrowers[key] = self._borrowers.get(key, 0) + 1
            return session

    # ── acquire / release ──────────────────────────────────────────────────────

    def acquire(self, style_id: int, kind: ModelKind) -> ModelSession:
        """
        Borrow the session for ``(style_id, kind)``, loading it if needed.

        Raises ``UnknownStyleError`` for unregistered styles and
        ``ModelLoadError`` when loading fails.  A failed load leaves no trace;
        the next request tries again.  Every successful call must be paired
        with ``release``.
        """
        entry = self.registry.get(style_id)
        key = (style_id, kind)

        session = self._borrow_loaded(key)
        if session is not None:
            return session

        with self._key_lock(key):
            # another worker may have finished the load while we waited
            session = self._borrow_loaded(key)
            if session is not None:
                return session

            logger.debug("loading %s for style %d on %s", kind.value, style_id, self.device)
            try:
                loaded = self._loader(entry, kind, self.device)
            except ModelLoadError:
                logger.error("could not load %s for style %d", kind.value, style_id)
                raise
            except Exception as exc:
                raise ModelLoadError(
                    f"style {style_id}: loading {kind.value} failed: {exc}"
                ) from exc

            with self._lock:
                self._sessions[key] = loaded
                self._borrowers[key] = self._borrowers.get(key, 0) + 1
            return loaded

    def release(self, session: ModelSession) -> None:
        key = (session.style_id, session.kind)
        with self._lock:
            if self._sessions.get(key) is not session:
                # dropped by shutdown while borrowed; nothing left to count
                logger.debug(
                    "release of closed %s session for style %d",
                    session.kind.value, session.style_id,
                )
                return
            count = self._borrowers.get(key, 0)
            if count <= 0:
                raise RuntimeError(
                    f"release of {session.kind.value} for style {session.style_id} "
                    "without a matching acquire"
                )
            self._borrowers[key] = count - 1

    @contextmanager
    def borrow(self, style_id: int, kind: ModelKind) -> Iterator[ModelSession]:
        session = self.acquire(style_id, kind)
        try:
            yield session
        finally:
            self.release(session)

    # ── lifecycle ──────────────────────────────────────────────────────────────

    def preload(self, style_ids: Iterable[int] | None = None) -> None:
        """Eagerly load every kind for *style_ids* (default: all registered)."""
        ids = list(style_ids) if style_ids is not None else self.registry.style_ids()
        for style_id in ids:
            for kind in ModelKind:
                self.release(self.acquire(style_id, kind))

    def unload(self, style_id: int) -> list[ModelKind]:
        """
        Close the sessions of *style_id* that no borrower currently holds.

        Returns the kinds actually unloaded; sessions in use stay loaded and
        can be unloaded by a later call.
        """
        unloaded: list[ModelKind] = []
        for kind in ModelKind:
            key = (style_id, kind)
            with self._key_lock(key):
                with self._lock:
                    session = self._sessions.get(key)
                    if session is None:
                        continue
                    if self._borrowers.get(key, 0) > 0:
                        logger.warning(
                            "not unloading %s for style %d: %d borrower(s) active",
                            kind.value, style_id, self._borrowers[key],
                        )
                        continue
                    del self._sessions[key]
                    self._borrowers.pop(key, None)
                session.close()
                unloaded.append(kind)
                logger.info("unloaded %s for style %d", kind.value, style_id)
        return unloaded

    def shutdown(self) -> None:
        """Close every session regardless of borrowers."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._borrowers.clear()
        for session in sessions:
            session.close()

    # ── introspection ──────────────────────────────────────────────────────────

    def is_loaded(self, style_id: int, kind: ModelKind) -> bool:
        with self._lock:
            return (style_id, kind) in self._sessions

    def loaded_keys(self) -> list[SessionKey]:
        with self._lock:
            return sorted(self._sessions, key=lambda k: (k[0], k[1].value))

    def borrower_count(self, style_id: int, kind: ModelKind) -> int:
        with self._lock:
            return self._borrowers.get((style_id, kind), 0)
