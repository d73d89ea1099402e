"""
lib/engine.py — public synthesis entry point.

Pipeline per request (runs start-to-finish on the calling thread):

    Utterance ─ encode ─▶ FeatureTensor ─ predict ─▶ VarianceOutput
        (interrogative upspeak: annotate → append morae → re-encode)
    ─ transform(ProsodyParams) ─▶ VarianceOutput ─ decode ─▶ float samples
    ─ assemble(volume) ─▶ AudioBuffer

Provides:
  SynthesisRequest — (utterance, style_id, params) bundle for batches
  SynthesisEngine  — synthesize / create_query / synthesize_query /
                     synthesize_many / synthesize_batch

``synthesize`` is synchronous, all-or-nothing and safe to call from many
threads at once; the session map is the only state shared between calls.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import numpy as np

from audio import AudioBuffer, assemble
from config import DEFAULT_MAX_WORKERS, EngineConfig
from decoder import WaveformDecoder
from errors import EncodingError
from features import FeatureTensor, encode
from linguistic import StyleId, Utterance
from prosody import ProsodyParams, apply_interrogative_upspeak, transform
from sessions import Loader, SessionManager
from styles import StyleRegistry
from variance import VarianceOutput, VariancePredictor, annotate, variance_from_utterance

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class SynthesisRequest:
    utterance: Utterance
    style_id: StyleId
    params: ProsodyParams = field(default_factory=ProsodyParams)


class SynthesisEngine:
    def __init__(self, sessions: SessionManager, max_workers: int = DEFAULT_MAX_WORKERS) -> None:
        self.sessions = sessions
        self.predictor = VariancePredictor(sessions)
        self.decoder = WaveformDecoder(sessions)
        self.max_workers = max_workers

    @classmethod
    def from_config(cls, config: EngineConfig, loader: Loader | None = None) -> "SynthesisEngine":
        """
        Build registry + session manager from *config*; loads every style
        up front when ``config.preload`` is set.
        """
        registry = StyleRegistry.load(config.models_dir)
        sessions = SessionManager(
            registry,
            loader=loader,
            device=config.device,
            num_threads=config.num_threads,
        )
        logger.info(
            "engine: %d style(s) from %s on %s",
            len(registry), config.models_dir, sessions.device,
        )
        if config.preload:
            sessions.preload()
        return cls(sessions, max_workers=config.max_workers)

    @property
    def sample_rate(self) -> int:
        return self.decoder.sample_rate

    # ── pipeline stages ────────────────────────────────────────────────────────

    def _predict(self, utterance: Utterance, style_id: StyleId) -> tuple[FeatureTensor, VarianceOutput]:
        features = encode(utterance, style_id)
        return features, self.predictor.predict(features, style_id)

    def _render(
        self,
        features: FeatureTensor,
        variance: VarianceOutput,
        style_id: StyleId,
        params: ProsodyParams,
    ) -> np.ndarray:
        shaped = transform(variance, params, features)
        return self.decoder.decode(features, shaped, style_id)

    def _segment(self, utterance: Utterance, style_id: StyleId, params: ProsodyParams) -> np.ndarray:
        features, variance = self._predict(utterance, style_id)
        if params.enable_interrogative_upspeak and any(
            p.is_interrogative for p in utterance.accent_phrases
        ):
            query = apply_interrogative_upspeak(annotate(utterance, features, variance))
            features = encode(query, style_id)
            variance = variance_from_utterance(features, query)
        return self._render(features, variance, style_id, params)

    def _query_segment(self, query: Utterance, style_id: StyleId, params: ProsodyParams) -> np.ndarray:
        if not query.is_annotated:
            raise EncodingError("query morae are missing lengths; run create_query first")
        if params.enable_interrogative_upspeak:
            query = apply_interrogative_upspeak(query)
        features = encode(query, style_id)
        return self._render(features, variance_from_utterance(features, query), style_id, params)

    def _assemble(self, segments: Sequence[np.ndarray], params: ProsodyParams) -> AudioBuffer:
        return assemble(
            segments,
            volume_scale=params.volume_scale,
            sample_rate=self.sample_rate,
            output_sampling_rate=params.output_sampling_rate,
        )

    # ── public API ─────────────────────────────────────────────────────────────

    def synthesize(
        self,
        utterance: Utterance,
        style_id: StyleId,
        params: ProsodyParams | None = None,
    ) -> AudioBuffer:
        """
        Synthesize one utterance.  Raises a ``SynthesisError`` subclass on
        failure; no partial buffer is ever returned.
        """
        params = params or ProsodyParams()
        t0 = time.perf_counter()
        buffer = self._assemble([self._segment(utterance, style_id, params)], params)
        logger.info(
            "style %d: synthesized %.2fs of audio in %.2fs",
            style_id, buffer.duration, time.perf_counter() - t0,
        )
        return buffer

    def create_query(self, utterance: Utterance, style_id: StyleId) -> Utterance:
        """
        Predict lengths and pitch and return them written onto a copy of
        *utterance*, ready for editing and ``synthesize_query``.
        """
        features, variance = self._predict(utterance, style_id)
        return annotate(utterance, features, variance)

    def synthesize_query(
        self,
        query: Utterance,
        style_id: StyleId,
        params: ProsodyParams | None = None,
    ) -> AudioBuffer:
        """Synthesize from an annotated utterance without re-predicting."""
        params = params or ProsodyParams()
        return self._assemble([self._query_segment(query, style_id, params)], params)

    def synthesize_many(
        self,
        utterances: Iterable[Utterance],
        style_id: StyleId,
        params: ProsodyParams | None = None,
    ) -> AudioBuffer:
        """
        Synthesize several utterances as one buffer, segments joined in
        order.  Raises ``EmptyInputError`` when *utterances* is empty.
        """
        params = params or ProsodyParams()
        segments = [self._segment(u, style_id, params) for u in utterances]
        return self._assemble(segments, params)

    def synthesize_batch(
        self,
        requests: Sequence[SynthesisRequest],
        max_workers: int | None = None,
    ) -> list[AudioBuffer]:
        """
        Run independent requests on a thread pool; results keep request
        order.  The first failing request's error is raised.
        """
        workers = max(1, min(max_workers or self.max_workers, len(requests) or 1))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="synth") as pool:
            return list(pool.map(
                lambda r: self.synthesize(r.utterance, r.style_id, r.params), requests,
            ))

    def close(self) -> None:
        self.sessions.shutdown()

    def __enter__(self) -> "SynthesisEngine":
        return self

    def __exit__(self, *_) -> None:
        self.close()
