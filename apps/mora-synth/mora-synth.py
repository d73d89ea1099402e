#!/usr/bin/env python3
"""
mora-synth.py — command-line front end for the mora synthesis engine.

Sub-commands:
  speak        Synthesise an utterance (JSON or full-context labels) to WAV
  query        Predict lengths / pitch and write an editable query JSON
  list-styles  List styles registered in <models-dir>/styles.yaml
  preload      Load model sessions up front and report load times

Usage:
  apps/mora-synth/mora-synth.py list-styles --models-dir /models
  apps/mora-synth/mora-synth.py speak --style 0 --utterance /work/hello.json --out /work/hello.wav
  apps/mora-synth/mora-synth.py speak --style 0 --labels /work/hello.lab --speed 1.2 --pitch 0.1
  apps/mora-synth/mora-synth.py query --style 0 --labels /work/hello.lab --out /work/hello.query.json
  apps/mora-synth/mora-synth.py speak --style 0 --query /work/hello.query.json --out /work/hello.wav
  apps/mora-synth/mora-synth.py preload --style 0 --style 1

Utterance JSON::

    {"accent_phrases": [
        {"moras": [{"consonant": "k", "vowel": "o"}, {"vowel": "N"}, ...],
         "accent": 0, "pause_mora": null, "is_interrogative": false}
    ]}

Engine settings come from the environment (MORA_SYNTH_MODELS, TORCH_DEVICE,
MORA_SYNTH_THREADS, MORA_SYNTH_PRELOAD, MORA_SYNTH_WORKERS), then --config,
then the explicit flags below.
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

# ── shared lib ─────────────────────────────────────────────────────────────────
_LIB = str(Path(__file__).resolve().parent.parent.parent / "lib")
if _LIB not in sys.path:
    sys.path.insert(0, _LIB)

from config import EngineConfig, load_config  # noqa: E402  (import after path setup)
from engine import SynthesisEngine  # noqa: E402
from errors import SynthesisError  # noqa: E402
from labels import utterance_from_labels  # noqa: E402
from linguistic import Utterance  # noqa: E402
from prosody import ProsodyParams  # noqa: E402
from runtime import ModelKind  # noqa: E402
from styles import MANIFEST_NAME, StyleRegistry  # noqa: E402

# CLI default silence around each utterance (seconds); the library default is 0.
DEFAULT_PAUSE = 0.1


class Timer:
    """Context manager that prints elapsed time on exit."""

    def __init__(self, label: str) -> None:
        self._label  = label
        self.elapsed = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, *_) -> None:
        self.elapsed = time.perf_counter() - self._start
        print(f"    ↳ {self._label}: {self.elapsed:.2f}s")


def _fail(message: str) -> None:
    print(f"ERROR: {message}", file=sys.stderr)
    sys.exit(1)


def resolve_config(args) -> EngineConfig:
    try:
        return load_config(
            Path(args.config) if args.config else None,
            models_dir=args.models_dir,
            device=args.device,
            num_threads=args.threads,
        )
    except ValueError as exc:
        _fail(str(exc))


def build_engine(args) -> SynthesisEngine:
    return SynthesisEngine.from_config(resolve_config(args))


def read_utterance(args) -> Utterance:
    """Load the utterance named by --utterance / --query / --labels."""
    if args.labels:
        path = Path(args.labels)
        lines = path.read_text(encoding="utf-8").splitlines()
        return utterance_from_labels(lines)

    path = Path(args.query or args.utterance)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        _fail(f"Invalid JSON in {path}: {exc}")
    if not isinstance(data, dict):
        _fail(f"{path}: expected an object with 'accent_phrases'")
    try:
        return Utterance.from_dict(data)
    except (KeyError, TypeError, ValueError) as exc:
        _fail(f"{path}: malformed utterance: {exc}")


def prosody_from_args(args) -> ProsodyParams:
    try:
        return ProsodyParams(
            speed_scale=args.speed,
            pitch_scale=args.pitch,
            intonation_scale=args.intonation,
            volume_scale=args.volume,
            pre_pause=args.pre_pause,
            post_pause=args.post_pause,
            enable_interrogative_upspeak=not args.no_upspeak,
            output_sampling_rate=args.sample_rate,
        )
    except ValueError as exc:
        _fail(str(exc))


# ── commands ───────────────────────────────────────────────────────────────────

def cmd_speak(args) -> None:
    utterance = read_utterance(args)
    params = prosody_from_args(args)
    out = Path(args.out)

    with build_engine(args) as engine:
        print(f"\n  style: {args.style}  phrases: {len(utterance)}  device: {engine.sessions.device}")
        with Timer("synthesis"):
            if args.query:
                buffer = engine.synthesize_query(utterance, args.style, params)
            else:
                buffer = engine.synthesize(utterance, args.style, params)
    buffer.write(out)

    if args.json:
        payload = {
            "style_id": args.style,
            "path": str(out),
            "sample_rate": buffer.sample_rate,
            "samples": len(buffer),
            "duration_sec": round(buffer.duration, 3),
            "params": params.to_dict(),
        }
        json.dump(payload, sys.stdout, indent=2)
        print()
        return
    print(f"  ✓  {out}  ({buffer.duration:.2f}s, {buffer.sample_rate} Hz)")


def cmd_query(args) -> None:
    utterance = read_utterance(args)
    with build_engine(args) as engine:
        with Timer("prediction"):
            query = engine.create_query(utterance, args.style)

    payload = json.dumps(query.to_dict(), indent=2, ensure_ascii=False) + "\n"
    if args.out == "-":
        sys.stdout.write(payload)
        return
    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(payload, encoding="utf-8")
    print(f"  ✓  {out}  ({len(query.flatten_moras())} morae)")


def cmd_list_styles(args) -> None:
    config = resolve_config(args)
    try:
        styles = StyleRegistry.load(config.models_dir).list_styles()
    except ValueError as exc:
        _fail(str(exc))

    if args.json:
        json.dump({"total": len(styles), "styles": styles}, sys.stdout, indent=2)
        print()
        return

    if not styles:
        print("No styles registered.")
        print(f"  Add entries to {config.models_dir / MANIFEST_NAME}")
        return

    print(f"\n\033[1mSTYLES\033[0m  ({len(styles)})")
    print(f"  {'ID':>4}  {'NAME':<24}  {'SPEAKER':>7}  {'BACKEND':<12}  STATUS")
    print("  " + "-" * 64)
    for s in styles:
        status = "\033[32mready\033[0m" if s["_ready"] else "\033[31mmissing weights\033[0m"
        print(f"  {s['id']:>4}  {s['name']:<24}  {s['speaker_id']:>7}  {s['backend']:<12}  {status}")


def cmd_preload(args) -> None:
    with build_engine(args) as engine:
        sessions = engine.sessions
        style_ids = args.style or sessions.registry.style_ids()
        if not style_ids:
            print("No styles registered; nothing to load.")
            return
        print(f"\n  device: {sessions.device}")
        for style_id in style_ids:
            for kind in ModelKind:
                with Timer(f"style {style_id} {kind.value}"):
                    sessions.release(sessions.acquire(style_id, kind))
        loaded = sessions.loaded_keys()
    print(f"\n{len(loaded)} session(s) loaded for {len(style_ids)} style(s)")


# ── parser ─────────────────────────────────────────────────────────────────────

def _add_engine(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default=None, help="Engine YAML config file")
    p.add_argument("--models-dir", default=None,
                   help="Directory holding styles.yaml (default: $MORA_SYNTH_MODELS or ./models)")
    p.add_argument("--device", default=None,
                   help="Compute device, e.g. cpu or cuda:0 (default: $TORCH_DEVICE or auto)")
    p.add_argument("--threads", type=int, default=None,
                   help="Intra-op threads per session (default: runtime default)")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")


def _add_input(p: argparse.ArgumentParser, *, allow_query: bool) -> None:
    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("--utterance", help="Utterance JSON file")
    src.add_argument("--labels", help="Full-context label file (one label per line)")
    if allow_query:
        src.add_argument("--query", help="Annotated query JSON from 'mora-synth query'")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="mora-synth — accent-phrase speech synthesis from ONNX / TorchScript models",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    sub = ap.add_subparsers(dest="command", required=True)

    # ── speak ──────────────────────────────────────────────────────────────────
    sp = sub.add_parser("speak", help="Synthesise an utterance to WAV",
                        formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    _add_input(sp, allow_query=True)
    sp.add_argument("--style", type=int, required=True, help="Style id")
    sp.add_argument("--out", default="out.wav", help="Output WAV path")
    sp.add_argument("--speed", type=float, default=1.0, help="Speaking-rate multiplier")
    sp.add_argument("--pitch", type=float, default=0.0,
                    help="Pitch shift in octaves (log-f0 × 2**pitch)")
    sp.add_argument("--intonation", type=float, default=1.0,
                    help="Pitch-range multiplier around the mean (0 = monotone)")
    sp.add_argument("--volume", type=float, default=1.0, help="Output gain")
    sp.add_argument("--pre-pause", type=float, default=DEFAULT_PAUSE, help="Leading silence (s)")
    sp.add_argument("--post-pause", type=float, default=DEFAULT_PAUSE, help="Trailing silence (s)")
    sp.add_argument("--sample-rate", type=int, default=None,
                    help="Resample output to this rate (default: native 24000)")
    sp.add_argument("--no-upspeak", action="store_true",
                    help="Disable the rising final mora on interrogative phrases")
    sp.add_argument("--json", action="store_true", help="Emit machine-readable result")
    _add_engine(sp)

    # ── query ──────────────────────────────────────────────────────────────────
    qp = sub.add_parser("query", help="Write predicted lengths / pitch as editable JSON",
                        formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    _add_input(qp, allow_query=False)
    qp.add_argument("--style", type=int, required=True, help="Style id")
    qp.add_argument("--out", default="-", help="Output JSON path ('-' = stdout)")
    _add_engine(qp)

    # ── list-styles ────────────────────────────────────────────────────────────
    ls = sub.add_parser("list-styles", help="List registered styles",
                        formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    ls.add_argument("--json", action="store_true", help="Emit machine-readable JSON")
    _add_engine(ls)

    # ── preload ────────────────────────────────────────────────────────────────
    pl = sub.add_parser("preload", help="Load model sessions and report timings",
                        formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    pl.add_argument("--style", type=int, action="append", default=None,
                    help="Style id to load (repeatable; default: all registered)")
    _add_engine(pl)

    return ap


# ── entry point ────────────────────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> None:
    ap   = build_parser()
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        match args.command:
            case "speak":
                cmd_speak(args)
            case "query":
                cmd_query(args)
            case "list-styles":
                cmd_list_styles(args)
            case "preload":
                cmd_preload(args)
            case _:
                ap.print_help()
                sys.exit(1)
    except SynthesisError as exc:
        _fail(str(exc))
    except FileNotFoundError as exc:
        _fail(f"File not found: {exc.filename}")
    except ValueError as exc:
        # malformed styles.yaml surfaces while building the engine
        _fail(str(exc))


if __name__ == "__main__":
    main()
