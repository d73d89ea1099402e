"""
lib — shared modules for the mora-synth engine and apps.

Modules
-------
linguistic — phoneme inventory, Mora / AccentPhrase / Utterance
features   — Feature Encoder: Utterance → FeatureTensor
variance   — Variance Predictor: durations + pitch, query annotation
prosody    — Prosody Transform: ProsodyParams, interrogative upspeak
decoder    — Waveform Decoder: frame expansion, vocoder call, padding trim
audio      — Audio Assembler: AudioBuffer, assemble, resample
runtime    — device selection, ONNX / TorchScript executors, ModelSession
styles     — styles.yaml registry (StyleRegistry, StyleEntry)
sessions   — Session Manager: per-style session cache, single-flight loads
engine     — SynthesisEngine: synthesize, queries, batches
labels     — full-context label adapter
config     — EngineConfig from environment / YAML
errors     — SynthesisError hierarchy

Import pattern (works from any app script):
    import sys
    from pathlib import Path
    _LIB = str(Path(__file__).resolve().parent.parent.parent / "lib")
    if _LIB not in sys.path:
        sys.path.insert(0, _LIB)

    from config import load_config
    from engine import SynthesisEngine
    from linguistic import AccentPhrase, Utterance
"""
