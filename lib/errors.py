"""
lib/errors.py — error kinds raised by the synthesis pipeline.

Every stage fails fast and lets the first error propagate to the caller of
``SynthesisEngine.synthesize``; nothing here is retried locally.

  SynthesisError     common base
  EncodingError      malformed / empty linguistic input (caller's fault)
  UnknownStyleError  no models registered for the requested style id
  ModelLoadError     weight file / backend problem while loading a session
  InferenceError     executor failure or malformed model output, per request
  EmptyInputError    the assembler was given nothing to assemble
"""


class SynthesisError(Exception):
    """Base class for every error surfaced by the engine."""


class EncodingError(SynthesisError, ValueError):
    pass


class UnknownStyleError(SynthesisError, KeyError):
    def __init__(self, style_id: int) -> None:
        super().__init__(style_id)
        self.style_id = style_id

    def __str__(self) -> str:
        return f"style {self.style_id} has no registered models"


class ModelLoadError(SynthesisError):
    pass


class InferenceError(SynthesisError):
    pass


class EmptyInputError(SynthesisError, ValueError):
    pass
