from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    ALLOCATION_FAILED = "allocation_failed"
    MISSING_PIXEL_DATA = "missing_pixel_data"
    MODEL_NOT_LOADED = "model_not_loaded"
    SHAPE_MISMATCH = "shape_mismatch"
    ENGINE_FAILURE = "engine_failure"
    BUFFER_UNAVAILABLE = "buffer_unavailable"
    INTERNAL = "internal"


class PipelineError(RuntimeError):
    """
    Terminal failure of one inpainting invocation.

    Carries a machine-checkable `kind` plus a human-readable `message`.
    Subclasses pin the stage that produced the error.
    """

    stage = "pipeline"

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class InvalidInputError(PipelineError):
    stage = "input"

    def __init__(self, message: str = "Failed to resize images"):
        super().__init__(ErrorKind.INVALID_INPUT, message)


class EncodeError(PipelineError):
    stage = "encode"


class InferError(PipelineError):
    stage = "infer"


class DecodeError(PipelineError):
    stage = "decode"
