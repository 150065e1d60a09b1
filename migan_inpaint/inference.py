from __future__ import annotations

from typing import Any, Callable, Optional, Protocol, Tuple, Union

import numpy as np
import torch

from .config import INPUT_CHANNELS, INPUT_NAME, OUTPUT_NAME
from .errors import ErrorKind, InferError


class InferenceEngine(Protocol):
    """
    Opaque, read-only model handle: a pure function from input tensor to output tensor.

    `input_shape` is the tensor shape the artifact was exported with, e.g. (1, 4, 512, 512).
    Implementations must be safe to call from several threads unless the orchestrator is
    configured to serialize calls.
    """

    input_shape: Tuple[int, ...]

    def __call__(self, x: torch.Tensor) -> torch.Tensor: ...


def _extract_primary_output(y):
    """
    Traced generators may return:
      - a single tensor
      - (tensor, ...) tuple/list (final image is typically first)
      - dict keyed by output name
    """
    if isinstance(y, torch.Tensor):
        return y
    if isinstance(y, dict):
        v = y.get(OUTPUT_NAME, None)
        if isinstance(v, torch.Tensor):
            return v
        for v in y.values():
            if isinstance(v, torch.Tensor):
                return v
        return next(iter(y.values()), None)
    if isinstance(y, (list, tuple)) and len(y) > 0:
        for item in y:
            if isinstance(item, torch.Tensor):
                return item
        return y[0]
    return y


def _check_shape(x: torch.Tensor, expected: Tuple[int, ...]) -> None:
    shape = tuple(x.shape)
    if x.ndim != 4 or shape[0] != 1 or shape[1] != INPUT_CHANNELS:
        raise InferError(ErrorKind.SHAPE_MISMATCH, f"Expected {INPUT_NAME} of shape (1,{INPUT_CHANNELS},R,R), got {shape}")
    if expected and shape != tuple(expected):
        raise InferError(ErrorKind.SHAPE_MISMATCH, f"Model expects {INPUT_NAME} of shape {tuple(expected)}, got {shape}")


class TorchScriptEngine:
    """Production adapter over a TorchScript module traced from the MI-GAN generator."""

    def __init__(self, module: torch.nn.Module, resolution: int, device: Optional[torch.device] = None):
        self.module = module
        self.resolution = int(resolution)
        self.device = device or torch.device("cpu")
        self.input_shape = (1, INPUT_CHANNELS, self.resolution, self.resolution)

    def __call__(self, x: torch.Tensor) -> torch.Tensor:
        _check_shape(x, self.input_shape)
        if x.dtype != torch.float32:
            x = x.float()
        with torch.no_grad():
            y = self.module(x.to(self.device))
        y = _extract_primary_output(y)
        if not isinstance(y, torch.Tensor):
            raise RuntimeError(f"Model output is not a tensor: {type(y)}")
        return y.detach().to("cpu")


class StaticEngine:
    """
    Deterministic adapter for tests and dry runs.

    Returns `output` for every call, or `fn(x)` when a function is given instead.
    """

    def __init__(
        self,
        output: Union[torch.Tensor, np.ndarray, None] = None,
        *,
        fn: Optional[Callable[[torch.Tensor], Any]] = None,
        resolution: Optional[int] = None,
    ):
        if (output is None) == (fn is None):
            raise ValueError("StaticEngine needs exactly one of `output` or `fn`.")
        self.output = output
        self.fn = fn
        self.input_shape: Tuple[int, ...] = (
            (1, INPUT_CHANNELS, int(resolution), int(resolution)) if resolution is not None else ()
        )
        self.calls = 0

    def __call__(self, x: torch.Tensor) -> Any:
        self.calls += 1
        if self.fn is not None:
            return self.fn(x)
        return self.output


def infer(engine: Optional[InferenceEngine], x: torch.Tensor) -> torch.Tensor:
    """
    Run one blocking forward pass.

    No retry and no timeout: whatever the engine reports is surfaced as InferError.
    """
    if engine is None or not callable(engine):
        raise InferError(ErrorKind.MODEL_NOT_LOADED, "Model not loaded")
    if not isinstance(x, torch.Tensor):
        raise InferError(ErrorKind.SHAPE_MISMATCH, f"Expected a torch.Tensor input, got {type(x).__name__}")
    _check_shape(x, tuple(getattr(engine, "input_shape", ()) or ()))

    try:
        return engine(x)
    except InferError:
        raise
    except Exception as e:  # noqa: BLE001 - engine failures are opaque; surface them as one kind
        raise InferError(ErrorKind.ENGINE_FAILURE, f"Inference failed: {type(e).__name__}: {e}") from e
