from __future__ import annotations

import logging
import threading
import time
import weakref
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

import torch
from PIL import Image

from .config import DEFAULT_MAX_WORKERS, MODEL_RESOLUTION
from .errors import ErrorKind, InvalidInputError, PipelineError
from .inference import InferenceEngine, infer
from .model import load_torchscript_engine
from .postprocess import decode
from .preprocess import ImageLike, encode, resize_to_square

logger = logging.getLogger(__name__)

Dispatch = Callable[[Callable[[], None]], None]


class Stage(str, Enum):
    IDLE = "idle"
    RESIZING = "resizing"
    ENCODING = "encoding"
    INFERRING = "inferring"
    DECODING = "decoding"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class StageTimings:
    resize_s: float = 0.0
    encode_s: float = 0.0
    inference_s: float = 0.0
    decode_s: float = 0.0
    total_s: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class InpaintResult:
    """
    Outcome of one invocation: either a full R x R RGBA image, or an error and no image.

    `stage` is COMPLETED on success; on failure it is FAILED and `failed_at` names the
    working stage that raised.
    """

    image: Optional[Image.Image] = None
    error: Optional[PipelineError] = None
    stage: Stage = Stage.IDLE
    failed_at: Optional[Stage] = None
    timings: StageTimings = field(default_factory=StageTimings)

    @property
    def ok(self) -> bool:
        return self.error is None and self.image is not None


def _call_inline(fn: Callable[[], None]) -> None:
    fn()


# One lock per engine object, shared by every pipeline built on it.
_HANDLE_LOCKS: "weakref.WeakKeyDictionary[Any, threading.Lock]" = weakref.WeakKeyDictionary()
_HANDLE_LOCKS_GUARD = threading.Lock()


def handle_lock(engine: InferenceEngine) -> threading.Lock:
    """
    Lock guarding calls into `engine`, created on first use.

    Raises TypeError for engines that cannot be weakly referenced.
    """
    with _HANDLE_LOCKS_GUARD:
        lock = _HANDLE_LOCKS.get(engine)
        if lock is None:
            lock = threading.Lock()
            _HANDLE_LOCKS[engine] = lock
        return lock


class InpaintingPipeline:
    """
    Orchestrates resize -> encode -> infer -> decode for one model handle.

    Work runs on a private thread pool; results are handed back through `dispatch`,
    which schedules a zero-argument function on the caller's execution context
    (e.g. `lambda fn: root.after(0, fn)` for Tk). The default runs it on the worker.

    Concurrent `run` calls are not rejected: each invocation owns its own buffers, and
    the only shared object is the read-only engine. `is_busy` is exposed for UI gating.
    Set `serialize_inference` for engines that are not re-entrant: calls are then
    serialized per engine, across every pipeline that shares it.
    """

    def __init__(
        self,
        engine: Optional[InferenceEngine] = None,
        resolution: int = MODEL_RESOLUTION,
        *,
        max_workers: int = DEFAULT_MAX_WORKERS,
        serialize_inference: bool = False,
        dispatch: Optional[Dispatch] = None,
    ):
        self.engine = engine
        self.resolution = int(resolution)
        self.error_message: Optional[str] = None
        self._dispatch = dispatch or _call_inline
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="inpaint")
        self.serialize_inference = bool(serialize_inference)
        self._own_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._in_flight = 0

    @classmethod
    def load(
        cls,
        model_path: str,
        resolution: int = MODEL_RESOLUTION,
        device: Optional[Union[str, torch.device]] = None,
        **kwargs,
    ) -> "InpaintingPipeline":
        """
        Load the model handle once and build a pipeline around it.

        A missing or unreadable artifact does not raise: the pipeline comes up without an
        engine, `error_message` says why, and every run fails with model_not_loaded.
        """
        engine: Optional[InferenceEngine] = None
        error: Optional[str] = None
        try:
            engine = load_torchscript_engine(model_path, resolution=resolution, device=device)
            logger.info("Loaded model %s (R=%d) on %s", model_path, resolution, engine.device)
        except (FileNotFoundError, RuntimeError) as e:
            error = f"Failed to load model: {e}"
            logger.error(error)
        pipeline = cls(engine, resolution, **kwargs)
        pipeline.error_message = error
        return pipeline

    @property
    def is_busy(self) -> bool:
        with self._state_lock:
            return self._in_flight > 0

    def _infer_lock(self) -> threading.Lock:
        try:
            return handle_lock(self.engine)
        except TypeError:
            logger.warning("Engine %r cannot be weakly referenced; serializing per pipeline", self.engine)
            return self._own_lock

    def _infer(self, x: torch.Tensor) -> torch.Tensor:
        if not self.serialize_inference or self.engine is None:
            return infer(self.engine, x)
        with self._infer_lock():
            return infer(self.engine, x)

    def process(self, image: Optional[ImageLike], mask: Optional[ImageLike], invert: bool = False) -> InpaintResult:
        """
        Deterministic, linear invocation on the calling thread:
          1) Resize image and mask to R x R
          2) Encode to (1,4,R,R)
          3) Inference
          4) Decode to RGBA

        Any stage error ends the invocation; no partial image is returned.
        """
        r = self.resolution
        t0 = time.perf_counter()
        marks: Dict[str, float] = {}
        stage = Stage.RESIZING
        try:
            logger.debug("Resizing inputs to %dx%d", r, r)
            t = time.perf_counter()
            if image is None or mask is None:
                raise InvalidInputError("Input image and mask are both required")
            resized_image = resize_to_square(image, r)
            resized_mask = resize_to_square(mask, r)
            marks["resize_s"] = time.perf_counter() - t

            stage = Stage.ENCODING
            logger.debug("Encoding input tensor (invert=%s)", invert)
            t = time.perf_counter()
            x = encode(resized_image, resized_mask, invert=invert)
            marks["encode_s"] = time.perf_counter() - t

            stage = Stage.INFERRING
            logger.debug("Running inference")
            t = time.perf_counter()
            y = self._infer(x)
            marks["inference_s"] = time.perf_counter() - t

            stage = Stage.DECODING
            logger.debug("Decoding output tensor")
            t = time.perf_counter()
            result_image = decode(y, r)
            marks["decode_s"] = time.perf_counter() - t
        except PipelineError as e:
            return self._failed(e, stage, marks, t0)
        except Exception as e:  # noqa: BLE001 - delivered as an internal failure, traceback logged
            logger.exception("Unexpected error while %s", stage.value)
            err = PipelineError(ErrorKind.INTERNAL, f"Unexpected error: {type(e).__name__}: {e}")
            err.__cause__ = e
            return self._failed(err, stage, marks, t0)

        timings = StageTimings(total_s=time.perf_counter() - t0, **marks)
        logger.info(
            "Inpainting completed: total=%.3fs (resize=%.3fs enc=%.3fs inf=%.3fs dec=%.3fs)",
            timings.total_s,
            timings.resize_s,
            timings.encode_s,
            timings.inference_s,
            timings.decode_s,
        )
        return InpaintResult(image=result_image, stage=Stage.COMPLETED, timings=timings)

    def _failed(self, error: PipelineError, stage: Stage, marks: Dict[str, float], t0: float) -> InpaintResult:
        logger.warning("Inpainting failed while %s [%s]: %s", stage.value, error.kind.value, error.message)
        return InpaintResult(
            error=error,
            stage=Stage.FAILED,
            failed_at=stage,
            timings=StageTimings(total_s=time.perf_counter() - t0, **marks),
        )

    def run(
        self,
        image: Optional[ImageLike],
        mask: Optional[ImageLike],
        invert: bool = False,
        callback: Optional[Callable[[InpaintResult], None]] = None,
    ) -> "Future[InpaintResult]":
        """
        Start an invocation off the calling thread.

        The returned future resolves exactly once, and `callback` (if any) is dispatched
        exactly once with the same result. There is no cancellation: a caller that no
        longer wants the result simply ignores it.
        """
        with self._state_lock:
            self._in_flight += 1
        self.error_message = None
        try:
            return self._executor.submit(self._execute, image, mask, invert, callback)
        except RuntimeError:
            with self._state_lock:
                self._in_flight -= 1
            raise

    def _execute(
        self,
        image: Optional[ImageLike],
        mask: Optional[ImageLike],
        invert: bool,
        callback: Optional[Callable[[InpaintResult], None]],
    ) -> InpaintResult:
        try:
            result = self.process(image, mask, invert)
        finally:
            with self._state_lock:
                self._in_flight -= 1
        if result.error is not None:
            self.error_message = result.error.message
        if callback is not None:
            self._dispatch(lambda: callback(result))
        return result

    def perform_inpainting(
        self,
        input_image: Optional[ImageLike],
        mask_image: Optional[ImageLike],
        invert_mask: bool = False,
        completion: Optional[Callable[[Optional[Image.Image]], None]] = None,
    ) -> "Future[InpaintResult]":
        """
        Editor-facing entry point: `completion` receives the result image, or None on failure
        (the reason is left in `error_message`).
        """
        callback = None
        if completion is not None:

            def callback(result: InpaintResult) -> None:
                completion(result.image)

        return self.run(input_image, mask_image, invert_mask, callback)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "InpaintingPipeline":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
