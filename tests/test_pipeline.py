from __future__ import annotations

import queue
import threading
import time
from pathlib import Path

import numpy as np
import torch
from PIL import Image

from migan_inpaint import pipeline as pipeline_mod
from migan_inpaint.errors import ErrorKind
from migan_inpaint.inference import StaticEngine
from migan_inpaint.pipeline import InpaintingPipeline, Stage

R = 32


def _solid(rgb, size=(48, 40)) -> Image.Image:
    return Image.new("RGB", size, rgb)


def _white_mask(size=(48, 40)) -> Image.Image:
    return Image.new("L", size, 255)


def _masked_image_engine(**kwargs) -> StaticEngine:
    # Returns the image channels of the input: with a white mask that is the normalized image.
    return StaticEngine(fn=lambda x: x[:, 1:4].clone(), **kwargs)


def test_process_white_mask_reproduces_image():
    with InpaintingPipeline(_masked_image_engine(resolution=R), resolution=R) as p:
        result = p.process(_solid((200, 40, 7)), _white_mask())

    assert result.ok
    assert result.stage == Stage.COMPLETED
    assert result.failed_at is None
    assert result.image.mode == "RGBA"
    assert result.image.size == (R, R)
    px = np.asarray(result.image)
    assert (px == (200, 40, 7, 255)).all()
    assert result.timings.total_s >= result.timings.inference_s >= 0.0


def test_process_invert_with_black_mask_matches_white_mask():
    engine = _masked_image_engine()
    with InpaintingPipeline(engine, resolution=R) as p:
        plain = p.process(_solid((10, 20, 30)), _white_mask(), invert=False)
        inverted = p.process(_solid((10, 20, 30)), Image.new("L", (48, 40), 0), invert=True)
    np.testing.assert_array_equal(np.asarray(plain.image), np.asarray(inverted.image))


def test_process_black_mask_hides_image_from_engine():
    seen = []

    def _record(x):
        seen.append(x.clone())
        return torch.zeros((1, 3, R, R))

    with InpaintingPipeline(StaticEngine(fn=_record), resolution=R) as p:
        result = p.process(_solid((255, 0, 255)), Image.new("L", (48, 40), 0))

    assert result.ok
    x = seen[0][0]
    assert torch.all(x[0] == -0.5)
    assert torch.all(x[1:] == 0.0)


def test_missing_input_short_circuits():
    engine = _masked_image_engine()
    with InpaintingPipeline(engine, resolution=R) as p:
        for image, mask in ((None, _white_mask()), (_solid((1, 2, 3)), None), (_solid((1, 2, 3)), "mask.png")):
            result = p.process(image, mask)
            assert not result.ok
            assert result.image is None
            assert result.stage == Stage.FAILED
            assert result.failed_at == Stage.RESIZING
            assert result.error.kind == ErrorKind.INVALID_INPUT
    assert engine.calls == 0


def test_missing_model_fails_at_inference():
    with InpaintingPipeline(None, resolution=R) as p:
        result = p.process(_solid((1, 2, 3)), _white_mask())
    assert result.failed_at == Stage.INFERRING
    assert result.error.kind == ErrorKind.MODEL_NOT_LOADED
    assert result.image is None


def test_engine_failure_is_reported():
    def _boom(_x):
        raise RuntimeError("device lost")

    with InpaintingPipeline(StaticEngine(fn=_boom), resolution=R) as p:
        result = p.process(_solid((1, 2, 3)), _white_mask())
    assert result.failed_at == Stage.INFERRING
    assert result.error.kind == ErrorKind.ENGINE_FAILURE
    assert result.error.message.startswith("Inference failed")


def test_wrong_output_shape_fails_at_decode():
    engine = StaticEngine(output=torch.zeros((1, 3, R // 2, R // 2)))
    with InpaintingPipeline(engine, resolution=R) as p:
        result = p.process(_solid((1, 2, 3)), _white_mask())
    assert result.failed_at == Stage.DECODING
    assert result.error.kind == ErrorKind.SHAPE_MISMATCH
    assert result.image is None


def test_unexpected_error_is_delivered_as_internal(monkeypatch):
    def _broken_decode(_y, _r):
        raise KeyError("boom")

    monkeypatch.setattr(pipeline_mod, "decode", _broken_decode)
    with InpaintingPipeline(_masked_image_engine(), resolution=R) as p:
        result = p.process(_solid((1, 2, 3)), _white_mask())
    assert result.failed_at == Stage.DECODING
    assert result.error.kind == ErrorKind.INTERNAL
    assert isinstance(result.error.__cause__, KeyError)


def test_run_delivers_once_on_dispatch_context():
    pending: "queue.Queue" = queue.Queue()
    calls = []

    with InpaintingPipeline(_masked_image_engine(), resolution=R, dispatch=pending.put) as p:
        future = p.run(_solid((9, 9, 9)), _white_mask(), callback=lambda r: calls.append((r, threading.current_thread())))
        result = future.result(timeout=30)

        # Callback was handed to the dispatcher, not run on the worker.
        assert calls == []
        pending.get(timeout=5)()
        assert pending.empty()

    assert len(calls) == 1
    delivered, thread = calls[0]
    assert delivered is result
    assert thread is threading.current_thread()
    assert result.ok


def test_busy_flag_tracks_in_flight_work():
    release = threading.Event()
    started = threading.Event()

    def _slow(x):
        started.set()
        release.wait(timeout=30)
        return x[:, 1:4]

    with InpaintingPipeline(StaticEngine(fn=_slow), resolution=R) as p:
        assert not p.is_busy
        future = p.run(_solid((5, 5, 5)), _white_mask())
        assert started.wait(timeout=30)
        assert p.is_busy
        release.set()
        assert future.result(timeout=30).ok
        assert not p.is_busy


def test_failure_sets_error_message_and_completion_gets_none():
    images = []
    with InpaintingPipeline(None, resolution=R) as p:
        future = p.perform_inpainting(_solid((1, 1, 1)), _white_mask(), completion=images.append)
        result = future.result(timeout=30)
        assert p.error_message == "Model not loaded"
    assert images == [None]
    assert result.error.kind == ErrorKind.MODEL_NOT_LOADED


def test_completion_receives_image_on_success():
    images = []
    with InpaintingPipeline(_masked_image_engine(), resolution=R) as p:
        p.perform_inpainting(_solid((1, 1, 1)), _white_mask(), completion=images.append).result(timeout=30)
        assert p.error_message is None
    assert len(images) == 1
    assert images[0].size == (R, R)


def test_concurrent_runs_keep_their_own_inputs():
    barrier = threading.Barrier(2, timeout=30)

    def _overlapping(x):
        barrier.wait()  # both invocations are inside the engine at once
        return x[:, 1:4].clone()

    colors = [(250, 10, 60), (3, 140, 220)]
    with InpaintingPipeline(StaticEngine(fn=_overlapping), resolution=R, max_workers=2) as p:
        futures = [p.run(_solid(c), _white_mask()) for c in colors]
        results = [f.result(timeout=60) for f in futures]

    for color, result in zip(colors, results):
        assert result.ok
        assert (np.asarray(result.image) == color + (255,)).all()


def test_serialized_inference_never_overlaps():
    active = []
    peak = []
    lock = threading.Lock()

    def _tracked(x):
        with lock:
            active.append(1)
            peak.append(len(active))
        time.sleep(0.05)
        with lock:
            active.pop()
        return x[:, 1:4]

    with InpaintingPipeline(StaticEngine(fn=_tracked), resolution=R, max_workers=3, serialize_inference=True) as p:
        futures = [p.run(_solid((i, i, i)), _white_mask()) for i in range(3)]
        assert all(f.result(timeout=60).ok for f in futures)
    assert max(peak) == 1


def test_serialized_inference_is_shared_across_pipelines():
    active = []
    peak = []
    lock = threading.Lock()
    entered = threading.Event()

    def _tracked(x):
        with lock:
            active.append(1)
            peak.append(len(active))
        entered.set()
        time.sleep(0.1)
        with lock:
            active.pop()
        return x[:, 1:4]

    engine = StaticEngine(fn=_tracked, resolution=R)
    first = InpaintingPipeline(engine, resolution=R, serialize_inference=True)
    second = InpaintingPipeline(engine, resolution=R, serialize_inference=True)
    with first, second:
        a = first.run(_solid((1, 1, 1)), _white_mask())
        assert entered.wait(timeout=30)
        b = second.run(_solid((2, 2, 2)), _white_mask())
        assert a.result(timeout=60).ok and b.result(timeout=60).ok

    assert engine.calls == 2
    assert max(peak) == 1


def test_handle_lock_is_per_engine():
    one, other = _masked_image_engine(), _masked_image_engine()
    assert pipeline_mod.handle_lock(one) is pipeline_mod.handle_lock(one)
    assert pipeline_mod.handle_lock(one) is not pipeline_mod.handle_lock(other)


def test_load_without_model_reports_and_fails_runs(tmp_path: Path):
    with InpaintingPipeline.load(str(tmp_path / "missing.torchscript"), resolution=256) as p:
        assert p.engine is None
        assert p.error_message.startswith("Failed to load model")
        result = p.run(_solid((1, 2, 3)), _white_mask()).result(timeout=30)
    assert result.error.kind == ErrorKind.MODEL_NOT_LOADED
