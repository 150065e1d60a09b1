from __future__ import annotations

from typing import Any

import numpy as np
import torch
from PIL import Image

from .config import MODEL_RESOLUTION, OUTPUT_CHANNELS
from .errors import DecodeError, ErrorKind


def _float_buffer(output: Any) -> np.ndarray:
    """
    Read a model output as a float32 ndarray (copy-free where possible).
    """
    try:
        if isinstance(output, torch.Tensor):
            if output.is_complex():
                raise TypeError(f"Complex output dtype {output.dtype}")
            arr = output.detach().to("cpu", dtype=torch.float32).numpy()
        elif isinstance(output, np.ndarray):
            if not (np.issubdtype(output.dtype, np.floating) or np.issubdtype(output.dtype, np.integer)):
                raise TypeError(f"Non-real output dtype {output.dtype}")
            arr = output.astype(np.float32, copy=False)
        else:
            raise TypeError(f"Unsupported output type: {type(output).__name__}")
    except (TypeError, ValueError, RuntimeError) as e:
        raise DecodeError(ErrorKind.BUFFER_UNAVAILABLE, f"Failed to convert output image: {e}") from e
    return arr


def output_to_rgb(output: Any, resolution: int = MODEL_RESOLUTION) -> np.ndarray:
    """
    Convert a (1,3,R,R) or (3,R,R) output in [-1,1] to uint8 RGB (R,R,3).

    Values are mapped with v * 0.5 + 0.5, clamped to [0,1], scaled to 255 and rounded
    half-to-even (0.0 -> 128). NaN decodes to 0.
    """
    arr = _float_buffer(output)
    if arr.ndim == 4 and arr.shape[0] == 1:
        arr = arr[0]
    expected = (OUTPUT_CHANNELS, int(resolution), int(resolution))
    if arr.shape != expected:
        raise DecodeError(
            ErrorKind.SHAPE_MISMATCH,
            f"Failed to convert output image: expected {expected} or (1,)+{expected}, got {tuple(np.shape(output))}",
        )

    x = arr * 0.5 + 0.5
    x = np.nan_to_num(x, nan=0.0, posinf=1.0, neginf=0.0)
    x = np.clip(x, 0.0, 1.0)
    rgb = np.rint(x * 255.0).astype(np.uint8)
    return np.ascontiguousarray(np.transpose(rgb, (1, 2, 0)))  # HWC


def decode(output: Any, resolution: int = MODEL_RESOLUTION) -> Image.Image:
    """
    Decode the generator output into an opaque RGBA PIL image of size (R, R).
    """
    rgb = output_to_rgb(output, resolution)
    rgba = np.empty(rgb.shape[:2] + (4,), dtype=np.uint8)
    rgba[..., :3] = rgb
    rgba[..., 3] = 255
    return Image.fromarray(rgba)
