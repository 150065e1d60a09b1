from __future__ import annotations

from typing import Union

import cv2
import numpy as np
import torch
from PIL import Image

from .config import INPUT_CHANNELS, MASK_CHANNEL, MODEL_RESOLUTION, RESIZE_INTERPOLATION
from .errors import EncodeError, ErrorKind, InvalidInputError

ImageLike = Union[Image.Image, np.ndarray]

_UNREADABLE = (TypeError, ValueError, OSError)


def _premultiply(rgba: np.ndarray) -> np.ndarray:
    alpha = rgba[..., 3]
    if bool(np.all(alpha == 255)):
        return rgba
    out = rgba.copy()
    rgb = out[..., :3].astype(np.uint16) * alpha[..., None].astype(np.uint16)
    out[..., :3] = ((rgb + 127) // 255).astype(np.uint8)
    return out


def to_rgba_array(image: ImageLike, *, premultiply: bool = True) -> np.ndarray:
    """
    Expose an 8-bit RGBA pixel buffer of shape (H, W, 4).

    Accepts a PIL image in any mode Pillow can convert to RGBA, or a uint8 array shaped
    (H, W), (H, W, 1), (H, W, 3) or (H, W, 4). Gray inputs are expanded to R = G = B.
    With `premultiply`, RGB is scaled by alpha the way a premultiplied bitmap context
    stores it; opaque images are returned unchanged.
    """
    if isinstance(image, Image.Image):
        rgba = np.asarray(image.convert("RGBA"), dtype=np.uint8)
    elif isinstance(image, np.ndarray):
        if image.dtype != np.uint8:
            raise ValueError(f"Expected uint8 pixel data, got dtype={image.dtype}")
        if image.ndim == 3 and image.shape[2] == 1:
            image = image[..., 0]
        if image.ndim == 2:
            rgba = np.empty(image.shape + (4,), dtype=np.uint8)
            rgba[..., :3] = image[..., None]
            rgba[..., 3] = 255
        elif image.ndim == 3 and image.shape[2] == 3:
            rgba = np.empty(image.shape[:2] + (4,), dtype=np.uint8)
            rgba[..., :3] = image
            rgba[..., 3] = 255
        elif image.ndim == 3 and image.shape[2] == 4:
            rgba = image
        else:
            raise ValueError(f"Unsupported pixel layout: shape={image.shape}")
    else:
        raise TypeError(f"Unsupported image type: {type(image).__name__}")

    if rgba.shape[0] == 0 or rgba.shape[1] == 0:
        raise ValueError(f"Empty image: shape={rgba.shape}")
    rgba = np.ascontiguousarray(rgba)
    return _premultiply(rgba) if premultiply else rgba


def resize_to_square(image: ImageLike | None, resolution: int = MODEL_RESOLUTION) -> np.ndarray:
    """
    Resample an image to (resolution, resolution, 4) uint8 with bilinear interpolation.

    Aspect ratio is not preserved: the model consumes the whole frame stretched to its square.
    Raises InvalidInputError when the image is absent or cannot be read.
    """
    if int(resolution) <= 0:
        raise ValueError(f"Invalid resolution: {resolution}")
    if image is None:
        raise InvalidInputError()
    try:
        rgba = to_rgba_array(image)
    except _UNREADABLE as e:
        raise InvalidInputError() from e

    size = (int(resolution), int(resolution))
    if rgba.shape[:2] == size:
        return rgba
    try:
        return cv2.resize(rgba, size, interpolation=RESIZE_INTERPOLATION)
    except cv2.error as e:
        raise InvalidInputError() from e


def encode(image: ImageLike, mask: ImageLike, invert: bool = False) -> torch.Tensor:
    """
    Pack an image and its mask into the network input: float32 torch tensor (1,4,R,R).

    Per pixel, with m = mask.red / 255 (1 - m when `invert`) and c = v * 2 / 255 - 1:
      channel 0   = m - 0.5
      channel 1-3 = c * m for R, G, B

    Both inputs must already be R x R; see resize_to_square.
    """
    try:
        img = to_rgba_array(image, premultiply=False)
        msk = to_rgba_array(mask, premultiply=False)
    except _UNREADABLE as e:
        raise EncodeError(ErrorKind.MISSING_PIXEL_DATA, "Failed to create input array") from e

    h, w = img.shape[:2]
    if h != w:
        raise ValueError(f"Expected square image, got {(h, w)}")
    if msk.shape[:2] != (h, w):
        raise ValueError(f"Mask shape {msk.shape[:2]} does not match image {(h, w)}")

    try:
        x = torch.empty((1, INPUT_CHANNELS, h, w), dtype=torch.float32)
    except (MemoryError, RuntimeError) as e:
        raise EncodeError(ErrorKind.ALLOCATION_FAILED, "Failed to create input array") from e

    m = msk[..., MASK_CHANNEL].astype(np.float32) / 255.0
    if invert:
        m = 1.0 - m
    rgb = img[..., :3].astype(np.float32) * 2.0 / 255.0 - 1.0

    planes = x[0].numpy()  # shares storage with x
    planes[0] = m - 0.5
    planes[1:] = np.transpose(rgb, (2, 0, 1)) * m
    return x
