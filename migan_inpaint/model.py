from __future__ import annotations

import os
from typing import Optional, Union

import torch

from .config import MODEL_RESOLUTION, SUPPORTED_RESOLUTIONS
from .inference import TorchScriptEngine


def get_device(preferred: Optional[Union[str, torch.device]] = None) -> torch.device:
    """
    Explicit device if given, otherwise the first available of cuda, mps, cpu.
    """
    if preferred is not None and str(preferred) != "auto":
        return torch.device(preferred)
    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


def load_torchscript_engine(
    model_path: str,
    resolution: int = MODEL_RESOLUTION,
    device: Optional[Union[str, torch.device]] = None,
) -> TorchScriptEngine:
    """
    Load a traced MI-GAN generator for local inference.

    Implementation note:
    - Expects a TorchScript module saved via torch.jit.save, traced on a (1,4,R,R) input.
    - The resolution is the one the artifact was traced with; it is not read back from the file.
    """
    if int(resolution) not in SUPPORTED_RESOLUTIONS:
        raise ValueError(f"Unsupported resolution {resolution}; expected one of {SUPPORTED_RESOLUTIONS}")
    if not os.path.exists(model_path):
        raise FileNotFoundError(f"Model not found: {model_path}")

    device = get_device(device)

    try:
        # Registers torchvision TorchScript ops some exported graphs reference.
        import torchvision  # noqa: F401

        # Load on CPU first, then cast; float64 attributes cannot move to MPS.
        module = torch.jit.load(model_path, map_location="cpu")
    except Exception as e:  # noqa: BLE001 - surface a helpful error
        raise RuntimeError(
            "Failed to load model. This pipeline expects a TorchScript MI-GAN generator "
            "saved with torch.jit.save(). Export the checkpoint to TorchScript first."
        ) from e

    module.eval()
    for p in module.parameters():
        p.requires_grad_(False)
    try:
        module = module.to(dtype=torch.float32)
        module.to(device)
    except (AssertionError, RuntimeError) as e:
        # CPU-only torch builds raise AssertionError for cuda targets.
        raise RuntimeError(f"Failed to move model to {device}: {e}") from e
    return TorchScriptEngine(module, resolution=int(resolution), device=device)
