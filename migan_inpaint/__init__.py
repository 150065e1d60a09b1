"""MI-GAN inpainting: tensor codec and inference orchestration."""

from migan_inpaint.errors import DecodeError, EncodeError, ErrorKind, InferError, InvalidInputError, PipelineError
from migan_inpaint.inference import InferenceEngine, StaticEngine, TorchScriptEngine, infer
from migan_inpaint.pipeline import InpaintingPipeline, InpaintResult, Stage, StageTimings
from migan_inpaint.postprocess import decode
from migan_inpaint.preprocess import encode, resize_to_square

__all__ = [
    "DecodeError",
    "EncodeError",
    "ErrorKind",
    "InferError",
    "InvalidInputError",
    "PipelineError",
    "InferenceEngine",
    "StaticEngine",
    "TorchScriptEngine",
    "infer",
    "InpaintingPipeline",
    "InpaintResult",
    "Stage",
    "StageTimings",
    "decode",
    "encode",
    "resize_to_square",
]
