"""
Centralized configuration constants for the MI-GAN inpainting pipeline.

Ground rules:
- float32 only
- Batch size 1
- Square inputs at the resolution the artifact was exported with
"""

import cv2

# The artifact is traced at a fixed square size; R is chosen per loaded model, never detected.
MODEL_RESOLUTION = 512
SUPPORTED_RESOLUTIONS = (256, 512)

# Input: [mask - 0.5, R*m, G*m, B*m]. Output: RGB in [-1, 1].
INPUT_CHANNELS = 4
OUTPUT_CHANNELS = 3

INPUT_NAME = "input_image"
OUTPUT_NAME = "output_image"

# Masks are sampled from a single channel (red). Grayscale masks make this choice irrelevant.
MASK_CHANNEL = 0

# Bilinear. Affects output quality, not validity.
RESIZE_INTERPOLATION = cv2.INTER_LINEAR

DEFAULT_MAX_WORKERS = 1

DEFAULT_MODEL_PATH = "models/migan_512.torchscript"
MODEL_PATH_ENV = "MIGAN_MODEL"
