from __future__ import annotations

from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field


class InpaintReport(BaseModel):
    """Per-image run record emitted by the CLI."""

    image_path: str
    mask_path: str
    output_path: Optional[str] = None
    invert_mask: bool = False
    resolution: int
    status: Literal["completed", "failed"]
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    timings: Dict[str, float] = Field(default_factory=dict)
