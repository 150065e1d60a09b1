from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterator, List, Tuple

from PIL import Image

IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".webp", ".bmp", ".tif", ".tiff"}


def load_image(path: str) -> Image.Image:
    img = Image.open(path)
    img.load()
    return img


def save_png(img: Image.Image, path: str) -> None:
    """
    Save as lossless RGBA PNG.
    """
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    if img.mode != "RGBA":
        img = img.convert("RGBA")
    img.save(str(p), format="PNG", optimize=False)


def write_json(path: str, data: Dict[str, Any]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")


def report_name_from_relpath(relpath: str) -> str:
    """
    Flatten a relative image path into one filesystem-safe report name.
    Example: "shoots/day 2/photo.jpg" -> "shoots__day_2__photo"
    """
    flat = Path(relpath).with_suffix("").as_posix().replace("/", "__")
    return "".join(ch if ch.isalnum() or ch in "_-." else "_" for ch in flat)


def iter_images(input_dir: Path) -> Iterator[Path]:
    for p in sorted(input_dir.rglob("*")):
        if p.is_file() and p.suffix.lower() in IMAGE_EXTS:
            yield p


def pair_images(input_dir: Path, mask_dir: Path) -> Tuple[List[Tuple[Path, Path]], List[Path]]:
    """
    Match every image under input_dir with the mask sharing its relative path stem.

    Example: "a/b/photo.jpg" pairs with "a/b/photo.png" under mask_dir.
    Returns (pairs, unmatched_images).
    """
    masks = {p.relative_to(mask_dir).with_suffix("").as_posix(): p for p in iter_images(mask_dir)}
    pairs: List[Tuple[Path, Path]] = []
    unmatched: List[Path] = []
    for img_path in iter_images(input_dir):
        key = img_path.relative_to(input_dir).with_suffix("").as_posix()
        mask_path = masks.get(key)
        if mask_path is None:
            unmatched.append(img_path)
        else:
            pairs.append((img_path, mask_path))
    return pairs, unmatched
