from __future__ import annotations

import argparse
import logging
import os
import time
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv
from tqdm import tqdm

from migan_inpaint.config import DEFAULT_MODEL_PATH, MODEL_PATH_ENV, MODEL_RESOLUTION, SUPPORTED_RESOLUTIONS
from migan_inpaint.contracts import InpaintReport
from migan_inpaint.errors import InvalidInputError
from migan_inpaint.io import load_image, pair_images, report_name_from_relpath, save_png, write_json
from migan_inpaint.pipeline import InpaintingPipeline, InpaintResult, Stage


def _collect_jobs(input_path: Path, mask_path: Path, output_path: Path) -> List[Tuple[Path, Path, Path, str]]:
    """
    (image, mask, output, report name) per job. Batch report names are derived from the
    path relative to the input directory, so "a/x.png" and "b/x.png" do not collide.
    """
    if input_path.is_dir():
        if not mask_path.is_dir():
            raise ValueError("--mask must be a directory when --input is a directory")
        pairs, unmatched = pair_images(input_path, mask_path)
        for img_path in unmatched:
            print(f"Skipping {img_path}: no matching mask under {mask_path}")
        jobs = []
        for img, msk in pairs:
            rel = img.relative_to(input_path)
            jobs.append((img, msk, (output_path / rel).with_suffix(".png"), report_name_from_relpath(rel.as_posix())))
        return jobs
    return [(input_path, mask_path, output_path, input_path.stem)]


def _inpaint_files(pipeline: InpaintingPipeline, img_path: Path, msk_path: Path, invert: bool) -> InpaintResult:
    try:
        image = load_image(str(img_path))
        mask = load_image(str(msk_path))
    except OSError as e:
        # PIL.UnidentifiedImageError is an OSError too.
        return InpaintResult(
            error=InvalidInputError(f"Failed to read image: {e}"),
            stage=Stage.FAILED,
            failed_at=Stage.RESIZING,
        )
    return pipeline.run(image, mask, invert).result()


def _report(img_path: Path, mask_path: Path, out_path: Optional[Path], invert: bool, resolution: int, result: InpaintResult) -> InpaintReport:
    return InpaintReport(
        image_path=str(img_path.resolve()),
        mask_path=str(mask_path.resolve()),
        output_path=str(out_path.resolve()) if out_path is not None else None,
        invert_mask=invert,
        resolution=resolution,
        status="completed" if result.ok else "failed",
        error_kind=result.error.kind.value if result.error is not None else None,
        error_message=result.error.message if result.error is not None else None,
        timings=result.timings.as_dict(),
    )


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="MI-GAN inpainting (float32, batch=1).")
    parser.add_argument("--input", required=True, type=str, help="Input image, or directory of images.")
    parser.add_argument("--mask", required=True, type=str, help="Mask image, or directory of masks (matched by relative path).")
    parser.add_argument("--output", required=True, type=str, help="Output PNG path, or output directory in batch mode.")
    parser.add_argument(
        "--model",
        default=os.environ.get(MODEL_PATH_ENV, DEFAULT_MODEL_PATH),
        type=str,
        help=f"TorchScript generator path (default: ${MODEL_PATH_ENV} or {DEFAULT_MODEL_PATH}).",
    )
    parser.add_argument(
        "--resolution",
        default=MODEL_RESOLUTION,
        type=int,
        choices=SUPPORTED_RESOLUTIONS,
        help="Square resolution the model was exported with.",
    )
    parser.add_argument("--invert-mask", action="store_true", help="Treat black mask pixels as the region to fill.")
    parser.add_argument("--device", default="auto", type=str, help="Torch device (auto, cpu, cuda, mps).")
    parser.add_argument("--metadata-dir", default=None, type=str, help="Write one JSON report per image here.")
    parser.add_argument("--log-level", default="INFO", type=str, help="Logging level.")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    input_path = Path(args.input)
    mask_path = Path(args.mask)
    if not input_path.exists():
        raise FileNotFoundError(f"Input not found: {input_path}")
    if not mask_path.exists():
        raise FileNotFoundError(f"Mask not found: {mask_path}")

    jobs = _collect_jobs(input_path, mask_path, Path(args.output))
    if not jobs:
        print(f"No image/mask pairs found under {input_path}")
        return 0

    failures = 0
    total0 = time.perf_counter()
    with InpaintingPipeline.load(args.model, resolution=args.resolution, device=args.device) as pipeline:
        if pipeline.error_message:
            print(pipeline.error_message)

        for img_path, msk_path, out_path, report_name in tqdm(jobs, desc="Inpainting", unit="img", disable=len(jobs) == 1):
            result = _inpaint_files(pipeline, img_path, msk_path, args.invert_mask)

            if result.ok:
                save_png(result.image, str(out_path))
                t = result.timings
                print(
                    f"{img_path.name}: total={t.total_s:.3f}s "
                    f"(resize={t.resize_s:.3f}s enc={t.encode_s:.3f}s "
                    f"inf={t.inference_s:.3f}s dec={t.decode_s:.3f}s)"
                )
            else:
                failures += 1
                print(f"{img_path.name}: FAILED [{result.error.kind.value}] {result.error.message}")

            if args.metadata_dir:
                report = _report(
                    img_path, msk_path, out_path if result.ok else None, args.invert_mask, args.resolution, result
                )
                write_json(str(Path(args.metadata_dir) / f"{report_name}.json"), report.model_dump())

    total1 = time.perf_counter()
    print(f"Done. {len(jobs) - failures}/{len(jobs)} images in {total1-total0:.2f}s")
    return 0 if failures == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
