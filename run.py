from __future__ import annotations

import argparse
import asyncio
import json
import logging
import time
from pathlib import Path

from dotenv import load_dotenv
from tqdm import tqdm

from studio.cloudinary import CloudinaryClient
from studio.compression import Upload
from studio.contracts import Placement
from studio.enhancement import GeminiEnhancer
from studio.io import safe_name_from_relpath, save_png
from studio.library import LocalLibraryStore, collect_outputs
from studio.orientation import normalize
from studio.removal import GeminiMaskRemover, PhotoRoomRemover
from studio.workflow import Stage, run_batch


def _iter_images(input_dir: Path):
    exts = {".jpg", ".jpeg", ".png", ".webp", ".bmp", ".tif", ".tiff"}
    for p in sorted(input_dir.rglob("*")):
        if p.is_file() and p.suffix.lower() in exts:
            yield p


def main() -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Studio product shots: cutout, place on a backdrop, reflect, enhance.")
    parser.add_argument("--input", required=True, type=str, help="Input directory containing product photos.")
    parser.add_argument("--backdrop", required=True, type=str, help="Backdrop image; output size follows it.")
    parser.add_argument("--output", required=True, type=str, help="Output directory (creates final/ + cutouts/ + manifest.jsonl).")
    parser.add_argument("--x", type=float, default=0.5, help="Subject center, fraction of backdrop width.")
    parser.add_argument("--y", type=float, default=0.5, help="Subject center, fraction of backdrop height.")
    parser.add_argument("--scale", type=float, default=0.5, help="Subject width, fraction of backdrop width.")
    parser.add_argument("--rotate", type=int, default=0, help="Quarter turns (clockwise) applied to every subject.")
    parser.add_argument("--blur", action="store_true", help="Blur the backdrop (depth of field).")
    parser.add_argument("--no-reflection", action="store_true", help="Skip the floor reflection.")
    parser.add_argument("--enhance", action="store_true", help="Run the Gemini enhancement pass.")
    parser.add_argument("--remover", choices=("photoroom", "gemini-mask"), default="photoroom")
    parser.add_argument("--shadow", action="store_true", help="Add a Cloudinary contact shadow to each subject.")
    parser.add_argument("--group-size", type=int, default=3, help="Items in flight per external-service group.")
    parser.add_argument("--library", type=str, default=None, help="Also save the batch to a local library root.")
    parser.add_argument("--log-level", default="WARNING", choices=("DEBUG", "INFO", "WARNING", "ERROR"))
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    input_dir = Path(args.input)
    output_dir = Path(args.output)
    if not input_dir.exists():
        raise FileNotFoundError(f"Input dir not found: {input_dir}")

    images = list(_iter_images(input_dir))
    if not images:
        print(f"No images found under {input_dir}")
        return 0

    uploads = [
        Upload(name=safe_name_from_relpath(p.relative_to(input_dir).as_posix()), data=p.read_bytes())
        for p in images
    ]
    backdrop = normalize(Path(args.backdrop).read_bytes())
    placement = Placement.clamped(args.x, args.y, args.scale)
    remover = PhotoRoomRemover() if args.remover == "photoroom" else GeminiMaskRemover()

    stages = [s for s in Stage if s not in (Stage.PREVIEWING, Stage.POSITIONING, Stage.COMPLETE)]
    t0 = time.perf_counter()
    with tqdm(total=len(stages), desc="Stages", unit="stage") as bar:

        def _on_stage(report):
            bar.set_postfix_str(f"{report.stage}: {report.summary}")
            bar.update(1)

        wf, reports = asyncio.run(
            run_batch(
                uploads,
                backdrop,
                placement,
                remover,
                shadow=CloudinaryClient() if args.shadow else None,
                enhancer=GeminiEnhancer() if args.enhance else None,
                add_depth_of_field=args.blur,
                with_reflection=not args.no_reflection,
                quarter_turns=args.rotate,
                group_size=args.group_size,
                on_stage=_on_stage,
            )
        )
        bar.update(bar.total - bar.n)
    t1 = time.perf_counter()

    manifest_path = output_dir / "manifest.jsonl"
    manifest_path.parent.mkdir(parents=True, exist_ok=True)
    succeeded = 0
    with open(manifest_path, "a", encoding="utf-8") as manifest_fp:
        for item in wf.items:
            record = {
                "index": item.index,
                "name": item.name,
                "status": item.status,
                "precut": item.precut,
                "failed_stage": item.failure.stage if item.failure is not None else None,
                "error": item.failure.message if item.failure is not None else None,
            }
            if item.finalized is not None:
                final_path = output_dir / "final" / f"{item.name}.png"
                save_png(item.finalized, str(final_path))
                record["final_image"] = str(final_path)
                succeeded += 1
            if item.cutout is not None:
                cutout_path = output_dir / "cutouts" / f"{item.name}.png"
                save_png(item.cutout, str(cutout_path))
                record["cutout_image"] = str(cutout_path)
            manifest_fp.write(json.dumps(record, ensure_ascii=False) + "\n")

    library_line = ""
    if args.library:
        transparent, final, enhanced = collect_outputs(wf.items)
        batch = LocalLibraryStore(args.library).save_batch(input_dir.name, transparent, final, enhanced)
        library_line = f"\n- library_batch: {batch.batch_id}"

    stage_lines = "".join(f"\n- {r.stage}: {r.summary}" for r in reports)
    print(
        f"{succeeded} of {len(uploads)} images succeeded"
        f"{stage_lines}\n"
        f"- elapsed_s: {t1 - t0:.2f}\n"
        f"- output: {output_dir.resolve()}\n"
        f"- manifest: {manifest_path.resolve()}"
        f"{library_line}"
    )
    return 0 if succeeded == len(uploads) else 1


if __name__ == "__main__":
    raise SystemExit(main())
