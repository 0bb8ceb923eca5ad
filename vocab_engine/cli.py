from __future__ import annotations

import argparse
import logging
import os
from dataclasses import replace
from pathlib import Path

from dotenv import load_dotenv

from .config import load_config
from .errors import PipelineError
from .exporter import export_csv
from .extractor import GeminiWordExtractor
from .job import create_job_dirs, init_job_outputs, new_job_id, record_error, snapshot_input
from .ocr import build_recognizer
from .page_provider import load_chapter_images
from .pipeline import VocabularyPipeline
from .stitcher import stitch_images
from .utils import utc_now_iso
from .validator import validate_job
from .writer import JobWriter


logger = logging.getLogger("vocab_engine")


def build_parser() -> argparse.ArgumentParser:
    levels = ["DEBUG", "INFO", "WARNING", "ERROR"]
    p = argparse.ArgumentParser(prog="vocab_engine")
    p.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO").upper(), choices=levels)

    # Also accepted after the subcommand.
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--log-level", default=argparse.SUPPRESS, choices=levels)

    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", parents=[common], help="Extract vocabulary from a chapter image")
    run.add_argument("--input", required=True, help="Image file, images folder, or .zip of chapter pages")
    run.add_argument("--workspace", default="./workspace", help="Workspace root")
    run.add_argument("--source", default=None, help="Source name (e.g. SeriesName-ch12)")
    run.add_argument("--config", default=None, help="Config JSON path (default: built-in defaults + env)")
    run.add_argument("--upscale", action="store_true", help="Upscale before recognition")
    run.add_argument("--grammar", action="store_true", help="Also extract grammar patterns")
    run.add_argument("--timeout", type=float, default=None, help="Invocation deadline in seconds")

    validate = sub.add_parser("validate", parents=[common], help="Validate the output contract of a job")
    validate.add_argument("--job-dir", required=True, help="Job directory (workspace/jobs/<job_id>)")

    export = sub.add_parser("export", parents=[common], help="Export vocabulary from a completed job")
    export.add_argument("--job-dir", required=True, help="Job directory (workspace/jobs/<job_id>)")
    export.add_argument("--format", required=True, choices=["csv", "apkg"], help="Export format")
    export.add_argument("--out", required=True, help="Output file path")
    export.add_argument("--min-score", type=float, default=None, help="Skip words scored below this")
    export.add_argument("--deck-name", default=None, help="Anki deck name (apkg only)")
    export.add_argument("--tags", default=None, help="Comma-separated Anki tags (apkg only)")

    return p


def _image_suffix(buf: bytes) -> str:
    if buf[:4] == b"\x89PNG":
        return ".png"
    if buf[:4] == b"RIFF":
        return ".webp"
    return ".jpg"


def cmd_run(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    if args.upscale:
        cfg = replace(cfg, upscale=replace(cfg.upscale, enabled=True))
    if args.grammar:
        cfg = replace(cfg, extractor=replace(cfg.extractor, extract_grammar=True))

    job_id = new_job_id()
    paths = create_job_dirs(args.workspace, job_id)
    init_job_outputs(paths)
    snapshot_input(paths, args.input)

    source = args.source or Path(args.input).stem
    job_meta = {
        "job_id": job_id,
        "source": source,
        "input": {"path": args.input},
        "created_at": utc_now_iso(),
    }

    try:
        pages = load_chapter_images(args.input)
        image = pages[0] if len(pages) == 1 else stitch_images(pages)
    except ValueError as e:
        record_error(paths, page_id="chapter", stage="input", message=str(e))
        logger.error("Input rejected: %s", e)
        print(str(paths.job_dir))
        return 1
    (paths.pages_dir / f"chapter{_image_suffix(image)}").write_bytes(image)

    try:
        pipeline = VocabularyPipeline(
            cfg=cfg,
            recognizer=build_recognizer(cfg.ocr),
            extractor=GeminiWordExtractor(cfg.extractor),
        )
        result = pipeline.run(image, timeout=args.timeout)
    except PipelineError as e:
        record_error(paths, page_id="chapter", stage=e.stage, message=str(e))
        logger.error("Pipeline failed: %s", e)
        print(str(paths.job_dir))
        return 1

    writer = JobWriter(paths=paths)
    writer.write_stage(result)
    writer.write_final(job_meta=job_meta, result=result, metrics={"pages_total": len(pages)})
    print(str(paths.job_dir))
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    report = validate_job(args.job_dir)
    print(f"missing_contract_files={report.missing_contract_files}")
    print(f"invalid_lines={report.invalid_lines}")
    print(f"invalid_words={report.invalid_words}")
    print(f"duplicate_words={report.duplicate_words}")
    if not report.ok:
        for m in report.errors:
            print(m)
        return 1
    print("OK")
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    try:
        if args.format == "csv":
            stats = export_csv(job_dir=args.job_dir, out_path=args.out, min_score=args.min_score)
        else:
            from .exporters.apkg import export_apkg

            stats = export_apkg(
                job_dir=args.job_dir,
                out_path=args.out,
                deck_name=args.deck_name,
                tags=args.tags,
                min_score=args.min_score,
            )
        print(
            f"exported={stats.words_exported} skipped_low_score={stats.words_skipped_low_score} "
            f"invalid={stats.words_invalid}"
        )
        return 0
    except Exception as e:
        print(f"export_failed: {e}")
        return 1


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "run":
        try:
            return cmd_run(args)
        except PipelineError as e:
            # Config errors surface before a job dir exists.
            print(f"run_failed: {e}")
            return 2

    if args.command == "validate":
        return cmd_validate(args)

    if args.command == "export":
        return cmd_export(args)

    raise SystemExit(2)


if __name__ == "__main__":
    raise SystemExit(main())
