"""
Chess Scoresheet Decoder – Main Entry Point
===========================================

Commands:

  1. **Decode**    – Read one scoresheet (one or two page photos), validate
                     every move and write the PGN plus a per-move report.
  2. **Columns**   – Show the detected table, column splits and corners
                     for a photo without calling the recognizer.
  3. **Evaluate**  – Score a decoded game against a ground-truth PGN.

Usage examples
--------------

**Decoding**::

    python decode_scoresheet.py decode \\
        --image sheet.jpg \\
        --language greek \\
        --output game.pgn \\
        --report game.json

**Two-page game with debug output**::

    python decode_scoresheet.py decode \\
        --image page1.jpg --image page2.jpg \\
        --debug-dir debug/

**Column overlay**::

    python decode_scoresheet.py columns --image sheet.jpg --save overlay.png

**Evaluation**::

    python decode_scoresheet.py evaluate \\
        --ground-truth truth.pgn --pgn game.pgn
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import cv2
import numpy as np
from PIL import Image, ImageOps

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
log = logging.getLogger("chess_decoder")


# ═══════════════════════════════════════════════════════════════════════
# I/O helpers
# ═══════════════════════════════════════════════════════════════════════

def load_image(path: str) -> np.ndarray:
    """Read a photo as a BGR array, honouring EXIF orientation."""
    with Image.open(path) as img:
        img = ImageOps.exif_transpose(img).convert("RGB")
        rgb = np.asarray(img)
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)


class JsonFileSink:
    """Writes each ``GameValidation`` to ``<directory>/<game_id>.json``."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def save(self, validation) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / f"{validation.game_id}.json"
        path.write_text(
            json.dumps(validation.to_dict(), indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        log.info("Saved validation report to %s", path)


def _metadata(args: argparse.Namespace):
    from chess_decoder.pgn.assembler import PgnMetadata

    return PgnMetadata(
        event=args.event,
        site=args.site,
        date=args.date,
        round=args.round,
        white=args.white,
        black=args.black,
        result=args.result,
    )


def _build_pipeline(args: argparse.Namespace, sink=None):
    from chess_decoder.inference.pipeline import PipelineConfig, ScoresheetPipeline
    from chess_decoder.inference.recognizer import OpenAIRecognizer
    from chess_decoder.validation.move_validator import CorrectionConfig

    provider = args.provider
    if provider == "openai":
        provider = OpenAIRecognizer(model=args.model)

    config = PipelineConfig(
        language=args.language,
        expected_columns=args.columns,
        auto_crop=not args.no_auto_crop,
        use_heuristics=not args.no_heuristics,
        layout=args.layout,
        max_concurrency=args.concurrency,
        request_interval=args.interval,
        extraction_timeout=args.timeout,
        debug=bool(args.debug_dir),
        correction=CorrectionConfig(
            max_edit_distance=args.max_edit_distance,
            pass_turn_after_invalid=args.pass_turn,
        ),
    )
    return ScoresheetPipeline(provider=provider, config=config, sink=sink)


def _write_debug(result, debug_dir: str) -> None:
    out = Path(debug_dir)
    out.mkdir(parents=True, exist_ok=True)
    debug = result.debug
    for i, overlay in enumerate(debug.overlays):
        path = out / f"{result.game_id}_page{i + 1}_boundaries.png"
        cv2.imwrite(str(path), overlay)
        log.info("Saved debug image to %s", path)
    (out / f"{result.game_id}_transcripts.json").write_text(
        json.dumps(
            {
                "transcripts": debug.transcripts_dict(),
                "boundaries": [b.to_dict() for b in debug.boundaries],
                "columns": [
                    {"splits": list(c.splits), "left": c.left, "right": c.right, "method": c.method}
                    for c in debug.column_sets
                ],
                "corners": debug.corner_info,
            },
            indent=2,
            ensure_ascii=False,
        ),
        encoding="utf-8",
    )


# ═══════════════════════════════════════════════════════════════════════
# Decoding
# ═══════════════════════════════════════════════════════════════════════

def cmd_decode(args: argparse.Namespace) -> None:
    """Decode a scoresheet into PGN."""
    images = [load_image(p) for p in args.image]
    sink = JsonFileSink(args.report_dir) if args.report_dir else None
    pipeline = _build_pipeline(args, sink)

    result = pipeline.process(images, metadata=_metadata(args), start_fen=args.start_fen)
    summary = result.summary()

    print("\n" + "=" * 60)
    print("  SCORESHEET DECODING RESULT")
    print("=" * 60)
    print(f"  Game id     : {result.game_id}")
    print(f"  Plies       : {summary['total']}  (valid={summary['valid']} "
          f"corrected={summary['corrected']} invalid={summary['invalid']})")
    for issue in result.issues:
        print(f"  Issue       : [{issue.kind.value}] {issue.segment or '-'}: {issue.message}")
    print("=" * 60)
    print(result.pgn)

    if args.output:
        Path(args.output).write_text(result.pgn, encoding="utf-8")
        log.info("PGN saved to %s", args.output)
    if args.report:
        Path(args.report).write_text(
            json.dumps(result.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8",
        )
        log.info("Report saved to %s", args.report)
    if args.debug_dir:
        _write_debug(result, args.debug_dir)


# ═══════════════════════════════════════════════════════════════════════
# Geometry inspection
# ═══════════════════════════════════════════════════════════════════════

def cmd_columns(args: argparse.Namespace) -> None:
    """Print detected geometry and optionally save the overlay."""
    from chess_decoder.geometry.column_detector import detect_columns_automatically
    from chess_decoder.geometry.column_extractor import create_image_with_boundaries
    from chess_decoder.geometry.table_detector import (
        Boundary,
        detect_table,
        get_detailed_corner_info,
    )

    image = load_image(args.image)
    if args.no_auto_crop:
        boundary, method = Boundary.full_image(image.shape), "disabled"
    else:
        detection = detect_table(image)
        boundary, method = detection.boundary, detection.method

    columns = detect_columns_automatically(
        image,
        search_region=boundary,
        use_heuristics=not args.no_heuristics,
        expected_columns=args.columns,
    )
    info = get_detailed_corner_info(image)
    report = {
        "table": {**boundary.to_dict(), "method": method},
        "columns": {"splits": list(columns.splits), "method": columns.method},
        "corner_count": info["corner_count"],
        "horizontal_lines": info["horizontal_lines"],
        "vertical_lines": info["vertical_lines"],
    }
    print(json.dumps(report, indent=2))

    if args.save:
        overlay = create_image_with_boundaries(image, args.columns, not args.no_auto_crop)
        cv2.imwrite(args.save, overlay)
        log.info("Saved overlay to %s", args.save)


# ═══════════════════════════════════════════════════════════════════════
# Evaluation
# ═══════════════════════════════════════════════════════════════════════

def cmd_evaluate(args: argparse.Namespace) -> None:
    """Compare decoded moves with a ground-truth PGN."""
    from chess_decoder.evaluation.metrics import decoded_moves, evaluate_moves
    from chess_decoder.pgn.assembler import extract_moves_from_pgn

    truth = extract_moves_from_pgn(Path(args.ground_truth).read_text(encoding="utf-8"))
    if args.pgn:
        extracted = extract_moves_from_pgn(Path(args.pgn).read_text(encoding="utf-8"))
        game_id = Path(args.pgn).stem
    elif args.image:
        pipeline = _build_pipeline(args)
        result = pipeline.process([load_image(p) for p in args.image], start_fen=args.start_fen)
        extracted, game_id = decoded_moves(result), result.game_id
    else:
        log.error("evaluate needs --pgn or --image")
        sys.exit(2)

    evaluation = evaluate_moves(truth, extracted, game_id=game_id)
    print(json.dumps(evaluation.to_dict(), indent=2))


# ═══════════════════════════════════════════════════════════════════════
# CLI
# ═══════════════════════════════════════════════════════════════════════

def _add_decoding_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--language", default="english",
                   help="Scoresheet language: english, greek, german, french, spanish, russian")
    p.add_argument("--columns", type=int, default=6,
                   help="Number of text columns on the sheet")
    p.add_argument("--layout", default="paired", choices=["paired", "lines"],
                   help="paired: alternating White/Black columns; lines: 'N. w b' per line")
    p.add_argument("--no-auto-crop", action="store_true",
                   help="Skip table detection and use the whole image")
    p.add_argument("--no-heuristics", action="store_true",
                   help="Split columns equally instead of searching for gaps")
    p.add_argument("--provider", default="openai", help="Recognizer provider")
    p.add_argument("--model", default=None, help="Recognizer model name")
    p.add_argument("--timeout", type=float, default=60.0,
                   help="Per-column recognizer timeout in seconds")
    p.add_argument("--concurrency", type=int, default=3)
    p.add_argument("--interval", type=float, default=0.5,
                   help="Minimum seconds between recognizer requests")
    p.add_argument("--max-edit-distance", type=int, default=1)
    p.add_argument("--pass-turn", action="store_true",
                   help="Retry a move with the turn passed after an invalid move")
    p.add_argument("--start-fen", default=None,
                   help="Position before the first move (continuation sheets)")
    p.add_argument("--debug-dir", default=None,
                   help="Write overlays and raw transcripts here")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chess_decoder",
        description="Chess scoresheet decoding and move validation.",
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # ── decode ──
    p_dec = sub.add_parser("decode", help="Decode a scoresheet into PGN")
    p_dec.add_argument("--image", required=True, action="append",
                       help="Page image; repeat for a two-page game")
    _add_decoding_options(p_dec)
    p_dec.add_argument("--output", default=None, help="Write PGN to this path")
    p_dec.add_argument("--report", default=None, help="Write the move table as JSON")
    p_dec.add_argument("--report-dir", default=None,
                       help="Directory receiving <game_id>.json for every game")
    for tag in ("event", "site", "date", "round", "white", "black", "result"):
        p_dec.add_argument(f"--{tag}", default=None, help=f"PGN {tag.title()} tag")

    # ── columns ──
    p_col = sub.add_parser("columns", help="Inspect table and column detection")
    p_col.add_argument("--image", required=True)
    p_col.add_argument("--columns", type=int, default=6)
    p_col.add_argument("--no-auto-crop", action="store_true")
    p_col.add_argument("--no-heuristics", action="store_true")
    p_col.add_argument("--save", default=None, help="Save overlay image to path")

    # ── evaluate ──
    p_eval = sub.add_parser("evaluate", help="Score a decoded game against ground truth")
    p_eval.add_argument("--ground-truth", required=True, help="Ground-truth PGN file")
    p_eval.add_argument("--pgn", default=None, help="Decoded PGN file")
    p_eval.add_argument("--image", action="append", default=None,
                        help="Decode these page images instead of reading --pgn")
    _add_decoding_options(p_eval)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    dispatch = {
        "decode": cmd_decode,
        "columns": cmd_columns,
        "evaluate": cmd_evaluate,
    }

    dispatch[args.command](args)


if __name__ == "__main__":
    main()
