"""
Decoding Pipeline – Scoresheet image(s) → validated game
========================================================

This is the single-call entry point for decoding.

Pipeline stages (per page):
  1. Table detection      – ruled lines / ink projection / full image
  2. Column detection     – projection minima or equal division
  3. Column extraction    – crops sent to the recognizer concurrently,
                            rate-limited, each with a timeout
  4. Normalization        – glyph tables + move-number anchoring
Then, for the whole game (1 or 2 pages):
  5. Ordering             – stable sort by transcribed move number
  6. Validation           – python-chess state machine
  7. PGN assembly

Degradation policy:
  • Geometry fallbacks and failed columns are recorded as ``RunIssue`` s
    on the result; the rest of the sheet is still decoded.
  • Cancellation yields an empty move table for the game.
  • ``InternalConsistencyError`` is the only error that escapes.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, Union

import numpy as np

from chess_decoder.errors import (
    ExtractionFailed,
    IssueKind,
    RunIssue,
    ValidationCancelled,
)
from chess_decoder.geometry.column_detector import (
    DEFAULT_EXPECTED_COLUMNS,
    ColumnDetectionConfig,
    ColumnSet,
    detect_columns_automatically,
)
from chess_decoder.geometry.column_extractor import crop_columns, create_image_with_boundaries
from chess_decoder.geometry.table_detector import (
    Boundary,
    TableDetectionConfig,
    detect_table,
    get_detailed_corner_info,
)
from chess_decoder.inference.recognizer import (
    DEFAULT_TIMEOUT,
    RateLimiter,
    RawTranscript,
    TextRecognizer,
    extract,
    resolve_provider,
)
from chess_decoder.notation.languages import Language, NotationTables, default_notation_tables
from chess_decoder.notation.normalizer import (
    CandidateMove,
    NotationNormalizer,
    complete_pairs,
    order_candidates,
)
from chess_decoder.pgn.assembler import PgnMetadata, assemble_pgn
from chess_decoder.validation.models import GameValidation, MoveStatus, pair_moves
from chess_decoder.validation.move_validator import CorrectionConfig, MoveValidator

log = logging.getLogger(__name__)

MAX_PAGES: int = 2


# ── Configuration & results ────────────────────────────────────────────

@dataclass(frozen=True)
class PipelineConfig:
    """Run-level settings."""
    language: str = "english"
    expected_columns: int = DEFAULT_EXPECTED_COLUMNS
    auto_crop: bool = True                     # gate for table detection
    use_heuristics: bool = True                # projection search for columns
    layout: str = "paired"                     # "paired" | "lines"
    column_padding: int = 4
    max_concurrency: int = 3                   # simultaneous recognizer calls
    request_interval: float = 0.5              # seconds between request starts
    extraction_timeout: float = DEFAULT_TIMEOUT
    debug: bool = False
    table: TableDetectionConfig = field(default_factory=TableDetectionConfig)
    columns: ColumnDetectionConfig = field(default_factory=ColumnDetectionConfig)
    correction: CorrectionConfig = field(default_factory=CorrectionConfig)

    def __post_init__(self) -> None:
        if self.layout not in ("paired", "lines"):
            raise ValueError(f"layout must be 'paired' or 'lines', got '{self.layout}'")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        Language.parse(self.language)


@dataclass
class DebugArtifacts:
    """Intermediate products kept for human review."""
    overlays: List[np.ndarray] = field(default_factory=list)       # one per page
    boundaries: List[Boundary] = field(default_factory=list)
    column_sets: List[ColumnSet] = field(default_factory=list)
    transcripts: List[RawTranscript] = field(default_factory=list)
    corner_info: List[Dict] = field(default_factory=list)
    candidates: List[CandidateMove] = field(default_factory=list)

    def transcripts_dict(self) -> List[Dict]:
        return [
            {"column": t.column_index, "lines": list(t.lines), "raw": t.raw_text}
            for t in self.transcripts
        ]


class GameValidationSink(Protocol):
    """Where finished games go (database, file, queue…)."""

    def save(self, validation: GameValidation) -> None:
        ...


@dataclass
class _Page:
    index: int
    boundary: Boundary
    columns: ColumnSet
    crops: List[np.ndarray]


# ── Pipeline class ─────────────────────────────────────────────────────

class ScoresheetPipeline:
    """End-to-end scoresheet → ``GameValidation`` pipeline.

    Parameters
    ----------
    provider : str | TextRecognizer
        Recognizer name (``"openai"``) or instance.
    config : PipelineConfig, optional
    tables : NotationTables, optional
        Glyph tables passed to the normalizer and prompt builder.
    sink : GameValidationSink, optional
        Receives every finished ``GameValidation``.
    """

    def __init__(
        self,
        provider: Union[str, TextRecognizer] = "openai",
        config: Optional[PipelineConfig] = None,
        tables: Optional[NotationTables] = None,
        sink: Optional[GameValidationSink] = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.tables = tables or default_notation_tables()
        self.recognizer = resolve_provider(provider)
        self.normalizer = NotationNormalizer(self.tables)
        self.validator = MoveValidator(self.config.correction)
        self.rate_limiter = RateLimiter(self.config.request_interval)
        self.sink = sink

        log.info(
            "Pipeline ready  provider=%s  language=%s  columns=%d  layout=%s",
            getattr(self.recognizer, "name", type(self.recognizer).__name__),
            self.config.language,
            self.config.expected_columns,
            self.config.layout,
        )

    # ── Public API ─────────────────────────────────────────────────────

    def process(
        self,
        images: Union[np.ndarray, Sequence[np.ndarray]],
        metadata: Optional[PgnMetadata] = None,
        start_fen: Optional[str] = None,
        game_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> GameValidation:
        """Decode one game from one or two page images.

        Parameters
        ----------
        images : np.ndarray or sequence of np.ndarray
            Page 1 (and optionally page 2) as BGR or grayscale arrays.
        metadata : PgnMetadata, optional
            PGN header values.
        start_fen : str, optional
            Position before the first written move (continuation sheets).
        game_id : str, optional
            Identifier copied into the result; generated if omitted.
        cancel_event : threading.Event, optional
            When set, outstanding work is abandoned and the game comes back
            with an empty move table.

        Returns
        -------
        GameValidation
        """
        pages = [images] if isinstance(images, np.ndarray) else list(images)
        if not 1 <= len(pages) <= MAX_PAGES:
            raise ValueError(f"Expected 1 or {MAX_PAGES} page images, got {len(pages)}")

        issues: List[RunIssue] = []
        debug = DebugArtifacts() if self.config.debug else None
        language = Language.parse(self.config.language)
        game_id = game_id or uuid.uuid4().hex

        segmented = [self._segment(i, page, issues, debug) for i, page in enumerate(pages)]
        transcripts = self._extract_all(segmented, issues, cancel_event)
        if debug is not None:
            debug.transcripts = [t for page in transcripts for t in page if t is not None]

        candidates: List[CandidateMove] = []
        if not _cancelled(cancel_event):
            next_number = 1
            for page, page_transcripts in zip(segmented, transcripts):
                page_candidates = self._normalize_page(page, page_transcripts, language, next_number)
                if page_candidates:
                    next_number = max(c.move_number for c in page_candidates) + 1
                candidates.extend(page_candidates)
            candidates = complete_pairs(order_candidates(candidates))
            if debug is not None:
                debug.candidates = list(candidates)

        validated = []
        if _cancelled(cancel_event):
            issues.append(RunIssue(IssueKind.CANCELLED, "Run cancelled before validation"))
        elif not candidates:
            issues.append(RunIssue(IssueKind.NORMALIZATION_EMPTY, "No moves were read from the scoresheet"))
        else:
            try:
                validated = self.validator.validate(candidates, start_fen, cancel_event)
            except ValidationCancelled as exc:
                issues.append(RunIssue(IssueKind.CANCELLED, str(exc)))
                validated = []

        for move in validated:
            if move.status is MoveStatus.INVALID:
                issues.append(RunIssue(
                    IssueKind.MOVE_INVALID,
                    move.explanation,
                    segment=f"move {move.move_number} {move.side.value}",
                ))

        result = GameValidation(
            game_id=game_id,
            pairs=pair_moves(validated),
            pgn=assemble_pgn(validated, metadata),
            language=language.value,
            issues=issues,
            debug=debug,
        )
        log.info("Game %s decoded: %s, %d issue(s)", game_id, result.summary(), len(issues))

        if self.sink is not None:
            self.sink.save(result)
        return result

    def process_many(
        self,
        games: Sequence[Union[np.ndarray, Sequence[np.ndarray]]],
        metadata: Optional[Sequence[Optional[PgnMetadata]]] = None,
        max_workers: int = 2,
    ) -> List[GameValidation]:
        """Decode independent games concurrently; results keep input order."""
        metadata = list(metadata) if metadata is not None else [None] * len(games)
        if len(metadata) != len(games):
            raise ValueError("metadata must have one entry per game")
        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
            futures = [pool.submit(self.process, g, m) for g, m in zip(games, metadata)]
            return [f.result() for f in futures]

    # ── Geometry ───────────────────────────────────────────────────────

    def _segment(
        self,
        index: int,
        image: np.ndarray,
        issues: List[RunIssue],
        debug: Optional[DebugArtifacts],
    ) -> _Page:
        cfg = self.config
        if image is None or image.size == 0:
            raise ValueError(f"Page {index + 1} is empty")

        if cfg.auto_crop:
            detection = detect_table(image, cfg.table)
            boundary = detection.boundary
            if detection.method == "full-image":
                issues.append(RunIssue(
                    IssueKind.GEOMETRY_AMBIGUOUS,
                    "Table not found, using the full image: " + "; ".join(detection.reasons),
                    segment=f"page{index + 1}",
                ))
        else:
            boundary = Boundary.full_image(image.shape)

        columns = detect_columns_automatically(
            image,
            search_region=boundary,
            use_heuristics=cfg.use_heuristics,
            expected_columns=cfg.expected_columns,
            config=cfg.columns,
        )
        if cfg.use_heuristics and cfg.expected_columns > 1 and columns.method == "equal-division":
            issues.append(RunIssue(
                IssueKind.GEOMETRY_AMBIGUOUS,
                "Column gaps not found, using equal-width columns",
                segment=f"page{index + 1}",
            ))

        crops = crop_columns(image, columns, boundary, padding=cfg.column_padding)
        if debug is not None:
            debug.boundaries.append(boundary)
            debug.column_sets.append(columns)
            debug.overlays.append(create_image_with_boundaries(
                image, cfg.expected_columns, cfg.auto_crop, cfg.table, cfg.columns,
            ))
            debug.corner_info.append(get_detailed_corner_info(image, cfg.table))
        return _Page(index, boundary, columns, crops)

    # ── Extraction ─────────────────────────────────────────────────────

    def _extract_all(
        self,
        pages: List[_Page],
        issues: List[RunIssue],
        cancel_event: Optional[threading.Event],
    ) -> List[List[Optional[RawTranscript]]]:
        """Recognize every column of every page; failures become ``None``."""
        results: List[List[Optional[RawTranscript]]] = [[None] * len(p.crops) for p in pages]
        jobs: List[Tuple[int, int, np.ndarray]] = [
            (p.index, c, crop) for p in pages for c, crop in enumerate(p.crops)
        ]

        def run(job: Tuple[int, int, np.ndarray]) -> Optional[RawTranscript]:
            page_idx, col_idx, crop = job
            if _cancelled(cancel_event):
                return None
            return extract(
                crop,
                self.config.language,
                self.recognizer,
                column_index=col_idx,
                timeout=self.config.extraction_timeout,
                tables=self.tables,
                rate_limiter=self.rate_limiter,
            )

        with ThreadPoolExecutor(max_workers=self.config.max_concurrency) as pool:
            futures = [pool.submit(run, job) for job in jobs]
            for (page_idx, col_idx, _), future in zip(jobs, futures):
                segment = f"page{page_idx + 1}/column{col_idx + 1}"
                try:
                    results[page_idx][col_idx] = future.result()
                except ExtractionFailed as exc:
                    log.error("Extraction failed for %s: %s", segment, exc)
                    issues.append(RunIssue(IssueKind.EXTRACTION_FAILED, str(exc), segment=segment))
        return results

    # ── Normalization ──────────────────────────────────────────────────

    def _normalize_page(
        self,
        page: _Page,
        transcripts: List[Optional[RawTranscript]],
        language: Language,
        start_number: int,
    ) -> List[CandidateMove]:
        out: List[CandidateMove] = []
        number = start_number

        if self.config.layout == "lines":
            for col, transcript in enumerate(transcripts):
                if transcript is None:
                    continue
                moves = self.normalizer.normalize(
                    transcript, language, start_number=number,
                    source=f"page{page.index + 1}/column{col + 1}",
                )
                if moves:
                    number = max(m.move_number for m in moves) + 1
                out.extend(moves)
            return out

        # Paired layout: columns (0,1), (2,3), … are White/Black.
        for col in range(0, len(transcripts), 2):
            white = transcripts[col]
            black = transcripts[col + 1] if col + 1 < len(transcripts) else None
            if white is None and black is None:
                continue
            moves = self.normalizer.normalize_paired(
                white.lines if white is not None else (),
                black.lines if black is not None else (),
                language,
                start_number=number,
                source=f"page{page.index + 1}/columns{col + 1}-{col + 2}",
            )
            if moves:
                number = max(m.move_number for m in moves) + 1
            out.extend(moves)
        return out


def _cancelled(event: Optional[threading.Event]) -> bool:
    return event is not None and event.is_set()
