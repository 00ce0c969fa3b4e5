"""End-to-end pipeline tests with a scripted recognizer."""

import threading
import time

import numpy as np
import pytest

from chess_decoder.errors import ExtractionFailed, IssueKind
from chess_decoder.inference.pipeline import PipelineConfig, ScoresheetPipeline
from chess_decoder.pgn.assembler import PgnMetadata
from chess_decoder.validation.models import MoveStatus


def _config(**overrides) -> PipelineConfig:
    base = dict(
        expected_columns=2,
        auto_crop=False,
        use_heuristics=False,
        max_concurrency=1,
        request_interval=0.0,
    )
    base.update(overrides)
    return PipelineConfig(**base)


class _ListSink:
    def __init__(self) -> None:
        self.saved = []

    def save(self, validation) -> None:
        self.saved.append(validation)


class TestConfig:
    def test_bad_layout(self) -> None:
        with pytest.raises(ValueError):
            PipelineConfig(layout="grid")

    def test_bad_language(self) -> None:
        with pytest.raises(ValueError):
            PipelineConfig(language="klingon")

    def test_bad_concurrency(self) -> None:
        with pytest.raises(ValueError):
            PipelineConfig(max_concurrency=0)


class TestProcess:
    def test_paired_columns(self, blank_page: np.ndarray, fake_recognizer) -> None:
        rec = fake_recognizer(["1. e4\n2. Nf3\n3. Bb5", "e5\nNc6"])
        pipeline = ScoresheetPipeline(rec, _config())
        result = pipeline.process(blank_page, PgnMetadata(white="Alice", black="Bob"), game_id="g1")

        assert result.game_id == "g1"
        assert [m.normalized_notation for m in result.moves] == ["e4", "e5", "Nf3", "Nc6", "Bb5"]
        assert result.summary()["valid"] == 5
        assert result.issues == []
        assert "1. e4 e5 2. Nf3 Nc6 3. Bb5 *" in result.pgn
        assert '[White "Alice"]' in result.pgn
        assert len(rec.calls) == 2

    def test_lines_layout_greek(self, blank_page: np.ndarray, fake_recognizer) -> None:
        rec = fake_recognizer(['["1. e4 e5", "2. Νφ3 Νχ6"]'])
        config = _config(expected_columns=1, layout="lines", language="greek")
        result = ScoresheetPipeline(rec, config).process(blank_page)
        assert [m.normalized_notation for m in result.moves] == ["e4", "e5", "Nf3", "Nc6"]
        assert result.language == "greek"

    def test_invalid_move_reported(self, blank_page: np.ndarray, fake_recognizer) -> None:
        rec = fake_recognizer(["1. e4\n2. Nf3\n3. Nc6", "e5\nNf7"])
        result = ScoresheetPipeline(rec, _config()).process(blank_page)
        statuses = [m.status for m in result.moves]
        assert statuses == [MoveStatus.VALID] * 3 + [MoveStatus.INVALID, MoveStatus.VALID]
        invalid = [i for i in result.issues if i.kind is IssueKind.MOVE_INVALID]
        assert len(invalid) == 1
        assert invalid[0].segment == "move 2 black"
        assert "{invalid: Nf7}" in result.pgn

    def test_failed_column_is_isolated(self, blank_page: np.ndarray, fake_recognizer) -> None:
        rec = fake_recognizer([
            "1. e4\n2. Nf3",
            "e5\nNc6",
            ExtractionFailed("recognizer down"),
            "a6",
        ])
        result = ScoresheetPipeline(rec, _config(expected_columns=4)).process(blank_page)
        failed = [i for i in result.issues if i.kind is IssueKind.EXTRACTION_FAILED]
        assert len(failed) == 1
        assert failed[0].segment == "page1/column3"
        assert [m.normalized_notation for m in result.moves[:4]] == ["e4", "e5", "Nf3", "Nc6"]

    def test_two_pages(self, blank_page: np.ndarray, fake_recognizer) -> None:
        rec = fake_recognizer(["1. e4\n2. Nf3", "e5\nNc6", "Bb5", "a6"])
        result = ScoresheetPipeline(rec, _config()).process([blank_page, blank_page])
        assert [m.normalized_notation for m in result.moves] == ["e4", "e5", "Nf3", "Nc6", "Bb5", "a6"]
        assert [m.move_number for m in result.moves][-2:] == [3, 3]

    def test_start_fen(self, blank_page: np.ndarray, fake_recognizer) -> None:
        fen = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"
        rec = fake_recognizer(['["1... e5", "2. Nf3 Nc6"]'])
        config = _config(expected_columns=1, layout="lines")
        result = ScoresheetPipeline(rec, config).process(blank_page, start_fen=fen)
        assert result.summary() == {"valid": 3, "corrected": 0, "invalid": 0, "total": 3}
        assert "1... e5 2. Nf3 Nc6" in result.pgn

    def test_nothing_read(self, blank_page: np.ndarray, fake_recognizer) -> None:
        result = ScoresheetPipeline(fake_recognizer("[]"), _config()).process(blank_page)
        assert result.moves == []
        assert [i.kind for i in result.issues] == [IssueKind.NORMALIZATION_EMPTY]
        assert result.pgn.rstrip().endswith("*")

    def test_cancelled(self, blank_page: np.ndarray, fake_recognizer) -> None:
        event = threading.Event()
        event.set()
        rec = fake_recognizer("1. e4 e5")
        result = ScoresheetPipeline(rec, _config()).process(blank_page, cancel_event=event)
        assert result.moves == []
        assert [i.kind for i in result.issues] == [IssueKind.CANCELLED]
        assert rec.calls == []

    def test_geometry_fallback_issues(self, blank_page: np.ndarray, fake_recognizer) -> None:
        config = _config(auto_crop=True, use_heuristics=True)
        result = ScoresheetPipeline(fake_recognizer("e4"), config).process(blank_page)
        geometry = [i for i in result.issues if i.kind is IssueKind.GEOMETRY_AMBIGUOUS]
        assert len(geometry) == 2
        assert all(i.segment == "page1" for i in geometry)

    def test_page_count(self, blank_page: np.ndarray, fake_recognizer) -> None:
        pipeline = ScoresheetPipeline(fake_recognizer("e4"), _config())
        with pytest.raises(ValueError):
            pipeline.process([blank_page] * 3)
        with pytest.raises(ValueError):
            pipeline.process([])

    def test_debug_artifacts(self, blank_page: np.ndarray, fake_recognizer) -> None:
        rec = fake_recognizer(["1. e4", "e5"])
        result = ScoresheetPipeline(rec, _config(debug=True)).process(blank_page)
        debug = result.debug
        assert len(debug.overlays) == 1
        assert debug.overlays[0].shape == blank_page.shape
        assert [t["lines"] for t in debug.transcripts_dict()] == [["1. e4"], ["e5"]]
        assert len(debug.candidates) == 2

    def test_sink_receives_result(self, blank_page: np.ndarray, fake_recognizer) -> None:
        sink = _ListSink()
        pipeline = ScoresheetPipeline(fake_recognizer(["1. e4", "e5"]), _config(), sink=sink)
        result = pipeline.process(blank_page)
        assert sink.saved == [result]


class TestProcessMany:
    def test_keeps_input_order(self, blank_page: np.ndarray, fake_recognizer) -> None:
        rec = fake_recognizer("1. e4 e5")
        config = _config(expected_columns=1, layout="lines")
        results = ScoresheetPipeline(rec, config).process_many([blank_page, blank_page], max_workers=2)
        assert len(results) == 2
        assert results[0].game_id != results[1].game_id
        assert all(r.summary()["valid"] == 2 for r in results)

    def test_metadata_length_checked(self, blank_page: np.ndarray, fake_recognizer) -> None:
        pipeline = ScoresheetPipeline(fake_recognizer("e4"), _config())
        with pytest.raises(ValueError):
            pipeline.process_many([blank_page], metadata=[None, None])


class _StalledRecognizer:
    """Ignores its timeout and blocks until released."""

    name = "stalled"

    def __init__(self) -> None:
        self.release = threading.Event()

    def recognize(self, image_bytes: bytes, prompt: str, timeout=None) -> str:
        self.release.wait(10.0)
        return "1. e4 e5"


class TestExtractionFailures:
    def test_unexpected_provider_error_is_isolated(
        self, blank_page: np.ndarray, fake_recognizer,
    ) -> None:
        rec = fake_recognizer([
            "1. e4\n2. Nf3",
            "e5\nNc6",
            RuntimeError("provider returned HTTP 502"),
            "a6",
        ])
        result = ScoresheetPipeline(rec, _config(expected_columns=4)).process(blank_page)
        failed = [i for i in result.issues if i.kind is IssueKind.EXTRACTION_FAILED]
        assert len(failed) == 1
        assert failed[0].segment == "page1/column3"
        assert "HTTP 502" in failed[0].message
        assert [m.normalized_notation for m in result.moves[:4]] == ["e4", "e5", "Nf3", "Nc6"]

    def test_stalled_provider_times_out(self, blank_page: np.ndarray) -> None:
        rec = _StalledRecognizer()
        config = _config(expected_columns=1, layout="lines", extraction_timeout=0.1)
        t0 = time.monotonic()
        try:
            result = ScoresheetPipeline(rec, config).process(blank_page)
        finally:
            rec.release.set()
        assert time.monotonic() - t0 < 5.0
        kinds = [i.kind for i in result.issues]
        assert kinds == [IssueKind.EXTRACTION_FAILED, IssueKind.NORMALIZATION_EMPTY]
        assert result.moves == []
