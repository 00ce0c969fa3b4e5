"""CLI tests: argument parsing and the file-producing commands."""

import json

import cv2
import pytest

from chess_decoder.inference.recognizer import register_provider
from chess_decoder.main import JsonFileSink, build_parser, load_image, main


class TestParser:
    def test_decode_defaults(self) -> None:
        args = build_parser().parse_args(["decode", "--image", "a.jpg"])
        assert args.image == ["a.jpg"]
        assert args.language == "english"
        assert args.columns == 6
        assert args.layout == "paired"
        assert args.provider == "openai"

    def test_two_pages(self) -> None:
        args = build_parser().parse_args(["decode", "--image", "a.jpg", "--image", "b.jpg"])
        assert args.image == ["a.jpg", "b.jpg"]

    def test_no_command_prints_help(self, capsys) -> None:
        with pytest.raises(SystemExit) as info:
            main([])
        assert info.value.code == 0
        assert "decode" in capsys.readouterr().out


class TestCommands:
    def test_load_image(self, tmp_path, ruled_sheet) -> None:
        path = tmp_path / "sheet.png"
        cv2.imwrite(str(path), ruled_sheet)
        image = load_image(str(path))
        assert image.shape == ruled_sheet.shape

    def test_columns(self, tmp_path, ruled_sheet, capsys) -> None:
        path = tmp_path / "sheet.png"
        overlay = tmp_path / "overlay.png"
        cv2.imwrite(str(path), ruled_sheet)
        main(["columns", "--image", str(path), "--save", str(overlay)])
        report = json.loads(capsys.readouterr().out)
        assert report["table"]["method"] == "ruled-lines"
        assert len(report["columns"]["splits"]) == 5
        assert report["corner_count"] > 0
        assert overlay.exists()

    def test_decode(self, tmp_path, blank_page, fake_recognizer, capsys) -> None:
        register_provider("cli-scripted", lambda: fake_recognizer(["1. e4\n2. Nf3", "e5\nNc6"]))
        image = tmp_path / "page.png"
        cv2.imwrite(str(image), blank_page)
        pgn_path = tmp_path / "game.pgn"
        report_path = tmp_path / "game.json"

        main([
            "decode", "--image", str(image),
            "--provider", "cli-scripted",
            "--columns", "2", "--no-auto-crop", "--no-heuristics",
            "--concurrency", "1", "--interval", "0",
            "--white", "Alice",
            "--output", str(pgn_path),
            "--report", str(report_path),
            "--report-dir", str(tmp_path / "reports"),
        ])

        pgn = pgn_path.read_text(encoding="utf-8")
        assert '[White "Alice"]' in pgn
        assert "1. e4 e5 2. Nf3 Nc6 *" in pgn
        report = json.loads(report_path.read_text(encoding="utf-8"))
        assert report["summary"]["valid"] == 4
        assert len(list((tmp_path / "reports").glob("*.json"))) == 1
        assert "SCORESHEET DECODING RESULT" in capsys.readouterr().out

    def test_evaluate_from_pgn(self, tmp_path, capsys) -> None:
        truth = tmp_path / "truth.pgn"
        decoded = tmp_path / "decoded.pgn"
        truth.write_text("1. e4 e5 2. Nf3 Nc6 *\n", encoding="utf-8")
        decoded.write_text("1. e4 e5 2. Nf3 Nf6 *\n", encoding="utf-8")
        main(["evaluate", "--ground-truth", str(truth), "--pgn", str(decoded)])
        result = json.loads(capsys.readouterr().out)
        assert result["game_id"] == "decoded"
        assert result["normalized_score"] == pytest.approx(0.75)

    def test_json_sink(self, tmp_path) -> None:
        from chess_decoder.validation.models import GameValidation

        JsonFileSink(tmp_path / "out").save(GameValidation(game_id="abc", pairs=[], pgn="*\n"))
        data = json.loads((tmp_path / "out" / "abc.json").read_text(encoding="utf-8"))
        assert data["game_id"] == "abc"
        assert data["summary"]["total"] == 0
