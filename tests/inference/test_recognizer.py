"""Tests for the recognizer adapter: prompt, reply parsing, providers."""

import threading
import time
from types import SimpleNamespace

import numpy as np
import openai
import pytest

from chess_decoder.errors import ExtractionFailed
from chess_decoder.inference.recognizer import (
    DEADLINE_SLACK,
    OpenAIRecognizer,
    RateLimiter,
    available_providers,
    build_prompt,
    extract,
    parse_response,
    register_provider,
    resolve_provider,
    sanitize_lines,
)
from chess_decoder.notation.languages import Language, default_notation_tables
from chess_decoder.notation.normalizer import NotationNormalizer, Side


class _ApiDown(openai.OpenAIError):
    pass


class _StalledRecognizer:
    """Ignores its timeout and blocks until released."""

    name = "stalled"

    def __init__(self) -> None:
        self.release = threading.Event()

    def recognize(self, image_bytes: bytes, prompt: str, timeout=None) -> str:
        self.release.wait(10.0)
        return "e4"


def _fake_client(reply=None, error=None):
    calls = []

    def create(**kwargs):
        calls.append(kwargs)
        if error is not None:
            raise error
        message = SimpleNamespace(content=reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    return client, calls


@pytest.fixture
def column() -> np.ndarray:
    return np.full((400, 100, 3), 255, dtype=np.uint8)


class TestParseResponse:
    def test_json_list(self) -> None:
        assert parse_response('["1. e4", "2. Nf3"]') == ["1. e4", "2. Nf3"]

    def test_fenced_json(self) -> None:
        assert parse_response('```json\n["e4", "e5"]\n```') == ["e4", "e5"]

    def test_moves_object(self) -> None:
        assert parse_response('{"moves": ["e4", null, "d4"]}') == ["e4", "d4"]

    def test_plain_lines(self) -> None:
        assert parse_response("1. e4 e5\n\n2. Nf3 Nc6\n") == ["1. e4 e5", "2. Nf3 Nc6"]

    def test_broken_json_falls_back(self) -> None:
        assert parse_response('["e4", "e5"') == ['["e4", "e5"']

    def test_empty(self) -> None:
        assert parse_response("") == []
        assert parse_response(None) == []


class TestSanitize:
    def test_drops_foreign_characters(self) -> None:
        wl = default_notation_tables().whitelist("english")
        assert sanitize_lines(["1. e4 @e5", "%%", "Nf3"], wl) == ["1. e4 e5", "Nf3"]

    def test_greek_letters_kept(self) -> None:
        wl = default_notation_tables().whitelist("greek")
        assert sanitize_lines(["2. Νφ3 Νχ6"], wl) == ["2. Νφ3 Νχ6"]

    @pytest.mark.parametrize(
        "language, line",
        [
            ("english", "4. o-o Nf6"),
            ("english", "5. O-O-O"),
            ("greek", "4. Ο-Ο Ιζ6"),
            ("greek", "4. ο-ο-ο"),
            ("russian", "4. О-О Кf6"),
            ("russian", "4. о-о-о"),
        ],
    )
    def test_castling_letters_kept(self, language, line) -> None:
        wl = default_notation_tables().whitelist(language)
        assert sanitize_lines([line], wl) == [line]


class TestPrompt:
    def test_mentions_language_and_alphabet(self) -> None:
        prompt = build_prompt("greek")
        assert "Greek" in prompt
        assert "Π" in prompt and "α" in prompt
        assert "JSON list" in prompt


class TestProviders:
    def test_openai_registered(self) -> None:
        assert "openai" in available_providers()

    def test_register_and_resolve(self, fake_recognizer) -> None:
        register_provider("Scripted-Test", lambda: fake_recognizer("e4"))
        recognizer = resolve_provider("scripted-test")
        assert recognizer.recognize(b"", "") == "e4"

    def test_unknown_provider(self) -> None:
        with pytest.raises(ValueError, match="Unknown recognizer"):
            resolve_provider("nope")

    def test_instance_without_recognize(self) -> None:
        with pytest.raises(TypeError):
            resolve_provider(object())


class TestExtract:
    def test_transcript(self, column: np.ndarray, fake_recognizer) -> None:
        rec = fake_recognizer('["1. e4 e5", "2. Nf3 Nc6"]')
        transcript = extract(column, "english", rec, column_index=3, timeout=5.0)
        assert transcript.lines == ("1. e4 e5", "2. Nf3 Nc6")
        assert transcript.column_index == 3
        assert transcript.language is Language.ENGLISH
        assert transcript.provider == "fake"
        assert rec.calls[0]["timeout"] == 5.0
        assert rec.calls[0]["bytes"] > 0

    def test_garbage_reply_is_empty_transcript(self, column: np.ndarray, fake_recognizer) -> None:
        transcript = extract(column, "english", fake_recognizer("@@@ %%%"))
        assert transcript.is_empty
        assert transcript.raw_text == "@@@ %%%"

    def test_timeout_becomes_extraction_failed(self, column: np.ndarray, fake_recognizer) -> None:
        rec = fake_recognizer([TimeoutError("slow")])
        with pytest.raises(ExtractionFailed) as info:
            extract(column, "english", rec, column_index=2)
        assert info.value.column_index == 2
        assert info.value.provider == "fake"

    def test_any_provider_error_becomes_extraction_failed(
        self, column: np.ndarray, fake_recognizer,
    ) -> None:
        rec = fake_recognizer([RuntimeError("provider returned HTTP 502")])
        with pytest.raises(ExtractionFailed, match="HTTP 502") as info:
            extract(column, "english", rec, column_index=4)
        assert info.value.column_index == 4
        assert isinstance(info.value.__cause__, RuntimeError)

    def test_provider_ignoring_timeout_is_abandoned(self, column: np.ndarray) -> None:
        rec = _StalledRecognizer()
        t0 = time.monotonic()
        try:
            with pytest.raises(ExtractionFailed, match="no reply"):
                extract(column, "english", rec, column_index=0, timeout=0.1)
        finally:
            rec.release.set()
        assert time.monotonic() - t0 < 0.1 + DEADLINE_SLACK + 2.0

    @pytest.mark.parametrize(
        "language, reply",
        [("english", "4. o-o Nf6"), ("greek", "4. Ο-Ο Ιζ6"), ("russian", "4. О-О Кf6")],
    )
    def test_castling_survives_to_normalization(
        self, column: np.ndarray, fake_recognizer, language, reply,
    ) -> None:
        transcript = extract(column, language, fake_recognizer(reply))
        moves = NotationNormalizer().normalize(transcript, language)
        assert [(m.move_number, m.side, m.normalized_token) for m in moves] == [
            (4, Side.WHITE, "O-O"),
            (4, Side.BLACK, "Nf6"),
        ]

    def test_rate_limiter_is_used(self, column: np.ndarray, fake_recognizer) -> None:
        limiter = RateLimiter(0.0)
        waits = []
        limiter.wait = lambda: waits.append(1) or 0.0
        extract(column, "english", fake_recognizer("e4"), rate_limiter=limiter)
        assert waits == [1]


class TestOpenAIRecognizer:
    def test_request_shape(self, column: np.ndarray) -> None:
        client, calls = _fake_client(reply='["1. e4 e5"]')
        rec = OpenAIRecognizer(model="test-model", client=client)
        transcript = extract(column, "english", rec, timeout=7.0)
        assert transcript.lines == ("1. e4 e5",)
        assert transcript.provider == "openai"

        kwargs = calls[0]
        assert kwargs["model"] == "test-model"
        assert kwargs["temperature"] == 0.0
        assert kwargs["timeout"] == 7.0
        system, user = kwargs["messages"]
        assert system["role"] == "system"
        text, image = user["content"]
        assert text["type"] == "text"
        assert image["image_url"]["url"].startswith("data:image/jpeg;base64,")

    def test_api_error(self, column: np.ndarray) -> None:
        client, _ = _fake_client(error=_ApiDown("service unavailable"))
        rec = OpenAIRecognizer(client=client)
        with pytest.raises(ExtractionFailed, match="service unavailable") as info:
            extract(column, "english", rec, column_index=1)
        assert info.value.column_index == 1

    def test_none_content(self) -> None:
        client, _ = _fake_client(reply=None)
        assert OpenAIRecognizer(client=client).recognize(b"x", "prompt") == ""


class TestRateLimiter:
    def test_zero_interval_never_sleeps(self) -> None:
        limiter = RateLimiter(0.0)
        assert limiter.wait() == 0.0
        assert limiter.wait() == 0.0

    def test_spaces_requests(self) -> None:
        limiter = RateLimiter(0.05)
        limiter.wait()
        delay = limiter.wait()
        assert 0.0 < delay <= 0.05
