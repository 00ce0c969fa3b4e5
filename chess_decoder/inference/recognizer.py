"""
Notation Extraction – Vision-model adapter with character whitelists
====================================================================

The recognizer is an external, untrusted service.  This module:

  • builds a prompt constraining the model to the sheet language's
    notation alphabet,
  • sends one column image per request (JPEG, long side ≤ 1024 px),
  • parses the reply (JSON list, optionally inside a Markdown fence, or
    plain lines) and drops any character outside the whitelist.

Failure policy:
  • timeout, network, API or any other provider error → ``ExtractionFailed``
  • a provider that ignores its timeout is abandoned after
    ``timeout + DEADLINE_SLACK`` seconds → ``ExtractionFailed``
  • empty or garbled replies → a ``RawTranscript`` with zero lines

Providers are looked up by name (``"openai"`` is built in) or passed
directly as any object with a ``recognize(image_bytes, prompt, timeout)``
method.  Concurrent callers share a ``RateLimiter`` for backpressure.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional, Protocol, Tuple, Union

import numpy as np
import openai
from openai import OpenAI

from chess_decoder.errors import ExtractionFailed
from chess_decoder.geometry.column_extractor import encode_image
from chess_decoder.notation.languages import Language, NotationTables, default_notation_tables

log = logging.getLogger(__name__)

DEFAULT_MODEL = os.getenv("CHESS_DECODER_MODEL", "gpt-4o")
DEFAULT_TIMEOUT: float = 60.0
DEADLINE_SLACK: float = 0.5      # grace beyond the timeout before the call is abandoned
MAX_TOKENS: int = 1000

SYSTEM_PROMPT = (
    "You are an OCR engine for handwritten chess scoresheets. "
    "Transcribe exactly what is written; never invent, complete or correct moves."
)


# ── Data classes ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class RawTranscript:
    """Text read from one column image."""
    column_index: int
    lines: Tuple[str, ...]
    language: Language = Language.ENGLISH
    provider: str = ""
    raw_text: str = ""           # unparsed reply, kept for debugging

    @property
    def is_empty(self) -> bool:
        return not self.lines


class TextRecognizer(Protocol):
    """Anything that turns an image into text."""
    name: str

    def recognize(self, image_bytes: bytes, prompt: str, timeout: Optional[float] = None) -> str:
        ...


# ── OpenAI provider ────────────────────────────────────────────────────

class OpenAIRecognizer:
    """Chat-completions vision call through the ``openai`` SDK.

    Parameters
    ----------
    model : str, optional
        Model name; defaults to ``$CHESS_DECODER_MODEL`` or ``gpt-4o``.
    api_key : str, optional
        Defaults to ``$OPENAI_API_KEY``.
    max_tokens : int
        Reply budget per column.
    max_retries : int
        SDK-level retries on transient errors.
    client : OpenAI, optional
        Pre-built client (tests inject a fake here).
    """

    name = "openai"

    def __init__(
        self,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        max_tokens: int = MAX_TOKENS,
        max_retries: int = 2,
        client: Optional[OpenAI] = None,
    ) -> None:
        self.model = model or DEFAULT_MODEL
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self._api_key = api_key
        self._client = client
        self._lock = threading.Lock()

    @property
    def client(self) -> OpenAI:
        with self._lock:
            if self._client is None:
                self._client = OpenAI(
                    api_key=self._api_key or os.getenv("OPENAI_API_KEY"),
                    max_retries=self.max_retries,
                )
            return self._client

    def recognize(self, image_bytes: bytes, prompt: str, timeout: Optional[float] = None) -> str:
        data_url = "data:image/jpeg;base64," + base64.b64encode(image_bytes).decode("utf-8")
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                temperature=0.0,
                max_tokens=self.max_tokens,
                timeout=timeout,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": data_url}},
                    ]},
                ],
            )
        except openai.OpenAIError as exc:
            raise ExtractionFailed(f"{self.name} request failed: {exc}", provider=self.name) from exc

        if not resp.choices:
            return ""
        return resp.choices[0].message.content or ""


# ── Provider registry ──────────────────────────────────────────────────

_PROVIDERS: Dict[str, Callable[[], TextRecognizer]] = {
    "openai": OpenAIRecognizer,
}


def register_provider(name: str, factory: Callable[[], TextRecognizer]) -> None:
    """Make *factory* available under *name* for ``resolve_provider``."""
    _PROVIDERS[name.lower()] = factory


def available_providers() -> List[str]:
    return sorted(_PROVIDERS)


def resolve_provider(provider: Union[str, TextRecognizer]) -> TextRecognizer:
    """Instantiate a registered provider by name, or pass an instance through."""
    if isinstance(provider, str):
        try:
            factory = _PROVIDERS[provider.lower()]
        except KeyError:
            raise ValueError(
                f"Unknown recognizer '{provider}' (available: {', '.join(available_providers())})"
            ) from None
        return factory()
    if not callable(getattr(provider, "recognize", None)):
        raise TypeError(f"{provider!r} does not implement recognize()")
    return provider


# ── Rate limiting ──────────────────────────────────────────────────────

class RateLimiter:
    """Fixed minimum interval between request starts, shared across threads."""

    def __init__(self, interval: float) -> None:
        self.interval = max(0.0, interval)
        self._lock = threading.Lock()
        self._next = 0.0

    def wait(self) -> float:
        """Block until the next slot; returns the seconds slept."""
        with self._lock:
            now = time.monotonic()
            start = max(now, self._next)
            self._next = start + self.interval
        delay = start - now
        if delay > 0:
            time.sleep(delay)
        return delay


# ── Prompt & reply handling ────────────────────────────────────────────

def build_prompt(language: Union[str, Language], tables: Optional[NotationTables] = None) -> str:
    tables = tables or default_notation_tables()
    language = Language.parse(language)
    table = tables.for_language(language)
    chars = " ".join(sorted(set(table.alphabet) | set("0123456789.-=+#")))
    return (
        f"Transcribe all visible chess moves in this column of a {language.value.title()} "
        f"scoresheet, top to bottom, one entry per line, including move numbers if written. "
        f"Valid characters are: {chars}. "
        "Leave out anything you cannot read rather than guessing. "
        "Return the raw text as a JSON list of strings."
    )


_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)


def parse_response(text: str) -> List[str]:
    """Lines of a recognizer reply.

    Accepts a JSON list (optionally fenced), a JSON object with a
    ``moves`` list, or plain newline-separated text.
    """
    text = _FENCE_RE.sub("", text or "").strip()
    if not text:
        return []

    data = None
    if text[0] in "[{":
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            log.debug("Reply is not valid JSON, falling back to line split")
    if isinstance(data, dict):
        data = data.get("moves")
    if isinstance(data, list):
        lines = [str(item) for item in data if item is not None]
    else:
        lines = text.splitlines()
    return [ln.strip() for ln in lines if ln.strip()]


def sanitize_lines(lines: List[str], whitelist: FrozenSet[str]) -> List[str]:
    """Drop characters outside *whitelist*; collapse whitespace; drop empties."""
    out: List[str] = []
    for line in lines:
        kept = "".join(ch if (ch in whitelist or ch.isspace()) else " " for ch in line)
        kept = " ".join(kept.split())
        if kept:
            out.append(kept)
    return out


def _recognize_with_deadline(
    recognizer: TextRecognizer,
    image_bytes: bytes,
    prompt: str,
    timeout: Optional[float],
) -> str:
    """Call the provider, giving up once *timeout* (plus slack) has passed.

    The worker thread of an abandoned call is left to finish on its own.
    """
    if timeout is None:
        return recognizer.recognize(image_bytes, prompt, timeout)
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="recognizer")
    try:
        future = pool.submit(recognizer.recognize, image_bytes, prompt, timeout)
        return future.result(timeout=timeout + DEADLINE_SLACK)
    finally:
        pool.shutdown(wait=False)


# ── Public API ─────────────────────────────────────────────────────────

def extract(
    column_image: np.ndarray,
    language: Union[str, Language],
    provider: Union[str, TextRecognizer] = "openai",
    column_index: int = 0,
    timeout: Optional[float] = DEFAULT_TIMEOUT,
    tables: Optional[NotationTables] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> RawTranscript:
    """Read one column image.

    Parameters
    ----------
    column_image : np.ndarray
        Cropped column (grayscale or BGR).
    language : str | Language
        Sheet language; selects the whitelist.
    provider : str | TextRecognizer
        Registered provider name or recognizer instance.
    column_index : int
        Position of the column on the page; copied into the transcript.
    timeout : float, optional
        Seconds before the request is abandoned.
    tables : NotationTables, optional
    rate_limiter : RateLimiter, optional
        Shared limiter; ``wait()`` is called before the request.

    Returns
    -------
    RawTranscript

    Raises
    ------
    ExtractionFailed
        On timeout, network or any other provider error.
    """
    tables = tables or default_notation_tables()
    language = Language.parse(language)
    recognizer = resolve_provider(provider)
    name = getattr(recognizer, "name", type(recognizer).__name__)

    image_bytes = encode_image(column_image)
    prompt = build_prompt(language, tables)
    if rate_limiter is not None:
        rate_limiter.wait()

    t0 = time.monotonic()
    try:
        text = _recognize_with_deadline(recognizer, image_bytes, prompt, timeout)
    except ExtractionFailed as exc:
        raise ExtractionFailed(str(exc), column_index=column_index, provider=name) from exc
    except FuturesTimeout as exc:
        raise ExtractionFailed(
            f"{name} gave no reply for column {column_index} within {timeout}s",
            column_index=column_index,
            provider=name,
        ) from exc
    except Exception as exc:
        raise ExtractionFailed(
            f"{name} failed on column {column_index}: {exc!r}",
            column_index=column_index,
            provider=name,
        ) from exc

    lines = sanitize_lines(parse_response(text), tables.whitelist(language))
    log.info(
        "Column %d: %d line(s) from %s in %.1fs",
        column_index, len(lines), name, time.monotonic() - t0,
    )
    return RawTranscript(
        column_index=column_index,
        lines=tuple(lines),
        language=language,
        provider=name,
        raw_text=text or "",
    )
