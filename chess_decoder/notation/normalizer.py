"""
Notation Normalizer – Raw transcript → numbered move candidates
===============================================================

Responsibilities:
  1. Map language glyphs to canonical SAN letters, one token at a time
     (move numbers and punctuation are left alone).
  2. Canonicalize castling (``0-0``, ``o-o-o``, ``00`` → ``O-O`` / ``O-O-O``)
     and strip annotation marks (``!``, ``?``, ``e.p.``).
  3. Pair tokens into White/Black moves anchored to the move number that
     was actually written on the sheet.

Numbering rules:
  • ``12.`` starts a White move, ``12...`` a Black-only move.
  • Tokens before any number continue from the previous number + 1 and are
    flagged ``inferred_number``.
  • A line that ends while Black is still expected yields a Black
    placeholder (empty token) instead of letting the next move slide into
    Black's slot.  The last line of a transcript is exempt: a game may end
    on White's move.

Two transcript layouts are supported:

  • **lines** – each column holds full ``N. white black`` lines
    (``NotationNormalizer.normalize``).
  • **paired** – alternating White and Black columns with one move per
    row (``NotationNormalizer.normalize_paired``); row *i* of both
    columns forms one move pair.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Iterable, List, Optional, Sequence, Tuple, Union

from chess_decoder.notation.languages import (
    Language,
    LanguageTable,
    NotationTables,
    default_notation_tables,
)

if TYPE_CHECKING:
    from chess_decoder.inference.recognizer import RawTranscript

TranscriptLike = Union["RawTranscript", Sequence[str]]

log = logging.getLogger(__name__)


# ── Data structures ────────────────────────────────────────────────────

class Side(str, enum.Enum):
    WHITE = "white"
    BLACK = "black"

    @property
    def other(self) -> "Side":
        return Side.BLACK if self is Side.WHITE else Side.WHITE


@dataclass(frozen=True)
class CandidateMove:
    """One ply as read off the sheet."""
    move_number: int
    side: Side
    raw_token: str                   # token as transcribed ("" for placeholders)
    normalized_token: str            # canonical SAN-alphabet token ("" if missing)
    inferred_number: bool = False    # number was not written, inferred from context
    source: Optional[str] = None     # e.g. "page1/column2"

    @property
    def is_missing(self) -> bool:
        return self.normalized_token == ""


# ── Token grammar ──────────────────────────────────────────────────────

_CASTLE_RE = re.compile(r"^([0OoΟοОо])(?:-?[0OoΟοОо]){1,2}([+#]*)$")
_NUMBER_RE = re.compile(r"^(\d{1,3})(\.{3}|\.{1,2}|\))?(.*)$")
_RESULT_TOKENS = frozenset({"1-0", "0-1", "1/2-1/2", "1/2", "*"})
_PLACEHOLDER_TOKENS = frozenset({"...", "..", "--", "-", "?"})
_ANNOTATION_RE = re.compile(r"(?:[!?]+|e\.?p\.?)$")
_EDGE_PUNCT = ",;'\"`"


@dataclass(frozen=True)
class _Number:
    value: int
    black_only: bool


@dataclass(frozen=True)
class _Move:
    raw: str
    normalized: str


@dataclass(frozen=True)
class _Placeholder:
    raw: str


def canonical_castling(token: str) -> Optional[str]:
    """``O-O`` / ``O-O-O`` (with any check suffix) or None if not castling."""
    m = _CASTLE_RE.match(token)
    if not m:
        return None
    letters = sum(1 for ch in token if ch not in "-+#")
    return ("O-O" if letters == 2 else "O-O-O") + m.group(2)


def normalize_token(token: str, table: LanguageTable, common: Optional[dict] = None) -> str:
    """Canonicalize a single move token.

    Parameters
    ----------
    token : str
        A whitespace-free token that is not a move number.
    table : LanguageTable
        Glyph substitutions for the sheet's language.
    common : dict, optional
        Language-independent glyph map (figurines, ``×``).  Usually already
        applied to the whole line by the caller.

    Returns
    -------
    str
        The canonical token, or ``""`` if nothing move-like is left.
    """
    if common:
        token = "".join(common.get(ch, ch) for ch in token)
    token = token.strip(_EDGE_PUNCT)
    token = token.rstrip(".")
    token = _ANNOTATION_RE.sub("", token)
    token = _ANNOTATION_RE.sub("", token)
    if not token:
        return ""

    castle = canonical_castling(token)
    if castle is not None:
        return castle

    subs = table.substitutions()
    out: List[str] = []
    i = 0
    while i < len(token):
        for key, value in subs.items():
            if token.startswith(key, i):
                out.append(value)
                i += len(key)
                break
        else:
            out.append(token[i])
            i += 1
    result = "".join(out)

    # Substitution can expose castling written with Cyrillic/Greek O's.
    castle = canonical_castling(result)
    return castle if castle is not None else result


def _tokenize_line(line: str, table: LanguageTable, common: dict) -> List[object]:
    """Split one transcript line into number / move / placeholder tokens."""
    line = "".join(common.get(ch, ch) for ch in line)
    tokens: List[object] = []
    for word in line.split():
        word = word.strip(_EDGE_PUNCT)
        if not word or word in _RESULT_TOKENS:
            continue
        if word in _PLACEHOLDER_TOKENS:
            tokens.append(_Placeholder(word))
            continue
        if canonical_castling(word) is not None:
            tokens.append(_Move(word, canonical_castling(word)))
            continue

        m = _NUMBER_RE.match(word)
        if m and (not m.group(3) or not m.group(3)[0].isdigit()):
            number, dots, rest = int(m.group(1)), m.group(2) or "", m.group(3)
            tokens.append(_Number(number, black_only=dots == "..."))
            if rest in _RESULT_TOKENS:
                continue
            if rest in _PLACEHOLDER_TOKENS:
                tokens.append(_Placeholder(rest))
            elif rest:
                norm = normalize_token(rest, table)
                if norm:
                    tokens.append(_Move(rest, norm))
            continue

        norm = normalize_token(word, table)
        if norm:
            tokens.append(_Move(word, norm))
    return tokens


# ── Normalizer ─────────────────────────────────────────────────────────

class NotationNormalizer:
    """Turns transcripts into ``CandidateMove`` lists.

    Parameters
    ----------
    tables : NotationTables, optional
        Glyph tables.  Defaults to the built-in tables.
    """

    def __init__(self, tables: Optional[NotationTables] = None) -> None:
        self.tables = tables or default_notation_tables()

    # ── Lines layout ───────────────────────────────────────────────────

    def normalize(
        self,
        transcript: TranscriptLike,
        language: "str | Language",
        start_number: int = 1,
        source: Optional[str] = None,
    ) -> List[CandidateMove]:
        """Normalize a transcript of ``N. white black`` lines.

        Parameters
        ----------
        transcript : RawTranscript or sequence of str
            Ordered text lines.
        language : str | Language
            Sheet language.
        start_number : int
            Number given to moves that appear before any written number.
        source : str, optional
            Segment label copied onto each candidate.

        Returns
        -------
        list[CandidateMove]
            In transcript order, with missing-move placeholders.
        """
        table = self.tables.for_language(language)
        common = dict(self.tables.common)
        lines = [ln for ln in _lines_of(transcript) if ln.strip()]

        out: List[CandidateMove] = []
        number = start_number - 1
        expect = Side.WHITE
        fresh = False       # a written number is waiting for its first move
        inferred = False

        def emit(raw: str, norm: str) -> None:
            nonlocal number, expect, fresh, inferred
            if expect is Side.WHITE and not fresh:
                number += 1
                inferred = True
            out.append(CandidateMove(number, expect, raw, norm, inferred, source))
            expect = expect.other
            fresh = False

        for idx, line in enumerate(lines):
            for tok in _tokenize_line(line, table, common):
                if isinstance(tok, _Number):
                    if expect is Side.BLACK and not tok.black_only:
                        emit("", "")
                    number, fresh, inferred = tok.value, True, False
                    expect = Side.BLACK if tok.black_only else Side.WHITE
                elif isinstance(tok, _Placeholder):
                    emit(tok.raw, "")
                else:
                    emit(tok.raw, tok.normalized)

            is_last = idx == len(lines) - 1
            if expect is Side.BLACK and not is_last and not fresh:
                log.debug("Line %d ended without a Black move (move %d)", idx, number)
                emit("", "")

        return complete_pairs(out)

    # ── Paired-column layout ───────────────────────────────────────────

    def normalize_paired(
        self,
        white: TranscriptLike,
        black: TranscriptLike,
        language: "str | Language",
        start_number: int = 1,
        source: Optional[str] = None,
    ) -> List[CandidateMove]:
        """Normalize a White column and a Black column row by row.

        A number written at the start of a White row overrides the running
        count; otherwise rows are numbered consecutively from
        *start_number*.  A row with no Black entry gets a placeholder
        unless it is the final row.
        """
        table = self.tables.for_language(language)
        common = dict(self.tables.common)
        white_rows = [ln for ln in _lines_of(white) if ln.strip()]
        black_rows = [ln for ln in _lines_of(black) if ln.strip()]
        rows = max(len(white_rows), len(black_rows))

        out: List[CandidateMove] = []
        number = start_number - 1
        for i in range(rows):
            w_num, w_move = _row_move(white_rows[i] if i < len(white_rows) else "", table, common)
            b_num, b_move = _row_move(black_rows[i] if i < len(black_rows) else "", table, common)

            written = w_num if w_num is not None else b_num
            inferred = written is None
            number = number + 1 if inferred else written

            w_raw, w_norm = w_move or ("", "")
            out.append(CandidateMove(number, Side.WHITE, w_raw, w_norm, inferred, source))
            if b_move is not None or i < rows - 1:
                b_raw, b_norm = b_move or ("", "")
                out.append(CandidateMove(number, Side.BLACK, b_raw, b_norm, inferred, source))
        return out


def normalize_transcript(
    transcript: TranscriptLike,
    language: "str | Language",
    tables: Optional[NotationTables] = None,
) -> List[CandidateMove]:
    """Module-level shortcut for ``NotationNormalizer(tables).normalize``."""
    return NotationNormalizer(tables).normalize(transcript, language)


# ── Ordering & completion ──────────────────────────────────────────────

def order_candidates(candidates: Iterable[CandidateMove]) -> List[CandidateMove]:
    """Stable sort by (move number, White before Black).

    Duplicated (number, side) slots are kept in their original order and
    logged; the validator will reject whichever does not fit the position.
    """
    ordered = sorted(
        candidates,
        key=lambda c: (c.move_number, 0 if c.side is Side.WHITE else 1),
    )
    seen = set()
    for c in ordered:
        key = (c.move_number, c.side)
        if key in seen:
            log.warning("Duplicate candidate for move %d %s: '%s'", c.move_number, c.side.value, c.raw_token)
        seen.add(key)
    return ordered


def complete_pairs(candidates: Sequence[CandidateMove]) -> List[CandidateMove]:
    """Insert placeholders so every move number has both sides.

    The first move number may be Black-only (continuation sheets) and the
    last may be White-only (game ended on White's move).
    """
    if not candidates:
        return []
    numbers: List[int] = []
    for c in candidates:
        if not numbers or numbers[-1] != c.move_number:
            numbers.append(c.move_number)
    first, last = numbers[0], numbers[-1]

    out: List[CandidateMove] = []
    i = 0
    while i < len(candidates):
        n = candidates[i].move_number
        group: List[CandidateMove] = []
        while i < len(candidates) and candidates[i].move_number == n:
            group.append(candidates[i])
            i += 1
        sides = {c.side for c in group}
        template = group[0]
        if Side.WHITE not in sides and n != first:
            out.append(_placeholder(template, Side.WHITE))
        out.extend(group)
        if Side.BLACK not in sides and n != last:
            out.append(_placeholder(template, Side.BLACK))
    return out


def _placeholder(template: CandidateMove, side: Side) -> CandidateMove:
    return replace(template, side=side, raw_token="", normalized_token="")


# ── Helpers ────────────────────────────────────────────────────────────

def _lines_of(transcript: TranscriptLike) -> Tuple[str, ...]:
    lines = getattr(transcript, "lines", transcript)
    if isinstance(lines, str):
        return tuple(lines.splitlines())
    return tuple(str(ln) for ln in lines)


def _row_move(
    row: str, table: LanguageTable, common: dict,
) -> Tuple[Optional[int], Optional[Tuple[str, str]]]:
    """(written number, (raw, normalized) move) of one paired-column row."""
    number: Optional[int] = None
    move: Optional[Tuple[str, str]] = None
    for tok in _tokenize_line(row, table, common):
        if isinstance(tok, _Number) and move is None and number is None:
            number = tok.value
        elif isinstance(tok, _Placeholder) and move is None:
            move = (tok.raw, "")
        elif isinstance(tok, _Move):
            if move is None:
                move = (tok.raw, tok.normalized)
            else:
                log.debug("Extra token '%s' in single-move row '%s'", tok.raw, row)
    return number, move
