"""
PGN Assembly – Seven-tag roster + movetext from validated moves
===============================================================

Rendering rules:
  • Tags are emitted in seven-tag-roster order; unset values default to
    ``"Unknown"``, ``"????.??.??"`` (Date) and ``"*"`` (Result).
  • Movetext uses each move's **own** ``move_number``:
    ``N. <white> <black>``, or ``N... <black>`` when the White slot is empty.
  • Accepted moves are written in SAN.  Invalid moves become comments
    (``{invalid: Nf7}``) so the movetext still replays; missing
    placeholders are omitted.
  • Movetext is wrapped at 80 columns and ends with the result token.
"""

from __future__ import annotations

import io
import logging
import textwrap
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import chess.pgn

from chess_decoder.validation.models import (
    MoveStatus,
    ValidatedMove,
    pair_moves,
)

log = logging.getLogger(__name__)

SEVEN_TAG_ROSTER: Tuple[str, ...] = ("Event", "Site", "Date", "Round", "White", "Black", "Result")
UNKNOWN_DATE = "????.??.??"
UNKNOWN_RESULT = "*"
UNKNOWN = "Unknown"
_RESULTS = frozenset({"1-0", "0-1", "1/2-1/2", "*"})
LINE_WIDTH = 80


@dataclass
class PgnMetadata:
    """Game headers supplied by the caller; ``None`` means unset."""
    event: Optional[str] = None
    site: Optional[str] = None
    date: Optional[str] = None       # "YYYY.MM.DD"
    round: Optional[str] = None
    white: Optional[str] = None
    black: Optional[str] = None
    result: Optional[str] = None     # "1-0" | "0-1" | "1/2-1/2" | "*"
    extra: Dict[str, str] = field(default_factory=dict)

    def tags(self) -> List[Tuple[str, str]]:
        """Roster tags with defaults applied, followed by any extra tags."""
        values = {
            "Event": self.event,
            "Site": self.site,
            "Date": self.date,
            "Round": self.round,
            "White": self.white,
            "Black": self.black,
            "Result": self.result,
        }
        out: List[Tuple[str, str]] = []
        for name in SEVEN_TAG_ROSTER:
            value = (values[name] or "").strip()
            if not value:
                value = {"Date": UNKNOWN_DATE, "Result": UNKNOWN_RESULT}.get(name, UNKNOWN)
            elif name == "Result" and value not in _RESULTS:
                log.warning("Unrecognized result '%s', using '*'", value)
                value = UNKNOWN_RESULT
            out.append((name, value))
        out.extend((k, v) for k, v in self.extra.items() if k not in SEVEN_TAG_ROSTER)
        return out

    @property
    def result_token(self) -> str:
        return dict(self.tags())["Result"]


def assemble_pgn(
    validated_moves: Sequence[ValidatedMove],
    metadata: Optional[PgnMetadata] = None,
) -> str:
    """Render validated moves and metadata as PGN text.

    Parameters
    ----------
    validated_moves : sequence of ValidatedMove
        In game order.
    metadata : PgnMetadata, optional
        Header values; missing ones take the defaults.

    Returns
    -------
    str
        PGN text ending with a newline.
    """
    metadata = metadata or PgnMetadata()
    header = "\n".join(f'[{name} "{_escape(value)}"]' for name, value in metadata.tags())
    movetext = render_movetext(validated_moves, metadata.result_token)
    return f"{header}\n\n{movetext}\n"


def render_movetext(validated_moves: Sequence[ValidatedMove], result: str = UNKNOWN_RESULT) -> str:
    """Movetext only, wrapped at ``LINE_WIDTH`` and terminated by *result*."""
    parts: List[str] = []
    for pair in pair_moves(validated_moves):
        white = _render(pair.white)
        black = _render(pair.black)
        if white:
            parts.append(f"{pair.move_number}. {white}")
            if black:
                parts.append(black)
        elif black:
            parts.append(f"{pair.move_number}... {black}")
    parts.append(result)
    return "\n".join(textwrap.wrap(" ".join(parts), width=LINE_WIDTH, break_long_words=False))


def _render(move: Optional[ValidatedMove]) -> str:
    if move is None or move.is_missing:
        return ""
    if move.status is MoveStatus.INVALID:
        return "{invalid: " + move.notation.replace("}", ")") + "}"
    return move.normalized_notation


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


# ── Reading ────────────────────────────────────────────────────────────

def extract_moves_from_pgn(pgn_text: str) -> List[str]:
    """Mainline moves of the first game in *pgn_text*, as SAN.

    Returns an empty list when the text holds no game.
    """
    game = chess.pgn.read_game(io.StringIO(pgn_text))
    if game is None:
        return []
    if game.errors:
        log.warning("PGN parse errors: %s", "; ".join(str(e) for e in game.errors))

    board = game.board()
    moves: List[str] = []
    for move in game.mainline_moves():
        moves.append(board.san(move))
        board.push(move)
    return moves


def read_pgn_metadata(pgn_text: str) -> PgnMetadata:
    """Seven-tag roster of the first game in *pgn_text*."""
    headers = chess.pgn.read_headers(io.StringIO(pgn_text))
    if headers is None:
        return PgnMetadata()

    def get(name: str) -> Optional[str]:
        value = headers.get(name)
        return None if value in (None, "", "?", UNKNOWN, UNKNOWN_DATE) else value

    return PgnMetadata(
        event=get("Event"),
        site=get("Site"),
        date=get("Date"),
        round=get("Round"),
        white=get("White"),
        black=get("Black"),
        result=get("Result"),
    )
