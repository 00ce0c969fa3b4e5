"""
Validation Models – Per-ply results and the game deliverable
============================================================
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

from chess_decoder.errors import RunIssue
from chess_decoder.notation.normalizer import Side

if TYPE_CHECKING:
    from chess_decoder.inference.pipeline import DebugArtifacts


class MoveStatus(str, enum.Enum):
    VALID = "valid"
    CORRECTED = "corrected"
    INVALID = "invalid"


@dataclass(frozen=True)
class ValidatedMove:
    """Outcome of validating one candidate ply."""
    move_number: int                  # as transcribed, never recomputed
    side: Side
    notation: str                     # candidate token fed to the validator
    normalized_notation: str          # SAN of the accepted move, else the token
    status: MoveStatus
    explanation: str = ""             # empty for plain Valid moves
    uci: Optional[str] = None         # accepted move in UCI, None if Invalid
    fen_before: Optional[str] = None  # position the ply was checked against

    @property
    def accepted(self) -> bool:
        return self.status is not MoveStatus.INVALID

    @property
    def is_missing(self) -> bool:
        return self.notation == ""

    def to_dict(self) -> Dict:
        return {
            "move_number": self.move_number,
            "side": self.side.value,
            "notation": self.notation,
            "normalized_notation": self.normalized_notation,
            "status": self.status.value,
            "explanation": self.explanation,
            "uci": self.uci,
        }


@dataclass
class MovePair:
    """White and Black plies sharing one move number (either may be absent)."""
    move_number: int
    white: Optional[ValidatedMove] = None
    black: Optional[ValidatedMove] = None

    def plies(self) -> List[ValidatedMove]:
        return [m for m in (self.white, self.black) if m is not None]


def pair_moves(moves: Sequence[ValidatedMove]) -> List[MovePair]:
    """Group consecutive plies into pairs in sequence order.

    A new pair starts when the move number changes or the slot for the
    ply's side is already taken.
    """
    pairs: List[MovePair] = []
    for move in moves:
        current = pairs[-1] if pairs else None
        if (
            current is None
            or current.move_number != move.move_number
            or (move.side is Side.WHITE and (current.white is not None or current.black is not None))
            or (move.side is Side.BLACK and current.black is not None)
        ):
            current = MovePair(move.move_number)
            pairs.append(current)
        if move.side is Side.WHITE:
            current.white = move
        else:
            current.black = move
    return pairs


@dataclass
class GameValidation:
    """Terminal deliverable of one scoresheet run."""
    game_id: str
    pairs: List[MovePair]
    pgn: str
    language: str = "english"
    issues: List[RunIssue] = field(default_factory=list)
    debug: Optional["DebugArtifacts"] = None

    @property
    def moves(self) -> List[ValidatedMove]:
        return [m for p in self.pairs for m in p.plies()]

    def summary(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in MoveStatus}
        for m in self.moves:
            counts[m.status.value] += 1
        counts["total"] = sum(counts.values())
        return counts

    def to_dict(self) -> Dict:
        return {
            "game_id": self.game_id,
            "language": self.language,
            "pgn": self.pgn,
            "summary": self.summary(),
            "moves": [
                {
                    "move_number": p.move_number,
                    "white": p.white.to_dict() if p.white else None,
                    "black": p.black.to_dict() if p.black else None,
                }
                for p in self.pairs
            ],
            "issues": [i.to_dict() for i in self.issues],
        }
