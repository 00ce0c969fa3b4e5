"""
Move Validator – Incremental board simulation with bounded correction
=====================================================================

Each candidate ply is checked against the current position:

  1. **Exact** – the token equals one legal move's SAN, its SAN without
     disambiguation, an over-disambiguated form (``Ng1f3``) or long
     algebraic (``e2-e4``).  → *valid*, board advances.
  2. **Marks** – equal after dropping capture/check/mate/promotion marks
     (``Nxf3`` for ``Nf3``, ``e8Q`` for ``e8=Q``).  → *corrected*.
  3. **Promotion** – a pawn reaching the last rank without a piece gets
     ``CorrectionConfig.default_promotion``.  → *corrected*.
  4. **OCR confusions** – single-character swaps from
     ``CorrectionConfig.ocr_confusions`` (``l``→``1``, ``n``→``N``…).
     → *corrected*.
  5. **Edit distance** – Levenshtein ≤ ``max_edit_distance`` against the
     legal moves that land on the token's own destination square
     (``rapidfuzz``).  Only the piece letter, disambiguation and marks can
     change; ``Nf7`` never becomes ``Nf3``.  → *corrected*.
  6. Otherwise → *invalid*; the board is **not** advanced and the next ply
     is checked against the same position.

At every stage more than one matching legal move makes the ply invalid
("ambiguous") rather than guessing.

Move generation and SAN rendering come from ``python-chess``.  Renderings
are computed on a private ``board.copy()``; the live board is only ever
touched by ``push`` of an accepted legal move.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

import chess
from rapidfuzz.distance import Levenshtein

from chess_decoder.errors import InternalConsistencyError, ValidationCancelled
from chess_decoder.notation.normalizer import CandidateMove, Side
from chess_decoder.validation.models import MoveStatus, ValidatedMove

log = logging.getLogger(__name__)


# ── Configuration ──────────────────────────────────────────────────────

_DEFAULT_CONFUSIONS: Dict[str, Tuple[str, ...]] = {
    "l": ("1",), "I": ("1",), "|": ("1",), "i": ("1",),
    "S": ("5",), "s": ("5",), "Z": ("2",), "z": ("2",),
    "G": ("6",), "T": ("7",), "q": ("g", "Q"), "g": ("9", "q"),
    "o": ("0", "c"), "O": ("0",), "D": ("0",),
    "n": ("N", "h"), "k": ("K",), "r": ("R",),
    "h": ("b", "n"), "b": ("6", "h", "B"), "B": ("8", "R"),
    "8": ("B",), "6": ("b", "G"), "1": ("l",), "5": ("S",),
    "Q": ("O", "0"), "c": ("e",), "e": ("c",), "4": ("A", "h"),
}


@dataclass(frozen=True)
class CorrectionConfig:
    """Fuzzy-correction knobs.

    Attributes
    ----------
    max_edit_distance : int
        Largest Levenshtein distance accepted in the edit-distance stage.
        0 disables the stage.
    min_fuzzy_length : int
        Tokens shorter than this skip the edit-distance stage (two-character
        pawn moves have too many neighbours).
    allow_alternate_renderings : bool
        Enable the marks / promotion / OCR-confusion stages.
    default_promotion : str
        Piece assumed when a promotion omits it.
    ocr_confusions : Mapping[str, tuple[str, ...]]
        Single-character substitutions tried in the OCR stage.
    pass_turn_after_invalid : bool
        When a ply fails and the previous ply was invalid, retry it with the
        turn passed.  Off by default: the resulting game is no longer a
        legal replay from the start.
    """
    max_edit_distance: int = 1
    min_fuzzy_length: int = 3
    allow_alternate_renderings: bool = True
    default_promotion: str = "Q"
    ocr_confusions: Mapping[str, Tuple[str, ...]] = field(
        default_factory=lambda: MappingProxyType(dict(_DEFAULT_CONFUSIONS))
    )
    pass_turn_after_invalid: bool = False


# ── Token grammar ──────────────────────────────────────────────────────

_SAN_RE = re.compile(
    r"^(?:"
    r"[KQRBN][a-h]?[1-8]?[x:]?-?[a-h][1-8]"
    r"|[a-h][1-8]?[x:-]?[a-h]?[1-8](?:=?[QRBNKP])?"
    r"|O-O(?:-O)?"
    r")[+#]*$"
)
_BAD_PROMOTION_RE = re.compile(r"[a-h][18]=?[KP][+#]*$")
_MARKS = "x:-=+#"
_DEST_RE = re.compile(r"([a-h][1-8])[QRBNK]?$")


def skeleton(token: str) -> str:
    """Token with capture, hyphen, promotion and check marks removed."""
    return "".join(ch for ch in token if ch not in _MARKS)


@dataclass(frozen=True)
class _Rendering:
    move: chess.Move
    san: str
    exact: FrozenSet[str]
    skeletons: FrozenSet[str]
    unpromoted: FrozenSet[str]       # skeletons minus the promotion piece


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching one token against a position."""
    status: MoveStatus
    move: Optional[chess.Move]
    san: Optional[str]
    explanation: str


def render_legal_moves(board: chess.Board) -> List[_Rendering]:
    """All accepted spellings of every legal move in *board*."""
    scratch = board.copy(stack=False)
    renderings: List[_Rendering] = []
    for move in list(scratch.legal_moves):
        san = scratch.san(move)
        suffix = san[-1] if san[-1] in "+#" else ""
        base = san.rstrip("+#")
        variants = {base}

        if not scratch.is_castling(move):
            frm = chess.square_name(move.from_square)
            to = chess.square_name(move.to_square)
            cap = "x" if scratch.is_capture(move) else ""
            promo = "=" + chess.piece_symbol(move.promotion).upper() if move.promotion else ""
            piece = scratch.piece_type_at(move.from_square)
            if piece == chess.PAWN:
                variants.add(f"{frm}{cap or '-'}{to}{promo}")
                variants.add(f"{frm}{to}{promo}")
            else:
                letter = chess.piece_symbol(piece).upper()
                variants.update({
                    f"{letter}{cap}{to}",
                    f"{letter}{frm[0]}{cap}{to}",
                    f"{letter}{frm[1]}{cap}{to}",
                    f"{letter}{frm}{cap}{to}",
                    f"{letter}{frm}{cap or '-'}{to}",
                })

        skeletons = frozenset(skeleton(v) for v in variants)
        unpromoted = frozenset(s[:-1] for s in skeletons) if move.promotion else frozenset()
        renderings.append(_Rendering(
            move=move,
            san=san,
            exact=frozenset(v + suffix for v in variants),
            skeletons=skeletons,
            unpromoted=unpromoted,
        ))
    return renderings


# ── Validator ──────────────────────────────────────────────────────────

class MoveValidator:
    """Validates a candidate sequence against an incrementally played board.

    Parameters
    ----------
    config : CorrectionConfig, optional
        Correction thresholds and tables.
    """

    def __init__(self, config: Optional[CorrectionConfig] = None) -> None:
        self.config = config or CorrectionConfig()

    def validate(
        self,
        candidates: Sequence[CandidateMove],
        start_fen: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[ValidatedMove]:
        """Validate *candidates* in order.

        Parameters
        ----------
        candidates : sequence of CandidateMove
            Ordered plies, placeholders included.
        start_fen : str, optional
            Position before the first ply (continuation sheets).  Defaults
            to the standard starting position.
        cancel_event : threading.Event, optional
            Checked before every ply.

        Returns
        -------
        list[ValidatedMove]
            One entry per candidate, same order.

        Raises
        ------
        ValidationCancelled
            If *cancel_event* is set; nothing partial is returned.
        InternalConsistencyError
            If incremental play reaches an impossible position.
        ValueError
            If *start_fen* is malformed or describes an invalid position.
        """
        board = chess.Board(start_fen) if start_fen else chess.Board()
        if not board.is_valid():
            raise ValueError(f"Start position is not valid: {board.status()!r}")

        results: List[ValidatedMove] = []
        previous_invalid = False
        for cand in candidates:
            if cancel_event is not None and cancel_event.is_set():
                raise ValidationCancelled(
                    f"Validation cancelled at move {cand.move_number} ({cand.side.value})"
                )

            fen_before = board.fen()
            token = cand.normalized_token
            match = self.match(board, token)

            if (
                match.status is MoveStatus.INVALID
                and token
                and previous_invalid
                and self.config.pass_turn_after_invalid
                and _side_mismatch(board, cand.side)
                and not board.is_check()
            ):
                passed = board.copy(stack=False)
                passed.push(chess.Move.null())
                retry = self.match(passed, token)
                if retry.status is not MoveStatus.INVALID:
                    board, fen_before = passed, passed.fen()
                    match = MatchResult(
                        retry.status, retry.move, retry.san,
                        (retry.explanation + " " if retry.explanation else "")
                        + "(turn passed after the preceding invalid move)",
                    )

            if match.status is MoveStatus.INVALID:
                log.warning(
                    "Move %d %s '%s' invalid: %s",
                    cand.move_number, cand.side.value, token, match.explanation,
                )
                results.append(ValidatedMove(
                    move_number=cand.move_number,
                    side=cand.side,
                    notation=token,
                    normalized_notation=token,
                    status=MoveStatus.INVALID,
                    explanation=match.explanation,
                    fen_before=fen_before,
                ))
                previous_invalid = True
                continue

            self._advance(board, match.move)
            if match.status is MoveStatus.CORRECTED:
                log.info("Move %d %s: %s", cand.move_number, cand.side.value, match.explanation)
            results.append(ValidatedMove(
                move_number=cand.move_number,
                side=cand.side,
                notation=token,
                normalized_notation=match.san,
                status=match.status,
                explanation=match.explanation,
                uci=match.move.uci(),
                fen_before=fen_before,
            ))
            previous_invalid = False

        return results

    # ── Matching ───────────────────────────────────────────────────────

    def match(self, board: chess.Board, token: str) -> MatchResult:
        """Classify *token* against the legal moves of *board* (read-only)."""
        token = token.strip()
        if not token:
            return _invalid("Missing move")

        renderings = render_legal_moves(board)
        if not renderings:
            return _invalid(f"No legal moves in this position ('{token}')")

        # Stage 1: exact
        hits = [r for r in renderings if token in r.exact]
        if hits:
            return _resolve(hits, token, MoveStatus.VALID, "")

        sk = skeleton(token)
        if not sk:
            return _invalid(f"Invalid move syntax '{token}'")

        if self.config.allow_alternate_renderings:
            # Stage 2: capture / check / promotion marks
            hits = [r for r in renderings if sk in r.skeletons]
            if hits:
                return _resolve(hits, token, MoveStatus.CORRECTED, "normalized marks")

            # Stage 3: promotion without a piece
            hits = [r for r in renderings if sk in r.unpromoted]
            if hits:
                default = chess.PIECE_SYMBOLS.index(self.config.default_promotion.lower())
                chosen = [r for r in hits if r.move.promotion == default]
                if len(chosen) == 1:
                    return _corrected(chosen[0], token, f"assumed promotion to {self.config.default_promotion}")

            # Stage 4: OCR look-alike characters
            hits = self._confusion_hits(sk, renderings)
            if hits:
                return _resolve(hits, token, MoveStatus.CORRECTED, "OCR look-alike characters")

        # Stage 5: edit distance
        if self.config.max_edit_distance > 0 and len(sk) >= self.config.min_fuzzy_length:
            hits = self._nearest(sk, renderings)
            if hits:
                return _resolve(hits, token, MoveStatus.CORRECTED, "edit distance")

        return _invalid(_explain_invalid(token, renderings, board))

    def _confusion_hits(self, sk: str, renderings: List[_Rendering]) -> List[_Rendering]:
        seen: Dict[str, _Rendering] = {}
        for variant in _confusion_variants(sk, self.config.ocr_confusions):
            for r in renderings:
                if variant in r.skeletons:
                    seen.setdefault(r.move.uci(), r)
        return list(seen.values())

    def _nearest(self, sk: str, renderings: List[_Rendering]) -> List[_Rendering]:
        dest = _DEST_RE.search(sk)
        if dest is None:
            return []
        cutoff = self.config.max_edit_distance
        best = cutoff + 1
        hits: List[_Rendering] = []
        for r in renderings:
            # The written destination square is never edited.
            if chess.square_name(r.move.to_square) != dest.group(1):
                continue
            d = min(Levenshtein.distance(sk, s, score_cutoff=cutoff) for s in r.skeletons)
            if d < best:
                best, hits = d, [r]
            elif d == best and d <= cutoff:
                hits.append(r)
        return hits if best <= cutoff else []

    @staticmethod
    def _advance(board: chess.Board, move: chess.Move) -> None:
        if not board.is_legal(move):
            raise InternalConsistencyError(f"Accepted move {move.uci()} is not legal in {board.fen()}")
        board.push(move)
        if not board.is_valid():
            raise InternalConsistencyError(
                f"Position became invalid after {move.uci()}: {board.status()!r}"
            )


def validate_moves(
    candidates: Sequence[CandidateMove],
    config: Optional[CorrectionConfig] = None,
    start_fen: Optional[str] = None,
) -> List[ValidatedMove]:
    """Shortcut for ``MoveValidator(config).validate(candidates, start_fen)``."""
    return MoveValidator(config).validate(candidates, start_fen=start_fen)


# ── Helpers ────────────────────────────────────────────────────────────

def _invalid(explanation: str) -> MatchResult:
    return MatchResult(MoveStatus.INVALID, None, None, explanation)


def _corrected(r: _Rendering, token: str, how: str) -> MatchResult:
    return MatchResult(
        MoveStatus.CORRECTED, r.move, r.san, f"Corrected '{token}' to '{r.san}' ({how})",
    )


def _resolve(hits: List[_Rendering], token: str, status: MoveStatus, how: str) -> MatchResult:
    if len(hits) > 1:
        options = ", ".join(sorted(r.san for r in hits))
        return _invalid(f"Ambiguous move '{token}': could be {options}")
    r = hits[0]
    if status is MoveStatus.VALID:
        return MatchResult(MoveStatus.VALID, r.move, r.san, "")
    return _corrected(r, token, how)


def _confusion_variants(token: str, confusions: Mapping[str, Tuple[str, ...]]) -> Iterable[str]:
    for i, ch in enumerate(token):
        for repl in confusions.get(ch, ()):
            yield token[:i] + repl + token[i + 1:]


def _side_mismatch(board: chess.Board, side: Side) -> bool:
    return (board.turn == chess.WHITE) != (side is Side.WHITE)


def _explain_invalid(token: str, renderings: List[_Rendering], board: chess.Board) -> str:
    if _BAD_PROMOTION_RE.search(token):
        return f"Invalid promotion piece in '{token}'"
    if not _SAN_RE.match(token):
        return f"Invalid move syntax '{token}'"

    side = "White" if board.turn == chess.WHITE else "Black"
    message = f"Illegal move '{token}' for {side}"
    if token.startswith("O-O"):
        return message

    letter = token[0] if token[0] in "KQRBN" else ""
    piece = chess.PIECE_SYMBOLS.index(letter.lower()) if letter else chess.PAWN
    same_piece = sorted(
        r.san for r in renderings if board.piece_type_at(r.move.from_square) == piece
    )
    name = chess.piece_name(piece)
    if same_piece:
        shown = ", ".join(same_piece[:8]) + (", ..." if len(same_piece) > 8 else "")
        message += f"; legal {name} moves: {shown}"
    else:
        message += f"; no {name} can move"
    return message
