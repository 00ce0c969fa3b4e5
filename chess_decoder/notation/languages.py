"""
Notation Languages – Glyph tables & recognizer whitelists
=========================================================

Scoresheets are written in the player's language.  Each language maps its
piece letters (and, for Greek, its file letters) onto the canonical English
SAN alphabet:

    ==========  ======  =======  ======  ======  ======
    Language    King    Queen    Rook    Bishop  Knight
    ==========  ======  =======  ======  ======  ======
    English     K       Q        R       B       N
    Greek       Ρ       Β        Π       Α       Ι / Ν
    German      K       D        T       L       S
    French      R       D        T       F       C
    Spanish     R       D        T       A       C
    Russian     Кр      Ф        Л       С       К
    ==========  ======  =======  ======  ======  ======

Greek files are written α β γ δ ε ζ η θ.  Recognizers also confuse a few
Greek and Cyrillic letters with Latin lookalikes (φ for f, χ for c, а/с/е
for a/c/e); those are folded into the file tables.

Tables are immutable and built once (``default_notation_tables``); callers
pass them explicitly into the normalizer and the recognizer prompt.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from functools import lru_cache
from types import MappingProxyType
from typing import Dict, FrozenSet, Mapping, Tuple


class Language(str, enum.Enum):
    ENGLISH = "english"
    GREEK = "greek"
    GERMAN = "german"
    FRENCH = "french"
    SPANISH = "spanish"
    RUSSIAN = "russian"

    @classmethod
    def parse(cls, value: "str | Language") -> "Language":
        """Accept enum members, names ("Greek") and ISO codes ("el")."""
        if isinstance(value, Language):
            return value
        key = str(value).strip().lower()
        key = _ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            supported = ", ".join(lang.value for lang in cls)
            raise ValueError(f"Unsupported language '{value}' (supported: {supported})") from None


_ALIASES: Dict[str, str] = {
    "en": "english", "eng": "english",
    "el": "greek", "gr": "greek", "ell": "greek",
    "de": "german", "deu": "german",
    "fr": "french", "fra": "french",
    "es": "spanish", "spa": "spanish",
    "ru": "russian", "rus": "russian",
}


# ── Table types ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LanguageTable:
    """Substitutions and recognizer alphabet for one language."""
    language: Language
    pieces: Mapping[str, str]            # language piece glyph(s) → KQRBN
    files: Mapping[str, str]             # language file glyph → a–h
    marks: Mapping[str, str]             # capture/check glyphs → x + #
    alphabet: str                        # script-specific whitelist characters

    def substitutions(self) -> Mapping[str, str]:
        """All single- and multi-character substitutions, longest key first."""
        merged: Dict[str, str] = {}
        merged.update(self.files)
        merged.update(self.marks)
        merged.update(self.pieces)
        return MappingProxyType(
            dict(sorted(merged.items(), key=lambda kv: -len(kv[0])))
        )


@dataclass(frozen=True)
class NotationTables:
    """All language tables plus the language-independent glyph map."""
    languages: Mapping[Language, LanguageTable]
    common: Mapping[str, str]            # figurines, ×, dash variants
    structural: str = "0123456789.-=+#()!?/ "

    def for_language(self, language: "str | Language") -> LanguageTable:
        return self.languages[Language.parse(language)]

    def whitelist(self, language: "str | Language") -> FrozenSet[str]:
        """Characters a recognizer may return for *language*."""
        table = self.for_language(language)
        return frozenset(table.alphabet) | frozenset(self.structural) | frozenset(self.common)


# ── Table data ─────────────────────────────────────────────────────────

_LATIN_FILES = "abcdefgh"
_ENGLISH_PIECES = "KQRBN"

_COMMON: Dict[str, str] = {
    "♔": "K", "♚": "K",
    "♕": "Q", "♛": "Q",
    "♖": "R", "♜": "R",
    "♗": "B", "♝": "B",
    "♘": "N", "♞": "N",
    "♙": "", "♟": "",
    "×": "x",
    "–": "-", "—": "-", "−": "-", "‐": "-",
    "…": "...",
    "½": "1/2",
}

_IDENTITY_FILES = {f: f for f in _LATIN_FILES}
# Castling may be written with either case of O, in the sheet's own script.
_CASTLING_LETTERS = "Oo"


def _table(
    language: Language,
    pieces: Dict[str, str],
    files: Dict[str, str] | None = None,
    marks: Dict[str, str] | None = None,
    castling: str = "",
) -> LanguageTable:
    files = {**_IDENTITY_FILES, **(files or {})}
    marks = {"x": "x", **(marks or {})}
    alphabet = "".join(dict.fromkeys(
        "".join(pieces) + "".join(files) + "".join(marks) + _CASTLING_LETTERS + castling
    ))
    return LanguageTable(
        language=language,
        pieces=MappingProxyType(dict(pieces)),
        files=MappingProxyType(files),
        marks=MappingProxyType(marks),
        alphabet=alphabet,
    )


def _build_tables() -> Tuple[LanguageTable, ...]:
    return (
        _table(Language.ENGLISH, {p: p for p in _ENGLISH_PIECES}),
        _table(
            Language.GREEK,
            {"Ρ": "K", "Β": "Q", "Π": "R", "Α": "B", "Ι": "N", "Ν": "N"},
            files={
                "α": "a", "β": "b", "γ": "c", "δ": "d",
                "ε": "e", "ζ": "f", "η": "g", "θ": "h",
                "φ": "f", "χ": "c",
            },
            castling="Οο",
        ),
        _table(Language.GERMAN, {"K": "K", "D": "Q", "T": "R", "L": "B", "S": "N"}),
        _table(Language.FRENCH, {"R": "K", "D": "Q", "T": "R", "F": "B", "C": "N"}),
        _table(Language.SPANISH, {"R": "K", "D": "Q", "T": "R", "A": "B", "C": "N"}),
        _table(
            Language.RUSSIAN,
            {"Кр": "K", "Ф": "Q", "Л": "R", "С": "B", "К": "N"},
            files={"а": "a", "с": "c", "е": "e"},
            marks={":": "x", "х": "x"},
            castling="Оо",
        ),
    )


@lru_cache(maxsize=1)
def default_notation_tables() -> NotationTables:
    """Built-in tables for every supported language (cached)."""
    tables = {t.language: t for t in _build_tables()}
    return NotationTables(
        languages=MappingProxyType(tables),
        common=MappingProxyType(dict(_COMMON)),
    )
