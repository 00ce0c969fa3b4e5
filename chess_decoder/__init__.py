"""
Chess Scoresheet Decoder
========================

Turns photographed, handwritten or printed chess scoresheets into
validated games and PGN text.

Architecture:
    1. Table Detection     – ruled-line morphology or ink-projection fallback
    2. Column Detection    – projection-profile minima, equal-division fallback
    3. Notation Extraction – vision model constrained to a per-language alphabet
    4. Normalization       – language glyphs → SAN letters, numbered move pairs
    5. Move Validation     – python-chess state machine with bounded correction
    6. PGN Assembly        – seven-tag roster + movetext
"""

__version__ = "1.0.0"
