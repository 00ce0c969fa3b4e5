"""
Root entry point – delegates to the chess_decoder package.

Usage:
    python decode_scoresheet.py decode   --image sheet.jpg --language greek --output game.pgn
    python decode_scoresheet.py columns  --image sheet.jpg --save overlay.png
    python decode_scoresheet.py evaluate --ground-truth truth.pgn --pgn game.pgn
"""

from chess_decoder.main import main

if __name__ == "__main__":
    main()
