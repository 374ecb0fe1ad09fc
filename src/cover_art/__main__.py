"""Entry point for ``python -m src.cover_art``."""

import sys

from src.cover_art.cli import main

if __name__ == "__main__":
    sys.exit(main())
