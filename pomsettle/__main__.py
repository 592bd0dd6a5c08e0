"""pomsettle CLI entry point: python -m pomsettle"""

from __future__ import annotations

import sys

from pomsettle.cli import main

if __name__ == "__main__":
    sys.exit(main())
