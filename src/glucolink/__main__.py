"""Punto de entrada ``python -m glucolink``."""

from __future__ import annotations

from glucolink.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
