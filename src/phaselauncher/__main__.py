"""Allow `python -m phaselauncher` as an alias for `plaunch`."""

from __future__ import annotations

from .main import cli

if __name__ == "__main__":
    cli()
