"""Module entrypoint for ``python -m quality_gate``."""

from __future__ import annotations

from quality_gate.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
