"""
quality-gate: a dependency-ordered verification pipeline runner.

Package root. Keep the import surface small: importing ``quality_gate`` must not
load config, configure logging or spawn processes.
"""

__version__ = "0.3.0"

__all__ = ["__version__"]
