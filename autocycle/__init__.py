"""autocycle — autonomous cycle orchestrator."""

__version__ = "1.0.0"
