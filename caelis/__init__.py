"""Command execution runtime with sandbox routing, host fallback and coded errors."""

__version__ = "0.1.0"