"""CLI package exports for top-level command entry points."""

from __future__ import annotations

from .main import ProximaModalCLI, main

__all__ = ['ProximaModalCLI', 'main']
