"""Concord: request routing, multi-strategy execution, deliberation and synthesis."""
from __future__ import annotations

__version__ = "0.3.0"
