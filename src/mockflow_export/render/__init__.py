"""Encoding helpers shared by the export pipeline.

Only the dependency-free modules are imported eagerly; ``encoders``, ``animation``
and ``document`` are imported by their callers.
"""

from __future__ import annotations

from . import errors, naming

__all__ = ["errors", "naming"]
