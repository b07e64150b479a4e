"""
Diagnostics sink for the smoothing algorithm.

Informational messages are printed when ``verbose``; warnings go through
:func:`warnings.warn` as ``RuntimeWarning``.  Every message is also kept
as a :class:`DiagnosticEvent` so callers and tests can inspect what
happened at which outer iteration.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import List, Optional

INFO = "info"
WARNING = "warning"


@dataclass(frozen=True)
class DiagnosticEvent:
    level: str
    message: str
    iteration: Optional[int] = None


class Diagnostics:
    """Collects info and warning messages keyed by iteration index."""

    def __init__(self, verbose: bool = False, emit_warnings: bool = True) -> None:
        self.verbose = verbose
        self.emit_warnings = emit_warnings
        self.events: List[DiagnosticEvent] = []

    def info(self, message: str, iteration: Optional[int] = None) -> None:
        self.events.append(DiagnosticEvent(INFO, message, iteration))
        if self.verbose:
            print(f"  {message}")

    def warning(self, message: str, iteration: Optional[int] = None) -> None:
        self.events.append(DiagnosticEvent(WARNING, message, iteration))
        if self.emit_warnings:
            warnings.warn(message, RuntimeWarning, stacklevel=3)

    def messages(
        self,
        level: Optional[str] = None,
        iteration: Optional[int] = None,
    ) -> List[str]:
        """Messages filtered by level and/or iteration."""
        return [
            e.message
            for e in self.events
            if (level is None or e.level == level)
            and (iteration is None or e.iteration == iteration)
        ]

    def clear(self) -> None:
        self.events.clear()
