from __future__ import annotations

from typing import Callable, Optional


class AnalysisCancelled(RuntimeError):
    """Raised when the caller's cancel_check() asks the analysis to stop."""


def check_cancelled(cancel_check: Optional[Callable[[], bool]], where: str = "") -> None:
    if cancel_check is not None and cancel_check():
        raise AnalysisCancelled(f"analysis cancelled{' during ' + where if where else ''}")
