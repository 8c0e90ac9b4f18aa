"""Cooperative cancellation for analysis runs."""

from __future__ import annotations


class CancellationToken:
    """Flag shared by one run and every pass it drives.

    Passes poll ``cancelled`` between units of work (batches, windows,
    chapters).  An in-flight AI call is never interrupted.
    """

    def __init__(self):
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
