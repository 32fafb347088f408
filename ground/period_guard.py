from __future__ import annotations

from typing import Iterable

SNAPSHOT = "snapshot"
MOVEMENT = "movement"
PLANNED_EXPENSE = "planned_expense"
EDIT_KINDS = {SNAPSHOT, MOVEMENT, PLANNED_EXPENSE}

MONTH_CLOSED = "month_closed"
PRIOR_MONTH_CLOSED = "prior_month_closed"


class PeriodClosed(RuntimeError):
    """Raised when a write targets a frozen month."""

    def __init__(self, year: int, month: int, reason: str) -> None:
        self.year = year
        self.month = month
        self.reason = reason
        if reason == PRIOR_MONTH_CLOSED:
            message = f"{year}-{month:02d} is locked because the previous month is closed."
        else:
            message = f"{year}-{month:02d} is closed."
        super().__init__(message)


class ClosePeriodGuard:
    def __init__(self, closed: Iterable[tuple[int, int]] = ()) -> None:
        self.closed = frozenset((int(year), int(month)) for year, month in closed)

    def is_closed(self, year: int, month: int) -> bool:
        return (year, month) in self.closed

    def lock_reason(self, year: int, month: int, kind: str) -> str | None:
        _validate_period(month, kind)
        if self.is_closed(year, month):
            return MONTH_CLOSED
        # A snapshot is the opening baseline frozen when the prior month closed.
        if kind == SNAPSHOT and self.is_closed(*_previous_month(year, month)):
            return PRIOR_MONTH_CLOSED
        return None

    def is_mutable(self, year: int, month: int, kind: str) -> bool:
        return self.lock_reason(year, month, kind) is None

    def check(self, year: int, month: int, kind: str) -> None:
        reason = self.lock_reason(year, month, kind)
        if reason is not None:
            raise PeriodClosed(year, month, reason)


def _previous_month(year: int, month: int) -> tuple[int, int]:
    if month == 1:
        return year - 1, 12
    return year, month - 1


def _validate_period(month: int, kind: str) -> None:
    if month < 1 or month > 12:
        raise ValueError("Month must be between 1 and 12.")
    if kind not in EDIT_KINDS:
        raise ValueError(f"Unsupported edit kind: {kind}")
