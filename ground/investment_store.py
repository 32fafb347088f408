from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    delete,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Connection

from ground.encryption import DecryptionGate
from ground.investment_models import (
    ZERO,
    Investment,
    InvestmentClass,
    Movement,
    Snapshot,
    StoredMovement,
    StoredSnapshot,
)
from ground.investment_writes import MovementWrite, SnapshotWrite
from ground.period_guard import MOVEMENT, SNAPSHOT, ClosePeriodGuard

logger = logging.getLogger(__name__)

_CLEARABLE = {"yield_start_year", "yield_start_month"}

metadata = MetaData()

investments = Table(
    "investments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("investment_class", String(20), nullable=False),
    Column("currency", String(3), nullable=False, server_default="USD"),
    Column("target_annual_return", Numeric(9, 6), nullable=False, server_default="0"),
    Column("yield_start_year", Integer),
    Column("yield_start_month", Integer),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

investment_snapshots = Table(
    "investment_snapshots",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("investment_id", Integer, ForeignKey("investments.id"), nullable=False),
    Column("year", Integer, nullable=False),
    Column("month", Integer, nullable=False),
    Column("closing_capital", Numeric(18, 6)),
    Column("closing_capital_usd", Numeric(18, 6)),
    Column("usd_rate", Numeric(12, 5)),
    Column("encrypted_payload", Text),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("investment_id", "year", "month", name="uq_snapshots_investment_period"),
)

investment_movements = Table(
    "investment_movements",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("investment_id", Integer, ForeignKey("investments.id"), nullable=False),
    Column("date", Date, nullable=False),
    Column("type", String(20), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("amount", Numeric(18, 6), nullable=False),
    Column("encrypted_payload", Text),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

month_closes = Table(
    "month_closes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("year", Integer, nullable=False),
    Column("month", Integer, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "year", "month", name="uq_month_closes_user_period"),
)


class InvestmentNotFound(LookupError):
    pass


class MovementNotFound(LookupError):
    pass


class DeletionBlocked(RuntimeError):
    """Raised when a closed month still holds a value for the investment."""


@dataclass(frozen=True)
class MigrationStatus:
    snapshots: int
    movements: int

    @property
    def complete(self) -> bool:
        return self.snapshots == 0 and self.movements == 0


@dataclass
class EncryptionReport:
    snapshots: int = 0
    movements: int = 0
    errors: list[str] = field(default_factory=list)


def row_to_investment(row: Any) -> Investment:
    return Investment(
        id=row["id"],
        name=row["name"],
        investment_class=row["investment_class"],
        currency=row["currency"],
        target_annual_return=_decimal_or_zero(row["target_annual_return"]),
        yield_start_year=row["yield_start_year"],
        yield_start_month=row["yield_start_month"],
    )


def list_investments(conn: Connection, user_id: int) -> list[Investment]:
    rows = conn.execute(
        select(investments)
        .where(investments.c.user_id == user_id)
        .order_by(investments.c.investment_class.desc(), investments.c.id.asc())
    ).mappings().all()
    return [row_to_investment(row) for row in rows]


def get_investment(conn: Connection, user_id: int, investment_id: int) -> Investment:
    row = conn.execute(
        select(investments).where(
            investments.c.id == investment_id, investments.c.user_id == user_id
        )
    ).mappings().first()
    if not row:
        raise InvestmentNotFound(f"Investment {investment_id} not found.")
    return row_to_investment(row)


def create_investment(
    conn: Connection,
    user_id: int,
    *,
    name: str,
    investment_class: str,
    currency: str,
    target_annual_return: Decimal,
    yield_start_year: Optional[int],
    yield_start_month: Optional[int],
) -> Investment:
    investment_class = InvestmentClass.validate(investment_class)
    validate_yield_start(yield_start_year, yield_start_month)
    if investment_class == InvestmentClass.ACCOUNT:
        target_annual_return = Decimal("0")
    result = conn.execute(
        insert(investments).values(
            user_id=user_id,
            name=name,
            investment_class=investment_class,
            currency=currency,
            target_annual_return=target_annual_return,
            yield_start_year=yield_start_year,
            yield_start_month=yield_start_month,
        )
    )
    investment_id = result.inserted_primary_key[0]
    logger.info("Created %s investment %s for user %s", investment_class, investment_id, user_id)
    return get_investment(conn, user_id, investment_id)


def update_investment(
    conn: Connection, user_id: int, investment_id: int, **changes: Any
) -> Investment:
    """Apply the given fields; a None clears the yield start fields."""
    allowed = {"name", "currency", "target_annual_return", "yield_start_year", "yield_start_month"}
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Cannot update fields: {sorted(unknown)}")
    required = sorted(key for key in changes if key not in _CLEARABLE and changes[key] is None)
    if required:
        raise ValueError(f"Fields cannot be cleared: {required}")

    current = get_investment(conn, user_id, investment_id)
    values = dict(changes)
    if current.investment_class == InvestmentClass.ACCOUNT and "target_annual_return" in values:
        values["target_annual_return"] = Decimal("0")
    validate_yield_start(
        values.get("yield_start_year", current.yield_start_year),
        values.get("yield_start_month", current.yield_start_month),
    )
    if values:
        conn.execute(
            update(investments)
            .where(investments.c.id == current.id, investments.c.user_id == user_id)
            .values(**values)
        )
    return get_investment(conn, user_id, investment_id)


def validate_yield_start(year: Optional[int], month: Optional[int]) -> None:
    if month is not None and not 1 <= month <= 12:
        raise ValueError("Yield start month must be between 1 and 12.")
    if year is not None and year < 1900:
        raise ValueError("Yield start year is out of range.")
    if month is not None and year is None:
        raise ValueError("Yield start month requires a yield start year.")


def delete_investment(conn: Connection, user_id: int, investment_id: int) -> None:
    get_investment(conn, user_id, investment_id)
    locked = conn.execute(
        select(investment_snapshots.c.id)
        .select_from(
            investment_snapshots.join(
                month_closes,
                and_(
                    month_closes.c.user_id == investment_snapshots.c.user_id,
                    month_closes.c.year == investment_snapshots.c.year,
                    month_closes.c.month == investment_snapshots.c.month,
                ),
            )
        )
        .where(
            investment_snapshots.c.investment_id == investment_id,
            or_(
                investment_snapshots.c.closing_capital != 0,
                investment_snapshots.c.closing_capital_usd != 0,
                investment_snapshots.c.encrypted_payload.is_not(None),
            ),
        )
        .limit(1)
    ).first()
    if locked:
        logger.warning("Refused to delete investment %s: closed months hold values", investment_id)
        raise DeletionBlocked("Investment has values in closed months.")

    conn.execute(delete(investment_movements).where(investment_movements.c.investment_id == investment_id))
    conn.execute(delete(investment_snapshots).where(investment_snapshots.c.investment_id == investment_id))
    conn.execute(delete(investments).where(investments.c.id == investment_id))
    logger.info("Deleted investment %s for user %s", investment_id, user_id)


def fetch_closed_months(conn: Connection, user_id: int, year: int) -> set[tuple[int, int]]:
    rows = conn.execute(
        select(month_closes.c.year, month_closes.c.month).where(
            month_closes.c.user_id == user_id, month_closes.c.year == year
        )
    ).all()
    return {(row.year, row.month) for row in rows}


def fetch_close_guard(conn: Connection, user_id: int, year: int) -> ClosePeriodGuard:
    # The previous December decides whether January snapshots are locked.
    return ClosePeriodGuard(
        fetch_closed_months(conn, user_id, year - 1) | fetch_closed_months(conn, user_id, year)
    )


def close_month(conn: Connection, user_id: int, year: int, month: int) -> None:
    _validate_month(month)
    if (year, month) in fetch_closed_months(conn, user_id, year):
        return
    conn.execute(insert(month_closes).values(user_id=user_id, year=year, month=month))
    logger.info("Closed %s-%02d for user %s", year, month, user_id)


def reopen_month(conn: Connection, user_id: int, year: int, month: int) -> None:
    _validate_month(month)
    conn.execute(
        delete(month_closes).where(
            month_closes.c.user_id == user_id,
            month_closes.c.year == year,
            month_closes.c.month == month,
        )
    )
    logger.info("Reopened %s-%02d for user %s", year, month, user_id)


def fetch_snapshots(
    conn: Connection, user_id: int, investment_id: int, year: int
) -> list[StoredSnapshot]:
    get_investment(conn, user_id, investment_id)
    closed = fetch_closed_months(conn, user_id, year)
    rows = conn.execute(
        select(investment_snapshots)
        .where(
            investment_snapshots.c.investment_id == investment_id,
            investment_snapshots.c.year == year,
        )
        .order_by(investment_snapshots.c.month.asc())
    ).mappings().all()
    return [_row_to_snapshot(row, (year, row["month"]) in closed) for row in rows]


def upsert_snapshot(
    conn: Connection,
    user_id: int,
    investment_id: int,
    year: int,
    write: SnapshotWrite,
) -> StoredSnapshot:
    get_investment(conn, user_id, investment_id)
    guard = fetch_close_guard(conn, user_id, year)
    guard.check(year, write.month, SNAPSHOT)

    values = {
        "closing_capital": write.closing_capital,
        "closing_capital_usd": write.closing_capital_usd,
        "usd_rate": write.usd_rate,
        "encrypted_payload": write.encrypted_payload,
    }
    existing_id = conn.execute(
        select(investment_snapshots.c.id).where(
            investment_snapshots.c.investment_id == investment_id,
            investment_snapshots.c.year == year,
            investment_snapshots.c.month == write.month,
        )
    ).scalar_one_or_none()
    if existing_id is None:
        conn.execute(
            insert(investment_snapshots).values(
                user_id=user_id,
                investment_id=investment_id,
                year=year,
                month=write.month,
                **values,
            )
        )
    else:
        conn.execute(
            update(investment_snapshots)
            .where(investment_snapshots.c.id == existing_id)
            .values(updated_at=func.now(), **values)
        )

    row = conn.execute(
        select(investment_snapshots).where(
            investment_snapshots.c.investment_id == investment_id,
            investment_snapshots.c.year == year,
            investment_snapshots.c.month == write.month,
        )
    ).mappings().one()
    return _row_to_snapshot(row, guard.is_closed(year, write.month))


def fetch_movements(conn: Connection, user_id: int, year: int) -> list[StoredMovement]:
    rows = conn.execute(
        select(investment_movements)
        .where(
            investment_movements.c.user_id == user_id,
            investment_movements.c.date >= date(year, 1, 1),
            investment_movements.c.date < date(year + 1, 1, 1),
        )
        .order_by(investment_movements.c.date.desc(), investment_movements.c.id.desc())
    ).mappings().all()
    return [_row_to_movement(row) for row in rows]


def get_movement(conn: Connection, user_id: int, movement_id: int) -> StoredMovement:
    row = conn.execute(
        select(investment_movements).where(
            investment_movements.c.id == movement_id,
            investment_movements.c.user_id == user_id,
        )
    ).mappings().first()
    if not row:
        raise MovementNotFound(f"Movement {movement_id} not found.")
    return _row_to_movement(row)


def create_movement(conn: Connection, user_id: int, write: MovementWrite) -> StoredMovement:
    get_investment(conn, user_id, write.investment_id)
    guard = fetch_close_guard(conn, user_id, write.date.year)
    guard.check(write.date.year, write.date.month, MOVEMENT)
    result = conn.execute(
        insert(investment_movements).values(user_id=user_id, **_movement_values(write))
    )
    return get_movement(conn, user_id, result.inserted_primary_key[0])


def update_movement(
    conn: Connection, user_id: int, movement_id: int, write: MovementWrite
) -> StoredMovement:
    current = get_movement(conn, user_id, movement_id)
    get_investment(conn, user_id, write.investment_id)
    # Both the month being left and the month being entered must be open.
    for period in {current.date, write.date}:
        fetch_close_guard(conn, user_id, period.year).check(period.year, period.month, MOVEMENT)
    conn.execute(
        update(investment_movements)
        .where(investment_movements.c.id == movement_id)
        .values(**_movement_values(write))
    )
    return get_movement(conn, user_id, movement_id)


def delete_movement(conn: Connection, user_id: int, movement_id: int) -> None:
    current = get_movement(conn, user_id, movement_id)
    fetch_close_guard(conn, user_id, current.date.year).check(
        current.date.year, current.date.month, MOVEMENT
    )
    conn.execute(delete(investment_movements).where(investment_movements.c.id == movement_id))


def load_year(
    conn: Connection, user_id: int, year: int, gate: DecryptionGate
) -> tuple[list[Investment], dict[int, list[Snapshot]], list[Movement]]:
    """Load and resolve everything the valuation of one year needs."""
    owned = list_investments(conn, user_id)
    snapshots = {
        investment.id: [
            gate.resolve_snapshot(stored)
            for stored in fetch_snapshots(conn, user_id, investment.id, year)
        ]
        for investment in owned
    }
    movements = [gate.resolve_movement(stored) for stored in fetch_movements(conn, user_id, year)]
    return owned, snapshots, movements


def migration_status(conn: Connection, user_id: int) -> MigrationStatus:
    """Count the rows still stored as plaintext."""
    snapshots = conn.execute(
        select(func.count())
        .select_from(investment_snapshots)
        .where(
            investment_snapshots.c.user_id == user_id,
            investment_snapshots.c.encrypted_payload.is_(None),
        )
    ).scalar_one()
    movements = conn.execute(
        select(func.count())
        .select_from(investment_movements)
        .where(
            investment_movements.c.user_id == user_id,
            investment_movements.c.encrypted_payload.is_(None),
        )
    ).scalar_one()
    return MigrationStatus(snapshots=snapshots, movements=movements)


def migrate_to_encrypted(conn: Connection, user_id: int, gate: DecryptionGate) -> EncryptionReport:
    """Encrypt every plaintext snapshot and movement, leaving zero placeholders.

    Closed months are included: the stored value does not change, only its
    representation.
    """
    if not gate.available:
        raise ValueError("An encryption key is required to migrate.")
    report = EncryptionReport()

    snapshot_rows = conn.execute(
        select(investment_snapshots)
        .where(
            investment_snapshots.c.user_id == user_id,
            investment_snapshots.c.encrypted_payload.is_(None),
        )
        .order_by(investment_snapshots.c.id.asc())
    ).mappings().all()
    for row in snapshot_rows:
        payload = gate.encrypt_snapshot(row["closing_capital"], row["closing_capital_usd"])
        conn.execute(
            update(investment_snapshots)
            .where(investment_snapshots.c.id == row["id"])
            .values(
                closing_capital=ZERO,
                closing_capital_usd=ZERO,
                encrypted_payload=payload,
                updated_at=func.now(),
            )
        )
        report.snapshots += 1

    movement_rows = conn.execute(
        select(investment_movements)
        .where(
            investment_movements.c.user_id == user_id,
            investment_movements.c.encrypted_payload.is_(None),
        )
        .order_by(investment_movements.c.id.asc())
    ).mappings().all()
    for row in movement_rows:
        payload = gate.encrypt_movement(_decimal_or_zero(row["amount"]))
        conn.execute(
            update(investment_movements)
            .where(investment_movements.c.id == row["id"])
            .values(amount=ZERO, encrypted_payload=payload)
        )
        report.movements += 1

    logger.info(
        "Encrypted %s snapshots and %s movements for user %s",
        report.snapshots,
        report.movements,
        user_id,
    )
    return report


def rotate_encryption(
    conn: Connection,
    user_id: int,
    old_gate: DecryptionGate,
    new_gate: DecryptionGate,
) -> EncryptionReport:
    """Re-encrypt every payload under a new key.

    Payloads the old key cannot read are reported and left untouched.
    """
    if not old_gate.available or not new_gate.available:
        raise ValueError("Both the current and the new encryption key are required.")
    report = EncryptionReport()

    snapshot_rows = conn.execute(
        select(investment_snapshots)
        .where(
            investment_snapshots.c.user_id == user_id,
            investment_snapshots.c.encrypted_payload.is_not(None),
        )
        .order_by(investment_snapshots.c.id.asc())
    ).mappings().all()
    for row in snapshot_rows:
        payload = old_gate.reencrypt(row["encrypted_payload"], new_gate)
        if payload is None:
            report.errors.append(
                f"Snapshot {row['investment_id']} {row['year']}-{row['month']:02d}: unreadable"
            )
            continue
        conn.execute(
            update(investment_snapshots)
            .where(investment_snapshots.c.id == row["id"])
            .values(encrypted_payload=payload, updated_at=func.now())
        )
        report.snapshots += 1

    movement_rows = conn.execute(
        select(investment_movements)
        .where(
            investment_movements.c.user_id == user_id,
            investment_movements.c.encrypted_payload.is_not(None),
        )
        .order_by(investment_movements.c.id.asc())
    ).mappings().all()
    for row in movement_rows:
        payload = old_gate.reencrypt(row["encrypted_payload"], new_gate)
        if payload is None:
            report.errors.append(f"Movement {row['id']}: unreadable")
            continue
        conn.execute(
            update(investment_movements)
            .where(investment_movements.c.id == row["id"])
            .values(encrypted_payload=payload)
        )
        report.movements += 1

    if report.errors:
        logger.warning("Key rotation for user %s skipped %d rows", user_id, len(report.errors))
    return report


def _movement_values(write: MovementWrite) -> dict[str, Any]:
    return {
        "investment_id": write.investment_id,
        "date": write.date,
        "type": write.type,
        "currency": write.currency,
        "amount": write.amount,
        "encrypted_payload": write.encrypted_payload,
    }


def _row_to_snapshot(row: Any, is_closed: bool) -> StoredSnapshot:
    return StoredSnapshot(
        id=row["id"],
        investment_id=row["investment_id"],
        year=row["year"],
        month=row["month"],
        closing_capital=row["closing_capital"],
        closing_capital_usd=row["closing_capital_usd"],
        usd_rate=row["usd_rate"],
        encrypted_payload=row["encrypted_payload"],
        is_closed=is_closed,
    )


def _row_to_movement(row: Any) -> StoredMovement:
    return StoredMovement(
        id=row["id"],
        investment_id=row["investment_id"],
        date=row["date"],
        type=row["type"],
        currency=row["currency"],
        amount=_decimal_or_zero(row["amount"]),
        encrypted_payload=row["encrypted_payload"],
    )


def _decimal_or_zero(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _validate_month(month: int) -> None:
    if month < 1 or month > 12:
        raise ValueError("Month must be between 1 and 12.")
