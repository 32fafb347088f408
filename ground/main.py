import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import create_engine

from ground import investment_store as store
from ground.currency_conversion import (
    DEFAULT_FX_RATE,
    DEFAULT_LOCAL_CURRENCY,
    FxSettings,
    normalize_currency,
)
from ground.encryption import AesGcmCipher, DecryptionGate
from ground.investment_models import Investment, InvestmentClass, MovementType
from ground.investment_overview import build_year_overview
from ground.investment_store import DeletionBlocked, InvestmentNotFound, MovementNotFound
from ground.investment_writes import (
    MovementWrite,
    SnapshotWrite,
    ciphertext_movement_write,
    ciphertext_snapshot_write,
    parse_target_return,
    prepare_movement_write,
    prepare_snapshot_write,
)
from ground.period_guard import PeriodClosed

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./ground.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)


def get_fx_settings() -> FxSettings:
    raw_currency = os.getenv("LOCAL_CURRENCY", DEFAULT_LOCAL_CURRENCY)
    raw_rate = os.getenv("DEFAULT_FX_RATE", str(DEFAULT_FX_RATE))
    try:
        return FxSettings(local_currency=raw_currency, default_rate=raw_rate)
    except ValueError:
        logger.warning("Ignoring invalid FX configuration %r / %r", raw_currency, raw_rate)
        return FxSettings()


FX_SETTINGS = get_fx_settings()


@app.on_event("startup")
def init_db() -> None:
    store.metadata.create_all(engine)


def validate_investment_currency(value: str) -> str:
    normalized = normalize_currency(value)
    if normalized not in FX_SETTINGS.currencies:
        raise ValueError(f"Currency must be one of {sorted(FX_SETTINGS.currencies)}.")
    return normalized


class InvestmentPayload(BaseModel):
    name: str
    investment_class: str
    currency: str = "USD"
    target_annual_return: str | Decimal | None = None
    yield_start_year: int | None = None
    yield_start_month: int | None = None

    @classmethod
    def validate_payload(cls, payload: "InvestmentPayload") -> "InvestmentPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Investment name required.")
        payload.investment_class = InvestmentClass.validate(payload.investment_class)
        payload.currency = validate_investment_currency(payload.currency)
        if payload.target_annual_return is None:
            payload.target_annual_return = Decimal("0")
        else:
            parsed = parse_target_return(payload.target_annual_return)
            if parsed is None:
                raise ValueError("Target annual return must be a non-negative number.")
            payload.target_annual_return = parsed
        store.validate_yield_start(payload.yield_start_year, payload.yield_start_month)
        return payload


class InvestmentUpdatePayload(BaseModel):
    name: str | None = None
    currency: str | None = None
    target_annual_return: str | Decimal | None = None
    yield_start_year: int | None = None
    yield_start_month: int | None = None

    @classmethod
    def validate_payload(cls, payload: "InvestmentUpdatePayload") -> "InvestmentUpdatePayload":
        if payload.name is not None:
            payload.name = payload.name.strip()
            if not payload.name:
                raise ValueError("Investment name required.")
        if payload.currency is not None:
            payload.currency = validate_investment_currency(payload.currency)
        if payload.target_annual_return is not None:
            parsed = parse_target_return(payload.target_annual_return)
            if parsed is None:
                raise ValueError("Target annual return must be a non-negative number.")
            payload.target_annual_return = parsed
        return payload


class InvestmentResponse(BaseModel):
    id: int
    name: str
    investment_class: str
    currency: str
    target_annual_return: Decimal
    yield_start_year: int | None = None
    yield_start_month: int | None = None


class SnapshotPayload(BaseModel):
    closing_capital: str | Decimal | None = None
    usd_rate: str | Decimal | None = None
    encrypted_payload: str | None = None


class SnapshotResponse(BaseModel):
    id: int | None = None
    investment_id: int
    year: int
    month: int
    closing_capital: Decimal | None = None
    closing_capital_usd: Decimal | None = None
    usd_rate: Decimal | None = None
    encrypted_payload: str | None = None
    is_closed: bool


class SnapshotsResponse(BaseModel):
    investment: InvestmentResponse
    year: int
    months: list[SnapshotResponse]


class MovementPayload(BaseModel):
    investment_id: int
    date: date
    type: str
    currency: str = "USD"
    amount: str | Decimal | None = None
    encrypted_payload: str | None = None

    @classmethod
    def validate_payload(cls, payload: "MovementPayload") -> "MovementPayload":
        payload.type = MovementType.validate(payload.type)
        payload.currency = validate_investment_currency(payload.currency)
        return payload


class MovementResponse(BaseModel):
    id: int
    investment_id: int
    date: date
    month: int
    type: str
    currency: str
    amount: Decimal
    encrypted_payload: str | None = None


class MovementsResponse(BaseModel):
    year: int
    rows: list[MovementResponse]


class MonthClosePayload(BaseModel):
    year: int
    month: int


class MonthClosesResponse(BaseModel):
    year: int
    rows: list[MonthClosePayload]


class ValuationSeriesResponse(BaseModel):
    investment_id: int
    name: str
    investment_class: str
    currency: str
    usd: list[Decimal]
    native: list[Decimal | None]
    sources: list[str]


class KeyRotationPayload(BaseModel):
    new_key: str


class MigrationStatusResponse(BaseModel):
    snapshots: int
    movements: int
    complete: bool


class EncryptionReportResponse(BaseModel):
    snapshots: int
    movements: int
    errors: list[str]


class InvestmentSummaryResponse(BaseModel):
    year: int
    rate: Decimal | None = None
    investments: list[ValuationSeriesResponse]
    portfolio_net_worth: list[Decimal]
    account_net_worth: list[Decimal]
    total_net_worth: list[Decimal]
    variation: list[Decimal]
    flows: list[Decimal]
    real_returns: list[Decimal]
    projected_next_january: Decimal
    generated_at: datetime


def get_user_id(x_user_id: str | None) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        return int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc


def build_gate(x_encryption_key: str | None) -> DecryptionGate:
    if not x_encryption_key:
        return DecryptionGate()
    try:
        return DecryptionGate(AesGcmCipher(x_encryption_key))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def period_closed_error(exc: PeriodClosed) -> HTTPException:
    logger.info("Rejected write: %s", exc)
    return HTTPException(status_code=409, detail={"reason": exc.reason, "message": str(exc)})


def investment_response(investment: Investment) -> InvestmentResponse:
    return InvestmentResponse(
        id=investment.id,
        name=investment.name,
        investment_class=investment.investment_class,
        currency=investment.currency,
        target_annual_return=investment.target_annual_return,
        yield_start_year=investment.yield_start_year,
        yield_start_month=investment.yield_start_month,
    )


def movement_response(movement) -> MovementResponse:
    return MovementResponse(
        id=movement.id,
        investment_id=movement.investment_id,
        date=movement.date,
        month=movement.date.month,
        type=movement.type,
        currency=movement.currency,
        amount=movement.amount,
        encrypted_payload=movement.encrypted_payload,
    )


def snapshot_response(snapshot) -> SnapshotResponse:
    return SnapshotResponse(
        id=snapshot.id,
        investment_id=snapshot.investment_id,
        year=snapshot.year,
        month=snapshot.month,
        closing_capital=snapshot.closing_capital,
        closing_capital_usd=snapshot.closing_capital_usd,
        usd_rate=snapshot.usd_rate,
        encrypted_payload=snapshot.encrypted_payload,
        is_closed=snapshot.is_closed,
    )


def build_snapshot_write(
    investment: Investment, month: int, payload: SnapshotPayload, gate: DecryptionGate
) -> SnapshotWrite:
    rate = FX_SETTINGS.rate_for(payload.usd_rate)
    if payload.encrypted_payload:
        return ciphertext_snapshot_write(investment, month, payload.encrypted_payload, rate)
    write = prepare_snapshot_write(investment, month, payload.closing_capital, rate, gate)
    if write is None:
        raise ValueError("Closing capital must be a non-negative number.")
    return write


def build_movement_write(payload: MovementPayload, gate: DecryptionGate) -> MovementWrite:
    if payload.encrypted_payload:
        return ciphertext_movement_write(
            payload.investment_id,
            payload.type,
            payload.date.year,
            payload.date.month,
            payload.encrypted_payload,
            payload.currency,
        )
    write = prepare_movement_write(
        payload.investment_id,
        payload.type,
        payload.date.year,
        payload.date.month,
        payload.amount,
        payload.currency,
        gate,
    )
    if write is None:
        raise ValueError("Amount must be a non-negative number.")
    return write


def require_gate(x_encryption_key: str | None) -> DecryptionGate:
    gate = build_gate(x_encryption_key)
    if not gate.available:
        raise HTTPException(status_code=400, detail="Encryption key required.")
    return gate


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/investments", response_model=list[InvestmentResponse])
def list_investments(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[InvestmentResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        owned = store.list_investments(conn, user_id)
    return [investment_response(investment) for investment in owned]


@app.post("/investments", response_model=InvestmentResponse)
def create_investment(
    payload: InvestmentPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> InvestmentResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = InvestmentPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        investment = store.create_investment(
            conn,
            user_id,
            name=payload.name,
            investment_class=payload.investment_class,
            currency=payload.currency,
            target_annual_return=payload.target_annual_return,
            yield_start_year=payload.yield_start_year,
            yield_start_month=payload.yield_start_month,
        )
    return investment_response(investment)


@app.put("/investments/{investment_id}", response_model=InvestmentResponse)
def update_investment(
    investment_id: int,
    payload: InvestmentUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> InvestmentResponse:
    user_id = get_user_id(x_user_id)
    # Only fields present in the request change; an explicit null clears.
    provided = set(payload.model_fields_set)
    try:
        payload = InvestmentUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    changes = {name: getattr(payload, name) for name in provided}
    try:
        with engine.begin() as conn:
            investment = store.update_investment(conn, user_id, investment_id, **changes)
    except InvestmentNotFound as exc:
        raise HTTPException(status_code=404, detail="Investment not found.") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return investment_response(investment)


@app.delete("/investments/{investment_id}")
def delete_investment(investment_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            store.delete_investment(conn, user_id, investment_id)
    except InvestmentNotFound as exc:
        raise HTTPException(status_code=404, detail="Investment not found.") from exc
    except DeletionBlocked as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"status": "deleted"}


@app.get("/investments/summary", response_model=InvestmentSummaryResponse)
def investment_summary(
    year: int = Query(...),
    rate: Decimal | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_encryption_key: str | None = Header(None, alias="x-encryption-key"),
) -> InvestmentSummaryResponse:
    user_id = get_user_id(x_user_id)
    gate = build_gate(x_encryption_key)
    fx_rate = FX_SETTINGS.rate_for(rate)
    with engine.begin() as conn:
        owned, snapshots, movements = store.load_year(conn, user_id, year, gate)

    overview = build_year_overview(owned, snapshots, movements, year, fx_rate)
    return InvestmentSummaryResponse(
        year=year,
        rate=fx_rate,
        investments=[
            ValuationSeriesResponse(
                investment_id=investment.id,
                name=investment.name,
                investment_class=investment.investment_class,
                currency=investment.currency,
                usd=list(overview.series[investment.id].usd),
                native=list(overview.series[investment.id].native),
                sources=list(overview.series[investment.id].sources),
            )
            for investment in owned
        ],
        portfolio_net_worth=list(overview.net_worth.portfolio),
        account_net_worth=list(overview.net_worth.account),
        total_net_worth=list(overview.net_worth.total),
        variation=list(overview.returns.variation),
        flows=list(overview.returns.flows),
        real_returns=list(overview.returns.real_returns),
        projected_next_january=overview.returns.projected_next_january,
        generated_at=datetime.now(timezone.utc),
    )


@app.get("/investments/movements", response_model=MovementsResponse)
def list_movements(
    year: int = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> MovementsResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = store.fetch_movements(conn, user_id, year)
    return MovementsResponse(year=year, rows=[movement_response(row) for row in rows])


@app.post("/investments/movements", response_model=MovementResponse)
def create_movement(
    payload: MovementPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_encryption_key: str | None = Header(None, alias="x-encryption-key"),
) -> MovementResponse:
    user_id = get_user_id(x_user_id)
    gate = build_gate(x_encryption_key)
    try:
        payload = MovementPayload.validate_payload(payload)
        write = build_movement_write(payload, gate)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            created = store.create_movement(conn, user_id, write)
    except InvestmentNotFound as exc:
        raise HTTPException(status_code=404, detail="Investment not found.") from exc
    except PeriodClosed as exc:
        raise period_closed_error(exc) from exc
    return movement_response(created)


@app.put("/investments/movements/{movement_id}", response_model=MovementResponse)
def update_movement(
    movement_id: int,
    payload: MovementPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_encryption_key: str | None = Header(None, alias="x-encryption-key"),
) -> MovementResponse:
    user_id = get_user_id(x_user_id)
    gate = build_gate(x_encryption_key)
    try:
        payload = MovementPayload.validate_payload(payload)
        write = build_movement_write(payload, gate)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            updated = store.update_movement(conn, user_id, movement_id, write)
    except MovementNotFound as exc:
        raise HTTPException(status_code=404, detail="Movement not found.") from exc
    except InvestmentNotFound as exc:
        raise HTTPException(status_code=404, detail="Investment not found.") from exc
    except PeriodClosed as exc:
        raise period_closed_error(exc) from exc
    return movement_response(updated)


@app.delete("/investments/movements/{movement_id}")
def delete_movement(movement_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            store.delete_movement(conn, user_id, movement_id)
    except MovementNotFound as exc:
        raise HTTPException(status_code=404, detail="Movement not found.") from exc
    except PeriodClosed as exc:
        raise period_closed_error(exc) from exc
    return {"status": "deleted"}


@app.get("/investments/{investment_id}/snapshots", response_model=SnapshotsResponse)
def list_snapshots(
    investment_id: int,
    year: int = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SnapshotsResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            investment = store.get_investment(conn, user_id, investment_id)
            rows = store.fetch_snapshots(conn, user_id, investment_id, year)
    except InvestmentNotFound as exc:
        raise HTTPException(status_code=404, detail="Investment not found.") from exc
    return SnapshotsResponse(
        investment=investment_response(investment),
        year=year,
        months=[snapshot_response(row) for row in rows],
    )


@app.put(
    "/investments/{investment_id}/snapshots/{year}/{month}",
    response_model=SnapshotResponse,
)
def save_snapshot(
    investment_id: int,
    year: int,
    month: int,
    payload: SnapshotPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_encryption_key: str | None = Header(None, alias="x-encryption-key"),
) -> SnapshotResponse:
    user_id = get_user_id(x_user_id)
    gate = build_gate(x_encryption_key)
    if not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="Month must be between 1 and 12.")
    try:
        with engine.begin() as conn:
            investment = store.get_investment(conn, user_id, investment_id)
            write = build_snapshot_write(investment, month, payload, gate)
            saved = store.upsert_snapshot(conn, user_id, investment_id, year, write)
    except InvestmentNotFound as exc:
        raise HTTPException(status_code=404, detail="Investment not found.") from exc
    except PeriodClosed as exc:
        raise period_closed_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return snapshot_response(saved)


@app.get("/month-closes", response_model=MonthClosesResponse)
def list_month_closes(
    year: int = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> MonthClosesResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        closed = store.fetch_closed_months(conn, user_id, year)
    return MonthClosesResponse(
        year=year,
        rows=[MonthClosePayload(year=y, month=m) for y, m in sorted(closed)],
    )


@app.post("/month-closes", response_model=MonthClosePayload)
def close_month(
    payload: MonthClosePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> MonthClosePayload:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            store.close_month(conn, user_id, payload.year, payload.month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return payload


@app.delete("/month-closes/{year}/{month}")
def reopen_month(
    year: int, month: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            store.reopen_month(conn, user_id, year, month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "reopened"}


@app.get("/encryption/status", response_model=MigrationStatusResponse)
def encryption_status(x_user_id: str | None = Header(None, alias="x-user-id")) -> MigrationStatusResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        status = store.migration_status(conn, user_id)
    return MigrationStatusResponse(
        snapshots=status.snapshots,
        movements=status.movements,
        complete=status.complete,
    )


@app.post("/encryption/migrate", response_model=EncryptionReportResponse)
def migrate_to_encrypted(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_encryption_key: str | None = Header(None, alias="x-encryption-key"),
) -> EncryptionReportResponse:
    user_id = get_user_id(x_user_id)
    gate = require_gate(x_encryption_key)
    with engine.begin() as conn:
        report = store.migrate_to_encrypted(conn, user_id, gate)
    return EncryptionReportResponse(
        snapshots=report.snapshots,
        movements=report.movements,
        errors=report.errors,
    )


@app.post("/encryption/rotate", response_model=EncryptionReportResponse)
def rotate_encryption(
    payload: KeyRotationPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_encryption_key: str | None = Header(None, alias="x-encryption-key"),
) -> EncryptionReportResponse:
    user_id = get_user_id(x_user_id)
    old_gate = require_gate(x_encryption_key)
    new_gate = require_gate(payload.new_key)
    with engine.begin() as conn:
        report = store.rotate_encryption(conn, user_id, old_gate, new_gate)
    return EncryptionReportResponse(
        snapshots=report.snapshots,
        movements=report.movements,
        errors=report.errors,
    )
