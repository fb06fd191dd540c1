"""
Router: /api/v1/entries
GET    /                 → aportes del usuario (más recientes primero)
POST   /                 → registra un aporte manual
GET    /export           → descarga CSV (mismo formato que la importación)
DELETE /imported         → borra todos los aportes importados de planilha
POST   /backfill-usd     → completa valor_usd de aportes BRL pendientes
GET    /edit             → estado del flujo de edición
POST   /{id}/edit        → inicia la edición de un aporte
POST   /edit/submit      → guarda la edición en curso
POST   /edit/cancel      → descarta la edición en curso
PATCH  /{id}             → actualización parcial directa
DELETE /{id}             → borra un aporte
"""

import csv
import datetime as dt
import io
import uuid
from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator, model_validator

from core.dependencies import get_edit_sessions, get_entry_repository, get_rate_monitor
from core.responses import ok
from market.rate_monitor import RateMonitor
from services.entries import EditSessionStore, EntryCreate, EntryPatch, EntryRepository, EntryView
from services.formatting import format_date, format_percent
from services.parsing import parse_day, sats_to_btc
from services.rates import backfill_usd_values
from services.stats import percentage_change

router = APIRouter()

Currency = Literal["BRL", "USD"]
Origin = Literal["corretora", "p2p", "planilha", "ajuste", "exchange"]


class EntryIn(BaseModel):
    date: dt.date
    amount_invested: Decimal = Field(gt=0)
    btc_amount: Decimal | None = Field(default=None, gt=0)
    sats_amount: Decimal | None = Field(default=None, gt=0)
    exchange_rate: Decimal | None = Field(default=None, gt=0)
    currency: Currency = "BRL"
    origin: Origin = "corretora"

    @field_validator("date", mode="before")
    @classmethod
    def accept_br_date(cls, v):
        if isinstance(v, str):
            parsed = parse_day(v)
            if parsed is None:
                raise ValueError("Data inválida. Use DD/MM/AAAA ou AAAA-MM-DD.")
            return parsed
        return v

    @model_validator(mode="after")
    def require_quantity(self) -> "EntryIn":
        if (self.btc_amount is None) == (self.sats_amount is None):
            raise ValueError("Informe a quantidade em bitcoin OU em sats.")
        if self.sats_amount is not None:
            self.btc_amount = sats_to_btc(self.sats_amount)
        return self


class EntryPatchIn(BaseModel):
    # Texto: una fecha inválida rechaza el patch entero en el repositorio
    date: str | None = None
    amount_invested: Decimal | None = Field(default=None, gt=0)
    btc_amount: Decimal | None = Field(default=None, gt=0)
    sats_amount: Decimal | None = Field(default=None, gt=0)
    exchange_rate: Decimal | None = Field(default=None, gt=0)
    currency: Currency | None = None
    origin: Origin | None = None

    def to_patch(self) -> EntryPatch:
        btc = self.btc_amount
        if btc is None and self.sats_amount is not None:
            btc = sats_to_btc(self.sats_amount)
        return EntryPatch(
            date=self.date,
            amount_invested=self.amount_invested,
            btc_amount=btc,
            exchange_rate=self.exchange_rate,
            currency=self.currency,
            origin=self.origin,
        )


# ---------------------------------------------------------------------------
# Colección
# ---------------------------------------------------------------------------


def _entry_with_variation(entry: EntryView, monitor: RateMonitor) -> dict:
    """Añade la variación de la cotação de compra frente a la actual y la fecha DD/MM/AAAA."""
    rate = monitor.latest
    change = percentage_change(entry.exchange_rate, rate.price_in(entry.currency)) if rate else None
    item = entry.to_dict()
    item["rate_change_pct"] = str(change) if change is not None else None
    item["display"] = {"date": format_date(entry.date), "rate_change_pct": format_percent(change)}
    return item


@router.get("")
async def list_entries(
    repo: EntryRepository = Depends(get_entry_repository),
    monitor: RateMonitor = Depends(get_rate_monitor),
) -> dict:
    entries = await repo.list_entries()
    return ok(
        data=[_entry_with_variation(entry, monitor) for entry in entries],
        meta={"total": len(entries), "rate_source": monitor.source},
    )


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_entry(body: EntryIn, repo: EntryRepository = Depends(get_entry_repository)) -> dict:
    entry = await repo.create(
        EntryCreate(
            date=body.date,
            amount_invested=body.amount_invested,
            btc_amount=body.btc_amount,
            exchange_rate=body.exchange_rate,
            currency=body.currency,
            origin=body.origin,
        )
    )
    return ok(data=entry.to_dict(), meta={"usd_resolved": entry.valor_usd is not None})


@router.get("/export")
async def export_entries(repo: EntryRepository = Depends(get_entry_repository)) -> StreamingResponse:
    """CSV con las columnas que acepta /imports/csv/preview: exportar y reimportar es simétrico."""
    entries = await repo.list_entries()

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(["data", "valor", "bitcoin", "cotacao", "origem", "moeda", "origem_registro"])
    for entry in entries:
        writer.writerow([
            entry.date.isoformat(),
            str(entry.amount_invested),
            str(entry.btc_amount),
            str(entry.exchange_rate),
            entry.origin,
            entry.currency,
            entry.registration_source,
        ])

    output.seek(0)
    filename = f"aportes_{dt.date.today()}.csv"
    return StreamingResponse(
        iter([output.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.delete("/imported")
async def delete_imported_entries(repo: EntryRepository = Depends(get_entry_repository)) -> dict:
    deleted = await repo.delete_imported()
    return ok(data={"deleted": deleted})


@router.post("/backfill-usd")
async def backfill_usd(repo: EntryRepository = Depends(get_entry_repository)) -> dict:
    report = await backfill_usd_values(repo, repo.resolver)
    return ok(data={"scanned": report.scanned, "updated": report.updated, "failed": report.failed})


# ---------------------------------------------------------------------------
# Flujo de edición
# ---------------------------------------------------------------------------


@router.get("/edit")
async def get_edit_state(
    repo: EntryRepository = Depends(get_entry_repository),
    sessions: EditSessionStore = Depends(get_edit_sessions),
) -> dict:
    state = sessions.get(repo.user_id).to_dict()
    sessions.release(repo.user_id)
    return ok(data=state)


@router.post("/edit/submit")
async def submit_edit(
    body: EntryPatchIn,
    repo: EntryRepository = Depends(get_entry_repository),
    sessions: EditSessionStore = Depends(get_edit_sessions),
) -> dict:
    """Si la actualización falla, la edición sigue abierta para corregir y reenviar."""
    session = sessions.get(repo.user_id)
    try:
        target = session.require_target()
        entry = await repo.update(target, body.to_patch())
        session.complete()
    finally:
        sessions.release(repo.user_id)
    return ok(data=entry.to_dict(), meta={"edit": session.to_dict()})


@router.post("/edit/cancel")
async def cancel_edit(
    repo: EntryRepository = Depends(get_entry_repository),
    sessions: EditSessionStore = Depends(get_edit_sessions),
) -> dict:
    session = sessions.get(repo.user_id)
    session.cancel()
    sessions.release(repo.user_id)
    return ok(data=session.to_dict())


@router.post("/{entry_id}/edit")
async def start_edit(
    entry_id: uuid.UUID,
    repo: EntryRepository = Depends(get_entry_repository),
    sessions: EditSessionStore = Depends(get_edit_sessions),
) -> dict:
    entry = await repo.get(entry_id)
    session = sessions.get(repo.user_id)
    session.start(entry.id)
    return ok(data=entry.to_dict(), meta={"edit": session.to_dict()})


# ---------------------------------------------------------------------------
# Aporte individual
# ---------------------------------------------------------------------------


@router.patch("/{entry_id}")
async def update_entry(
    entry_id: uuid.UUID,
    body: EntryPatchIn,
    repo: EntryRepository = Depends(get_entry_repository),
) -> dict:
    entry = await repo.update(entry_id, body.to_patch())
    return ok(data=entry.to_dict())


@router.delete("/{entry_id}")
async def delete_entry(
    entry_id: uuid.UUID,
    repo: EntryRepository = Depends(get_entry_repository),
) -> dict:
    await repo.delete(entry_id)
    return ok(data={"id": str(entry_id), "deleted": True})
