"""
Router: /api/v1/imports
POST /csv/preview  → parsea una planilha CSV (nada se guarda)
POST /confirm      → guarda los candidatos revisados como aportes "planilha" + backfill USD
POST /message      → extrae campos de un comprobante P2P pegado como texto
"""

import datetime as dt
from decimal import Decimal
from typing import Literal

import structlog
from fastapi import APIRouter, Depends, File, UploadFile
from pydantic import BaseModel, Field

from core.config import settings
from core.dependencies import get_entry_repository
from core.responses import ok
from services.entries import EntryRepository
from services.parsing import CandidateEntry, parse_csv, parse_p2p_message, validate_upload
from services.rates import backfill_usd_values

logger = structlog.get_logger(__name__)

router = APIRouter()


class CandidateIn(BaseModel):
    date: dt.date | None = None
    amount_invested: Decimal | None = None
    btc_amount: Decimal | None = None
    exchange_rate: Decimal | None = None
    currency: Literal["BRL", "USD"] | None = None
    origin: Literal["corretora", "p2p", "planilha", "ajuste", "exchange"] | None = None
    line: int | None = None

    def to_candidate(self) -> CandidateEntry:
        return CandidateEntry(**self.model_dump())


class ConfirmImportIn(BaseModel):
    entries: list[CandidateIn] = Field(min_length=1)


class MessageIn(BaseModel):
    text: str = Field(min_length=1)


def _candidate_to_dict(candidate: CandidateEntry) -> dict:
    def _s(value):
        return str(value) if value is not None else None

    return {
        "date": candidate.date.isoformat() if candidate.date else None,
        "amount_invested": _s(candidate.amount_invested),
        "btc_amount": _s(candidate.btc_amount),
        "exchange_rate": _s(candidate.exchange_rate),
        "currency": candidate.currency,
        "origin": candidate.origin,
        "line": candidate.line,
    }


def _decode(raw: bytes) -> str:
    # Planilhas antiguas de Excel salen en latin-1
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


@router.post("/csv/preview")
async def preview_csv(
    file: UploadFile = File(...),
    _repo: EntryRepository = Depends(get_entry_repository),
) -> dict:
    """
    Valida extensión y tamaño antes de leer el contenido.
    Los errores por fila no abortan el resto: vuelven en data.errors.
    """
    max_bytes = settings.import_max_size_bytes
    if file.size is not None:
        validate_upload(file.filename, file.size, max_bytes)
    # Nunca se lee más de un byte por encima del límite
    raw = await file.read(max_bytes + 1)
    validate_upload(file.filename, len(raw), max_bytes)

    result = parse_csv(_decode(raw))
    logger.info(
        "imports.csv_previewed",
        rows=len(result.rows),
        errors=len(result.errors),
    )
    return ok(
        data={
            "rows": [_candidate_to_dict(row) for row in result.rows],
            "errors": [{"line": e.line, "message": e.message} for e in result.errors],
        },
        meta={"filename": file.filename, "valid_rows": len(result.rows)},
    )


@router.post("/confirm")
async def confirm_import(
    body: ConfirmImportIn,
    repo: EntryRepository = Depends(get_entry_repository),
) -> dict:
    result = await repo.create_many([item.to_candidate() for item in body.entries], registration_source="planilha")
    backfill = await backfill_usd_values(repo, repo.resolver)
    return ok(
        data={
            "created": len(result.created),
            "errors": [{"line": e.line, "message": e.message} for e in result.errors],
        },
        meta={"usd_backfill": {"updated": backfill.updated, "failed": len(backfill.failed)}},
    )


@router.post("/message")
async def extract_message(
    body: MessageIn,
    _repo: EntryRepository = Depends(get_entry_repository),
) -> dict:
    extraction = parse_p2p_message(body.text)
    return ok(
        data=_candidate_to_dict(extraction.candidate),
        meta={"found_fields": list(extraction.found_fields)},
    )
