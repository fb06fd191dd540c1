"""
Repositorio de aportes de un usuario.

Reglas:
- Toda consulta filtra por user_id: un usuario nunca ve ni modifica aportes ajenos.
- Las mutaciones hacen commit y luego invalidan la caché del usuario ANTES de
  devolver el control: la siguiente lectura siempre ve el estado nuevo.
- origem_registro se fija al crear (manual | planilha) y nunca cambia.
- NUNCA loguear valores financieros del usuario a nivel INFO.
"""

import datetime as dt
import uuid
from collections import OrderedDict
from dataclasses import dataclass, fields
from decimal import Decimal
from enum import Enum

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import EditStateError, EntryNotFound, InvalidEntryError
from models.entry import CURRENCIES, ORIGINS, REGISTRATION_SOURCES, Entry
from services.parsing import CandidateEntry, RowError, parse_day
from services.rates import RateResolver

logger = structlog.get_logger(__name__)

# Tamaño de lote de la importación masiva
BATCH_SIZE = 100


# ---------------------------------------------------------------------------
# Tipos
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EntryView:
    """Instantánea inmutable de un aporte, desacoplada de la sesión ORM."""

    id: uuid.UUID
    date: dt.date
    amount_invested: Decimal
    btc_amount: Decimal
    exchange_rate: Decimal
    currency: str
    rate_currency: str
    origin: str
    registration_source: str
    valor_usd: Decimal | None
    cotacao_usd_brl: Decimal | None
    created_at: dt.datetime

    @classmethod
    def from_row(cls, row: Entry) -> "EntryView":
        return cls(
            id=row.id,
            date=row.data_aporte,
            amount_invested=row.valor_investido,
            btc_amount=row.bitcoin,
            exchange_rate=row.cotacao,
            currency=row.moeda,
            rate_currency=row.cotacao_moeda,
            origin=row.origem_aporte,
            registration_source=row.origem_registro,
            valor_usd=row.valor_usd,
            cotacao_usd_brl=row.cotacao_usd_brl,
            created_at=row.created_at,
        )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "date": self.date.isoformat(),
            "amount_invested": str(self.amount_invested),
            "btc_amount": str(self.btc_amount),
            "exchange_rate": str(self.exchange_rate),
            "currency": self.currency,
            "rate_currency": self.rate_currency,
            "origin": self.origin,
            "registration_source": self.registration_source,
            "valor_usd": str(self.valor_usd) if self.valor_usd is not None else None,
            "cotacao_usd_brl": str(self.cotacao_usd_brl) if self.cotacao_usd_brl is not None else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class EntryCreate:
    date: dt.date
    amount_invested: Decimal
    btc_amount: Decimal
    exchange_rate: Decimal | None = None
    currency: str = "BRL"
    origin: str = "corretora"


@dataclass(frozen=True)
class EntryPatch:
    """Campos a cambiar; None = conservar el valor actual. date acepta texto (DD/MM/YYYY o ISO)."""

    date: dt.date | str | None = None
    amount_invested: Decimal | None = None
    btc_amount: Decimal | None = None
    exchange_rate: Decimal | None = None
    currency: str | None = None
    origin: str | None = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))


@dataclass
class BulkInsertResult:
    created: list[EntryView]
    errors: list[RowError]


def _validate_choice(value: str, allowed: tuple[str, ...], label: str) -> str:
    if value not in allowed:
        raise InvalidEntryError(f"{label} inválida: {value!r}", details={"allowed": list(allowed)})
    return value


def _require_positive(value: Decimal | None, message: str) -> Decimal:
    if value is None or value <= 0:
        raise InvalidEntryError(message)
    return value


# ---------------------------------------------------------------------------
# Caché por usuario
# ---------------------------------------------------------------------------


class EntryCache:
    """
    Caché explícita de listados por usuario (vive en app.state).
    bind_session asocia una sesión del cliente con su usuario: si la identidad
    detrás de la sesión cambia, se descarta lo cacheado de ambos usuarios.

    Cada invalidate avanza la generación. Un listado leído antes de una
    invalidación no se guarda: put con una generación vieja se ignora.
    Ambos mapas están acotados (LRU) a MAX_TRACKED claves.
    """

    MAX_TRACKED = 1024

    def __init__(self, max_tracked: int | None = None) -> None:
        self._max_tracked = max_tracked or self.MAX_TRACKED
        self._entries: OrderedDict[uuid.UUID, list[EntryView]] = OrderedDict()
        self._sessions: OrderedDict[str, uuid.UUID] = OrderedDict()
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    def _remember(self, mapping: OrderedDict, key, value) -> None:
        mapping[key] = value
        mapping.move_to_end(key)
        while len(mapping) > self._max_tracked:
            mapping.popitem(last=False)

    def get(self, user_id: uuid.UUID) -> list[EntryView] | None:
        cached = self._entries.get(user_id)
        if cached is None:
            return None
        self._entries.move_to_end(user_id)
        return list(cached)

    def put(self, user_id: uuid.UUID, entries: list[EntryView], generation: int | None = None) -> bool:
        if generation is not None and generation != self._generation:
            logger.debug("entries.cache.stale_put_skipped", user_id=str(user_id))
            return False
        self._remember(self._entries, user_id, list(entries))
        return True

    def invalidate(self, user_id: uuid.UUID) -> None:
        self._generation += 1
        self._entries.pop(user_id, None)

    def bind_session(self, session_id: str, user_id: uuid.UUID) -> None:
        previous = self._sessions.get(session_id)
        if previous is not None and previous != user_id:
            self.invalidate(previous)
            self.invalidate(user_id)
            logger.info("entries.cache.identity_changed", session_id=session_id)
        self._remember(self._sessions, session_id, user_id)


# ---------------------------------------------------------------------------
# Repositorio
# ---------------------------------------------------------------------------


class EntryRepository:
    """
    Uso:
        repo = EntryRepository(db=session, user_id=user_id, resolver=resolver, cache=cache)
        entry = await repo.create(EntryCreate(...))
    """

    def __init__(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        resolver: RateResolver | None = None,
        cache: EntryCache | None = None,
    ) -> None:
        self.db = db
        self.user_id = user_id
        self._resolver = resolver
        self._cache = cache or EntryCache()

    @property
    def resolver(self) -> RateResolver:
        if self._resolver is None:
            raise RuntimeError("EntryRepository sin RateResolver configurado")
        return self._resolver

    def _invalidate(self) -> None:
        self._cache.invalidate(self.user_id)

    async def _get_row(self, entry_id: uuid.UUID) -> Entry:
        result = await self.db.execute(
            select(Entry).where(Entry.id == entry_id, Entry.user_id == self.user_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise EntryNotFound("Aporte não encontrado.", details={"id": str(entry_id)})
        return row

    # -----------------------------------------------------------------------
    # Lectura
    # -----------------------------------------------------------------------

    async def list_entries(self) -> list[EntryView]:
        """Aportes del usuario: más recientes primero (fecha, luego creación)."""
        cached = self._cache.get(self.user_id)
        if cached is not None:
            return cached

        generation = self._cache.generation
        result = await self.db.execute(
            select(Entry)
            .where(Entry.user_id == self.user_id)
            .order_by(Entry.data_aporte.desc(), Entry.created_at.desc())
        )
        entries = [EntryView.from_row(row) for row in result.scalars().all()]
        self._cache.put(self.user_id, entries, generation=generation)
        return entries

    async def get(self, entry_id: uuid.UUID) -> EntryView:
        return EntryView.from_row(await self._get_row(entry_id))

    async def list_missing_usd(self) -> list[EntryView]:
        result = await self.db.execute(
            select(Entry)
            .where(
                Entry.user_id == self.user_id,
                Entry.moeda == "BRL",
                Entry.valor_usd.is_(None),
                Entry.cotacao_usd_brl.is_(None),
            )
            .order_by(Entry.data_aporte)
        )
        return [EntryView.from_row(row) for row in result.scalars().all()]

    # -----------------------------------------------------------------------
    # Escritura
    # -----------------------------------------------------------------------

    async def create(self, data: EntryCreate, registration_source: str = "manual") -> EntryView:
        _validate_choice(registration_source, REGISTRATION_SOURCES, "Origem de registro")
        _validate_choice(data.currency, CURRENCIES, "Moeda")
        _validate_choice(data.origin, ORIGINS, "Origem do aporte")
        if data.date is None:
            raise InvalidEntryError("Data do aporte é obrigatória.")
        _require_positive(data.amount_invested, "O valor investido deve ser maior que zero.")
        _require_positive(data.btc_amount, "A quantidade de Bitcoin deve ser maior que zero.")

        rates = await self.resolver.resolve(
            data.amount_invested, data.btc_amount, data.exchange_rate, data.currency, data.date
        )
        row = Entry(
            id=uuid.uuid4(),
            user_id=self.user_id,
            data_aporte=data.date,
            valor_investido=data.amount_invested,
            bitcoin=data.btc_amount,
            cotacao=rates.exchange_rate,
            moeda=data.currency,
            cotacao_moeda=data.currency,
            origem_aporte=data.origin,
            origem_registro=registration_source,
            valor_usd=rates.valor_usd,
            cotacao_usd_brl=rates.cotacao_usd_brl,
        )
        self.db.add(row)
        await self.db.commit()
        self._invalidate()

        logger.info(
            "entries.created",
            entry_id=str(row.id),
            user_id=str(self.user_id),
            registration_source=registration_source,
            usd_resolved=rates.valor_usd is not None,
        )
        return EntryView.from_row(row)

    def _row_from_candidate(self, candidate: CandidateEntry, registration_source: str) -> Entry:
        if candidate.date is None:
            raise InvalidEntryError("Data do aporte é obrigatória.")
        amount = _require_positive(candidate.amount_invested, "O valor investido deve ser maior que zero.")
        btc = _require_positive(candidate.btc_amount, "A quantidade de Bitcoin deve ser maior que zero.")
        currency = _validate_choice(candidate.currency or "BRL", CURRENCIES, "Moeda")
        origin = _validate_choice(candidate.origin or "planilha", ORIGINS, "Origem do aporte")

        # Sin consulta histórica aquí: el backfill completa los aportes BRL tras la importación
        is_usd = currency == "USD"
        return Entry(
            id=uuid.uuid4(),
            user_id=self.user_id,
            data_aporte=candidate.date,
            valor_investido=amount,
            bitcoin=btc,
            cotacao=self.resolver.resolve_rate(amount, btc, candidate.exchange_rate),
            moeda=currency,
            cotacao_moeda=currency,
            origem_aporte=origin,
            origem_registro=registration_source,
            valor_usd=amount if is_usd else None,
            cotacao_usd_brl=Decimal("1") if is_usd else None,
        )

    async def create_many(
        self, candidates: list[CandidateEntry], registration_source: str = "planilha"
    ) -> BulkInsertResult:
        """
        Inserción masiva en una sola transacción, en lotes de BATCH_SIZE.
        Las filas inválidas se reportan y no impiden insertar las válidas.
        """
        _validate_choice(registration_source, REGISTRATION_SOURCES, "Origem de registro")
        rows: list[Entry] = []
        errors: list[RowError] = []

        for index, candidate in enumerate(candidates, start=1):
            try:
                rows.append(self._row_from_candidate(candidate, registration_source))
            except InvalidEntryError as exc:
                errors.append(RowError(line=candidate.line or index, message=exc.message))

        for start in range(0, len(rows), BATCH_SIZE):
            self.db.add_all(rows[start:start + BATCH_SIZE])
            await self.db.flush()

        await self.db.commit()
        self._invalidate()

        logger.info(
            "entries.bulk_created",
            user_id=str(self.user_id),
            created=len(rows),
            rejected=len(errors),
        )
        return BulkInsertResult(created=[EntryView.from_row(row) for row in rows], errors=errors)

    async def update(self, entry_id: uuid.UUID, patch: EntryPatch) -> EntryView:
        """
        Merge: cada campo del patch sustituye al actual solo si viene informado.
        Cambios en valor/bitcoin/cotação revalidan la cotação; cambios en
        valor/moeda/data recalculan el equivalente USD.
        """
        if patch.is_empty():
            raise InvalidEntryError("Nenhum campo para atualizar.")
        row = await self._get_row(entry_id)

        if isinstance(patch.date, str):
            new_date = parse_day(patch.date)
            if new_date is None:
                raise InvalidEntryError(f"Data inválida: {patch.date!r}")
        else:
            new_date = patch.date

        day = new_date if new_date is not None else row.data_aporte
        amount = patch.amount_invested if patch.amount_invested is not None else row.valor_investido
        btc = patch.btc_amount if patch.btc_amount is not None else row.bitcoin
        currency = _validate_choice(patch.currency or row.moeda, CURRENCIES, "Moeda")
        origin = _validate_choice(patch.origin or row.origem_aporte, ORIGINS, "Origem do aporte")
        _require_positive(amount, "O valor investido deve ser maior que zero.")
        _require_positive(btc, "A quantidade de Bitcoin deve ser maior que zero.")

        quantities_changed = (
            patch.amount_invested is not None and patch.amount_invested != row.valor_investido
        ) or (patch.btc_amount is not None and patch.btc_amount != row.bitcoin)
        if patch.exchange_rate is not None:
            rate = self.resolver.resolve_rate(amount, btc, patch.exchange_rate)
        elif quantities_changed:
            rate = self.resolver.resolve_rate(amount, btc, None)
        else:
            rate = row.cotacao

        usd_changed = (
            amount != row.valor_investido or currency != row.moeda or day != row.data_aporte
        )
        if usd_changed:
            valor_usd, cotacao_usd_brl = await self.resolver.resolve_usd(amount, currency, day)
        else:
            valor_usd, cotacao_usd_brl = row.valor_usd, row.cotacao_usd_brl

        row.data_aporte = day
        row.valor_investido = amount
        row.bitcoin = btc
        row.cotacao = rate
        row.moeda = currency
        row.cotacao_moeda = currency
        row.origem_aporte = origin
        row.valor_usd = valor_usd
        row.cotacao_usd_brl = cotacao_usd_brl

        view = EntryView.from_row(row)
        await self.db.commit()
        self._invalidate()
        logger.info("entries.updated", entry_id=str(entry_id), user_id=str(self.user_id))
        return view

    async def delete(self, entry_id: uuid.UUID) -> None:
        row = await self._get_row(entry_id)
        await self.db.delete(row)
        await self.db.commit()
        self._invalidate()
        logger.info("entries.deleted", entry_id=str(entry_id), user_id=str(self.user_id))

    async def delete_imported(self) -> int:
        """Borra de una vez todos los aportes importados de planilha. Devuelve cuántos."""
        result = await self.db.execute(
            delete(Entry).where(
                Entry.user_id == self.user_id,
                Entry.origem_registro == "planilha",
            )
        )
        await self.db.commit()
        self._invalidate()
        deleted = result.rowcount or 0
        logger.info("entries.imported_deleted", user_id=str(self.user_id), count=deleted)
        return deleted

    async def set_usd_values(
        self, entry_id: uuid.UUID, valor_usd: Decimal, cotacao_usd_brl: Decimal
    ) -> None:
        """Solo toca valor_usd y cotacao_usd_brl (backfill)."""
        await self.db.execute(
            update(Entry)
            .where(Entry.id == entry_id, Entry.user_id == self.user_id)
            .values(valor_usd=valor_usd, cotacao_usd_brl=cotacao_usd_brl)
        )
        await self.db.commit()
        self._invalidate()

    async def rollback(self) -> None:
        await self.db.rollback()


# ---------------------------------------------------------------------------
# Flujo de edición
# ---------------------------------------------------------------------------


class EditState(str, Enum):
    IDLE = "idle"
    EDITING = "editing"


@dataclass
class EditSession:
    """idle → editing(entry_id) → (submit | cancel) → idle."""

    state: EditState = EditState.IDLE
    entry_id: uuid.UUID | None = None

    def start(self, entry_id: uuid.UUID) -> None:
        # Empezar otra edición sustituye el objetivo actual
        self.state = EditState.EDITING
        self.entry_id = entry_id

    def cancel(self) -> None:
        self.state = EditState.IDLE
        self.entry_id = None

    def require_target(self) -> uuid.UUID:
        if self.state is not EditState.EDITING or self.entry_id is None:
            raise EditStateError("Nenhum aporte em edição.")
        return self.entry_id

    def complete(self) -> None:
        self.require_target()
        self.cancel()

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "entry_id": str(self.entry_id) if self.entry_id else None,
        }


class EditSessionStore:
    """Solo se guardan las ediciones abiertas: release descarta la sesión al volver a idle."""

    def __init__(self) -> None:
        self._sessions: dict[uuid.UUID, EditSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, user_id: uuid.UUID) -> EditSession:
        return self._sessions.setdefault(user_id, EditSession())

    def release(self, user_id: uuid.UUID) -> None:
        session = self._sessions.get(user_id)
        if session is not None and session.state is EditState.IDLE:
            del self._sessions[user_id]
