"""
Tests del repositorio de aportes sobre SQLite en memoria.
La cotización USD/BRL histórica viene de FakeUsdBrlClient (5.00 por defecto).
"""

import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from core.errors import EditStateError, EntryNotFound, InvalidEntryError
from models.entry import Entry
from services.entries import (
    BATCH_SIZE,
    EditSession,
    EditSessionStore,
    EditState,
    EntryCache,
    EntryCreate,
    EntryPatch,
    EntryRepository,
)
from services.parsing import CandidateEntry
from services.rates import RateResolver, backfill_usd_values

from fakes import FakeUsdBrlClient

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_create(
    day: date = date(2024, 1, 15),
    amount: str = "100",
    btc: str = "0.001",
    rate: str | None = None,
    currency: str = "BRL",
    origin: str = "corretora",
) -> EntryCreate:
    return EntryCreate(
        date=day,
        amount_invested=Decimal(amount),
        btc_amount=Decimal(btc),
        exchange_rate=Decimal(rate) if rate is not None else None,
        currency=currency,
        origin=origin,
    )


def make_candidate(
    line: int,
    day: date | None = date(2024, 2, 1),
    btc: str | None = "0.002",
    currency: str | None = None,
    origin: str | None = None,
) -> CandidateEntry:
    return CandidateEntry(
        date=day,
        amount_invested=Decimal("200"),
        btc_amount=Decimal(btc) if btc is not None else None,
        currency=currency,
        origin=origin,
        line=line,
    )


def make_row(user_id: uuid.UUID, day: date, created_at: datetime, origin_registro: str = "manual") -> Entry:
    return Entry(
        user_id=user_id,
        data_aporte=day,
        valor_investido=Decimal("10"),
        bitcoin=Decimal("0.0001"),
        cotacao=Decimal("100000"),
        moeda="BRL",
        cotacao_moeda="BRL",
        origem_aporte="corretora",
        origem_registro=origin_registro,
        created_at=created_at,
    )


# ===========================================================================
# create / list
# ===========================================================================


class TestCreate:
    async def test_manual_entry_resolves_rate_and_usd(self, repo):
        entry = await repo.create(make_create())

        assert entry.registration_source == "manual"
        assert entry.exchange_rate == Decimal("100000")
        assert entry.cotacao_usd_brl == Decimal("5.00")
        assert entry.valor_usd == Decimal("20")
        assert entry.rate_currency == "BRL"
        assert [e.id for e in await repo.list_entries()] == [entry.id]

    async def test_usd_entry_is_its_own_usd_value(self, repo, usd_brl):
        entry = await repo.create(make_create(currency="USD", amount="50"))

        assert entry.valor_usd == Decimal("50")
        assert entry.cotacao_usd_brl == Decimal("1")
        assert usd_brl.calls == []

    async def test_failed_historical_lookup_does_not_block(self, db_session, user_id):
        repo = EntryRepository(db_session, user_id, resolver=RateResolver(FakeUsdBrlClient()))
        entry = await repo.create(make_create())

        assert entry.valor_usd is None
        assert entry.cotacao_usd_brl is None
        assert len(await repo.list_entries()) == 1

    @pytest.mark.parametrize(
        "data",
        [
            make_create(amount="0"),
            make_create(btc="0"),
            make_create(origin="banco"),
            make_create(currency="EUR"),
            make_create(rate="50000"),  # contradice 100 / 0.001
        ],
    )
    async def test_invalid_entries_are_rejected(self, repo, data):
        with pytest.raises(InvalidEntryError):
            await repo.create(data)
        assert await repo.list_entries() == []


class TestList:
    async def test_ordered_by_date_desc(self, repo):
        for day in (date(2024, 1, 10), date(2024, 3, 1), date(2024, 2, 1)):
            await repo.create(make_create(day=day))

        days = [e.date for e in await repo.list_entries()]
        assert days == [date(2024, 3, 1), date(2024, 2, 1), date(2024, 1, 10)]

    async def test_same_day_ordered_by_creation_desc(self, db_session, repo, user_id):
        first = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        older = make_row(user_id, date(2024, 5, 1), first)
        newer = make_row(user_id, date(2024, 5, 1), first + timedelta(minutes=5))
        db_session.add_all([older, newer])
        await db_session.commit()

        assert [e.id for e in await repo.list_entries()] == [newer.id, older.id]

    async def test_users_never_see_each_other(self, db_session, repo, resolver):
        entry = await repo.create(make_create())
        other = EntryRepository(db_session, uuid.uuid4(), resolver=resolver)

        assert await other.list_entries() == []
        with pytest.raises(EntryNotFound):
            await other.update(entry.id, EntryPatch(origin="p2p"))
        with pytest.raises(EntryNotFound):
            await other.delete(entry.id)


# ===========================================================================
# create_many / delete_imported
# ===========================================================================


class TestBulkImport:
    async def test_invalid_rows_reported_valid_rows_inserted(self, repo):
        result = await repo.create_many(
            [
                make_candidate(2),
                make_candidate(3, btc=None),
                make_candidate(4, day=None),
                make_candidate(5, currency="USD", origin="p2p"),
            ]
        )

        assert len(result.created) == 2
        assert [(e.line, "Bitcoin" in e.message or "Data" in e.message) for e in result.errors] == [
            (3, True),
            (4, True),
        ]
        entries = await repo.list_entries()
        assert {e.registration_source for e in entries} == {"planilha"}
        by_currency = {e.currency: e for e in entries}
        # BRL queda pendiente para el backfill; USD se resuelve sin consulta
        assert by_currency["BRL"].origin == "planilha"
        assert by_currency["BRL"].valor_usd is None
        assert by_currency["USD"].valor_usd == Decimal("200")
        assert by_currency["USD"].origin == "p2p"

    async def test_more_rows_than_one_batch(self, repo):
        candidates = [make_candidate(i + 2) for i in range(BATCH_SIZE * 2 + 5)]
        result = await repo.create_many(candidates)

        assert len(result.created) == BATCH_SIZE * 2 + 5
        assert len(await repo.list_entries()) == BATCH_SIZE * 2 + 5

    async def test_delete_imported_leaves_manual_entries(self, repo):
        await repo.create(make_create(day=date(2024, 1, 1)))
        await repo.create(make_create(day=date(2024, 1, 2)))
        await repo.create_many([make_candidate(i) for i in range(2, 5)])
        assert len(await repo.list_entries()) == 5

        deleted = await repo.delete_imported()

        remaining = await repo.list_entries()
        assert deleted == 3
        assert len(remaining) == 2
        assert {e.registration_source for e in remaining} == {"manual"}

    async def test_delete_imported_only_touches_own_entries(self, db_session, repo, resolver):
        other = EntryRepository(db_session, uuid.uuid4(), resolver=resolver)
        await other.create_many([make_candidate(2)])
        await repo.create_many([make_candidate(2)])

        assert await repo.delete_imported() == 1
        assert len(await other.list_entries()) == 1


# ===========================================================================
# update / delete
# ===========================================================================


class TestUpdate:
    async def test_merge_keeps_unspecified_fields(self, repo):
        entry = await repo.create(make_create())
        updated = await repo.update(entry.id, EntryPatch(origin="p2p"))

        assert updated.origin == "p2p"
        assert updated.amount_invested == entry.amount_invested
        assert updated.btc_amount == entry.btc_amount
        assert updated.exchange_rate == entry.exchange_rate
        assert updated.date == entry.date

    async def test_amount_change_recomputes_rate_and_usd(self, repo):
        entry = await repo.create(make_create())
        updated = await repo.update(entry.id, EntryPatch(amount_invested=Decimal("300")))

        assert updated.exchange_rate == Decimal("300000")
        assert updated.valor_usd == Decimal("60")

    async def test_date_text_is_parsed(self, repo, usd_brl):
        entry = await repo.create(make_create())
        updated = await repo.update(entry.id, EntryPatch(date="20/02/2024"))

        assert updated.date == date(2024, 2, 20)
        assert usd_brl.calls[-1] == "20240220"

    async def test_invalid_date_rejects_whole_update(self, repo):
        entry = await repo.create(make_create())

        with pytest.raises(InvalidEntryError):
            await repo.update(entry.id, EntryPatch(date="31/02/2024", origin="p2p"))

        stored = (await repo.list_entries())[0]
        assert stored.date == entry.date
        assert stored.origin == "corretora"

    async def test_registration_source_never_changes(self, repo):
        await repo.create_many([make_candidate(2)])
        imported = (await repo.list_entries())[0]

        updated = await repo.update(imported.id, EntryPatch(origin="ajuste"))
        assert updated.registration_source == "planilha"

    async def test_unknown_id(self, repo):
        with pytest.raises(EntryNotFound):
            await repo.update(uuid.uuid4(), EntryPatch(origin="p2p"))

    async def test_empty_patch_is_rejected(self, repo):
        entry = await repo.create(make_create())

        with pytest.raises(InvalidEntryError, match="Nenhum campo"):
            await repo.update(entry.id, EntryPatch())


async def test_delete(repo):
    keep = await repo.create(make_create(day=date(2024, 1, 1)))
    gone = await repo.create(make_create(day=date(2024, 1, 2)))

    await repo.delete(gone.id)

    assert [e.id for e in await repo.list_entries()] == [keep.id]
    with pytest.raises(EntryNotFound):
        await repo.delete(gone.id)


# ===========================================================================
# Caché
# ===========================================================================


class TestEntryCache:
    async def test_list_is_served_from_cache_until_a_mutation(self, db_session, repo, user_id):
        await repo.create(make_create(day=date(2024, 1, 1)))
        assert len(await repo.list_entries()) == 1

        # Escritura por fuera del repositorio: la caché no se entera
        db_session.add(make_row(user_id, date(2024, 1, 2), datetime.now(timezone.utc)))
        await db_session.commit()
        assert len(await repo.list_entries()) == 1

        await repo.create(make_create(day=date(2024, 1, 3)))
        assert len(await repo.list_entries()) == 3

    async def test_write_during_list_query_does_not_cache_old_list(
        self, db_session, repo, resolver, entry_cache, user_id, monkeypatch
    ):
        writer = EntryRepository(db_session, user_id, resolver=resolver, cache=entry_cache)
        execute = db_session.execute
        pending_write = True

        async def execute_then_write(*args, **kwargs):
            # Otra petición confirma un aporte mientras la consulta del listado está en vuelo
            nonlocal pending_write
            result = await execute(*args, **kwargs)
            if pending_write:
                pending_write = False
                await writer.create(make_create())
            return result

        monkeypatch.setattr(db_session, "execute", execute_then_write)

        assert await repo.list_entries() == []
        assert len(await repo.list_entries()) == 1

    def test_put_with_old_generation_is_ignored(self):
        cache = EntryCache()
        user = uuid.uuid4()
        generation = cache.generation
        cache.invalidate(user)

        assert cache.put(user, [], generation=generation) is False
        assert cache.get(user) is None
        assert cache.put(user, [], generation=cache.generation) is True
        assert cache.get(user) == []

    def test_tracked_keys_are_bounded(self):
        cache = EntryCache(max_tracked=2)
        users = [uuid.uuid4() for _ in range(3)]
        for index, user in enumerate(users):
            cache.put(user, [])
            cache.bind_session(f"tab-{index}", user)

        assert cache.get(users[0]) is None
        assert cache.get(users[2]) == []
        assert len(cache._sessions) == 2

    def test_identity_change_behind_session_invalidates(self):
        cache = EntryCache()
        alice, bob = uuid.uuid4(), uuid.uuid4()
        cache.put(alice, [])
        cache.put(bob, [])

        cache.bind_session("tab-1", alice)
        assert cache.get(alice) == []

        cache.bind_session("tab-1", bob)
        assert cache.get(alice) is None
        assert cache.get(bob) is None

    def test_same_identity_keeps_cache(self):
        cache = EntryCache()
        user = uuid.uuid4()
        cache.put(user, [])
        cache.bind_session("tab-1", user)
        cache.bind_session("tab-1", user)
        assert cache.get(user) == []


# ===========================================================================
# Backfill sobre la base real
# ===========================================================================


async def test_backfill_fills_pending_brl_entries(db_session, user_id):
    offline = EntryRepository(db_session, user_id, resolver=RateResolver(FakeUsdBrlClient()))
    pending = await offline.create(make_create(day=date(2024, 1, 15)))
    await offline.create(make_create(currency="USD"))
    assert [e.id for e in await offline.list_missing_usd()] == [pending.id]

    online = RateResolver(FakeUsdBrlClient(rates={date(2024, 1, 15): Decimal("4")}))
    report = await backfill_usd_values(offline, online)

    assert (report.scanned, report.updated, report.failed) == (1, 1, [])
    assert await offline.list_missing_usd() == []
    refreshed = {e.id: e for e in await offline.list_entries()}[pending.id]
    assert refreshed.valor_usd == Decimal("25")
    assert refreshed.cotacao_usd_brl == Decimal("4")
    assert refreshed.exchange_rate == pending.exchange_rate


# ===========================================================================
# Flujo de edición
# ===========================================================================


class TestEditSession:
    def test_full_cycle(self):
        session = EditSession()
        target = uuid.uuid4()

        session.start(target)
        assert session.state is EditState.EDITING
        assert session.require_target() == target

        session.complete()
        assert session.state is EditState.IDLE
        assert session.entry_id is None

    def test_new_edit_replaces_target(self):
        session = EditSession()
        first, second = uuid.uuid4(), uuid.uuid4()
        session.start(first)
        session.start(second)
        assert session.require_target() == second

    def test_cancel_returns_to_idle(self):
        session = EditSession()
        session.start(uuid.uuid4())
        session.cancel()
        assert session.to_dict() == {"state": "idle", "entry_id": None}

    def test_submit_outside_editing_is_rejected(self):
        with pytest.raises(EditStateError):
            EditSession().complete()
        with pytest.raises(EditStateError):
            EditSession().require_target()

    def test_store_keeps_one_session_per_user(self):
        store = EditSessionStore()
        user = uuid.uuid4()
        assert store.get(user) is store.get(user)
        assert store.get(user) is not store.get(uuid.uuid4())

    def test_release_drops_only_idle_sessions(self):
        store = EditSessionStore()
        editing, idle = uuid.uuid4(), uuid.uuid4()
        store.get(editing).start(uuid.uuid4())
        store.get(idle)

        store.release(editing)
        store.release(idle)

        assert len(store) == 1
        assert store.get(editing).state is EditState.EDITING
