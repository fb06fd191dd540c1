"""
Resolución de cotizaciones de un aporte.

Reglas:
- Cotación informada y > 0 → se respeta; si no, cotação = valor / bitcoin.
- Si el usuario informa los tres (valor, bitcoin, cotação) y se contradicen más
  que la tolerancia configurada → InvalidEntryError.
- Aportes en BRL: equivalente USD con la cotización histórica USD/BRL del día.
  Un fallo de esa consulta NO bloquea el registro: valor_usd/cotacao_usd_brl quedan en null
  y el backfill lo reintenta más tarde.
- Aportes en USD: valor_usd = valor, cotacao_usd_brl = 1.
- NUNCA float: Decimal en todas las operaciones.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Protocol

import structlog
from sqlalchemy.exc import SQLAlchemyError

from core.errors import InvalidEntryError
from market.types import FetchResult

logger = structlog.get_logger(__name__)

# 8 decimales: misma escala que las columnas NUMERIC(20,8)
STORAGE_PRECISION = Decimal("0.00000001")
ONE = Decimal("1")


class UsdBrlSource(Protocol):
    async def get_rate(self, day: date) -> FetchResult[Decimal]: ...


@dataclass(frozen=True)
class ResolvedRates:
    exchange_rate: Decimal
    valor_usd: Decimal | None
    cotacao_usd_brl: Decimal | None


def compute_rate(amount: Decimal, btc: Decimal) -> Decimal:
    """Cotação implícita: valor investido / bitcoin recebido."""
    if btc is None or btc <= 0:
        raise InvalidEntryError("A quantidade de Bitcoin deve ser maior que zero.")
    return amount / btc


def check_consistency(amount: Decimal, btc: Decimal, rate: Decimal, tolerance_pct: Decimal) -> None:
    """
    Rechaza tripletas contradictorias: |rate − valor/btc| / (valor/btc) > tolerancia.
    Los comprobantes P2P suelen diferir algunos puntos (comisiones), de ahí la tolerancia.
    """
    implied = compute_rate(amount, btc)
    deviation_pct = abs(rate - implied) / implied * 100
    if deviation_pct > tolerance_pct:
        raise InvalidEntryError(
            "A cotação informada não confere com valor investido / quantidade de Bitcoin.",
            details={
                "informed_rate": str(rate),
                "implied_rate": str(implied.quantize(Decimal("0.01"))),
                "deviation_pct": str(deviation_pct.quantize(Decimal("0.01"))),
                "tolerance_pct": str(tolerance_pct),
            },
        )


class RateResolver:
    """
    Uso:
        resolver = RateResolver(usd_brl_client, tolerance_pct=5)
        rates = await resolver.resolve(amount, btc, rate, "BRL", date(2024, 1, 15))
    """

    def __init__(self, usd_brl_client: UsdBrlSource, tolerance_pct: float | Decimal = 5) -> None:
        self._usd_brl = usd_brl_client
        self._tolerance_pct = Decimal(str(tolerance_pct))

    async def resolve(
        self,
        amount: Decimal,
        btc: Decimal,
        rate: Decimal | None,
        currency: str,
        day: date,
    ) -> ResolvedRates:
        if amount is None or amount <= 0:
            raise InvalidEntryError("O valor investido deve ser maior que zero.")
        if btc is None or btc <= 0:
            raise InvalidEntryError("A quantidade de Bitcoin deve ser maior que zero.")

        exchange_rate = self.resolve_rate(amount, btc, rate)
        valor_usd, cotacao_usd_brl = await self.resolve_usd(amount, currency, day)
        return ResolvedRates(
            exchange_rate=exchange_rate,
            valor_usd=valor_usd,
            cotacao_usd_brl=cotacao_usd_brl,
        )

    def resolve_rate(self, amount: Decimal, btc: Decimal, rate: Decimal | None) -> Decimal:
        """Cotação informada (validada contra valor/bitcoin) o calculada."""
        if rate is not None and rate > 0:
            check_consistency(amount, btc, rate, self._tolerance_pct)
            return rate
        return compute_rate(amount, btc).quantize(STORAGE_PRECISION)

    async def resolve_usd(
        self, amount: Decimal, currency: str, day: date
    ) -> tuple[Decimal | None, Decimal | None]:
        """(valor_usd, cotacao_usd_brl) del aporte; (None, None) si la consulta histórica falla."""
        if currency == "USD":
            return amount, ONE

        result = await self._usd_brl.get_rate(day)
        if not result.ok:
            logger.warning("rates.usd_equivalent_unresolved", day=day.isoformat(), error=result.error)
            return None, None

        cotacao = result.value
        return (amount / cotacao).quantize(STORAGE_PRECISION), cotacao


# ---------------------------------------------------------------------------
# Backfill retroactivo de valor_usd
# ---------------------------------------------------------------------------


@dataclass
class BackfillReport:
    scanned: int = 0
    updated: int = 0
    failed: list[dict] = field(default_factory=list)


class BackfillTarget(Protocol):
    async def list_missing_usd(self) -> list: ...

    async def set_usd_values(self, entry_id: uuid.UUID, valor_usd: Decimal, cotacao_usd_brl: Decimal) -> None: ...

    async def rollback(self) -> None: ...


async def backfill_usd_values(repo: BackfillTarget, resolver: RateResolver) -> BackfillReport:
    """
    Completa valor_usd/cotacao_usd_brl de los aportes BRL que no los tienen.
    Cada fila es independiente: un fallo se registra y se sigue con la siguiente.
    Solo se tocan esos dos campos.
    """
    report = BackfillReport()
    for entry in await repo.list_missing_usd():
        report.scanned += 1
        valor_usd, cotacao = await resolver.resolve_usd(entry.amount_invested, entry.currency, entry.date)
        if valor_usd is None or cotacao is None:
            report.failed.append({"id": str(entry.id), "error": "Cotação USD/BRL indisponível"})
            continue
        try:
            await repo.set_usd_values(entry.id, valor_usd, cotacao)
        except SQLAlchemyError as exc:
            await repo.rollback()
            report.failed.append({"id": str(entry.id), "error": str(exc)})
            logger.error("rates.backfill.row_failed", entry_id=str(entry.id), error=str(exc))
            continue
        report.updated += 1

    logger.info(
        "rates.backfill.complete",
        scanned=report.scanned,
        updated=report.updated,
        failed=len(report.failed),
    )
    return report
