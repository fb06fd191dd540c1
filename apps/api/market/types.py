"""
Tipos efímeros de datos de mercado. Nunca se persisten.

FetchResult envuelve cualquier llamada a una API externa: el llamador decide
si usa el valor o ignora el error (no hay reintentos automáticos).
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class FetchResult(Generic[T]):
    value: T | None = None
    error: str | None = None
    source: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.value is not None

    @classmethod
    def success(cls, value: T, source: str) -> "FetchResult[T]":
        return cls(value=value, source=source)

    @classmethod
    def failure(cls, error: str, source: str | None = None) -> "FetchResult[T]":
        return cls(error=error, source=source)


@dataclass(frozen=True)
class CurrentRate:
    usd: Decimal
    brl: Decimal
    timestamp: datetime

    def price_in(self, currency: str) -> Decimal:
        return self.usd if currency == "USD" else self.brl


@dataclass(frozen=True)
class PriceVariation:
    """Variación porcentual en 24h, 7d, 30d y 1 año."""

    day: Decimal
    week: Decimal
    month: Decimal
    year: Decimal
    timestamp: datetime


@dataclass(frozen=True)
class PricePoint:
    timestamp: datetime
    price: Decimal


@dataclass(frozen=True)
class FearGreed:
    value: int
    classification: str
    timestamp: datetime
