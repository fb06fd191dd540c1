"""
Modelo: aportes — cada compra de Bitcoin registrada por un usuario.
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base

CURRENCIES = ("BRL", "USD")
ORIGINS = ("corretora", "p2p", "planilha", "ajuste", "exchange")
REGISTRATION_SOURCES = ("manual", "planilha")

# Un único tipo ENUM compartido por moeda y cotacao_moeda
_moeda_enum = sa.Enum(*CURRENCIES, name="moeda")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Entry(Base):
    __tablename__ = "aportes"

    __table_args__ = (
        sa.Index("ix_aportes_user_data", "user_id", "data_aporte"),
        sa.CheckConstraint("valor_investido > 0", name="ck_aportes_valor_investido_positivo"),
        sa.CheckConstraint("bitcoin > 0", name="ck_aportes_bitcoin_positivo"),
        sa.CheckConstraint("cotacao > 0", name="ck_aportes_cotacao_positiva"),
    )

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, nullable=False)
    # DATE sin zona horaria: el día local del aporte nunca se desplaza
    data_aporte: Mapped[date] = mapped_column(sa.Date, nullable=False)
    # NUMERIC(20,8): 8 decimales = 1 satoshi
    valor_investido: Mapped[Decimal] = mapped_column(sa.NUMERIC(20, 8), nullable=False)
    bitcoin: Mapped[Decimal] = mapped_column(sa.NUMERIC(20, 8), nullable=False)
    cotacao: Mapped[Decimal] = mapped_column(sa.NUMERIC(20, 8), nullable=False)
    moeda: Mapped[str] = mapped_column(_moeda_enum, nullable=False)
    cotacao_moeda: Mapped[str] = mapped_column(_moeda_enum, nullable=False)
    origem_aporte: Mapped[str] = mapped_column(sa.Enum(*ORIGINS, name="origem_aporte"), nullable=False)
    origem_registro: Mapped[str] = mapped_column(
        sa.Enum(*REGISTRATION_SOURCES, name="origem_registro"),
        nullable=False,
        server_default="manual",
    )
    # Equivalente en USD (solo aportes BRL); null si la cotización histórica falló
    valor_usd: Mapped[Decimal | None] = mapped_column(sa.NUMERIC(20, 8), nullable=True)
    cotacao_usd_brl: Mapped[Decimal | None] = mapped_column(sa.NUMERIC(20, 8), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=sa.func.now(),
    )
