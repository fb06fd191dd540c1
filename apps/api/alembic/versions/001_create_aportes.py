"""create aportes table

Revision ID: 001_create_aportes
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import ENUM as PgEnum

revision: str = "001_create_aportes"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENUMS: dict[str, tuple[str, ...]] = {
    "moeda": ("BRL", "USD"),
    "origem_aporte": ("corretora", "p2p", "planilha", "ajuste", "exchange"),
    "origem_registro": ("manual", "planilha"),
}

_moeda = PgEnum(*ENUMS["moeda"], name="moeda", create_type=False)
_origem_aporte = PgEnum(*ENUMS["origem_aporte"], name="origem_aporte", create_type=False)
_origem_registro = PgEnum(*ENUMS["origem_registro"], name="origem_registro", create_type=False)


def upgrade() -> None:
    # ENUMs idempotentes
    for name, labels in ENUMS.items():
        values = ", ".join(f"'{v}'" for v in labels)
        op.execute(
            f"DO $$ BEGIN "
            f"CREATE TYPE {name} AS ENUM ({values}); "
            f"EXCEPTION WHEN duplicate_object THEN NULL; "
            f"END $$;"
        )

    op.create_table(
        "aportes",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        # DATE: día local del aporte, sin zona horaria
        sa.Column("data_aporte", sa.Date(), nullable=False),
        # NUMERIC(20,8): 8 decimales = 1 satoshi
        sa.Column("valor_investido", sa.NUMERIC(20, 8), nullable=False),
        sa.Column("bitcoin", sa.NUMERIC(20, 8), nullable=False),
        sa.Column("cotacao", sa.NUMERIC(20, 8), nullable=False),
        sa.Column("moeda", _moeda, nullable=False),
        sa.Column("cotacao_moeda", _moeda, nullable=False),
        sa.Column("origem_aporte", _origem_aporte, nullable=False),
        sa.Column("origem_registro", _origem_registro, nullable=False, server_default="manual"),
        sa.Column("valor_usd", sa.NUMERIC(20, 8), nullable=True),
        sa.Column("cotacao_usd_brl", sa.NUMERIC(20, 8), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("valor_investido > 0", name="ck_aportes_valor_investido_positivo"),
        sa.CheckConstraint("bitcoin > 0", name="ck_aportes_bitcoin_positivo"),
        sa.CheckConstraint("cotacao > 0", name="ck_aportes_cotacao_positiva"),
    )

    op.create_index("ix_aportes_user_data", "aportes", ["user_id", "data_aporte"])


def downgrade() -> None:
    op.drop_index("ix_aportes_user_data", table_name="aportes")
    op.drop_table("aportes")
    for name in reversed(list(ENUMS)):
        op.execute(f"DROP TYPE IF EXISTS {name};")
