"""
Modelos SQLAlchemy. Importar aquí para que Alembic los detecte en autogenerate.
"""

from models.entry import Entry

__all__ = [
    "Entry",
]
