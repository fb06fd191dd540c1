"""
Base declarativa de SQLAlchemy. Todos los modelos heredan de aquí.
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass
