"""
Excepciones de dominio.

Clasificación (ver exception handler en main.py):
- InvalidEntryError / CsvFormatError / NoDataExtracted → 422, bloquean el envío
- UploadRejected → 413/415, antes de parsear nada
- EntryNotFound → 404
- EditStateError → 409
Los fallos de resolución de cotización NO son excepciones: quedan como null.
Los fallos de transporte de las APIs de mercado viajan en FetchResult.error.
"""

from typing import Any


class DomainError(Exception):
    status_code: int = 400

    def __init__(self, message: str, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class InvalidEntryError(DomainError):
    """Campos obligatorios ausentes o inválidos en un aporte."""

    status_code = 422


class CsvFormatError(DomainError):
    """El archivo entero es inválido (cabecera o columnas obligatorias)."""

    status_code = 422


class NoDataExtracted(DomainError):
    """El mensaje pegado no contiene ningún campo reconocible."""

    status_code = 422


class UploadRejected(DomainError):
    status_code = 415

    def __init__(self, message: str, status_code: int = 415) -> None:
        super().__init__(message)
        self.status_code = status_code


class EntryNotFound(DomainError):
    status_code = 404


class EditStateError(DomainError):
    status_code = 409
