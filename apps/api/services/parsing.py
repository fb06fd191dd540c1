"""
Parser de aportes importados: planilhas CSV y mensajes pegados de P2P.

Produce CandidateEntry con campos opcionales: un campo que no se pudo extraer
queda en None (nunca en 0) para distinguir "ausente" de "cero".

Política de separadores decimales (fija, no se infiere por campo):
- NEUTRAL (CSV): un único "," o "." es el separador decimal; si aparecen ambos,
  el último es el decimal y el otro es de miles.
- PT_BR (mensajes de texto): "." es SIEMPRE separador de miles y "," SIEMPRE decimal.
  "R$506.358" → 506358 · "R$ 100,00" → 100.00 · "18.959 sats" → 18959
"""

import csv
import re
from dataclasses import dataclass, field, fields
import datetime as dt
from decimal import Decimal, InvalidOperation
from enum import Enum
from io import StringIO
from pathlib import PurePath
from typing import Any

from core.errors import CsvFormatError, NoDataExtracted, UploadRejected

SATS_PER_BTC = Decimal("100000000")

ALLOWED_EXTENSIONS = frozenset({".csv"})
SPREADSHEET_EXTENSIONS = frozenset({".xlsx", ".xls"})

KNOWN_EXCHANGES = frozenset(
    {
        "binance", "coinbase", "okx", "crypto.com",
        "mercado bitcoin", "foxbit", "novadax",
        "bitget", "coinext", "ripio",
    }
)
_P2P_ALIASES = frozenset({"p2p", "p2p satisfaction", "peer", "peer-to-peer", "pessoa-pessoa"})
_USD_ALIASES = frozenset({"USD", "DOLAR", "DÓLAR", "$", "US$", "DOLLAR"})

# Cabecera canónica → nombres aceptados (minúsculas, sin espacios extremos)
HEADER_ALIASES: dict[str, frozenset[str]] = {
    "data": frozenset({"data", "date", "data_aporte", "data aporte", "data do aporte", "dt"}),
    "valor": frozenset({"valor", "valor_investido", "valor investido", "investimento", "amount", "value"}),
    "bitcoin": frozenset({"bitcoin", "btc", "quantidade"}),
    "sats": frozenset({"sats", "satoshis"}),
    "cotacao": frozenset({"cotacao", "cotação", "preco", "preço", "preco_btc", "preço btc", "rate"}),
    "origem": frozenset({"origem", "origin", "source"}),
    "moeda": frozenset({"moeda", "currency"}),
}

_NON_NUMERIC = re.compile(r"[^\d,.\-]")


class DecimalPolicy(str, Enum):
    NEUTRAL = "neutral"
    PT_BR = "pt_br"


@dataclass(frozen=True)
class CandidateEntry:
    """Aporte parcial: cualquier campo puede faltar (None)."""

    date: dt.date | None = None
    amount_invested: Decimal | None = None
    btc_amount: Decimal | None = None
    exchange_rate: Decimal | None = None
    currency: str | None = None
    origin: str | None = None
    # Línea del archivo de origen (solo CSV), para reportar errores por fila
    line: int | None = None

    def found_fields(self) -> tuple[str, ...]:
        return tuple(
            f.name for f in fields(self)
            if f.name != "line" and getattr(self, f.name) is not None
        )


@dataclass(frozen=True)
class RowError:
    line: int
    message: str


@dataclass
class CsvParseResult:
    rows: list[CandidateEntry] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)


@dataclass(frozen=True)
class MessageExtraction:
    candidate: CandidateEntry
    found_fields: tuple[str, ...]


# ---------------------------------------------------------------------------
# Normalización numérica y de unidades
# ---------------------------------------------------------------------------


def sats_to_btc(sats: Decimal | int) -> Decimal:
    return Decimal(sats) / SATS_PER_BTC


def btc_to_sats(btc: Decimal) -> Decimal:
    return btc * SATS_PER_BTC


def parse_decimal(raw: Any, policy: DecimalPolicy = DecimalPolicy.NEUTRAL) -> Decimal | None:
    """
    Convierte un texto monetario/numérico a Decimal según la política de separadores.
    Devuelve None si no hay número legible.
    """
    if raw is None:
        return None
    if isinstance(raw, Decimal):
        return raw if raw.is_finite() else None
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return Decimal(str(raw))

    text = _NON_NUMERIC.sub("", str(raw))
    if not any(ch.isdigit() for ch in text):
        return None

    if policy is DecimalPolicy.PT_BR:
        text = text.replace(".", "").replace(",", ".")
    else:
        text = _normalize_neutral(text)

    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


def _normalize_neutral(text: str) -> str:
    has_comma = "," in text
    has_dot = "." in text
    if has_comma and has_dot:
        decimal_mark = "," if text.rfind(",") > text.rfind(".") else "."
        grouping = "." if decimal_mark == "," else ","
        return text.replace(grouping, "").replace(decimal_mark, ".")
    if has_comma:
        # Varias comas solo pueden ser separadores de miles
        return text.replace(",", "") if text.count(",") > 1 else text.replace(",", ".")
    if has_dot and text.count(".") > 1:
        return text.replace(".", "")
    return text


def parse_day(raw: Any) -> dt.date | None:
    """Acepta YYYY-MM-DD y DD/MM/YYYY. Sin hora: el día local nunca se desplaza."""
    if isinstance(raw, dt.datetime):
        return raw.date()
    if isinstance(raw, dt.date):
        return raw
    if raw is None:
        return None
    text = str(raw).strip()
    for fmt in ("%Y-%m-%d", "%d/%m/%Y"):
        try:
            return dt.datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def normalize_origin(raw: Any) -> str | None:
    value = str(raw or "").strip().lower()
    if not value:
        return None
    if value in _P2P_ALIASES:
        return "p2p"
    if value in KNOWN_EXCHANGES or value in {"corretora", "exchange"}:
        return "corretora"
    if value in {"planilha", "ajuste"}:
        return value
    return None


def normalize_currency(raw: Any) -> str | None:
    value = str(raw or "").strip().upper()
    if not value:
        return None
    return "USD" if value in _USD_ALIASES else "BRL"


# ---------------------------------------------------------------------------
# Validación del archivo (antes de parsear)
# ---------------------------------------------------------------------------


def validate_upload(filename: str | None, size_bytes: int, max_size_bytes: int) -> None:
    extension = PurePath(filename or "").suffix.lower()
    if extension in SPREADSHEET_EXTENSIONS:
        raise UploadRejected("Arquivos Excel ainda não são suportados. Por favor, salve como CSV.")
    if extension not in ALLOWED_EXTENSIONS:
        raise UploadRejected("Formato de arquivo inválido. Por favor, envie um arquivo CSV.")
    if size_bytes > max_size_bytes:
        max_mb = max_size_bytes // (1024 * 1024)
        raise UploadRejected(
            f"Arquivo muito grande. O tamanho máximo permitido é {max_mb}MB.",
            status_code=413,
        )


# ---------------------------------------------------------------------------
# CSV
# ---------------------------------------------------------------------------


def _map_columns(headers: list[str]) -> dict[str, str]:
    columns: dict[str, str] = {}
    for header in headers:
        normalized = (header or "").strip().lower()
        for canonical, aliases in HEADER_ALIASES.items():
            if normalized in aliases and canonical not in columns:
                columns[canonical] = header
    return columns


def _detect_delimiter(first_line: str) -> str:
    # Planilhas exportadas em pt-BR costumam usar ";"
    return ";" if first_line.count(";") > first_line.count(",") else ","


def parse_csv(content: str) -> CsvParseResult:
    """
    Parsea una planilha CSV con cabecera.
    Obligatorias: data, valor, bitcoin (o sats). Opcionales: cotacao, origem, moeda.
    Falta de una columna obligatoria → CsvFormatError para el archivo entero.
    Errores de valor en una fila se reportan por fila y no abortan el resto.
    """
    content = content.lstrip("\ufeff")
    lines = content.splitlines()
    if not lines or not lines[0].strip():
        raise CsvFormatError("Arquivo vazio ou sem cabeçalho.")

    reader = csv.DictReader(StringIO(content), delimiter=_detect_delimiter(lines[0]))
    columns = _map_columns(list(reader.fieldnames or []))

    missing = [name for name in ("data", "valor") if name not in columns]
    if "bitcoin" not in columns and "sats" not in columns:
        missing.append("bitcoin")
    if missing:
        raise CsvFormatError(
            f"Colunas obrigatórias não encontradas: {', '.join(missing)}",
            details={"missing_columns": missing},
        )

    result = CsvParseResult()
    for row in reader:
        line = reader.line_num
        if not any((value or "").strip() for value in row.values() if isinstance(value, str)):
            continue
        try:
            result.rows.append(_parse_row(row, columns, line))
        except ValueError as exc:
            result.errors.append(RowError(line=line, message=str(exc)))

    if not result.rows and not result.errors:
        raise CsvFormatError("Nenhum dado válido encontrado no arquivo.")
    return result


def _cell(row: dict, columns: dict[str, str], name: str) -> str:
    header = columns.get(name)
    if header is None:
        return ""
    return (row.get(header) or "").strip()


def _parse_row(row: dict, columns: dict[str, str], line: int) -> CandidateEntry:
    raw_date = _cell(row, columns, "data")
    day = parse_day(raw_date)
    if day is None:
        raise ValueError(f"Data inválida: {raw_date!r}" if raw_date else "Data não informada")

    raw_amount = _cell(row, columns, "valor")
    amount = parse_decimal(raw_amount)
    if amount is None or amount <= 0:
        raise ValueError(f"Valor investido inválido: {raw_amount!r}")

    if "bitcoin" in columns and _cell(row, columns, "bitcoin"):
        raw_btc = _cell(row, columns, "bitcoin")
        btc = parse_decimal(raw_btc)
    else:
        raw_btc = _cell(row, columns, "sats")
        sats = parse_decimal(raw_btc)
        btc = sats_to_btc(sats) if sats is not None else None
    if btc is None or btc <= 0:
        raise ValueError(f"Quantidade de Bitcoin inválida: {raw_btc!r}")

    raw_rate = _cell(row, columns, "cotacao")
    rate = parse_decimal(raw_rate) if raw_rate else None
    if raw_rate and (rate is None or rate <= 0):
        raise ValueError(f"Cotação inválida: {raw_rate!r}")

    return CandidateEntry(
        date=day,
        amount_invested=amount,
        btc_amount=btc,
        exchange_rate=rate,
        currency=normalize_currency(_cell(row, columns, "moeda")),
        origin=normalize_origin(_cell(row, columns, "origem")),
        line=line,
    )


# ---------------------------------------------------------------------------
# Mensaje de texto P2P
# ---------------------------------------------------------------------------

# Orden = prioridad: el primer patrón que casa y produce un número > 0 gana
_RATE_PATTERNS = (
    re.compile(r"Cota[çc][ãa]o\s+BTC/BRL\s*:\s*R\$\s*([0-9.,]+)", re.IGNORECASE),
)
_AMOUNT_PATTERNS = (
    re.compile(r"\bValor\s*:\s*R\$\s*([0-9.,]+)", re.IGNORECASE),
    re.compile(r"\bMontante\s*:\s*R\$\s*([0-9.,]+)", re.IGNORECASE),
)
_SATS_PATTERNS = (
    re.compile(r"(?:Voc[êe]\s+Recebe|ir[áa]\s+receber)\s*:\s*([0-9.,]+)\s*(?:sats|satoshis)\b", re.IGNORECASE),
)


def _first_match(patterns: tuple[re.Pattern, ...], text: str) -> Decimal | None:
    for pattern in patterns:
        match = pattern.search(text)
        if not match:
            continue
        value = parse_decimal(match.group(1), DecimalPolicy.PT_BR)
        if value is not None and value > 0:
            return value
    return None


def parse_p2p_message(text: str) -> MessageExtraction:
    """
    Extrae cotación, valor y sats de un comprobante P2P pegado como texto.
    Ningún campo → NoDataExtracted. Algunos campos → éxito parcial (found_fields).
    """
    if not text or not text.strip():
        raise NoDataExtracted("Mensagem vazia.")

    sats = _first_match(_SATS_PATTERNS, text)
    extracted = {
        "exchange_rate": _first_match(_RATE_PATTERNS, text),
        "amount_invested": _first_match(_AMOUNT_PATTERNS, text),
        "btc_amount": sats_to_btc(sats) if sats is not None else None,
    }
    found = tuple(name for name, value in extracted.items() if value is not None)
    if not found:
        raise NoDataExtracted(
            "Não foi possível extrair os dados. Verifique se a mensagem está no formato correto."
        )

    return MessageExtraction(
        candidate=CandidateEntry(currency="BRL", origin="p2p", **extracted),
        found_fields=found,
    )
