"""
Tests del parser de aportes (CSV y mensajes P2P).
No requieren base de datos ni red.
"""

from datetime import date
from decimal import Decimal

import pytest

from core.errors import CsvFormatError, NoDataExtracted, UploadRejected
from services.parsing import (
    CandidateEntry,
    DecimalPolicy,
    btc_to_sats,
    normalize_currency,
    normalize_origin,
    parse_csv,
    parse_day,
    parse_decimal,
    parse_p2p_message,
    sats_to_btc,
    validate_upload,
)
from services.rates import compute_rate

P2P_RECEIPT = "Cotação BTC/BRL: R$506.358\nValor: R$ 100,00\nVocê Recebe: 18.959 sats"

MB = 1024 * 1024


# ===========================================================================
# Números y unidades
# ===========================================================================


class TestParseDecimal:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("1000.00", Decimal("1000.00")),
            ("0,015", Decimal("0.015")),
            ("1.234,56", Decimal("1234.56")),
            ("1,234.56", Decimal("1234.56")),
            ("1.234.567", Decimal("1234567")),
            ("R$ 1.234,56", Decimal("1234.56")),
            ("US$ 99.90", Decimal("99.90")),
        ],
    )
    def test_neutral_policy(self, raw, expected):
        assert parse_decimal(raw) == expected

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("506.358", Decimal("506358")),
            ("100,00", Decimal("100.00")),
            ("18.959", Decimal("18959")),
            ("1.234,5", Decimal("1234.5")),
        ],
    )
    def test_pt_br_policy_dot_is_always_grouping(self, raw, expected):
        assert parse_decimal(raw, DecimalPolicy.PT_BR) == expected

    @pytest.mark.parametrize("raw", [None, "", "abc", "R$", "--"])
    def test_unreadable_returns_none(self, raw):
        assert parse_decimal(raw) is None

    def test_numbers_pass_through_as_decimal(self):
        assert parse_decimal(0.1) == Decimal("0.1")
        assert parse_decimal(Decimal("2.5")) == Decimal("2.5")


def test_sats_conversion_is_exact():
    assert sats_to_btc(18959) == Decimal("0.00018959")
    assert btc_to_sats(Decimal("0.00018959")) == Decimal("18959")
    assert sats_to_btc(100_000_000) == Decimal("1")


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("2024-01-15", date(2024, 1, 15)),
        ("15/01/2024", date(2024, 1, 15)),
        (" 31/12/2023 ", date(2023, 12, 31)),
        ("2024/01/15", None),
        ("32/01/2024", None),
        ("", None),
    ],
)
def test_parse_day(raw, expected):
    assert parse_day(raw) == expected


def test_normalize_origin():
    assert normalize_origin("Binance") == "corretora"
    assert normalize_origin("mercado bitcoin") == "corretora"
    assert normalize_origin("P2P Satisfaction") == "p2p"
    assert normalize_origin("planilha") == "planilha"
    assert normalize_origin("banco do bairro") is None
    assert normalize_origin("") is None


def test_normalize_currency():
    assert normalize_currency("dólar") == "USD"
    assert normalize_currency("US$") == "USD"
    assert normalize_currency("real") == "BRL"
    assert normalize_currency("") is None


def test_candidate_found_fields_ignores_line():
    candidate = CandidateEntry(amount_invested=Decimal("10"), line=3)
    assert candidate.found_fields() == ("amount_invested",)


# ===========================================================================
# Validación del archivo
# ===========================================================================


class TestValidateUpload:
    def test_csv_within_limit_is_accepted(self):
        validate_upload("aportes.CSV", 1024, 5 * MB)

    def test_excel_is_rejected_with_save_as_csv_hint(self):
        with pytest.raises(UploadRejected) as exc_info:
            validate_upload("aportes.xlsx", 1024, 5 * MB)
        assert exc_info.value.status_code == 415
        assert "CSV" in exc_info.value.message

    def test_unknown_extension_is_rejected(self):
        with pytest.raises(UploadRejected) as exc_info:
            validate_upload("aportes.txt", 1024, 5 * MB)
        assert exc_info.value.status_code == 415

    def test_oversized_file_is_rejected(self):
        with pytest.raises(UploadRejected) as exc_info:
            validate_upload("aportes.csv", 6 * MB, 5 * MB)
        assert exc_info.value.status_code == 413
        assert "5MB" in exc_info.value.message


# ===========================================================================
# CSV
# ===========================================================================


class TestParseCsv:
    def test_row_without_rate_keeps_rate_missing(self):
        result = parse_csv("data,valor,bitcoin,cotacao,origem\n2024-01-15,1000.00,0.015,,corretora\n")

        assert result.errors == []
        assert len(result.rows) == 1
        row = result.rows[0]
        assert row.date == date(2024, 1, 15)
        assert row.amount_invested == Decimal("1000.00")
        assert row.btc_amount == Decimal("0.015")
        assert row.exchange_rate is None
        assert row.origin == "corretora"
        assert row.currency is None
        assert row.line == 2
        # Cotação derivada al persistir
        assert compute_rate(row.amount_invested, row.btc_amount).quantize(Decimal("0.01")) == Decimal("66666.67")

    def test_semicolon_delimiter_and_br_dates(self):
        result = parse_csv("data;valor;bitcoin;moeda\n15/01/2024;1.000,00;0,015;dólar\n")

        row = result.rows[0]
        assert row.date == date(2024, 1, 15)
        assert row.amount_invested == Decimal("1000.00")
        assert row.btc_amount == Decimal("0.015")
        assert row.currency == "USD"

    def test_header_aliases_and_bom(self):
        content = "\ufeffDate,Valor Investido,BTC,Preço,Origin\n2024-02-01,500,0.01,50000,p2p\n"
        row = parse_csv(content).rows[0]

        assert row.amount_invested == Decimal("500")
        assert row.exchange_rate == Decimal("50000")
        assert row.origin == "p2p"

    def test_sats_column_is_converted_to_btc(self):
        row = parse_csv("data,valor,sats\n2024-01-01,100,18959\n").rows[0]
        assert row.btc_amount == Decimal("0.00018959")

    def test_missing_required_column_rejects_whole_file(self):
        with pytest.raises(CsvFormatError) as exc_info:
            parse_csv("data,valor\n2024-01-01,100\n")
        assert exc_info.value.details == {"missing_columns": ["bitcoin"]}

    def test_bad_rows_are_reported_without_aborting(self):
        content = (
            "data,valor,bitcoin\n"
            "2024-13-40,100,0.001\n"
            "2024-01-01,100,0.001\n"
            "2024-01-02,-5,0.001\n"
        )
        result = parse_csv(content)

        assert len(result.rows) == 1
        assert [e.line for e in result.errors] == [2, 4]
        assert "Data inválida" in result.errors[0].message

    def test_blank_lines_are_skipped(self):
        result = parse_csv("data,valor,bitcoin\n2024-01-01,100,0.001\n,,\n")
        assert len(result.rows) == 1
        assert result.errors == []

    @pytest.mark.parametrize("content", ["", "\n", "data,valor,bitcoin\n"])
    def test_empty_file_is_rejected(self, content):
        with pytest.raises(CsvFormatError):
            parse_csv(content)


# ===========================================================================
# Mensaje P2P
# ===========================================================================


class TestParseP2pMessage:
    def test_full_receipt(self):
        extraction = parse_p2p_message(P2P_RECEIPT)
        candidate = extraction.candidate

        assert candidate.exchange_rate == Decimal("506358")
        assert candidate.amount_invested == Decimal("100.00")
        assert candidate.btc_amount == Decimal("0.00018959")
        assert candidate.currency == "BRL"
        assert candidate.origin == "p2p"
        assert candidate.date is None
        assert set(extraction.found_fields) == {"exchange_rate", "amount_invested", "btc_amount"}

    def test_partial_receipt_reports_found_fields(self):
        extraction = parse_p2p_message("Pedido confirmado\nMontante: R$ 50,00")

        assert extraction.found_fields == ("amount_invested",)
        assert extraction.candidate.amount_invested == Decimal("50.00")
        assert extraction.candidate.btc_amount is None

    def test_alternative_receive_wording(self):
        extraction = parse_p2p_message("Você irá receber: 1.000 sats")
        assert extraction.candidate.btc_amount == Decimal("0.00001")

    def test_first_valid_amount_pattern_wins(self):
        extraction = parse_p2p_message("Valor: R$ 20,00\nMontante: R$ 30,00")
        assert extraction.candidate.amount_invested == Decimal("20.00")

    def test_zero_match_falls_through_to_next_pattern(self):
        extraction = parse_p2p_message("Valor: R$ 0,00\nMontante: R$ 30,00")
        assert extraction.candidate.amount_invested == Decimal("30.00")

    @pytest.mark.parametrize("text", ["", "   ", "olá, tudo bem?"])
    def test_nothing_extracted_raises(self, text):
        with pytest.raises(NoDataExtracted):
            parse_p2p_message(text)
