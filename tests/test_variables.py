"""Tests for typed value formatting."""

from datetime import date, datetime
from decimal import Decimal

from app.core.variables import (
    LOCALES,
    format_number,
    format_value,
    get_locale,
    month_name,
    render_value,
)

ES_MX = LOCALES["es-MX"]
ES_ES = LOCALES["es-ES"]
EN_US = LOCALES["en-US"]


# ─── Numbers ─────────────────────────────────────────────────────────────────

class TestFormatNumber:
    def test_integer_grouping(self):
        assert format_number(1234567, ES_MX) == "1,234,567"

    def test_float_keeps_significant_decimals(self):
        assert format_number(1234.5, ES_MX) == "1,234.5"

    def test_whole_float_drops_fraction(self):
        assert format_number(10.0, ES_MX) == "10"

    def test_at_most_three_decimals(self):
        assert format_number(Decimal("1234.5678"), ES_MX) == "1,234.568"

    def test_swapped_separators(self):
        assert format_number(1234567.25, ES_ES) == "1.234.567,25"

    def test_non_finite(self):
        assert format_number(float("inf"), ES_MX) == "inf"


# ─── Dates ───────────────────────────────────────────────────────────────────

class TestDates:
    def test_date_day_first(self):
        assert format_value(date(2026, 3, 5), ES_MX) == "05/03/2026"

    def test_date_month_first(self):
        assert format_value(date(2026, 3, 5), EN_US) == "03/05/2026"

    def test_datetime_checked_before_date(self):
        value = datetime(2026, 3, 5, 14, 7, 9)
        assert format_value(value, ES_MX) == "05/03/2026, 14:07:09"

    def test_month_names(self):
        assert month_name(10, ES_MX) == "octubre"
        assert month_name(1, EN_US) == "January"


# ─── Other values ────────────────────────────────────────────────────────────

class TestFormatValue:
    def test_none_is_empty(self):
        assert format_value(None, ES_MX) == ""

    def test_bool_before_number(self):
        assert format_value(True, ES_MX) == "Sí"
        assert format_value(False, EN_US) == "No"

    def test_containers_as_json(self):
        assert format_value({"plan": "pro", "seats": 3}, ES_MX) == '{"plan": "pro", "seats": 3}'
        assert format_value(["a", "ñ"], ES_MX) == '["a", "ñ"]'

    def test_strings_untouched(self):
        assert format_value("Acme & Co", ES_MX) == "Acme & Co"

    def test_render_value_escapes_html(self):
        assert render_value("<b>Acme & Co</b>", ES_MX) == "&lt;b&gt;Acme &amp; Co&lt;/b&gt;"

    def test_unknown_locale_falls_back(self):
        assert get_locale("xx-XX") is ES_MX
        assert get_locale(None) is ES_MX
