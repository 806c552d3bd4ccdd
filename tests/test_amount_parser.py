"""Tests for AmountParser component."""

from decimal import Decimal

import pytest
from receipt_pipeline.parsers.amount_parser import AmountParser
from receipt_pipeline.parsers.base import ReceiptContext


class TestAmountParser:
    """Test suite for AmountParser."""

    def setup_method(self):
        """Set up test fixtures."""
        self.parser = AmountParser()

    def test_total_keyword_beats_subtotal_and_tax(self):
        """Test that the total line wins over excluded keyword lines."""
        result = self.parser.parse(ReceiptContext(full_text="小計 ¥980\n税 ¥98\n合計 ¥1,078"))

        assert result is not None
        assert result.value == Decimal('1078')
        assert result.metadata['type'] == 'keyword'

    def test_no_amount_lines(self):
        """Test text with no amount-bearing line."""
        assert self.parser.extract("ありがとうございました\nまたお越しください") is None
        assert self.parser.extract("") is None

    def test_plain_numbers_are_not_fallback_amounts(self):
        """Test that ungrouped numbers without a yen sign are ignored."""
        assert self.parser.extract("レジ 3\n担当 12") is None

    def test_largest_primary_amount(self):
        """Test that the maximum of several total lines is chosen."""
        assert self.parser.extract("合計 ¥1,200\nTOTAL 1,500") == Decimal('1500')

    def test_primary_ignores_larger_fallback(self):
        """Test that cash tendered does not override the total."""
        text = "合計 ¥1,200\nお預り ¥5,000\nお釣 ¥3,800"
        assert self.parser.extract(text) == Decimal('1200')

    def test_fallback_uses_largest_monetary_amount(self):
        """Test fallback when no total keyword is present."""
        result = self.parser.parse(ReceiptContext(full_text="コーヒー ¥450\nケーキ ¥1,200\n2点"))

        assert result.value == Decimal('1200')
        assert result.metadata['type'] == 'fallback'

    def test_excluded_lines_feed_fallback_without_total(self):
        """Test that cash tendered is still an amount when no total line exists."""
        result = self.parser.parse(ReceiptContext(full_text="お預り ¥5,000\nお釣 ¥3,800"))

        assert result.value == Decimal('5000')
        assert result.metadata['type'] == 'fallback'
        assert result.source_text == "お預り ¥5,000"

    def test_case_insensitive_keywords(self):
        """Test lowercase English total keywords."""
        assert self.parser.extract("total 2,480") == Decimal('2480')

    def test_decimal_amount(self):
        """Test amounts with fraction digits."""
        assert self.parser.extract("TOTAL 12.50") == Decimal('12.50')

    def test_full_width_yen_and_comma(self):
        """Test full-width yen sign and thousands separator."""
        assert self.parser.extract("お会計 ￥3，300") == Decimal('3300')

    def test_phone_like_number_rejected(self):
        """Test that long ungrouped digit runs on a total line are skipped."""
        assert self.parser.extract("合計 ¥3,300 会員 123456789") == Decimal('3300')

    @pytest.mark.parametrize("value,decimal_part,expected", [
        ("¥1,078", None, Decimal('1078')),
        ("1,234", "5", Decimal('1234.50')),
        ("12,345,678", None, Decimal('12345678')),
        ("100,000,000", None, Decimal('100000000')),
    ])
    def test_parse_amount_valid(self, value, decimal_part, expected):
        """Test conversion of valid amount tokens."""
        assert AmountParser.parse_amount(value, decimal_part) == expected

    @pytest.mark.parametrize("value", [
        "100000000",      # nine digits, no separators
        "0312345678",
        "¥0",
        "100,000,001",    # above the ceiling
    ])
    def test_parse_amount_rejected(self, value):
        """Test tokens that are not plausible totals."""
        assert AmountParser.parse_amount(value) is None

    def test_amounts_from_line(self):
        """Test that every token on a line is returned."""
        amounts = self.parser.extract_amounts_from_line("2点 ¥1,200 ¥300")
        assert amounts == [Decimal('2'), Decimal('1200'), Decimal('300')]
