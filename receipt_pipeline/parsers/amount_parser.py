"""Total amount extraction with keyword prioritization."""

import re
import logging
from decimal import Decimal
from typing import List, Optional

from .base import BaseParser, ParseResult, ReceiptContext

logger = logging.getLogger(__name__)

MAX_AMOUNT = Decimal('100000000')

PRIMARY_TOTAL_KEYWORDS = [
    '合計', 'ご利用額', 'お会計', '領収金額', '請求額', '総合計', 'TOTAL', 'AMOUNT',
]

EXCLUDED_AMOUNT_KEYWORDS = [
    '小計', '内税', '外税', '税', '値引', '割引', 'お釣', '釣銭', '預り', 'TEL', '電話',
]

AMOUNT_PATTERN = re.compile(r'([¥￥]?\s*\d{1,3}(?:[,，]\d{3})+|[¥￥]?\s*\d+)(?:\.(\d{1,2}))?', re.ASCII)
CURRENCY_SYMBOL_PATTERN = re.compile(r'[¥￥]')
GROUPED_DIGITS_PATTERN = re.compile(r'\d{1,3}(?:[,，]\d{3})+', re.ASCII)
_SEPARATORS = re.compile(r'[¥￥,，\s]')
_DIGITS = re.compile(r'[0-9]+')


class AmountParser(BaseParser):
    """Specialized parser for extracting the receipt total."""

    def __init__(self):
        super().__init__()
        self.primary_keywords = [k.upper() for k in PRIMARY_TOTAL_KEYWORDS]
        self.excluded_keywords = [k.upper() for k in EXCLUDED_AMOUNT_KEYWORDS]

    def parse(self, context: ReceiptContext) -> Optional[ParseResult]:
        """
        Extract the total amount.

        Amounts on total-keyword lines win; otherwise the largest amount on
        any line that looks monetary (yen sign or grouped digits) is used.

        Args:
            context: Receipt context with normalized lines

        Returns:
            ParseResult with a ``Decimal`` value, or None
        """
        prioritized: List[Decimal] = []
        fallback: List[Decimal] = []
        source = {}

        for line in context.lines:
            amounts = self.extract_amounts_from_line(line)
            if not amounts:
                continue

            upper = line.upper()
            has_primary = any(k in upper for k in self.primary_keywords)
            has_excluded = any(k in upper for k in self.excluded_keywords)

            if has_primary and not has_excluded:
                prioritized.extend(amounts)
                source.update({a: line for a in amounts})
                continue

            if CURRENCY_SYMBOL_PATTERN.search(line) or GROUPED_DIGITS_PATTERN.search(line):
                fallback.extend(amounts)
                for amount in amounts:
                    source.setdefault(amount, line)

        pool, pool_type = (prioritized, 'keyword') if prioritized else (fallback, 'fallback')
        if not pool:
            self.logger.debug("No amount candidates found")
            return None

        best = max(pool)
        result = ParseResult(
            value=best,
            score=1.0 if pool_type == 'keyword' else 0.5,
            source_text=source.get(best, '')[:50],
            metadata={'type': pool_type, 'candidates': len(pool)},
        )
        self._log_result(result)
        return result

    def extract_amounts_from_line(self, line: str) -> List[Decimal]:
        """Return every plausible amount token in a line."""
        amounts = []
        for match in AMOUNT_PATTERN.finditer(line):
            amount = self.parse_amount(match.group(1), match.group(2))
            if amount is not None:
                amounts.append(amount)
        return amounts

    @staticmethod
    def parse_amount(value: str, decimal_part: Optional[str] = None) -> Optional[Decimal]:
        """
        Convert one amount token to a Decimal.

        Nine or more digits without thousands separators are treated as
        phone or registration numbers, not money.
        """
        digits = _SEPARATORS.sub('', value)
        if not _DIGITS.fullmatch(digits):
            return None

        if len(digits) >= 9 and ',' not in value and '，' not in value:
            return None

        amount = Decimal(int(digits))
        if amount <= 0:
            return None

        if decimal_part:
            amount += Decimal(int(decimal_part)) / (Decimal(10) ** len(decimal_part))

        if amount > MAX_AMOUNT:
            return None

        return amount.quantize(Decimal('0.01')) if decimal_part else amount
