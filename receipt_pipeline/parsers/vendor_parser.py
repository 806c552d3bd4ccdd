"""Merchant/store name extraction from receipt headers."""

import re
import logging
from typing import Optional

from .base import BaseParser, ParseResult, ReceiptContext

logger = logging.getLogger(__name__)

MIN_LINE_LENGTH = 2
MAX_LINE_LENGTH = 48
MAX_CANDIDATES = 8

# Letters of the Hiragana, Katakana (incl. half-width), Han and Latin scripts.
# Prolonged sound marks, middle dots and voicing marks are Common script.
NAME_CHARACTER_PATTERN = re.compile(
    r"[\u3041-\u3096\u309D-\u309F"
    r"\u30A1-\u30FA\u30FD-\u30FF\u31F0-\u31FF\uFF66-\uFF6F\uFF71-\uFF9D"
    r"\u3005\u3007\u3021-\u3029\u3038-\u303B\u3400-\u4DBF\u4E00-\u9FFF\uF900-\uFAFF"
    r"\U00020000-\U0003134F"
    r"A-Za-z]"
)

ADDRESS_MARKER_PATTERN = re.compile(r'(?:都|道|府|県|市|区|町|丁目)')
DIGIT_PATTERN = re.compile(r'[0-9]')


class VendorParser(BaseParser):
    """Specialized parser for extracting the merchant name from receipts."""

    def __init__(self):
        super().__init__()

        # Lines that are never the store name
        self.exclude_patterns = [
            (re.compile(r'^\d+$'), 'digits_only'),
            (re.compile(r'^〒?\d{3}-\d{4}$'), 'postal_code'),
            (re.compile(r'^(?:tel|電話|phone|fax)', re.IGNORECASE), 'phone_label'),
            (re.compile(r'(?:レシート|領収書|receipt|ありがとう|thank you)', re.IGNORECASE), 'boilerplate'),
            (re.compile(r'(20\d{2}|19\d{2}|\d{2})[./\-年](\d{1,2})[./\-月](\d{1,2})日?'), 'date'),
            (re.compile(r'\d{1,2}:\d{2}'), 'time'),
            (re.compile(r'(?:合計|小計|税込|税|total|amount)', re.IGNORECASE), 'total'),
            (re.compile(r'(?:取引|伝票|会計|レジ|担当)'), 'transaction'),
            (re.compile(r'[0-9]{2,4}-[0-9]{2,4}-[0-9]{3,4}'), 'phone_number'),
        ]

    def parse(self, context: ReceiptContext) -> Optional[ParseResult]:
        """
        Extract the merchant name from receipt text.

        Args:
            context: Receipt context with normalized lines

        Returns:
            ParseResult with the merchant line, or None
        """
        candidates = [
            (idx, line) for idx, line in enumerate(context.lines)
            if self.is_candidate(line)
        ]
        if not candidates:
            self.logger.debug("No merchant candidates found")
            return None

        top_candidates = candidates[:MAX_CANDIDATES]
        for idx, line in top_candidates:
            if not ADDRESS_MARKER_PATTERN.search(line) and not DIGIT_PATTERN.search(line):
                result = ParseResult(
                    value=line, score=1.0, source_text=line,
                    metadata={'type': 'preferred', 'line_idx': idx},
                )
                break
        else:
            idx, line = top_candidates[0]
            result = ParseResult(
                value=line, score=0.5, source_text=line,
                metadata={'type': 'fallback', 'line_idx': idx},
            )

        self._log_result(result)
        return result

    def is_candidate(self, line: str) -> bool:
        """Whether a normalized line could be a store name."""
        if not (MIN_LINE_LENGTH <= len(line) <= MAX_LINE_LENGTH):
            return False
        if not NAME_CHARACTER_PATTERN.search(line):
            return False
        return not any(pattern.search(line) for pattern, _ in self.exclude_patterns)
