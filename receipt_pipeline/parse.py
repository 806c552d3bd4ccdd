"""Receipt field extraction built from the individual field parsers."""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from .config import ScoringWeights
from .models import ExtractedFields
from .parsers import AmountParser, DateParser, VendorParser
from .parsers.base import ReceiptContext

logger = logging.getLogger(__name__)


class ReceiptFieldExtractor:
    """
    Turns raw recognized text into merchant, date and total.

    Holds no state between calls, so the same text always yields the
    same fields for a given clock reading.
    """

    def __init__(self,
                 weights: Optional[ScoringWeights] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.date_parser = DateParser(weights=weights, clock=clock)
        self.amount_parser = AmountParser()
        self.vendor_parser = VendorParser()

    def extract(self, text: str, now: Optional[datetime] = None) -> ExtractedFields:
        """
        Extract all fields from one block of recognized text.

        Args:
            text: Raw OCR text, kept verbatim as ``raw_text``
            now: Reference time for date scoring

        Returns:
            ExtractedFields with None for anything not found
        """
        text = text or ''
        context = ReceiptContext(full_text=text)

        date_result = self.date_parser.parse(context, now=now)
        amount_result = self.amount_parser.parse(context)
        vendor_result = self.vendor_parser.parse(context)

        fields = ExtractedFields(
            raw_text=text,
            merchant=vendor_result.value if vendor_result else None,
            date=date_result.value if date_result else None,
            total=amount_result.value if amount_result else None,
        )
        logger.debug(f"Extracted fields: merchant={fields.merchant}, date={fields.date}, total={fields.total}")
        return fields

    def explain(self, text: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Extract fields and include per-parser metadata for debugging."""
        context = ReceiptContext(full_text=text or '')
        results = {
            'date': self.date_parser.parse(context, now=now),
            'total': self.amount_parser.parse(context),
            'merchant': self.vendor_parser.parse(context),
        }
        return {
            name: {
                'source': result.source_text,
                'score': result.score,
                'metadata': result.metadata,
            } if result else None
            for name, result in results.items()
        }


_default_extractor = ReceiptFieldExtractor()


def extract_date(text: str, now: Optional[datetime] = None) -> Optional[date]:
    """Most likely transaction date in ``text``, or None."""
    return _default_extractor.date_parser.extract(text, now=now)


def extract_total(text: str) -> Optional[Decimal]:
    """Receipt total in ``text``, or None."""
    return _default_extractor.amount_parser.extract(text)


def extract_merchant(text: str) -> Optional[str]:
    """Merchant name line in ``text``, or None."""
    return _default_extractor.vendor_parser.extract(text)


def extract_receipt_fields(text: str, now: Optional[datetime] = None) -> ExtractedFields:
    """All fields of ``text`` using the default scoring weights."""
    return _default_extractor.extract(text, now=now)
