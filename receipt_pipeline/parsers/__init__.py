"""Receipt field parsers - one focused parser per extracted field."""

from .date_parser import DateParser
from .amount_parser import AmountParser
from .vendor_parser import VendorParser

__all__ = ['DateParser', 'AmountParser', 'VendorParser']
