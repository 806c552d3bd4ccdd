"""Receipt OCR pipeline - recover merchant, date and total from receipt images."""

__version__ = "1.0.0"

from .models import ExtractedFields, ImageVariant, RecognitionAttempt, SegmentationMode
from .parse import (
    ReceiptFieldExtractor,
    extract_date,
    extract_merchant,
    extract_receipt_fields,
    extract_total,
)
from .orchestrator import (
    RecognitionOrchestrator,
    compare_attempt_quality,
    merge_attempts,
    score_extracted_fields,
)
from .ocr import SharedRecognitionEngine
from .worker import ReceiptWorker

__all__ = [
    'ExtractedFields',
    'ImageVariant',
    'RecognitionAttempt',
    'SegmentationMode',
    'ReceiptFieldExtractor',
    'extract_date',
    'extract_merchant',
    'extract_receipt_fields',
    'extract_total',
    'RecognitionOrchestrator',
    'compare_attempt_quality',
    'merge_attempts',
    'score_extracted_fields',
    'SharedRecognitionEngine',
    'ReceiptWorker',
]
