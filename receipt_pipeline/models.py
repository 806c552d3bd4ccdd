"""Value objects shared by the extraction, recognition and worker layers."""

from dataclasses import dataclass, field
import datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union


class SegmentationMode(Enum):
    """Layout hint passed to the recognition engine."""
    SPARSE_TEXT = "sparse_text"
    SINGLE_BLOCK = "single_block"
    AUTO = "auto"


class OcrStatus(str, Enum):
    """Lifecycle of a receipt's OCR processing."""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class ExtractedFields:
    """Fields recovered from one block of recognized text."""
    raw_text: str
    merchant: Optional[str] = None
    date: Optional[datetime.date] = None
    total: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rawText': self.raw_text,
            'merchant': self.merchant,
            'date': self.date.isoformat() if self.date else None,
            'total': str(self.total) if self.total is not None else None,
        }


@dataclass(frozen=True)
class ImageVariant:
    """One preprocessed rendition of a receipt image."""
    strategy_name: str
    image_data: Union[Path, bytes]
    segmentation_mode: SegmentationMode


@dataclass(frozen=True)
class EngineResult:
    """Raw output of a single recognition call."""
    text: str
    confidence: Optional[float] = None


@dataclass(frozen=True)
class RecognitionAttempt:
    """Result of recognizing and extracting one image variant."""
    strategy_name: str
    confidence: Optional[float]
    fields: ExtractedFields
    quality_score: float
    compact_text_length: int


@dataclass(frozen=True)
class ReceiptJob:
    """Queue payload for a receipt awaiting OCR."""
    receipt_id: str
    image_path: str
    user_id: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReceiptJob':
        """Build a job from the queue's camelCase payload."""
        try:
            return cls(
                receipt_id=str(data['receiptId']),
                image_path=str(data['imagePath']),
                user_id=str(data.get('userId', '')),
            )
        except KeyError as e:
            raise ValueError(f"Job payload missing field: {e}") from e

    def to_dict(self) -> Dict[str, str]:
        return {
            'receiptId': self.receipt_id,
            'imagePath': self.image_path,
            'userId': self.user_id,
        }


@dataclass
class ReceiptRecord:
    """Persisted OCR state of a receipt."""
    receipt_id: str
    status: OcrStatus = OcrStatus.PENDING
    raw_text: Optional[str] = None
    merchant: Optional[str] = None
    date: Optional[str] = None
    total: Optional[str] = None
    processed_at: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'receiptId': self.receipt_id,
            'ocrStatus': self.status.value,
            'ocrRawText': self.raw_text,
            'extractedMerchant': self.merchant,
            'extractedDate': self.date,
            'extractedTotal': self.total,
            'ocrProcessedAt': self.processed_at,
            'metadata': self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReceiptRecord':
        return cls(
            receipt_id=data['receiptId'],
            status=OcrStatus(data.get('ocrStatus', OcrStatus.PENDING.value)),
            raw_text=data.get('ocrRawText'),
            merchant=data.get('extractedMerchant'),
            date=data.get('extractedDate'),
            total=data.get('extractedTotal'),
            processed_at=data.get('ocrProcessedAt'),
            metadata=data.get('metadata') or {},
        )
