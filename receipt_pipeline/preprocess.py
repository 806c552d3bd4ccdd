"""Image variants for multi-pass recognition."""

import logging
from pathlib import Path
from typing import List, Optional, Union

import cv2
import numpy as np
from pdf2image import convert_from_path

from .models import ImageVariant, SegmentationMode

logger = logging.getLogger(__name__)

PDF_RASTER_DPI = 200

SHARPEN_KERNEL = np.array([[0, -1, 0],
                           [-1, 5, -1],
                           [0, -1, 0]], dtype=np.float32)


class ImageVariantBuilder:
    """Builds the preprocessed renditions of a receipt tried by the orchestrator."""

    def __init__(self, multi_pass: bool = True, max_width: int = 1600, binary_threshold: int = 170):
        """
        Args:
            multi_pass: Produce enhanced and binarized variants besides the original
            max_width: Preprocessed images wider than this are downscaled
            binary_threshold: Fixed cutoff (0-255) for the binarized variant
        """
        self.multi_pass = multi_pass
        self.max_width = max_width
        self.binary_threshold = binary_threshold

    def build(self, source: Union[str, Path]) -> List[ImageVariant]:
        """
        Create the variants for one receipt image or PDF.

        The original is always present; preprocessing problems only cost
        the extra variants.
        """
        source = Path(source)
        raster = None
        original_data: Union[Path, bytes] = source

        if is_pdf(source):
            try:
                raster = rasterize_pdf(source)
                original_data = encode_png(raster)
            except Exception as e:
                logger.warning(f"Could not rasterize {source.name}: {e}")
                return [ImageVariant('original-sparse', source, SegmentationMode.SPARSE_TEXT)]

        variants = [ImageVariant('original-sparse', original_data, SegmentationMode.SPARSE_TEXT)]
        if not self.multi_pass:
            return variants

        try:
            if raster is None:
                raster = load_image(source)
            base = self.prepare_base(raster)
            enhanced = encode_png(self.enhance(base))
            binary = encode_png(self.binarize(base))
        except Exception as e:
            logger.warning(f"Preprocessing failed for {source.name}, using original only: {e}")
            return variants

        variants.extend([
            ImageVariant('enhanced-sparse', enhanced, SegmentationMode.SPARSE_TEXT),
            ImageVariant('binary-block', binary, SegmentationMode.SINGLE_BLOCK),
            ImageVariant('enhanced-auto', enhanced, SegmentationMode.AUTO),
        ])
        logger.debug(f"Built {len(variants)} variants for {source.name}")
        return variants

    def prepare_base(self, image: np.ndarray) -> np.ndarray:
        """Grayscale, stretch to full range, sharpen and bound the width."""
        gray = image if image.ndim == 2 else cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        normalized = cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX)
        sharpened = cv2.filter2D(normalized, -1, SHARPEN_KERNEL)

        height, width = sharpened.shape[:2]
        if width > self.max_width:
            sharpened = cv2.resize(
                sharpened, (self.max_width, max(1, height * self.max_width // width)),
                interpolation=cv2.INTER_AREA,
            )
        return sharpened

    def enhance(self, base: np.ndarray) -> np.ndarray:
        clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        return clahe.apply(base)

    def binarize(self, base: np.ndarray) -> np.ndarray:
        _, binary = cv2.threshold(base, self.binary_threshold, 255, cv2.THRESH_BINARY)
        return binary


def is_pdf(path: Path) -> bool:
    return path.suffix.lower() == '.pdf'


def load_image(path: Path) -> np.ndarray:
    """Read an image file as a BGR array."""
    image = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if image is None:
        raise ValueError(f"Unreadable image: {path}")
    return image


def rasterize_pdf(path: Path, dpi: int = PDF_RASTER_DPI) -> np.ndarray:
    """Render the first PDF page as a BGR array."""
    pages = convert_from_path(str(path), dpi=dpi, first_page=1, last_page=1)
    if not pages:
        raise ValueError(f"PDF has no pages: {path}")
    rgb = np.array(pages[0].convert('RGB'))
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)


def encode_png(image: np.ndarray) -> bytes:
    ok, buffer = cv2.imencode('.png', image)
    if not ok:
        raise ValueError("PNG encoding failed")
    return buffer.tobytes()


def decode_image(image_data: Union[Path, bytes], flags: Optional[int] = None) -> np.ndarray:
    """Load variant image data, path or encoded bytes, as an array."""
    flags = cv2.IMREAD_COLOR if flags is None else flags
    if isinstance(image_data, (bytes, bytearray)):
        image = cv2.imdecode(np.frombuffer(image_data, dtype=np.uint8), flags)
    else:
        image = cv2.imread(str(image_data), flags)
    if image is None:
        raise ValueError("Could not decode image data")
    return image
