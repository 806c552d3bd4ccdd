"""Recognition engine backends and the shared, access-serialized engine handle."""

import asyncio
import io
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import pytesseract
from PIL import Image

from .config import PipelineSettings
from .errors import EngineInitializationError
from .models import EngineResult, SegmentationMode
from .preprocess import decode_image

logger = logging.getLogger(__name__)

ImageData = Union[Path, bytes]

# Tesseract page segmentation modes
TESSERACT_PSM: Dict[SegmentationMode, int] = {
    SegmentationMode.SPARSE_TEXT: 11,
    SegmentationMode.SINGLE_BLOCK: 6,
    SegmentationMode.AUTO: 3,
}


@dataclass(frozen=True)
class RecognitionParams:
    """Per-call engine configuration."""
    segmentation_mode: SegmentationMode
    preserve_interword_spaces: bool = True
    dpi: int = 300
    timeout: float = 60.0


class RecognitionEngine(ABC):
    """A text-recognition runtime. Instances are not safe for concurrent use."""

    name = "engine"

    @abstractmethod
    def configure(self, params: RecognitionParams) -> None:
        """Apply parameters for the next ``recognize`` call."""
        pass

    @abstractmethod
    def recognize(self, image_data: ImageData) -> EngineResult:
        """Recognize text in an image path or encoded image bytes."""
        pass

    def terminate(self) -> None:
        """Release engine resources."""
        pass


class TesseractEngine(RecognitionEngine):
    """Tesseract via pytesseract, reporting mean word confidence."""

    name = "tesseract"

    def __init__(self, language: str = "jpn+eng"):
        """
        Initialize and verify the Tesseract installation.

        Args:
            language: Tesseract language hint, e.g. 'jpn+eng'
        """
        self.language = language
        self.version = pytesseract.get_tesseract_version()
        self._config = ""
        self._timeout = 0.0
        self._check_languages()
        logger.info(f"Tesseract {self.version} ready (lang={self.language})")

    def _check_languages(self):
        try:
            available = set(pytesseract.get_languages(config=''))
        except pytesseract.TesseractError as e:
            logger.warning(f"Could not list Tesseract languages: {e}")
            return
        missing = [lang for lang in self.language.split('+') if lang not in available]
        if missing:
            raise EngineInitializationError(
                f"Tesseract language data not installed: {', '.join(missing)}"
            )

    def configure(self, params: RecognitionParams) -> None:
        psm = TESSERACT_PSM[params.segmentation_mode]
        spaces = 1 if params.preserve_interword_spaces else 0
        self._config = f"--psm {psm} --dpi {params.dpi} -c preserve_interword_spaces={spaces}"
        self._timeout = params.timeout

    def recognize(self, image_data: ImageData) -> EngineResult:
        source = io.BytesIO(image_data) if isinstance(image_data, (bytes, bytearray)) else str(image_data)
        with Image.open(source) as image:
            data = pytesseract.image_to_data(
                image,
                lang=self.language,
                config=self._config,
                timeout=self._timeout,
                output_type=pytesseract.Output.DICT,
            )
        return self._assemble(data)

    @staticmethod
    def _assemble(data: Dict[str, List]) -> EngineResult:
        """Rebuild line-ordered text and mean confidence from word boxes."""
        lines: Dict[tuple, List[str]] = {}
        confidences = []

        for i, word in enumerate(data.get('text', [])):
            if not word or not word.strip():
                continue
            key = (data['block_num'][i], data['par_num'][i], data['line_num'][i])
            lines.setdefault(key, []).append(word.strip())
            try:
                conf = float(data['conf'][i])
            except (TypeError, ValueError):
                continue
            if conf >= 0:
                confidences.append(conf)

        text = '\n'.join(' '.join(words) for words in lines.values())
        confidence = sum(confidences) / len(confidences) if confidences else None
        return EngineResult(text=text, confidence=confidence)


class YomiTokuEngine(RecognitionEngine):
    """YomiToku DocumentAnalyzer for Japanese documents. Ignores layout hints."""

    name = "yomitoku"

    def __init__(self, device: str = "cpu"):
        try:
            from yomitoku import DocumentAnalyzer
        except ImportError as e:
            raise EngineInitializationError(
                "yomitoku is not installed. Run: pip install 'receipt-ocr-pipeline[yomitoku]'"
            ) from e

        # YomiToku will download models on first run
        logger.info(f"Initializing YomiToku with device: {device}")
        self.device = device
        self.analyzer = DocumentAnalyzer(configs={}, device=device, visualize=False)
        self._timeout = 0.0
        logger.info("YomiToku initialized successfully")

    def configure(self, params: RecognitionParams) -> None:
        logger.debug(f"YomiToku ignores segmentation mode {params.segmentation_mode.value}")
        self._timeout = params.timeout

    def recognize(self, image_data: ImageData) -> EngineResult:
        """
        Analyze the image. The analyzer cannot be interrupted, so a run that
        exceeds the configured timeout is discarded and reported like a
        Tesseract timeout.
        """
        if self.analyzer is None:
            raise RuntimeError("YomiToku engine has been terminated")

        image = decode_image(image_data)
        started = time.monotonic()
        results, _, _ = self.analyzer(image)
        elapsed = time.monotonic() - started
        if self._timeout and elapsed > self._timeout:
            raise RuntimeError(f"YomiToku process timeout ({elapsed:.1f}s > {self._timeout}s)")

        words, scores = [], []
        for word in getattr(results, 'words', None) or []:
            content = getattr(word, 'content', '')
            if content and content.strip():
                words.append(content)
                scores.append(getattr(word, 'rec_score', None))

        known = [s for s in scores if s is not None]
        confidence = (sum(known) / len(known)) * 100 if known else None
        return EngineResult(text='\n'.join(words), confidence=confidence)

    def terminate(self) -> None:
        self.analyzer = None


def create_engine_factory(settings: PipelineSettings) -> Callable[[], RecognitionEngine]:
    """Return a zero-argument constructor for the configured engine."""
    if settings.engine == 'yomitoku':
        return lambda: YomiTokuEngine(device=settings.device)
    return lambda: TesseractEngine(language=settings.language)


class SharedRecognitionEngine:
    """
    Process-wide recognition engine handle.

    The engine is created lazily on first use; concurrent first callers
    await the same initialization, and a failed initialization is retried
    by the next caller. Every configure+recognize cycle runs under one
    FIFO lock, so the engine never sees overlapping calls.
    """

    def __init__(self, factory: Callable[[], RecognitionEngine], verbose: bool = False):
        self._factory = factory
        self._verbose = verbose
        self._engine: Optional[RecognitionEngine] = None
        self._init_task: Optional[asyncio.Task] = None
        self._access_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._engine is not None

    async def get_engine(self) -> RecognitionEngine:
        """Return the engine, creating it on first use."""
        if self._engine is not None:
            return self._engine

        if self._init_task is None:
            self._init_task = asyncio.get_running_loop().create_task(self._initialize())
        task = self._init_task

        try:
            return await asyncio.shield(task)
        except Exception:
            if self._init_task is task:
                self._init_task = None
            raise

    async def _initialize(self) -> RecognitionEngine:
        started = time.monotonic()
        try:
            engine = await asyncio.to_thread(self._factory)
        except EngineInitializationError:
            logger.error("Recognition engine initialization failed", exc_info=True)
            raise
        except Exception as e:
            logger.error(f"Recognition engine initialization failed: {e}")
            raise EngineInitializationError(str(e)) from e

        self._engine = engine
        logger.info(f"Recognition engine '{engine.name}' ready in {time.monotonic() - started:.1f}s")
        return engine

    async def recognize(self, image_data: ImageData, params: RecognitionParams) -> EngineResult:
        """Configure and run the engine with exclusive access."""
        engine = await self.get_engine()
        log = logger.info if self._verbose else logger.debug

        async with self._access_lock:
            started = time.monotonic()
            log(f"Recognizing with {params.segmentation_mode.value}")
            result = await asyncio.to_thread(self._configure_and_run, engine, image_data, params)
            log(f"Recognition finished in {time.monotonic() - started:.2f}s "
                f"({len(result.text)} chars, confidence={result.confidence})")
        return result

    @staticmethod
    def _configure_and_run(engine: RecognitionEngine, image_data: ImageData,
                           params: RecognitionParams) -> EngineResult:
        engine.configure(params)
        return engine.recognize(image_data)

    async def close(self) -> None:
        """Wait for in-flight recognition, then terminate the engine."""
        task = self._init_task
        if task is not None and not task.done():
            # Outcome is reported to get_engine() callers; only wait here.
            await asyncio.wait({task})

        async with self._access_lock:
            engine, self._engine, self._init_task = self._engine, None, None
            if engine is None:
                return
            try:
                await asyncio.to_thread(engine.terminate)
            except Exception as e:
                logger.error(f"Failed to terminate recognition engine: {e}")
                raise
            logger.info(f"Recognition engine '{engine.name}' terminated")
