"""Exceptions raised by the receipt OCR pipeline."""


class ReceiptPipelineError(Exception):
    """Base class for pipeline failures."""


class EngineInitializationError(ReceiptPipelineError):
    """The recognition engine could not be created."""


class AllAttemptsFailedError(ReceiptPipelineError):
    """Every image variant of a receipt failed recognition."""

    def __init__(self, message: str = "all attempts failed", errors=None):
        super().__init__(message)
        self.errors = list(errors or [])
