"""
Exception types raised across the pipeline.

Fatal errors (model load, inference, undecodable image) abort a request.
OCR and translation errors are caught per detection.
"""


class ModelLoadError(RuntimeError):
    """The detector model could not be loaded."""


class InferenceError(RuntimeError):
    """The detector model failed while running."""


class ImageDecodeError(ValueError):
    """An image payload could not be turned into pixels."""


class OCRError(RuntimeError):
    """A recognition engine failed on a region."""


class TranslationError(RuntimeError):
    """A translation provider call failed."""


class DuplicateRequestError(ValueError):
    """A request id is already in flight."""
