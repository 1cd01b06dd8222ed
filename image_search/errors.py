"""Exceptions raised by the image search pipeline."""

from typing import Optional


class ImageSearchError(Exception):
    """Base class for every error raised by this package."""


class ModelLoadError(ImageSearchError):
    """The backbone could not be fetched/parsed, or has no usable feature layer."""


class ModelNotLoadedError(ImageSearchError):
    """Feature extraction was attempted before the model finished loading."""


class UnsupportedFormatError(ImageSearchError, ValueError):
    """Raw bytes do not match a supported image signature or cannot be decoded."""


class DimensionMismatchError(ImageSearchError, ValueError):
    """Query and candidate embeddings have different lengths."""

    def __init__(self, expected: int, actual: int, candidate_id: Optional[str] = None):
        self.expected = expected
        self.actual = actual
        self.candidate_id = candidate_id
        where = f" for candidate {candidate_id!r}" if candidate_id is not None else ""
        super().__init__(
            f"Embedding dimension {actual} doesn't match query dimension {expected}{where}"
        )


class RemoteSearchError(ImageSearchError):
    """The remote catalog endpoint failed or returned an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
