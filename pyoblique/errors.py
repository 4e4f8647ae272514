from typing import Optional


class ObliqueError(Exception):
    """Base class for all errors raised by pyoblique."""


class LoadError(ObliqueError):
    """A data set or tile document could not be fetched."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class ParseError(ObliqueError, ValueError):
    """A metadata document is malformed."""


class DataSetInitializedError(ObliqueError, RuntimeError):
    """A data set was initialized more than once."""


class ConversionError(ObliqueError):
    """A coordinate could not be transformed between image and world space."""
