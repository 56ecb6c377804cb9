"""Error taxonomy for aumai-imagescope."""

from __future__ import annotations


class ImageScopeError(Exception):
    """Base class for every error raised by this package.

    Args:
        message: Human-readable description, including the operation context
            (which source, which image).
        cause: The underlying exception, if any.  Also set as ``__cause__``
            when raised with ``raise ... from cause``.
    """

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is None:
            return self.message
        return f"{self.message}: {self.cause}"


class InvalidImageReference(ImageScopeError, ValueError):
    """The image reference string could not be parsed."""


class NotFoundError(ImageScopeError):
    """A source positively reported that the requested object does not exist."""


class SourceFailure(ImageScopeError):
    """A source failed for a reason other than "not found"."""


class ParseFailure(ImageScopeError):
    """A response was received but could not be decoded into the expected shape."""


class PemError(ParseFailure):
    """The PEM envelope around a certificate is malformed."""


class X509Error(ParseFailure):
    """The DER payload inside a valid PEM envelope is not a usable certificate."""


class CertificateTimeError(ParseFailure):
    """A certificate validity bound is unrepresentable or the window is inverted."""


class CacheFailure(ImageScopeError):
    """The cache backend is unreachable or holds an undecodable value."""


__all__ = [
    "CacheFailure",
    "CertificateTimeError",
    "ImageScopeError",
    "InvalidImageReference",
    "NotFoundError",
    "ParseFailure",
    "PemError",
    "SourceFailure",
    "X509Error",
]
