from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "NotFound"
    VERSION_NOT_FOUND = "VersionNotFound"
    AMBIGUOUS_VARIANT = "AmbiguousVariant"
    SOURCE_UNAVAILABLE = "SourceUnavailable"
    SIGNATURE_INVALID = "SignatureInvalid"
    FINGERPRINT_MISMATCH = "FingerprintMismatch"
    CHECKSUM_MISMATCH = "ChecksumMismatch"
    IO_FAILURE = "IOFailure"
    CANCELLED = "Cancelled"
    UNEXPECTED = "Unexpected"

    @property
    def is_integrity(self) -> bool:
        return self in _INTEGRITY_KINDS

    @property
    def retryable(self) -> bool:
        """Only transport/protocol trouble is worth retrying on a later run."""
        return self is ErrorKind.SOURCE_UNAVAILABLE


_INTEGRITY_KINDS = frozenset({
    ErrorKind.SIGNATURE_INVALID,
    ErrorKind.FINGERPRINT_MISMATCH,
    ErrorKind.CHECKSUM_MISMATCH,
})


class AcquisitionError(RuntimeError):
    kind: ErrorKind = ErrorKind.UNEXPECTED

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(AcquisitionError):
    kind = ErrorKind.NOT_FOUND


class VersionNotFound(AcquisitionError):
    kind = ErrorKind.VERSION_NOT_FOUND


class AmbiguousVariant(AcquisitionError):
    kind = ErrorKind.AMBIGUOUS_VARIANT


class SourceUnavailable(AcquisitionError):
    kind = ErrorKind.SOURCE_UNAVAILABLE


class SignatureInvalid(AcquisitionError):
    kind = ErrorKind.SIGNATURE_INVALID


class FingerprintMismatch(AcquisitionError):
    kind = ErrorKind.FINGERPRINT_MISMATCH

    def __init__(self, message: str, expected: bytes = b"", actual: bytes = b""):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class ChecksumMismatch(AcquisitionError):
    kind = ErrorKind.CHECKSUM_MISMATCH


class IOFailure(AcquisitionError):
    kind = ErrorKind.IO_FAILURE


class Cancelled(AcquisitionError):
    kind = ErrorKind.CANCELLED


__all__ = [
    "AcquisitionError",
    "AmbiguousVariant",
    "Cancelled",
    "ChecksumMismatch",
    "ErrorKind",
    "FingerprintMismatch",
    "IOFailure",
    "NotFound",
    "SignatureInvalid",
    "SourceUnavailable",
    "VersionNotFound",
]
