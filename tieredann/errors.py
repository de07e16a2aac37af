"""
Error types raised by the index structures.

Every error carries a short machine-readable ``code`` and a ``context`` dict
with the offending values, so callers can branch on the kind of failure
without parsing messages. Input errors also derive from ``ValueError`` (and
lookups from ``KeyError``) so generic handlers keep working.
"""

from typing import Any, Dict, Optional


class VectorIndexError(Exception):
    """Base class for all index errors."""

    default_code = "INDEX_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code if code is not None else self.default_code
        self.context = context or {}

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class InvalidIdError(VectorIndexError, ValueError):
    """Id is negative, not an integer, duplicated or unknown."""

    default_code = "INVALID_ID"


class DuplicateIdError(InvalidIdError):
    default_code = "DUPLICATE_ID"


class UnknownIdError(InvalidIdError, KeyError):
    default_code = "NOT_FOUND"

    # KeyError quotes its argument in str(); keep the plain message
    def __str__(self) -> str:
        return self.message


class EmptyVectorError(VectorIndexError, ValueError):
    default_code = "EMPTY_VECTOR"


class DimensionMismatchError(VectorIndexError, ValueError):
    default_code = "DIMENSION_MISMATCH"


class BuildRequiredError(VectorIndexError, RuntimeError):
    """Operation attempted before the index was built."""

    default_code = "BUILD_REQUIRED"


class ConfigurationInvalidError(VectorIndexError, ValueError):
    default_code = "INVALID_CONFIG"


class CorruptedSerializationError(VectorIndexError, ValueError):
    """Serialized document is structurally unusable."""

    default_code = "CORRUPTED_SERIALIZATION"


class CorruptedSerializationWarning(UserWarning):
    """Checksum or count mismatch found while loading; load continued."""
