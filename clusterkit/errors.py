"""
Exception hierarchy for clusterkit.

Every error raised by the package derives from ClusterKitError and also from
the closest builtin exception, so callers can catch either.
"""

from typing import Any, Optional


class ClusterKitError(Exception):
    """Base class for all clusterkit errors."""

    code = "CK-1000"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} ({self.details})"
        return self.message


class InvalidArgument(ClusterKitError, ValueError):
    code = "CK-1001"


class InvalidDimension(InvalidArgument):
    code = "CK-1002"


class DimensionMismatch(ClusterKitError, ValueError):
    code = "CK-1003"


class RowLengthMismatch(ClusterKitError, ValueError):
    code = "CK-1004"


class InsufficientData(InvalidArgument):
    code = "CK-1005"


class DuplicateLabel(ClusterKitError, ValueError):
    code = "CK-2000"


class ModelNotFitted(ClusterKitError, RuntimeError):
    code = "CK-3000"


class EmbeddingFailed(ClusterKitError, RuntimeError):
    code = "CK-3001"


class ClusteringFailed(ClusterKitError, RuntimeError):
    code = "CK-3002"


class IsolatedPoints(EmbeddingFailed):
    """The neighbor graph left some points unconnected."""

    code = "CK-3003"


class ConvergenceFailed(EmbeddingFailed):
    code = "CK-3004"


class UnsupportedCapability(ClusterKitError, NotImplementedError):
    code = "CK-4000"


class NotImplementedFeature(ClusterKitError, NotImplementedError):
    code = "CK-4001"


class PersistenceIOError(ClusterKitError, OSError):
    code = "CK-5000"


class CorruptPersistedState(ClusterKitError, ValueError):
    code = "CK-5001"
