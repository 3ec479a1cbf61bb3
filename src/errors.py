"""Error taxonomy for resolution and store operations.

Every error carries structured context (package names, versions, policies,
requesters) so callers can render a precise diagnostic without re-deriving it.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class PolypinError(Exception):
    """Base class for all domain errors."""

    reason_code = "error"

    def __init__(self, message: str, *, package: Optional[str] = None, **details: Any):
        super().__init__(message)
        self.message = message
        self.package = package
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form of the error."""
        out: Dict[str, Any] = {"reason_code": self.reason_code, "message": self.message}
        if self.package is not None:
            out["package"] = self.package
        for key, value in self.details.items():
            out[key] = _plain(value)
        return out

    def format_human(self) -> str:
        """One diagnostic line per fact, headed by the reason code."""
        parts: List[str] = [f"[{self.reason_code}] {self.message}"]
        for key, value in self.details.items():
            if value is None or key == "conflicts":
                continue
            parts.append(f"  {key}: {_plain(value)}")
        return "\n".join(parts)

    def __str__(self) -> str:
        return self.message


def _plain(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


class PolicyValidationError(ValueError):
    """A policy or version given at the boundary is not representable."""


class ConfigError(PolypinError):
    """Invalid configuration value or unreadable config file."""

    reason_code = "config_error"


class UnknownPackage(PolypinError):
    """The catalog has no entries for a requested package name."""

    reason_code = "unknown_package"

    def __init__(self, name: str):
        super().__init__(f"unknown package '{name}'", package=name)


class _ConflictError(PolypinError):
    """Resolution failure carrying the conflicting constraint sets."""

    def __init__(self, message: str, conflicts: Sequence[Any], *, package: Optional[str] = None, **details: Any):
        super().__init__(message, package=package, conflicts=list(conflicts), **details)
        self.conflicts = list(conflicts)

    def format_human(self) -> str:
        lines = [super().format_human()]
        for conflict in self.conflicts:
            lines.append(f"  - {conflict.describe()}" if hasattr(conflict, "describe") else f"  - {conflict}")
        return "\n".join(lines)


class PolicyConflict(_ConflictError):
    """Two requested policies for the same package have an empty intersection."""

    reason_code = "policy_conflict"


class MissingDependency(_ConflictError):
    """A package referenced by a dependency edge is absent from the catalog."""

    reason_code = "missing_dependency"


class CyclicDependency(_ConflictError):
    """Every otherwise valid assignment contains a dependency cycle."""

    reason_code = "cyclic_dependency"

    def __init__(self, message: str, conflicts: Sequence[Any], *, cycle: Optional[Sequence[str]] = None, **details: Any):
        super().__init__(message, conflicts, cycle=list(cycle or []), **details)
        self.cycle = list(cycle or [])


class ResolutionConflict(_ConflictError):
    """Search space exhausted; no assignment satisfies all constraints."""

    reason_code = "resolution_conflict"


class ContentUnavailable(PolypinError):
    """The content producer could not supply bytes for a package version."""

    reason_code = "content_unavailable"

    def __init__(self, name: str, version: Any, reason: str = "content unavailable", **details: Any):
        super().__init__(f"{name}@{version}: {reason}", package=name, version=str(version), **details)
        self.version = version
        self.reason = reason


class VersionUnavailable(PolypinError):
    """A rollback target is not present in the store (never staged or pruned)."""

    reason_code = "version_unavailable"

    def __init__(self, name: str, version: Any, consumer: Optional[str] = None):
        super().__init__(
            f"{name}@{version} is not available in the store",
            package=name,
            version=str(version),
            consumer=consumer,
        )
        self.version = version
        self.consumer = consumer


class TransactionAborted(PolypinError):
    """A transaction stopped before activation; no pointer or history changed."""

    reason_code = "transaction_aborted"

    def __init__(self, transaction_id: Optional[str], reason: str, *, package: Optional[str] = None, **details: Any):
        super().__init__(f"transaction {transaction_id} aborted: {reason}", package=package,
                         transaction_id=transaction_id, **details)
        self.transaction_id = transaction_id
        self.reason = reason
