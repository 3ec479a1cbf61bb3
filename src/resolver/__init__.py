"""Policy-aware dependency resolution."""

from .engine import Resolver
from .graph import Conflict, ConflictKind, Constraint, ResolvedGraph

__all__ = [
    "Conflict",
    "ConflictKind",
    "Constraint",
    "ResolvedGraph",
    "Resolver",
]
