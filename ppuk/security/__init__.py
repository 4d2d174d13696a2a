"""PPUK Security — tier-based authorization and property relationships."""

from ppuk.security.authorization import AuthorizationEngine, decide  # noqa: F401
from ppuk.security.relationships import RelationshipService  # noqa: F401

__all__ = [
    "AuthorizationEngine",
    "decide",
    "RelationshipService",
]
