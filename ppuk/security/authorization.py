"""
PPUK Authorization Engine — relationship-tier access decisions.

Every decision resolves the principal's best relationship tier on the
entity's parent property and applies a visibility × tier matrix:

    Tier        Read private  Read shared  Read public  Write
    owner       yes           yes          yes          any entity on the property
    occupier    no            yes          yes          own entity, or shared entity
    interested  no            no           yes          never
    (none)      no            no           yes          never

A principal holding several tiers on one property gets the highest
(owner > occupier > interested). The creator of an entity may always read it
while they still hold owner or occupier. There is no implicit superuser.

The engine never mutates state. Denials raise PPUKForbiddenError, absent
entities raise PPUKNotFoundError; callers decide which one to present.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ppuk.db.models import ENTITY_MODELS, TIERS, Property, PropertyParty
from ppuk.engine.cache import NO_TIER, TierCache
from ppuk.engine.context import get_request_context
from ppuk.engine.errors import PPUKForbiddenError, PPUKNotFoundError, PPUKValidationError
from ppuk.engine.logging import log, log_access_denied

logger = logging.getLogger("ppuk.security.authorization")

READ = "read"
CREATE = "create"
UPDATE = "update"
DELETE = "delete"
OPERATIONS = (READ, CREATE, UPDATE, DELETE)

# Higher rank wins when a principal holds several tiers
TIER_RANK = {"owner": 3, "occupier": 2, "interested": 1}

# Visibilities each tier may read; None means no relationship at all
READABLE_VISIBILITIES = {
    "owner": {"private", "shared", "public"},
    "occupier": {"shared", "public"},
    "interested": {"public"},
    None: {"public"},
}

CONTRIBUTOR_TIERS = ("owner", "occupier")


def effective_tier(tiers: Iterable[str]) -> Optional[str]:
    """Highest-privilege tier among *tiers*, or None when empty."""
    best: Optional[str] = None
    for tier in tiers:
        if tier not in TIER_RANK:
            raise PPUKValidationError(f"Unknown relationship tier: {tier}", field="tier", value=tier)
        if best is None or TIER_RANK[tier] > TIER_RANK[best]:
            best = tier
    return best


def decide(tier: Optional[str], principal_id: Optional[str], entity: Any, operation: str) -> bool:
    """
    Apply the access matrix to an already-resolved tier. Pure.

    Args:
        tier: Effective tier of the principal on the entity's property.
        principal_id: Acting principal (None for anonymous).
        entity: Property, PropertyParty, Document, Note or Task instance.
        operation: read | create | update | delete.
    """
    if operation not in OPERATIONS:
        raise PPUKValidationError(f"Unknown operation: {operation}", field="operation", value=operation)

    entity_type = getattr(entity, "entity_type", None)

    if entity_type == "property":
        if operation == READ:
            return bool(entity.is_public) or tier is not None
        # Properties are created through claim and never hard-deleted
        return operation == UPDATE and tier == "owner"

    if entity_type == "relationship":
        is_self = principal_id is not None and entity.principal_id == principal_id
        if operation == READ:
            return tier is not None or is_self
        if operation == CREATE:
            return tier == "owner"
        return tier == "owner" or is_self

    visibility = getattr(entity, "visibility", None)
    if visibility not in READABLE_VISIBILITIES["owner"]:
        raise PPUKValidationError(f"Unknown visibility: {visibility}", field="visibility", value=visibility)

    is_creator = principal_id is not None and entity.created_by == principal_id

    if operation == READ:
        if visibility in READABLE_VISIBILITIES[tier]:
            return True
        return is_creator and tier in CONTRIBUTOR_TIERS

    if tier == "owner":
        return True
    if tier == "occupier":
        if operation == CREATE:
            return True
        return is_creator or visibility == "shared"
    return False


class AuthorizationEngine:
    """
    Tier resolution against the entity store, cache-first when a TierCache
    is configured. All lookups are bounded to principal → relationship → property.
    """

    def __init__(self, session_factory=None, tier_cache: Optional[TierCache] = None):
        self._session_factory = session_factory
        self._tier_cache = tier_cache

    # ── Tier resolution ──

    def tiers_for(
        self, principal_id: str, property_id: int, session: Optional[Session] = None
    ) -> List[str]:
        """All tiers *principal_id* holds on *property_id*."""
        stmt = select(PropertyParty.tier).where(
            PropertyParty.property_id == property_id,
            PropertyParty.principal_id == principal_id,
        )
        if session is not None:
            return list(session.execute(stmt).scalars())

        if self._session_factory is None:
            logger.warning("No session factory, resolving no tiers")
            return []
        own = self._session_factory()
        try:
            return list(own.execute(stmt).scalars())
        finally:
            own.close()

    def resolve_tier(
        self, principal_id: Optional[str], property_id: int, session: Optional[Session] = None
    ) -> Optional[str]:
        """Effective tier of *principal_id* on *property_id* (None if unrelated)."""
        if not principal_id:
            return None

        # Generation is read before the store so a concurrent invalidation wins
        generation = None
        if self._tier_cache is not None:
            generation = self._tier_cache.generation(property_id)
        if generation is not None:
            cached = self._tier_cache.lookup(property_id, principal_id, generation)
            if cached is not None:
                return None if cached == NO_TIER else cached

        try:
            tier = effective_tier(self.tiers_for(principal_id, property_id, session=session))
        except SQLAlchemyError as e:
            # Deny by default when the store cannot answer
            logger.error(f"Tier lookup failed for {principal_id} on property {property_id}: {e}")
            return None

        if generation is not None:
            self._tier_cache.store(property_id, principal_id, tier, generation)
        return tier

    def invalidate(self, property_id: int) -> None:
        """Forget cached tiers on a property after a relationship change."""
        if self._tier_cache is not None:
            self._tier_cache.invalidate_property(property_id)

    # ── Decisions ──

    def can_access(
        self,
        principal_id: Optional[str],
        entity: Any,
        operation: str,
        session: Optional[Session] = None,
    ) -> bool:
        """True if *principal_id* may perform *operation* on *entity*."""
        tier = self.resolve_tier(principal_id, entity.property_id, session=session)
        return decide(tier, principal_id, entity, operation)

    def require_access(
        self,
        principal_id: Optional[str],
        entity: Any,
        operation: str,
        session: Optional[Session] = None,
    ) -> Optional[str]:
        """
        Raise PPUKForbiddenError unless access is allowed.

        Returns:
            The resolved tier, so callers can reuse it without a second lookup.
        """
        tier = self.resolve_tier(principal_id, entity.property_id, session=session)
        if decide(tier, principal_id, entity, operation):
            return tier

        entity_type = getattr(entity, "entity_type", type(entity).__name__.lower())
        ctx = get_request_context()
        request_id = ctx.request_id if ctx else None
        logger.info(
            f"Access denied: {principal_id} → {entity_type}:{entity.id} ({operation}, tier={tier})"
        )
        log(log_access_denied(principal_id, operation, entity_type, entity.id, tier, request_id))
        raise PPUKForbiddenError(
            f"Access denied: {operation} on {entity_type}",
            principal_id=principal_id,
            operation=operation,
            tier=tier,
            entity_type=entity_type,
            entity_id=entity.id,
            request_id=request_id,
        )

    def load_and_require(
        self,
        session: Session,
        principal_id: Optional[str],
        entity_type: str,
        entity_id: int,
        operation: str,
    ) -> Any:
        """
        Load an entity by its audit tag and check access in one step.

        Raises:
            PPUKValidationError: unknown entity type.
            PPUKNotFoundError: no such row.
            PPUKForbiddenError: row exists but access is denied.
        """
        model = ENTITY_MODELS.get(entity_type)
        if model is None:
            raise PPUKValidationError(
                f"Unknown entity type: {entity_type}", field="entity_type", value=entity_type
            )
        entity = session.get(model, entity_id)
        if entity is None:
            raise PPUKNotFoundError(
                f"{entity_type} not found", entity_type=entity_type, entity_id=entity_id
            )
        self.require_access(principal_id, entity, operation, session=session)
        return entity

    # ── Relationship management ──

    def can_manage_relationship(
        self,
        actor_id: Optional[str],
        property_id: int,
        target_principal_id: str,
        session: Optional[Session] = None,
    ) -> bool:
        """Owner tier on the property, or the actor managing their own row."""
        if not actor_id:
            return False
        if actor_id == target_principal_id:
            return True
        return self.resolve_tier(actor_id, property_id, session=session) == "owner"

    def require_manage_relationship(
        self,
        actor_id: Optional[str],
        property_id: int,
        target_principal_id: str,
        session: Optional[Session] = None,
    ) -> None:
        if not self.can_manage_relationship(actor_id, property_id, target_principal_id, session=session):
            log(log_access_denied(actor_id, "manage_relationship", "property", property_id, None))
            raise PPUKForbiddenError(
                "Only owners may manage other parties' relationships",
                principal_id=actor_id,
                operation="manage_relationship",
                entity_type="property",
                entity_id=property_id,
            )

    def get_property(self, session: Session, property_id: int) -> Property:
        prop = session.get(Property, property_id)
        if prop is None:
            raise PPUKNotFoundError("property not found", entity_type="property", entity_id=property_id)
        return prop


def validate_tier(tier: str) -> str:
    if tier not in TIERS:
        raise PPUKValidationError(f"Unknown relationship tier: {tier}", field="tier", value=tier)
    return tier
