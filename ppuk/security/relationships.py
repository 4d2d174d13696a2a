"""
PPUK Relationship Service — claim, share and watch properties.

Relationship rows (property_parties) are the only source of access, so every
change here invalidates cached tiers for the property and is audited.

Rules:
- claim: first owner of an unowned property; sets properties.claimed_by.
- add_relationship: owners add anyone; a principal may add themselves as
  interested (the watchlist path).
- remove_relationship: owners remove anyone, a principal removes their own
  row. The last owner row cannot be removed this way; unclaim releases it.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ppuk.audit.logger import AuditLogger
from ppuk.db.models import Property, PropertyParty
from ppuk.engine.errors import PPUKConflictError, PPUKForbiddenError, PPUKNotFoundError
from ppuk.security.authorization import CREATE, DELETE, AuthorizationEngine, validate_tier

logger = logging.getLogger("ppuk.security.relationships")


def party_to_dict(party: PropertyParty) -> Dict[str, Any]:
    return {
        "id": party.id,
        "property_id": party.property_id,
        "principal_id": party.principal_id,
        "relationship": party.tier,
        "is_primary": party.is_primary,
        "assigned_by": party.assigned_by,
    }


def _audit_state(party: PropertyParty) -> Dict[str, Any]:
    return {
        "property_id": party.property_id,
        "principal_id": party.principal_id,
        "relationship": party.tier,
        "is_primary": party.is_primary,
    }


class RelationshipService:

    def __init__(self, session_factory, authz: AuthorizationEngine, audit: AuditLogger):
        self._session_factory = session_factory
        self._authz = authz
        self._audit = audit

    # ── Claim ──

    def claim_property(self, principal_id: str, property_id: int) -> Dict[str, Any]:
        """
        Become the first owner of an unclaimed property.

        Raises:
            PPUKNotFoundError: no such property.
            PPUKConflictError: the property already has an owner.
        """
        self._require_actor(principal_id, "claim", property_id)
        session = self._session_factory()
        try:
            prop = self._lock_property(session, property_id)
            if self._owner_count(session, property_id) > 0:
                raise PPUKConflictError(
                    "Property is already claimed",
                    entity_type="property",
                    entity_id=property_id,
                    claimed_by=prop.claimed_by,
                )
            party = PropertyParty(
                property_id=property_id,
                principal_id=principal_id,
                tier="owner",
                is_primary=True,
                assigned_by=principal_id,
            )
            session.add(party)
            previous = prop.claimed_by
            prop.claimed_by = principal_id
            session.flush()
            result = party_to_dict(party)
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise PPUKConflictError(
                "Property claim conflicted with a concurrent change",
                entity_type="property",
                entity_id=property_id,
            ) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        self._authz.invalidate(property_id)
        self._audit.record(
            principal_id, "claim", "property", property_id,
            old_state={"claimed_by": previous},
            new_state={"claimed_by": principal_id},
        )
        logger.info(f"Property {property_id} claimed by {principal_id}")
        return result

    def unclaim_property(self, principal_id: str, property_id: int) -> Dict[str, Any]:
        """
        Drop the caller's owner row. When no owner remains the property is
        released (claimed_by cleared); otherwise claimed_by passes to a
        remaining owner if it pointed at the caller.
        """
        self._require_actor(principal_id, "unclaim", property_id)
        session = self._session_factory()
        try:
            prop = self._lock_property(session, property_id)
            party = session.execute(
                select(PropertyParty).where(
                    PropertyParty.property_id == property_id,
                    PropertyParty.principal_id == principal_id,
                    PropertyParty.tier == "owner",
                )
            ).scalar_one_or_none()
            if party is None:
                raise PPUKNotFoundError(
                    "No owner relationship to release",
                    entity_type="property",
                    entity_id=property_id,
                    principal_id=principal_id,
                )
            previous = prop.claimed_by
            session.delete(party)
            session.flush()
            prop.claimed_by = self._successor(session, property_id, previous, principal_id)
            current = prop.claimed_by
            released = current is None
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        self._authz.invalidate(property_id)
        self._audit.record(
            principal_id, "unclaim", "property", property_id,
            old_state={"claimed_by": previous},
            new_state={"claimed_by": current},
        )
        logger.info(f"Property {property_id} unclaimed by {principal_id} (released={released})")
        return {"property_id": property_id, "released": released}

    # ── Relationship rows ──

    def add_relationship(
        self, actor_id: str, property_id: int, principal_id: str, tier: str
    ) -> Dict[str, Any]:
        """
        Grant *principal_id* a tier on a property.

        Raises:
            PPUKValidationError: unknown tier.
            PPUKNotFoundError: no such property.
            PPUKForbiddenError: actor is not an owner (self-adding interested excepted).
            PPUKConflictError: the (principal, property, tier) row already exists.
        """
        validate_tier(tier)
        self._require_actor(actor_id, "add_relationship", property_id)
        session = self._session_factory()
        try:
            self._authz.get_property(session, property_id)
            candidate = PropertyParty(property_id=property_id, principal_id=principal_id, tier=tier)
            if not (actor_id == principal_id and tier == "interested"):
                self._authz.require_access(actor_id, candidate, CREATE, session=session)

            if self._find(session, property_id, principal_id, tier) is not None:
                raise PPUKConflictError(
                    f"{principal_id} already holds {tier} on property {property_id}",
                    entity_type="relationship",
                    property_id=property_id,
                    principal_id=principal_id,
                    tier=tier,
                )
            candidate.assigned_by = actor_id
            candidate.is_primary = tier == "owner" and self._owner_count(session, property_id) == 0
            session.add(candidate)
            session.flush()
            result = party_to_dict(candidate)
            state = _audit_state(candidate)
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise PPUKConflictError(
                "Duplicate relationship", entity_type="relationship", property_id=property_id,
                principal_id=principal_id, tier=tier,
            ) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        self._authz.invalidate(property_id)
        self._audit.record(actor_id, "create", "relationship", result["id"], new_state=state)
        return result

    def remove_relationship(self, actor_id: str, relationship_id: int) -> Dict[str, Any]:
        """
        Delete a relationship row (owner, or the principal themself).

        Raises:
            PPUKNotFoundError: no such row.
            PPUKForbiddenError: actor is neither an owner nor the row's principal.
            PPUKConflictError: the row is the property's last owner.
        """
        self._require_actor(actor_id, "remove_relationship", None)
        session = self._session_factory()
        try:
            party = session.get(PropertyParty, relationship_id)
            if party is None:
                raise PPUKNotFoundError(
                    "relationship not found", entity_type="relationship", entity_id=relationship_id
                )
            self._authz.require_access(actor_id, party, DELETE, session=session)

            property_id = party.property_id
            prop = self._lock_property(session, property_id)
            # Re-read under the lock; a concurrent removal may have won
            if session.execute(
                select(PropertyParty.id).where(PropertyParty.id == relationship_id)
            ).scalar_one_or_none() is None:
                raise PPUKNotFoundError(
                    "relationship not found", entity_type="relationship", entity_id=relationship_id
                )
            if party.tier == "owner" and self._owner_count(session, property_id) <= 1:
                raise PPUKConflictError(
                    "Cannot remove the last owner; unclaim the property instead",
                    entity_type="relationship",
                    entity_id=relationship_id,
                    property_id=property_id,
                )

            state = _audit_state(party)
            removed = party_to_dict(party)
            session.delete(party)
            session.flush()
            if party.tier == "owner":
                prop.claimed_by = self._successor(
                    session, property_id, prop.claimed_by, party.principal_id
                )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        self._authz.invalidate(property_id)
        self._audit.record(actor_id, "delete", "relationship", relationship_id, old_state=state)
        return removed

    # ── Watchlist ──

    def add_to_watchlist(self, principal_id: str, property_id: int) -> Dict[str, Any]:
        """
        Add the property to the principal's watchlist (an interested row).
        Idempotent for an existing interested row.

        Raises:
            PPUKNotFoundError: no such property.
            PPUKConflictError: the principal already holds a stronger tier.
        """
        self._require_actor(principal_id, "watch", property_id)
        session = self._session_factory()
        try:
            self._authz.get_property(session, property_id)
            existing = list(
                session.execute(
                    select(PropertyParty).where(
                        PropertyParty.property_id == property_id,
                        PropertyParty.principal_id == principal_id,
                    )
                ).scalars()
            )
            for party in existing:
                if party.tier == "interested":
                    return party_to_dict(party)
            if existing:
                raise PPUKConflictError(
                    f"Principal already holds {existing[0].tier} on this property",
                    entity_type="property",
                    entity_id=property_id,
                    principal_id=principal_id,
                )
        finally:
            session.close()

        return self.add_relationship(principal_id, property_id, principal_id, "interested")

    def remove_from_watchlist(self, principal_id: str, property_id: int) -> bool:
        """Remove the principal's interested row. False when there was none."""
        self._require_actor(principal_id, "unwatch", property_id)
        session = self._session_factory()
        try:
            party = self._find(session, property_id, principal_id, "interested")
            if party is None:
                return False
            relationship_id = party.id
            state = _audit_state(party)
            session.delete(party)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        self._authz.invalidate(property_id)
        self._audit.record(principal_id, "delete", "relationship", relationship_id, old_state=state)
        return True

    # ── Reads ──

    def list_relationships(self, actor_id: str, property_id: int) -> List[Dict[str, Any]]:
        """All relationship rows on a property; any tier holder may list them."""
        session = self._session_factory()
        try:
            self._authz.get_property(session, property_id)
            tier = self._authz.resolve_tier(actor_id, property_id, session=session)
            if tier is None:
                raise PPUKForbiddenError(
                    "Only parties to the property may list its relationships",
                    principal_id=actor_id,
                    operation="read",
                    entity_type="property",
                    entity_id=property_id,
                )
            parties = session.execute(
                select(PropertyParty)
                .where(PropertyParty.property_id == property_id)
                .order_by(PropertyParty.created_at, PropertyParty.id)
            ).scalars()
            return [party_to_dict(p) for p in parties]
        finally:
            session.close()

    def properties_for(self, principal_id: str) -> List[Dict[str, Any]]:
        """The principal's own relationship rows across all properties."""
        session = self._session_factory()
        try:
            parties = session.execute(
                select(PropertyParty)
                .where(PropertyParty.principal_id == principal_id)
                .order_by(PropertyParty.property_id, PropertyParty.id)
            ).scalars()
            return [party_to_dict(p) for p in parties]
        finally:
            session.close()

    # ── Internals ──

    @staticmethod
    def _require_actor(actor_id: Optional[str], operation: str, property_id: Optional[int]) -> None:
        if not actor_id:
            raise PPUKForbiddenError(
                "An authenticated principal is required",
                operation=operation,
                entity_type="property",
                entity_id=property_id,
            )

    def _lock_property(self, session: Session, property_id: int) -> Property:
        prop = session.execute(
            select(Property).where(Property.id == property_id).with_for_update()
        ).scalar_one_or_none()
        if prop is None:
            raise PPUKNotFoundError("property not found", entity_type="property", entity_id=property_id)
        return prop

    @staticmethod
    def _owner_count(session: Session, property_id: int) -> int:
        return session.execute(
            select(func.count(PropertyParty.id)).where(
                PropertyParty.property_id == property_id, PropertyParty.tier == "owner"
            )
        ).scalar_one()

    @staticmethod
    def _find(session: Session, property_id: int, principal_id: str, tier: str) -> Optional[PropertyParty]:
        return session.execute(
            select(PropertyParty).where(
                PropertyParty.property_id == property_id,
                PropertyParty.principal_id == principal_id,
                PropertyParty.tier == tier,
            )
        ).scalar_one_or_none()

    @staticmethod
    def _successor(
        session: Session, property_id: int, claimed_by: Optional[str], leaving: str
    ) -> Optional[str]:
        """claimed_by after *leaving* gives up ownership."""
        if claimed_by is not None and claimed_by != leaving:
            return claimed_by
        return session.execute(
            select(PropertyParty.principal_id)
            .where(PropertyParty.property_id == property_id, PropertyParty.tier == "owner")
            .order_by(PropertyParty.created_at, PropertyParty.id)
            .limit(1)
        ).scalar_one_or_none()
