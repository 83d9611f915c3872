"""
Subject registry.

Records which certification types each employee is required to hold.
Requirements are append-only and timestamped, so the required set can be
reconstructed as of any past instant.
"""

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from . import db
from .catalog import CertificationCatalog, default_catalog
from .errors import ConflictError, NotFoundError, ValidationError
from .ledger import EventLedger
from .models import Actor, EntityType, EventType
from .util import format_ts, utc_now

logger = logging.getLogger(__name__)


class SubjectRegistry:

    def __init__(
        self,
        catalog: Optional[CertificationCatalog] = None,
        ledger: Optional[EventLedger] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.catalog = catalog if catalog is not None else default_catalog()
        self.ledger = ledger or EventLedger(clock=clock)
        self._clock = clock

    def _validated_types(self, type_ids: Iterable[str]) -> List[str]:
        if isinstance(type_ids, str):
            raise ValidationError("required_types", "must be a list of type ids")
        seen: List[str] = []
        for type_id in type_ids or []:
            self.catalog.require(type_id)
            if type_id not in seen:
                seen.append(type_id)
        return seen

    def register_subject(self, subject_id: str, required_type_ids: Iterable[str], actor: Actor) -> List[str]:
        """Create a subject with its initial required types."""
        if not subject_id or not str(subject_id).strip():
            raise ValidationError("subject_id", "cannot be empty")
        if not isinstance(actor, Actor):
            raise ValidationError("actor", "a resolved actor is required")
        types = self._validated_types(required_type_ids)
        now = format_ts(self._clock())

        with db.transaction():
            if not db.insert_subject(subject_id, now, actor.actor_id):
                raise ConflictError(subject_id, message=f"subject {subject_id} is already registered")
            for type_id in types:
                db.insert_requirement(subject_id, type_id, now, actor.actor_id)
            node = self.ledger.ensure_node(EntityType.EMPLOYEE, subject_id)
            self.ledger.append(
                node.id,
                EventType.SUBJECT_REGISTERED,
                {"subject_id": subject_id, "required_types": types},
                actor,
            )

        logger.info("Registered subject %s with %d required types", subject_id, len(types))
        return types

    def require_types(self, subject_id: str, type_ids: Iterable[str], actor: Actor) -> List[str]:
        """Add required types. Returns only the types that were not already required."""
        if not isinstance(actor, Actor):
            raise ValidationError("actor", "a resolved actor is required")
        types = self._validated_types(type_ids)
        now = format_ts(self._clock())

        with db.transaction():
            if not db.is_registered(subject_id):
                raise NotFoundError("subject", subject_id)
            added = [t for t in types if db.insert_requirement(subject_id, t, now, actor.actor_id)]
            if added:
                node = self.ledger.ensure_node(EntityType.EMPLOYEE, subject_id)
                self.ledger.append(
                    node.id,
                    EventType.REQUIREMENTS_ADDED,
                    {"subject_id": subject_id, "added_types": added},
                    actor,
                )

        if added:
            logger.info("Added requirements %s to subject %s", ", ".join(added), subject_id)
        return added

    def subject_exists(self, subject_id: str) -> bool:
        return db.subject_exists(subject_id)
