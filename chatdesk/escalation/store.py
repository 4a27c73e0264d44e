"""
In-process escalation store.

Holds every escalation record behind three lookups (escalation id, workspace
thread, user id). Records are immutable snapshots; each mutation swaps the
record under the owning user's lock so readers never see a half-updated
index set.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from chatdesk.escalation.exceptions import DuplicateActiveEscalation, EscalationNotFound, InvalidTransition
from chatdesk.escalation.models import (
    ALLOWED_TRANSITIONS,
    ChannelAddress,
    Escalation,
    EscalationStatus,
    ThreadRef,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionResult:
    escalation: Escalation
    changed: bool


class EscalationStore:
    def __init__(self, lock_stripes: int = 64) -> None:
        self._by_id: Dict[str, Escalation] = {}
        self._by_thread: Dict[ThreadRef, str] = {}
        self._by_user: Dict[str, str] = {}
        self._stripes = [asyncio.Lock() for _ in range(max(1, lock_stripes))]

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        return self._stripes[hash(user_id) % len(self._stripes)]

    # --- Reads (unlocked) ----------------------------------------------------

    def find_by_escalation_id(self, escalation_id: str) -> Optional[Escalation]:
        return self._by_id.get(escalation_id)

    def find_by_thread(self, thread_ref: ThreadRef) -> Optional[Escalation]:
        escalation_id = self._by_thread.get(thread_ref)
        return self._by_id.get(escalation_id) if escalation_id else None

    def find_active_by_user(self, user_id: str) -> Optional[Escalation]:
        escalation_id = self._by_user.get(user_id)
        if not escalation_id:
            return None
        record = self._by_id.get(escalation_id)
        return record if record and record.is_open else None

    def list_open(self) -> List[Escalation]:
        return [e for e in self._by_id.values() if e.is_open]

    # --- Mutations -----------------------------------------------------------

    async def create(self, user: ChannelAddress, original_message: str = "", language: str = "en") -> Escalation:
        """Create an active escalation; raises DuplicateActiveEscalation if one is open."""
        async with self._lock_for(user.user_id):
            existing = self.find_active_by_user(user.user_id)
            if existing:
                raise DuplicateActiveEscalation(existing)
            return self._insert(user, original_message, language)

    async def get_or_create(
        self, user: ChannelAddress, original_message: str = "", language: str = "en"
    ) -> Tuple[Escalation, bool]:
        """Return the user's open escalation, creating one if none exists."""
        try:
            return await self.create(user, original_message, language), True
        except DuplicateActiveEscalation as e:
            logger.info("Reusing open escalation %s for %s", e.existing.escalation_id, user.user_id)
            return e.existing, False

    async def attach_thread(self, escalation_id: str, thread_ref: ThreadRef) -> Escalation:
        record = self._require(escalation_id)
        async with self._lock_for(record.user_id):
            record = self._require(escalation_id)
            if record.thread_ref and record.thread_ref != thread_ref:
                self._by_thread.pop(record.thread_ref, None)
            updated = record.evolve(thread_ref=thread_ref)
            self._by_id[escalation_id] = updated
            self._by_thread[thread_ref] = escalation_id
            return updated

    async def transition(
        self, escalation_id: str, new_status: EscalationStatus, actor: Optional[str] = None
    ) -> TransitionResult:
        record = self._require(escalation_id)
        async with self._lock_for(record.user_id):
            record = self._require(escalation_id)
            if record.status == new_status:
                return TransitionResult(record, False)
            if new_status not in ALLOWED_TRANSITIONS[record.status]:
                raise InvalidTransition(escalation_id, record.status, new_status)

            changes = {"status": new_status}
            if actor:
                changes["agent"] = actor
            if new_status == EscalationStatus.RESOLVED:
                changes["resolved_at"] = utcnow()
            updated = record.evolve(**changes)
            self._by_id[escalation_id] = updated
            if new_status == EscalationStatus.RESOLVED and self._by_user.get(record.user_id) == escalation_id:
                del self._by_user[record.user_id]

            logger.info(
                "Escalation %s: %s -> %s (actor=%s)", escalation_id, record.status.value, new_status.value, actor
            )
            return TransitionResult(updated, True)

    async def discard(self, escalation_id: str) -> None:
        """Drop a record from every index (used when its notice never got posted)."""
        record = self._by_id.get(escalation_id)
        if not record:
            return
        async with self._lock_for(record.user_id):
            record = self._by_id.pop(escalation_id, None)
            if not record:
                return
            if self._by_user.get(record.user_id) == escalation_id:
                del self._by_user[record.user_id]
            if record.thread_ref and self._by_thread.get(record.thread_ref) == escalation_id:
                del self._by_thread[record.thread_ref]
            logger.warning("Discarded escalation %s for %s", escalation_id, record.user_id)

    # --- Internals -----------------------------------------------------------

    def _insert(self, user: ChannelAddress, original_message: str, language: str) -> Escalation:
        record = Escalation(
            escalation_id=uuid.uuid4().hex,
            user=user,
            original_message=original_message,
            language=language or "en",
        )
        # No await between these writes, so all indices appear together.
        self._by_id[record.escalation_id] = record
        self._by_user[user.user_id] = record.escalation_id
        logger.info("Created escalation %s for %s", record.escalation_id, user.user_id)
        return record

    def _require(self, escalation_id: str) -> Escalation:
        record = self._by_id.get(escalation_id)
        if record is None:
            raise EscalationNotFound(escalation_id)
        return record
