"""Shared wiring for session-scoped services."""

from __future__ import annotations

from typing import Any, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from peso_payroll.actors import Actor
from peso_payroll.clock import Clock, SystemClock
from peso_payroll.config import Settings, get_settings
from peso_payroll.errors import EntityNotFoundError
from peso_payroll.events import DomainEvent, EventEmitter, EventMetadata
from peso_payroll.services.audit_service import AuditService

E = TypeVar("E", bound=DomainEvent)
M = TypeVar("M")


class ServiceBase:
    """Holds the session, clock, settings, event emitter and audit writer.

    Services never commit; the caller owns the transaction. The one exception
    is the failure log of an aborted calculation run.
    """

    source_service = "payroll"

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock | None = None,
        settings: Settings | None = None,
        emitter: EventEmitter | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock(self.settings.timezone)
        self.emitter = emitter or EventEmitter()
        self.audit = AuditService(session, clock=self.clock, settings=self.settings)

    async def _get(self, model: type[M], entity_id: Any) -> M:
        entity = await self.session.get(model, entity_id)
        if entity is None:
            raise EntityNotFoundError(model.__name__, entity_id)
        return entity

    def _emit(self, event_cls: type[E], actor: Actor | None = None, **payload: Any) -> E:
        metadata = EventMetadata.create(
            timestamp=self.clock.now(),
            actor_id=actor.user_id if actor else None,
            actor_type=actor.actor_type if actor else "system",
            source_service=self.source_service,
        )
        event = event_cls(metadata=metadata, **payload)
        self.emitter.emit(event)
        return event
