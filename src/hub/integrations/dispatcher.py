"""Outbound event hook dispatcher.

Routes each domain event to every active connection whose integration has a
hook. Deliveries run concurrently and in isolation: one connection failing,
raising, or hanging never affects another's outcome.

After each delivery:
- success with an external id on post.created -> external link saved
- non-retryable failure -> last_error and error_count recorded; the connection
  is flagged (status=error) at once for credential or configuration errors,
  otherwise after failure_threshold consecutive failures
- success after earlier failures -> failure count reset
- retryable failure -> handed to the retry queue when one is configured
"""

from __future__ import annotations

import asyncio
import time

import structlog

from src.hub.core.encryption import SecretsCodec
from src.hub.core.monitoring import hook_deliveries_total, hook_delivery_duration_seconds
from src.hub.integrations.events import DomainEvent, EventType
from src.hub.integrations.hook_utils import failure_from_exception
from src.hub.integrations.registry import IntegrationRegistry
from src.hub.integrations.repository import IntegrationRepository
from src.hub.integrations.retry_queue import HookRetryQueue
from src.hub.integrations.schemas import DispatchOutcome, HookResult, IntegrationConnection

logger = structlog.get_logger(__name__)


class HookDispatcher:
    """Delivers domain events to connected integrations.

    Args:
        registry: Integration definitions.
        repository: Connection persistence.
        codec: Secrets codec used to decrypt connection secrets per call.
        retry_queue: Optional hand-off for retryable failures.
        failure_threshold: Consecutive non-retryable failures before a
            connection is flagged.
    """

    def __init__(
        self,
        registry: IntegrationRegistry,
        repository: IntegrationRepository,
        codec: SecretsCodec,
        retry_queue: HookRetryQueue | None = None,
        failure_threshold: int = 50,
    ) -> None:
        self._registry = registry
        self._repository = repository
        self._codec = codec
        self._retry_queue = retry_queue
        self._failure_threshold = failure_threshold
        self._background_tasks: set[asyncio.Task] = set()

    async def dispatch(self, event: DomainEvent) -> list[DispatchOutcome]:
        """Deliver an event to every active hooked connection.

        Returns:
            One outcome per connection, in connection order.
        """
        hooked_types = self._registry.list_types_with_hooks()
        connections = await self._repository.list_active_connections(hooked_types)
        if not connections:
            logger.debug("hook.no_targets", event_type=event.type.value, event_id=event.id)
            return []

        outcomes = await asyncio.gather(
            *(self._deliver(event, connection) for connection in connections)
        )
        logger.info(
            "hook.dispatched",
            event_type=event.type.value,
            event_id=event.id,
            targets=len(outcomes),
            failed=sum(1 for o in outcomes if not o.result.success),
        )
        return list(outcomes)

    def dispatch_in_background(self, event: DomainEvent) -> asyncio.Task:
        """Schedule dispatch without awaiting it.

        The task is referenced until done so it is not garbage collected
        mid-flight.
        """
        task = asyncio.create_task(self._dispatch_logged(event))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight background dispatches (used on shutdown)."""
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

    async def _dispatch_logged(self, event: DomainEvent) -> list[DispatchOutcome]:
        try:
            return await self.dispatch(event)
        except Exception:
            logger.exception("hook.dispatch_failed", event_type=event.type.value, event_id=event.id)
            return []

    async def _deliver(self, event: DomainEvent, connection: IntegrationConnection) -> DispatchOutcome:
        integration_type = connection.integration_type
        definition = self._registry.get(integration_type)
        if definition is None or definition.hook is None:
            return self._skipped(event, connection)

        allowed_events = connection.config.get("events")
        if allowed_events and event.type.value not in allowed_events:
            return self._skipped(event, connection)

        start_time = time.perf_counter()
        try:
            secrets = self._codec.decrypt(connection.secrets)
            result = await definition.hook.run(event, connection.config, secrets)
        except Exception as exc:
            logger.warning(
                "hook.raised",
                integration_type=integration_type,
                event_id=event.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            result = failure_from_exception(exc)
        finally:
            hook_delivery_duration_seconds.labels(integration_type=integration_type).observe(
                time.perf_counter() - start_time
            )

        await self._record(event, connection, result)
        return DispatchOutcome(
            integration_type=integration_type,
            connection_id=connection.id,
            result=result,
        )

    def _skipped(self, event: DomainEvent, connection: IntegrationConnection) -> DispatchOutcome:
        hook_deliveries_total.labels(
            integration_type=connection.integration_type,
            event_type=event.type.value,
            outcome="skipped",
        ).inc()
        return DispatchOutcome(
            integration_type=connection.integration_type,
            connection_id=connection.id,
            result=HookResult(success=True),
            skipped=True,
        )

    async def _record(self, event: DomainEvent, connection: IntegrationConnection, result: HookResult) -> None:
        integration_type = connection.integration_type
        if result.success:
            outcome = "success"
        elif result.should_retry:
            outcome = "retry"
        else:
            outcome = "failed"
        hook_deliveries_total.labels(
            integration_type=integration_type,
            event_type=event.type.value,
            outcome=outcome,
        ).inc()

        try:
            if result.success:
                if result.external_id and event.type is EventType.POST_CREATED:
                    await self._repository.save_external_link(
                        event.data.post.id,
                        integration_type,
                        result.external_id,
                        result.external_url,
                    )
                if connection.error_count:
                    await self._repository.clear_connection_errors(connection.id)
                return

            logger.warning(
                "hook.delivery_failed",
                integration_type=integration_type,
                event_type=event.type.value,
                event_id=event.id,
                error=result.error,
                should_retry=bool(result.should_retry),
            )
            if result.should_retry:
                if self._retry_queue is not None:
                    await self._retry_queue.enqueue(event, integration_type, connection.id, result.error)
            else:
                threshold = 1 if result.connection_error else self._failure_threshold
                await self._repository.mark_connection_error(
                    connection.id, result.error or "Unknown error", threshold
                )
        except Exception:
            logger.exception(
                "hook.record_failed",
                integration_type=integration_type,
                event_id=event.id,
            )
