"""
Change event dispatcher.

Invariants:
    - The routing table is immutable once the dispatcher is built
    - The entity kind comes from the new image, or the old one for REMOVE
    - A record nobody handles is logged and skipped, never raised
    - dispatch() returns whether a derived artifact was mutated

How to change safely:
    - Register new handlers in the consumer's routing table
    - Handlers receive their context first and the event last
"""

from __future__ import annotations

import inspect
import logging
from types import MappingProxyType
from typing import Any, Callable, Mapping, Tuple

from ..model import ChangeEvent, EntityKind, MalformedRecordError, Operation

logger = logging.getLogger(__name__)

RouteKey = Tuple[Operation, EntityKind]
Handler = Callable[..., Any]
RoutingTable = Mapping[RouteKey, Handler]


class Dispatcher:
    """Routes change-stream records to handlers.

    Example:
        >>> dispatcher = Dispatcher({
        ...     (Operation.INSERT, EntityKind.LIBRARY): on_new_library,
        ... })
        >>> mutated = await dispatcher.dispatch(record, snapshot)
    """

    def __init__(self, routes: RoutingTable, name: str = "dispatcher") -> None:
        """Initialize the dispatcher.

        Args:
            routes: Mapping (operation, entity kind) -> handler
            name: Consumer name used in log records
        """
        self._routes: Mapping[RouteKey, Handler] = MappingProxyType(dict(routes))
        self.name = name

    @property
    def routes(self) -> Mapping[RouteKey, Handler]:
        """Read-only view of the routing table."""
        return self._routes

    def resolve(self, record: Mapping[str, Any]) -> tuple[ChangeEvent, Handler] | None:
        """Decode a record and find its handler.

        Args:
            record: Raw DynamoDB Stream record

        Returns:
            (event, handler), or None when the record is not handled here
        """
        try:
            event = ChangeEvent.from_record(record)
        except MalformedRecordError as e:
            logger.warning(
                f"Skipping undecodable record: {e}",
                extra={"consumer": self.name, "event_name": record.get("eventName")},
            )
            return None

        if event.entity_kind is None:
            logger.warning(
                f"Unregistered entity type: {event.raw_kind}",
                extra={"consumer": self.name, "operation": event.operation.value},
            )
            return None

        handler = self._routes.get((event.operation, event.entity_kind))
        if handler is None:
            logger.warning(
                "No handler registered for record",
                extra={
                    "consumer": self.name,
                    "operation": event.operation.value,
                    "entity_kind": event.entity_kind.value,
                },
            )
            return None

        return event, handler

    async def dispatch(self, record: Mapping[str, Any], *context: Any) -> bool:
        """Route one record to its handler.

        Args:
            record: Raw DynamoDB Stream record
            *context: Leading arguments passed to the handler

        Returns:
            True if the handler reported a mutation
        """
        resolved = self.resolve(record)
        if resolved is None:
            return False

        event, handler = resolved
        result = handler(*context, event)
        if inspect.isawaitable(result):
            result = await result
        return bool(result)
