"""In-process delivery of invoice change events."""

from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from revledger.services.revenue.events import InvoiceChangeEvent

logger = structlog.get_logger()

EventHandler = Callable[[InvoiceChangeEvent], Awaitable[Any]]


class InvoiceEventDispatcher:
    """Fan a published event out to every subscribed handler, in order.

    For applications that write invoices in the same process: they build one
    dispatcher, subscribe ``RevenueSyncService.process_invoice_change`` and
    publish after each invoice write. The HTTP service calls the sync service
    directly because it needs the ``SyncResult``.

    A handler that raises is logged and skipped; the remaining handlers still
    run and the publisher never sees the error.
    """

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    async def publish(self, event: InvoiceChangeEvent) -> int:
        """Deliver ``event``; returns the number of handlers that succeeded."""
        delivered = 0
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "invoice_event_handler_failed",
                    event_id=event.event_id,
                    invoice_id=event.invoice_id,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                )
                continue
            delivered += 1
        return delivered
