"""In-process publish/subscribe for verdicts and recommendations."""
import asyncio
import inspect
from collections import defaultdict
from typing import Any, Callable, Dict, List

from correlation_core.observability import get_logger, metrics

logger = get_logger(__name__)

VERDICT_TOPIC = "verdict"
RECOMMENDATION_TOPIC = "recommendation.created"

Handler = Callable[[Any], Any]


class EventBus:
    """
    Topic-based dispatcher.

    Handlers may be plain callables or coroutine functions. A failing
    handler is logged and does not affect other handlers or the publisher.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        self._handlers[topic].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[topic]:
                self._handlers[topic].remove(handler)

        return unsubscribe

    def handler_count(self, topic: str) -> int:
        return len(self._handlers.get(topic, []))

    async def _call(self, topic: str, handler: Handler, payload: Any) -> None:
        try:
            result = handler(payload)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            metrics.increment("event_bus.handler_errors")
            logger.error(
                f"Handler for {topic} failed",
                extra={
                    "topic": topic,
                    "handler": getattr(handler, "__name__", repr(handler)),
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
                exc_info=True,
            )

    async def publish(self, topic: str, payload: Any) -> None:
        """Deliver ``payload`` to every handler of ``topic`` concurrently."""
        handlers = list(self._handlers.get(topic, []))
        if not handlers:
            return
        await asyncio.gather(*(self._call(topic, h, payload) for h in handlers))
