import logging
from typing import Callable, List

from app.core.schemas import SchemaChange

logger = logging.getLogger(__name__)

SchemaChangeListener = Callable[[SchemaChange], None]


class SchemaChangeBus:
    """Publish/subscribe channel scoped to one SchemaStore instance."""

    def __init__(self):
        self._listeners: List[SchemaChangeListener] = []

    def subscribe(self, listener: SchemaChangeListener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unregisters it."""
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: SchemaChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, change: SchemaChange) -> None:
        # Listeners run synchronously, in registration order
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception(
                    f"Schema change listener failed for table {change.table_id}"
                )

    def __len__(self) -> int:
        return len(self._listeners)
