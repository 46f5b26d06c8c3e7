import logging
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

from .events import EntityClass, EntityEvent, EntityEventType

logger = logging.getLogger(__name__)

EntityListener = Callable[[EntityEvent], None]


class EntityEventBus:
    """
    In-process publish/subscribe registry for entity changes.

    Listeners are keyed by (event type, entity class). Emitting an event calls
    the listeners registered for that exact type first, then the ones
    registered for ``EntityEventType.ANY``, each group in registration order.
    """

    def __init__(self):
        self._listeners: Dict[Tuple[EntityEventType, EntityClass], List[EntityListener]] = {
            (event_type, cls): []
            for event_type in EntityEventType
            for cls in EntityClass
        }
        self._lock = Lock()

    def add_listener(self, event_type: EntityEventType, cls: EntityClass, callback: EntityListener):
        with self._lock:
            self._listeners[(EntityEventType(event_type), EntityClass(cls))].append(callback)

    def remove_listener(self, event_type: EntityEventType, cls: EntityClass, callback: EntityListener) -> bool:
        key = (EntityEventType(event_type), EntityClass(cls))
        with self._lock:
            listeners = self._listeners[key]
            if callback in listeners:
                listeners.remove(callback)
                return True
        return False

    def listener_count(self, event_type: EntityEventType = None, cls: EntityClass = None) -> int:
        with self._lock:
            return sum(
                len(listeners)
                for (t, c), listeners in self._listeners.items()
                if (event_type is None or t == event_type) and (cls is None or c == cls)
            )

    def emit(
        self,
        event_type: EntityEventType,
        cls: EntityClass,
        entity: dict,
        previous: Optional[dict] = None
    ) -> EntityEvent:
        event_type = EntityEventType(event_type)
        if event_type == EntityEventType.ANY:
            raise ValueError("Cannot emit an event of type 'any'")

        event = EntityEvent(type=event_type, entity_class=EntityClass(cls), entity=entity, previous=previous)

        with self._lock:
            callbacks = list(self._listeners[(event_type, event.entity_class)])
            callbacks += self._listeners[(EntityEventType.ANY, event.entity_class)]

        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Listener failed on {event_type.value} {event.entity_class.value}")

        return event
