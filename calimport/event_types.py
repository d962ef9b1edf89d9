from __future__ import annotations

import logging
from typing import Protocol

from calimport.models import SYNC_TYPE_PREFIX, EventType

logger = logging.getLogger(__name__)


class EventTypeStore(Protocol):
    def insert_event_type(self, event_type: EventType) -> int: ...


def sync_type_title(color_id: str) -> str:
    return f"{SYNC_TYPE_PREFIX}{color_id}"


def resolve_event_type_id(
    color_id: str,
    cache: list[EventType],
    default_color: str,
    store: EventTypeStore,
) -> int:
    """Return the id of the ``google_sync_<color_id>`` event type, creating it once.

    ``cache`` must be seeded with every stored event type; a newly created type
    is appended to it with its assigned id.
    """
    title = sync_type_title(color_id)
    wanted = title.casefold()
    for event_type in cache:
        if event_type.title.casefold() == wanted:
            return event_type.id

    created = EventType(id=0, title=title, color=default_color)
    created.id = store.insert_event_type(created)
    cache.append(created)
    logger.info("Created event type %s (id=%d)", title, created.id)
    return created.id
