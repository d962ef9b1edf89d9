from __future__ import annotations

from typing import Callable

from calimport.models import LocalEvent, RemoteEventRecord

EventLookup = Callable[[str], LocalEvent | None]


def should_accept(
    remote: RemoteEventRecord,
    known_import_ids: set[str],
    lookup: EventLookup,
) -> bool:
    """Decide whether a remote record is written to the local store.

    Non-confirmed records are never accepted. A record whose import id is
    already known is accepted only when it is strictly newer than the stored
    copy. Accepted ids are added to ``known_import_ids`` right away so a
    repeated id later in the run is compared against the fresh row.
    """
    if not remote.is_confirmed:
        return False

    last_update = remote.last_update_millis
    if remote.import_id in known_import_ids:
        existing = lookup(remote.import_id)
        if existing is not None and existing.last_updated >= last_update:
            return False

    known_import_ids.add(remote.import_id)
    return True
