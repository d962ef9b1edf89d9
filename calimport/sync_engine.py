from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Mapping

from calimport.config_manager import ConfigManager, resolve_timezone
from calimport.event_types import resolve_event_type_id
from calimport.google_client import GoogleCalendarClient, RecoverableAuthError
from calimport.models import (
    REQUEST_AUTHORIZATION,
    EventType,
    LocalEvent,
    NormalizedFields,
    RemoteEventRecord,
    SyncFailure,
    SyncResult,
)
from calimport.normalizer import normalize
from calimport.pager import EventsPager, page_items
from calimport.reconciler import should_accept
from calimport.state_store import StateStore

logger = logging.getLogger(__name__)

ReauthHandoff = Callable[[dict[str, Any], int], None]

STATE_IDLE = "idle"
STATE_RUNNING = "running"
STATE_COMPLETED = "completed"
STATE_CANCELLED = "cancelled"


@dataclass
class _SyncRun:
    run_id: int
    trigger: str
    started_at: datetime
    event_types: list[EventType] = field(default_factory=list)
    known_import_ids: set[str] = field(default_factory=set)
    pages: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0

    def duration_ms(self) -> int:
        return int((datetime.now(timezone.utc) - self.started_at).total_seconds() * 1000)


def classify_failure(exc: BaseException) -> SyncFailure:
    if isinstance(exc, RecoverableAuthError):
        return SyncFailure(kind="recoverable_auth", message=str(exc), recovery=dict(exc.recovery))
    return SyncFailure(kind="failure", message=f"{type(exc).__name__}: {exc}")


def build_local_event(remote: RemoteEventRecord, fields: NormalizedFields, event_type_id: int) -> LocalEvent:
    reminder_1, reminder_2, reminder_3 = fields.reminders
    return LocalEvent(
        id=0,
        start_ts=fields.start_ts,
        end_ts=fields.end_ts,
        title=remote.summary,
        description=remote.description,
        reminder_1=reminder_1,
        reminder_2=reminder_2,
        reminder_3=reminder_3,
        repeat_interval=fields.repeat_rule.interval,
        import_id=remote.import_id,
        flags=fields.flags,
        repeat_limit=fields.repeat_rule.limit,
        repeat_rule=fields.repeat_rule.rule_mask,
        event_type_id=event_type_id,
        last_updated=remote.last_update_millis,
    )


class SyncEngine:
    """Full poll-based import of the configured Google Calendar feed.

    One ``run_once`` call walks every page of the feed and writes accepted
    events to the store. Runs are not guarded against each other; the
    scheduler serializes them.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        reauth_handoff: ReauthHandoff | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.reauth_handoff = reauth_handoff
        self.state = STATE_IDLE
        self.last_failure: SyncFailure | None = None

    def _process_page(self, run: _SyncRun, page: Mapping[str, Any], tz: tzinfo, primary_color: str) -> None:
        # A malformed item fails the whole page before anything is committed from it.
        records = [RemoteEventRecord.from_dict(item) for item in page_items(page)]
        run.pages += 1
        for remote in records:
            was_known = remote.import_id in run.known_import_ids
            if not should_accept(remote, run.known_import_ids, self.state_store.get_event_by_import_id):
                run.skipped += 1
                continue

            fields = normalize(remote, tz)
            event_type_id = resolve_event_type_id(remote.color_id, run.event_types, primary_color, self.state_store)
            local_id = self.state_store.insert_event(build_local_event(remote, fields, event_type_id))
            if was_known:
                run.updated += 1
            else:
                run.inserted += 1
            self.state_store.record_audit_event(
                run_id=run.run_id,
                import_id=remote.import_id,
                action="update_event" if was_known else "insert_event",
                details={
                    "trigger": run.trigger,
                    "local_id": local_id,
                    "title": remote.summary,
                    "event_type_id": event_type_id,
                    "all_day": fields.is_all_day,
                },
            )

    def run_once(self, trigger: str = "manual") -> SyncResult:
        started_at = datetime.now(timezone.utc)
        self.state = STATE_RUNNING
        self.last_failure = None
        run = _SyncRun(
            run_id=self.state_store.start_sync_run(trigger=trigger),
            trigger=trigger,
            started_at=started_at,
        )
        logger.info("Sync run %d started (trigger=%s)", run.run_id, trigger)

        try:
            config = self.config_manager.load()
            tz = resolve_timezone(config.sync.timezone)
            run.event_types = self.state_store.list_event_types()
            run.known_import_ids = self.state_store.list_import_ids()
            client = GoogleCalendarClient(config.google)
            pager = EventsPager(client, config.google.calendar_id)
            for page in pager.fetch_all():
                self._process_page(run, page, tz, config.sync.primary_color)
        except Exception as exc:
            failure = classify_failure(exc)
            self.state_store.record_audit_event(
                run_id=run.run_id,
                import_id="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "kind": failure.kind,
                    "error": failure.message,
                    "traceback": traceback.format_exc(limit=5),
                },
            )
            return self._cancel(run, failure)

        self.state = STATE_COMPLETED
        duration_ms = run.duration_ms()
        message = (
            f"Processed {run.pages} pages: {run.inserted} inserted, "
            f"{run.updated} updated, {run.skipped} skipped."
        )
        self.state_store.finish_sync_run(
            run_id=run.run_id,
            status=STATE_COMPLETED,
            message=message,
            duration_ms=duration_ms,
            inserted=run.inserted,
            updated=run.updated,
            skipped=run.skipped,
        )
        logger.info("Sync run %d completed. %s", run.run_id, message)
        return SyncResult(
            status=STATE_COMPLETED,
            message=f"{message} run_id={run.run_id}",
            duration_ms=duration_ms,
            inserted=run.inserted,
            updated=run.updated,
            skipped=run.skipped,
            trigger=trigger,
        )

    def _cancel(self, run: _SyncRun, failure: SyncFailure) -> SyncResult:
        self.state = STATE_CANCELLED
        self.last_failure = failure
        duration_ms = run.duration_ms()
        self.state_store.finish_sync_run(
            run_id=run.run_id,
            status=STATE_CANCELLED,
            message=failure.message,
            duration_ms=duration_ms,
            inserted=run.inserted,
            updated=run.updated,
            skipped=run.skipped,
        )

        if failure.is_recoverable_auth:
            logger.warning("Sync run %d needs reauthorization: %s", run.run_id, failure.message)
            self._hand_off(failure)
        else:
            logger.error("Sync run %d failed: %s", run.run_id, failure.message)

        return SyncResult(
            status=STATE_CANCELLED,
            message=failure.message,
            duration_ms=duration_ms,
            inserted=run.inserted,
            updated=run.updated,
            skipped=run.skipped,
            trigger=run.trigger,
            failure=failure,
        )

    def _hand_off(self, failure: SyncFailure) -> None:
        if self.reauth_handoff is None or failure.recovery is None:
            return
        try:
            self.reauth_handoff(failure.recovery, REQUEST_AUTHORIZATION)
        except Exception:
            logger.exception("Reauthorization handoff failed")
