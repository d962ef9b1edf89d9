from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Mapping


CONFIRMED = "confirmed"
POPUP = "popup"

DAY = 86400
WEEK = 604800
MONTH = 2592001
YEAR = 31536000

FLAG_ALL_DAY = 1
REMINDER_SLOTS = 3
REMINDER_OFF = -1

SYNC_TYPE_PREFIX = "google_sync_"
DEFAULT_COLOR_ID = "default"

REQUEST_AUTHORIZATION = 1


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def to_millis(value: datetime | None) -> int:
    if value is None:
        return 0
    return int(_ensure_tz(value).timestamp() * 1000)


@dataclass
class GoogleConfig:
    client_secrets_file: str = "credentials.json"
    token_file: str = "data/token.json"
    calendar_id: str = "primary"
    redirect_uri: str = "http://localhost:8080/api/auth/callback"
    page_size: int = 250

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        return cls(
            client_secrets_file=str(data.get("client_secrets_file", "credentials.json")).strip(),
            token_file=str(data.get("token_file", "data/token.json")).strip() or "data/token.json",
            calendar_id=str(data.get("calendar_id", "primary")).strip() or "primary",
            redirect_uri=str(data.get("redirect_uri", "http://localhost:8080/api/auth/callback")).strip(),
            page_size=min(2500, max(1, int(data.get("page_size", 250)))),
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 900
    timezone: str = "UTC"
    primary_color: str = "#3F51B5"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=max(60, int(data.get("interval_seconds", 900))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            primary_color=str(data.get("primary_color", "#3F51B5")).strip() or "#3F51B5",
        )


@dataclass
class AppConfig:
    google: GoogleConfig = field(default_factory=GoogleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            google=GoogleConfig.from_dict(data.get("google")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass(frozen=True)
class EventDate:
    """All-day boundary: the remote carried a date without a time of day."""

    value: date


@dataclass(frozen=True)
class EventDateTime:
    value: datetime


EventBoundary = EventDate | EventDateTime


def parse_boundary(raw: Any) -> EventBoundary | None:
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise ValueError(f"event boundary must be an object, got {type(raw).__name__}")
    if raw.get("date") is not None:
        return EventDate(date.fromisoformat(str(raw["date"])))
    if raw.get("dateTime") is not None:
        return EventDateTime(parse_iso_datetime(str(raw["dateTime"])))
    raise ValueError("event boundary carries neither 'date' nor 'dateTime'")


@dataclass(frozen=True)
class ReminderOverride:
    method: str
    minutes: int


@dataclass(frozen=True)
class RemoteEventRecord:
    import_id: str
    status: str = ""
    summary: str = ""
    description: str = ""
    start: EventBoundary | None = None
    end: EventBoundary | None = None
    recurrence: tuple[str, ...] = ()
    reminder_overrides: tuple[ReminderOverride, ...] = ()
    color_id: str = DEFAULT_COLOR_ID
    updated_at: datetime | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> "RemoteEventRecord":
        if not isinstance(raw, Mapping):
            raise ValueError(f"event item must be an object, got {type(raw).__name__}")
        status = str(raw.get("status", ""))
        import_id = str(raw.get("iCalUID") or "").strip()
        # Cancelled instances of recurring events may carry only an id.
        if not import_id and status == CONFIRMED:
            raise ValueError(f"event item {raw.get('id', '?')} has no iCalUID")

        reminders = raw.get("reminders") or {}
        if not isinstance(reminders, Mapping):
            raise ValueError("event reminders must be an object")
        overrides = reminders.get("overrides") or []
        parsed_overrides = tuple(
            ReminderOverride(method=str(item.get("method", "")), minutes=int(item["minutes"]))
            for item in overrides
        )

        updated = raw.get("updated")
        return cls(
            import_id=import_id,
            status=status,
            summary=str(raw.get("summary") or ""),
            description=str(raw.get("description") or ""),
            start=parse_boundary(raw.get("start")),
            end=parse_boundary(raw.get("end")),
            recurrence=tuple(str(item) for item in raw.get("recurrence") or []),
            reminder_overrides=parsed_overrides,
            color_id=str(raw.get("colorId") or DEFAULT_COLOR_ID),
            updated_at=parse_iso_datetime(str(updated)) if updated else None,
        )

    @property
    def is_confirmed(self) -> bool:
        return self.status == CONFIRMED

    @property
    def last_update_millis(self) -> int:
        return to_millis(self.updated_at)


@dataclass(frozen=True)
class RepeatRule:
    interval: int = 0
    limit: int = 0
    rule_mask: int = 0


@dataclass(frozen=True)
class NormalizedFields:
    start_ts: int
    end_ts: int
    flags: int
    reminders: tuple[int, int, int]
    repeat_rule: RepeatRule

    @property
    def is_all_day(self) -> bool:
        return bool(self.flags & FLAG_ALL_DAY)


@dataclass
class EventType:
    id: int
    title: str
    color: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class LocalEvent:
    id: int
    start_ts: int
    end_ts: int
    title: str = ""
    description: str = ""
    reminder_1: int = REMINDER_OFF
    reminder_2: int = REMINDER_OFF
    reminder_3: int = REMINDER_OFF
    repeat_interval: int = 0
    import_id: str = ""
    flags: int = 0
    repeat_limit: int = 0
    repeat_rule: int = 0
    event_type_id: int = 0
    last_updated: int = 0

    @property
    def is_all_day(self) -> bool:
        return bool(self.flags & FLAG_ALL_DAY)

    @property
    def reminders(self) -> list[int]:
        return [self.reminder_1, self.reminder_2, self.reminder_3]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SyncFailure:
    kind: str
    message: str
    recovery: dict[str, Any] | None = None

    @property
    def is_recoverable_auth(self) -> bool:
        return self.kind == "recoverable_auth"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "has_recovery": self.recovery is not None}


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    inserted: int
    updated: int
    skipped: int
    trigger: str
    failure: SyncFailure | None = None
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "trigger": self.trigger,
            "failure": self.failure.to_dict() if self.failure else None,
            "run_at": serialize_datetime(self.run_at),
        }
