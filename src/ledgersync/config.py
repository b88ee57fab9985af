"""ledgersync configuration loading and validation.

Reads ``ledgersync.toml``, resolves ``${VAR}`` environment references, and
returns a validated :class:`LedgerSyncConfig`.
"""

from __future__ import annotations

import dataclasses
import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ledgersync.engine import EngineSettings
from ledgersync.http import RetryPolicy
from ledgersync.ledger import AirtableFieldMap
from ledgersync.normalize import normalize_key

DEFAULT_CONFIG_FILE = "ledgersync.toml"
CONFIG_PATH_ENV = "LEDGERSYNC_CONFIG"

# Matches ${VAR_NAME} with alphanumeric and underscore names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_OPTIONAL_FIELDS = frozenset(
    {"attendee_email", "calendar_link", "last_updated", "lease_owner", "lease_expires_at"}
)


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class RetryConfig:
    backoff_seconds: float = 10.0
    max_retries: int = 3

    def policy(self) -> RetryPolicy:
        return RetryPolicy(backoff_seconds=self.backoff_seconds, max_retries=self.max_retries)


@dataclass
class SyncConfig:
    """Engine behaviour from the [sync] section."""

    settle_delay_seconds: float = 6.0
    record_delay_seconds: float = 12.0
    match_window_minutes: float = 5.0
    timezone: str = "America/Toronto"
    track_description: bool = True
    lease_ttl_seconds: float = 600.0
    upcoming_only: bool = True
    retry: RetryConfig = field(default_factory=RetryConfig)

    def engine_settings(self) -> EngineSettings:
        return EngineSettings(
            settle_delay=self.settle_delay_seconds,
            record_delay=self.record_delay_seconds,
            match_window=timedelta(minutes=self.match_window_minutes),
            timezone=self.timezone,
            track_description=self.track_description,
            lease_ttl=timedelta(seconds=self.lease_ttl_seconds),
        )


@dataclass
class ScheduleConfig:
    """Periodic driver settings from the [schedule] section.

    Ticks fire every ``interval_minutes`` on clock boundaries while the local
    hour (in the sync time zone) is within ``[active_start_hour, active_end_hour]``.
    """

    interval_minutes: int = 5
    active_start_hour: int = 7
    active_end_hour: int = 17
    full_sync: bool = False
    dedupe: bool = True


@dataclass
class GoogleConfig:
    """Google credentials: either a static access token or a refresh-token triple."""

    access_token: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    refresh_token: str | None = None

    @property
    def uses_refresh_token(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)


@dataclass
class AirtableConfig:
    base_id: str
    table: str
    token: str
    fields: AirtableFieldMap = field(default_factory=AirtableFieldMap)


@dataclass
class CalendarTarget:
    """One ``[[calendars]]`` entry binding a ledger calendar key to a calendar id."""

    name: str
    calendar_id: str
    key: str

    @property
    def normalized_key(self) -> str:
        return normalize_key(self.key)


@dataclass
class LedgerSyncConfig:
    airtable: AirtableConfig
    google: GoogleConfig
    calendars: list[CalendarTarget]
    sync: SyncConfig = field(default_factory=SyncConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def calendar(self, name: str) -> CalendarTarget:
        for target in self.calendars:
            if target.name == name or target.normalized_key == normalize_key(name):
                return target
        raise ConfigError(f"Unknown calendar: {name!r}")


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    if isinstance(value, str):
        return _resolve_string(value)
    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    The original value is not echoed back since it may embed a secret.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)
    if missing:
        raise ConfigError(f"Unresolved environment variable(s) in config: {', '.join(missing)}")
    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return value


def _required_str(section: dict[str, Any], key: str, path: str) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Missing required field: {path}.{key}")
    return value.strip()


def _optional_str(section: dict[str, Any], key: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string when set")
    return value.strip() or None


def _number(section: dict[str, Any], key: str, default: float, path: str) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Expected a number.")
    if value < 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be non-negative.")
    return float(value)


def _bool(section: dict[str, Any], key: str, default: bool, path: str) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Expected true or false.")
    return value


def _parse_sync(data: dict[str, Any]) -> SyncConfig:
    section = _section(data, "sync")
    retry_section = section.get("retry", {})
    if not isinstance(retry_section, dict):
        raise ConfigError("[sync.retry] must be a TOML table")

    timezone = str(section.get("timezone", SyncConfig.timezone)).strip()
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Invalid sync.timezone: {timezone!r}") from exc

    lease_ttl = _number(section, "lease_ttl_seconds", SyncConfig.lease_ttl_seconds, "sync")
    if lease_ttl <= 0:
        raise ConfigError("Invalid sync.lease_ttl_seconds: must be positive.")

    max_retries = _number(retry_section, "max_retries", RetryConfig.max_retries, "sync.retry")
    return SyncConfig(
        settle_delay_seconds=_number(
            section, "settle_delay_seconds", SyncConfig.settle_delay_seconds, "sync"
        ),
        record_delay_seconds=_number(
            section, "record_delay_seconds", SyncConfig.record_delay_seconds, "sync"
        ),
        match_window_minutes=_number(
            section, "match_window_minutes", SyncConfig.match_window_minutes, "sync"
        ),
        timezone=timezone,
        track_description=_bool(
            section, "track_description", SyncConfig.track_description, "sync"
        ),
        lease_ttl_seconds=lease_ttl,
        upcoming_only=_bool(section, "upcoming_only", SyncConfig.upcoming_only, "sync"),
        retry=RetryConfig(
            backoff_seconds=_number(
                retry_section, "backoff_seconds", RetryConfig.backoff_seconds, "sync.retry"
            ),
            max_retries=int(max_retries),
        ),
    )


def _parse_schedule(data: dict[str, Any]) -> ScheduleConfig:
    section = _section(data, "schedule")
    interval = section.get("interval_minutes", ScheduleConfig.interval_minutes)
    if isinstance(interval, bool) or not isinstance(interval, int) or not 1 <= interval <= 60:
        raise ConfigError(
            f"Invalid schedule.interval_minutes: {interval!r}. Must be an integer from 1 to 60."
        )
    start = section.get("active_start_hour", ScheduleConfig.active_start_hour)
    end = section.get("active_end_hour", ScheduleConfig.active_end_hour)
    for key, hour in (("active_start_hour", start), ("active_end_hour", end)):
        if isinstance(hour, bool) or not isinstance(hour, int) or not 0 <= hour <= 23:
            raise ConfigError(f"Invalid schedule.{key}: {hour!r}. Must be an hour from 0 to 23.")
    if start > end:
        raise ConfigError("schedule.active_start_hour must not be after schedule.active_end_hour")
    return ScheduleConfig(
        interval_minutes=interval,
        active_start_hour=start,
        active_end_hour=end,
        full_sync=_bool(section, "full_sync", ScheduleConfig.full_sync, "schedule"),
        dedupe=_bool(section, "dedupe", ScheduleConfig.dedupe, "schedule"),
    )


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(
        level=str(section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=_optional_str(section, "log_root"),
    )


def _parse_google(data: dict[str, Any]) -> GoogleConfig:
    section = _section(data, "google")
    google = GoogleConfig(
        access_token=_optional_str(section, "access_token"),
        client_id=_optional_str(section, "client_id"),
        client_secret=_optional_str(section, "client_secret"),
        refresh_token=_optional_str(section, "refresh_token"),
    )
    if not google.access_token and not google.uses_refresh_token:
        raise ConfigError(
            "[google] needs access_token, or client_id, client_secret and refresh_token"
        )
    return google


def _parse_field_map(section: dict[str, Any]) -> AirtableFieldMap:
    raw_fields = section.get("fields", {})
    raw_annotations = section.get("annotations", {})
    if not isinstance(raw_fields, dict) or not isinstance(raw_annotations, dict):
        raise ConfigError("[airtable.fields] and [airtable.annotations] must be TOML tables")

    known = {f.name for f in dataclasses.fields(AirtableFieldMap)} - {"annotations"}
    overrides: dict[str, Any] = {}
    for key, value in raw_fields.items():
        if key not in known:
            raise ConfigError(f"Unknown airtable.fields entry: {key!r}")
        if key == "address":
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ConfigError("airtable.fields.address must be a list of column names")
            overrides[key] = tuple(v.strip() for v in value if v.strip())
            continue
        if not isinstance(value, str):
            raise ConfigError(f"airtable.fields.{key} must be a string")
        normalized = value.strip()
        if not normalized and key not in _OPTIONAL_FIELDS:
            raise ConfigError(f"airtable.fields.{key} must be a non-empty column name")
        overrides[key] = normalized or None

    annotations: dict[str, str] = {}
    for label, column in raw_annotations.items():
        if not isinstance(column, str) or not column.strip():
            raise ConfigError(f"airtable.annotations.{label} must be a non-empty column name")
        annotations[str(label)] = column.strip()

    return AirtableFieldMap(**overrides, annotations=annotations)


def _parse_airtable(data: dict[str, Any]) -> AirtableConfig:
    section = data.get("airtable")
    if not isinstance(section, dict):
        raise ConfigError("Missing [airtable] section in config")
    return AirtableConfig(
        base_id=_required_str(section, "base_id", "airtable"),
        table=_required_str(section, "table", "airtable"),
        token=_required_str(section, "token", "airtable"),
        fields=_parse_field_map(section),
    )


def _parse_calendars(data: dict[str, Any]) -> list[CalendarTarget]:
    entries = data.get("calendars")
    if not isinstance(entries, list) or not entries:
        raise ConfigError("At least one [[calendars]] entry is required")

    targets: list[CalendarTarget] = []
    seen: set[str] = set()
    for index, entry in enumerate(entries):
        path = f"calendars[{index}]"
        if not isinstance(entry, dict):
            raise ConfigError(f"{path} must be a TOML table")
        name = _required_str(entry, "name", path)
        calendar_id = _required_str(entry, "calendar_id", path)
        key = _optional_str(entry, "key") or name
        normalized = normalize_key(key)
        if normalized in seen:
            raise ConfigError(f"Duplicate calendar key in {path}: {key!r}")
        seen.add(normalized)
        targets.append(CalendarTarget(name=name, calendar_id=calendar_id, key=key))
    return targets


def default_config_path() -> Path:
    return Path(os.environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_FILE))


def load_config(path: Path | None = None) -> LedgerSyncConfig:
    """Load and validate a ledgersync TOML file.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = Path(path) if path is not None else default_config_path()
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    return LedgerSyncConfig(
        airtable=_parse_airtable(data),
        google=_parse_google(data),
        calendars=_parse_calendars(data),
        sync=_parse_sync(data),
        schedule=_parse_schedule(data),
        logging=_parse_logging(data),
    )
