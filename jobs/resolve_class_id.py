"""
Fill in the MTEK class session id for Airtable rows that carry a room and a start time.

The date field is interpreted with TIMESTAMP_POLICY: "local" treats the
value as studio wall-clock time labelled UTC and converts it; "utc" trusts
it as is. When the exact-instant lookup finds nothing and
CLASS_MATCH_WINDOW_MINUTES is positive, sessions within that many minutes
are searched and the closest one is used.
"""
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional

from clients.airtable_client import AirtableClient
from clients.mtek_client import MarianaTekClient
from config import DEFAULT_TIMEZONE, ApiConfig, ConfigError, get_env, get_int_env, require_env
from jobs.base import RECORD_ERRORS, make_airtable, make_mtek, run_job
from processor.models import JobResult
from processor.timezones import (
    DateParseError,
    TimestampPolicy,
    format_utc_z,
    parse_iso_datetime,
    pick_nearest,
    resolve_timestamp,
)

logger = logging.getLogger(__name__)

JOB_NAME = "resolve_class_id"
FAIL_ON_RECORD_ERRORS = True


@dataclass(frozen=True)
class ResolveClassIdConfig:
    api: ApiConfig
    table_name: str
    view_name: str
    field_room: str
    field_date: str
    field_class_id: str
    max_records: int = 500
    record_id: str = ""
    timezone: str = DEFAULT_TIMEZONE
    policy: TimestampPolicy = TimestampPolicy.LOCAL
    match_window_minutes: int = 0

    @classmethod
    def from_env(cls, environ: Mapping[str, str], argv: Optional[List[str]] = None) -> "ResolveClassIdConfig":
        """
        Args:
            environ: Environment mapping
            argv: Optional positional arguments; the first one restricts the
                run to a single record id (same as DISPATCH_RECORD_ID)
        """
        api = ApiConfig.from_env(environ)
        try:
            policy = TimestampPolicy.parse(get_env(environ, "TIMESTAMP_POLICY", "local"))
        except ValueError as e:
            raise ConfigError(str(e)) from None
        record_id = (argv[0] if argv else "") or get_env(environ, "DISPATCH_RECORD_ID")
        return cls(
            api=api,
            table_name=require_env(environ, "AIRTABLE_TABLE_NAME"),
            view_name=require_env(environ, "AIRTABLE_VIEW_NAME"),
            field_room=require_env(environ, "AIRTABLE_FIELD_ROOM"),
            field_date=require_env(environ, "AIRTABLE_FIELD_DATE_UTC"),
            field_class_id=require_env(environ, "AIRTABLE_FIELD_CLASS_ID"),
            max_records=get_int_env(environ, "MAX_RECORDS", 500),
            record_id=record_id.strip(),
            timezone=get_env(environ, "TIMEZONE", DEFAULT_TIMEZONE),
            policy=policy,
            match_window_minutes=get_int_env(environ, "CLASS_MATCH_WINDOW_MINUTES", 0),
        )


class ClassSessionResolver:
    """Room name + instant -> class session id, with a location cache."""

    def __init__(self, mtek: MarianaTekClient, match_window_minutes: int = 0):
        self.mtek = mtek
        self.window = timedelta(minutes=match_window_minutes)
        self._locations: Dict[str, Optional[str]] = {}

    def location_id(self, room: str) -> Optional[str]:
        if room not in self._locations:
            self._locations[room] = self.mtek.find_location_id_by_name(room)
        return self._locations[room]

    def class_session_id(self, location_id: str, instant: datetime) -> Optional[str]:
        sessions = self.mtek.find_class_sessions(location_id, instant, instant, page_size=1)
        if sessions:
            return str(sessions[0]["id"])

        if not self.window:
            return None

        candidates = self.mtek.find_class_sessions(
            location_id, instant - self.window, instant + self.window, page_size=50
        )
        nearest = pick_nearest(
            candidates,
            instant,
            self.window,
            key=lambda s: parse_iso_datetime((s.get("attributes") or {}).get("start_datetime")),
        )
        if nearest is None:
            return None
        logger.info(
            f"No session at exactly {format_utc_z(instant)}; using nearest "
            f"{nearest['id']} within {self.window}"
        )
        return str(nearest["id"])


def run(
    config: ResolveClassIdConfig,
    *,
    airtable: AirtableClient,
    mtek: MarianaTekClient,
) -> JobResult:
    result = JobResult(JOB_NAME)
    logger.info(
        f"Timestamp policy {config.policy.value} ({config.timezone}); "
        f"table={config.table_name!r} view={config.view_name!r}"
    )

    records = airtable.list_records(
        config.table_name, view=config.view_name, max_records=config.max_records
    )
    if config.record_id:
        logger.info(f"Dispatch scope: record_id={config.record_id}")
        records = [r for r in records if r.get("id") == config.record_id]
    logger.info(f"Records to process: {len(records)}")

    resolver = ClassSessionResolver(mtek, config.match_window_minutes)

    for record in records:
        record_id = record.get("id")
        fields = record.get("fields") or {}
        room = fields.get(config.field_room)
        date_value = fields.get(config.field_date)
        result.incr("processed")

        if not room or not date_value:
            result.incr("skipped")
            logger.info(f"SKIP {record_id}: missing room/date (room={room!r} date={date_value!r})")
            continue
        if fields.get(config.field_class_id):
            result.incr("skipped")
            logger.info(f"SKIP {record_id}: already has class id {fields[config.field_class_id]}")
            continue

        try:
            instant = resolve_timestamp(str(date_value), config.timezone, config.policy)
            location_id = resolver.location_id(str(room))
            if not location_id:
                result.incr("not_found")
                logger.info(f"NOT FOUND {record_id}: no location for room {room!r}")
                continue

            class_id = resolver.class_session_id(location_id, instant)
            if not class_id:
                result.incr("not_found")
                logger.info(
                    f"NOT FOUND {record_id}: no class session "
                    f"(location={location_id} utc={format_utc_z(instant)})"
                )
                continue

            airtable.update_record(config.table_name, record_id, {config.field_class_id: class_id})
            result.incr("updated")
            logger.info(
                f"UPDATED {record_id}: room={room!r} value={date_value!r} => "
                f"utc={format_utc_z(instant)} location={location_id} class_session_id={class_id}"
            )
        except (DateParseError,) + RECORD_ERRORS as e:
            result.incr("errors")
            logger.error(f"ERROR {record_id}: {e}")

    return result


def execute(environ: Mapping[str, str], argv: List[str]) -> JobResult:
    config = ResolveClassIdConfig.from_env(environ, argv)
    return run(config, airtable=make_airtable(config.api), mtek=make_mtek(config.api))


def main(argv: Optional[List[str]] = None) -> int:
    return run_job(
        JOB_NAME,
        execute,
        sys.argv[1:] if argv is None else argv,
        fail_on_record_errors=FAIL_ON_RECORD_ERRORS,
    )


if __name__ == "__main__":
    sys.exit(main())
