"""
Mirror recently edited bike measurements into a pinned MTEK user note.

Records whose measurements changed in the last day either update the note
they already point at, or get a new note on the MTEK user found by email;
the user id and note id are then written back to the record.
"""
import logging
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from clients.airtable_client import AirtableClient
from clients.mtek_client import MarianaTekClient
from config import ApiConfig, get_env, require_env
from jobs.base import RECORD_ERRORS, make_airtable, make_mtek, run_job
from processor.models import JobResult, RecordSkipped

logger = logging.getLogger(__name__)

JOB_NAME = "sync_bike_measurements"

RECENTLY_MODIFIED_FORMULA = "IS_AFTER({MEASUREMENT LAST MODIFIED}, DATEADD(NOW(), -1, 'day'))"

FIELD_NOTE_ID = "Measurement Note ID"
FIELD_USER_ID = "USER ID MTEK"
FIELD_EMAIL = "Email"

MEASUREMENT_LINES = [
    ("Seat Height", "Seat height"),
    ("Seat Position", "Seat position"),
    ("Handlebar Height", "Handlebar height"),
    ("Handlebar Position", "Handlebar position"),
    ("Shoe Size", "Shoe Size"),
]


@dataclass(frozen=True)
class BikeMeasurementsConfig:
    api: ApiConfig
    measurements_table: str
    author_user_id: str = "35539"

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "BikeMeasurementsConfig":
        return cls(
            api=ApiConfig.from_env(environ, base_id_vars=("CUSTOMER_BASE_ID", "AIRTABLE_BASE_ID")),
            measurements_table=require_env(environ, "AIRTABLE_MEASUREMENTS_TABLE"),
            author_user_id=get_env(environ, "MTEK_AUTHOR_USER_ID", "35539"),
        )


def build_measurement_text(fields: Dict[str, Any]) -> str:
    lines = ["Bike Measurements:"]
    for label, field_name in MEASUREMENT_LINES:
        value = fields.get(field_name)
        lines.append(f"{label}: {'' if value is None else value}")
    return "\n".join(lines)


class MeasurementSync:
    def __init__(self, config: BikeMeasurementsConfig, airtable: AirtableClient, mtek: MarianaTekClient):
        self.config = config
        self.airtable = airtable
        self.mtek = mtek

    def handle(self, record: Dict[str, Any]) -> str:
        """
        Sync one record.

        Returns:
            "updated" or "created"
        """
        fields = record.get("fields") or {}
        text = build_measurement_text(fields)
        note_id = fields.get(FIELD_NOTE_ID)
        user_id = fields.get(FIELD_USER_ID)

        if note_id:
            if not user_id:
                raise RecordSkipped(f"{FIELD_USER_ID} missing for note {note_id}", record["id"])
            logger.info(f"Updating user note {note_id} for record {record['id']}")
            self.mtek.update_user_note(str(note_id), str(user_id), self.config.author_user_id, text)
            return "updated"

        email = fields.get(FIELD_EMAIL)
        if not email:
            raise RecordSkipped("no email", record["id"])
        user = self.mtek.find_user_by_email(email)
        if not user:
            raise RecordSkipped("no MTEK user for email", email)

        user_id = str(user["id"])
        new_note_id = self.mtek.create_user_note(user_id, self.config.author_user_id, text)
        update: Dict[str, Any] = {FIELD_USER_ID: user_id}
        if new_note_id:
            update[FIELD_NOTE_ID] = new_note_id
        self.airtable.update_records(
            self.config.measurements_table, [{"id": record["id"], "fields": update}]
        )
        logger.info(f"Created user note {new_note_id} for user {user_id} (record {record['id']})")
        return "created"


def run(config: BikeMeasurementsConfig, *, airtable: AirtableClient, mtek: MarianaTekClient) -> JobResult:
    result = JobResult(JOB_NAME)
    records = airtable.list_records(config.measurements_table, formula=RECENTLY_MODIFIED_FORMULA)
    logger.info(f"Found {len(records)} record(s) modified in the last 24 hours")

    sync = MeasurementSync(config, airtable, mtek)
    for record in records:
        try:
            result.incr(sync.handle(record))
        except RecordSkipped as e:
            result.incr("skipped")
            logger.warning(f"Skipping record {record['id']}: {e}")
        except RECORD_ERRORS as e:
            result.incr("errors")
            logger.error(f"Error processing record {record['id']}: {e}")

    return result


def execute(environ: Mapping[str, str], argv: List[str]) -> JobResult:
    config = BikeMeasurementsConfig.from_env(environ)
    return run(config, airtable=make_airtable(config.api), mtek=make_mtek(config.api))


def main(argv: Optional[List[str]] = None) -> int:
    return run_job(JOB_NAME, execute, sys.argv[1:] if argv is None else argv)


if __name__ == "__main__":
    sys.exit(main())
