"""Write MTEK check-in counts onto the class records listed in an Airtable view."""
import logging
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from clients.airtable_client import AirtableClient, chunked
from clients.mtek_client import MarianaTekClient
from config import ApiConfig, get_env, get_int_env
from jobs.base import RECORD_ERRORS, make_airtable, make_mtek, run_job
from processor.models import JobResult

logger = logging.getLogger(__name__)

JOB_NAME = "update_class_checkins"


@dataclass(frozen=True)
class UpdateCheckinsConfig:
    api: ApiConfig
    table: str = "All Classes"
    view: str = "TO UPDATE DO NOT TOUCH"
    field_class_session_id: str = "Class Session ID"
    field_count: str = "Count"
    page_size: int = 1000

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "UpdateCheckinsConfig":
        return cls(
            api=ApiConfig.from_env(environ),
            table=get_env(environ, "AIRTABLE_ALL_CLASSES_TABLE", "All Classes"),
            view=get_env(environ, "AIRTABLE_VIEW_TO_UPDATE", "TO UPDATE DO NOT TOUCH"),
            field_class_session_id=get_env(
                environ, "AIRTABLE_FIELD_CLASS_SESSION_ID", "Class Session ID"
            ),
            field_count=get_env(environ, "AIRTABLE_FIELD_COUNT", "Count"),
            page_size=get_int_env(environ, "MTEK_PAGE_SIZE", 1000),
        )


def count_check_ins(mtek: MarianaTekClient, class_session_id: str, page_size: int = 1000) -> int:
    reservations = mtek.list_reservations(
        {"class_session": class_session_id, "status": "check_in"}, page_size=page_size
    )
    return len(reservations)


def run(config: UpdateCheckinsConfig, *, airtable: AirtableClient, mtek: MarianaTekClient) -> JobResult:
    result = JobResult(JOB_NAME)
    logger.info(f"Fetching records from table={config.table!r} view={config.view!r}")
    records = airtable.list_records(config.table, view=config.view)
    if not records:
        logger.info("No records in view; nothing to update")
        return result
    logger.info(f"Found {len(records)} record(s) to process")

    for batch in chunked(records, AirtableClient.BATCH_SIZE):
        updates: List[Dict[str, Any]] = []
        for record in batch:
            class_session_id = (record.get("fields") or {}).get(config.field_class_session_id)
            if not class_session_id:
                result.incr("skipped")
                logger.warning(
                    f"Record {record['id']} has no {config.field_class_session_id!r}; skipping"
                )
                continue
            try:
                count = count_check_ins(mtek, str(class_session_id), config.page_size)
            except RECORD_ERRORS as e:
                result.incr("errors")
                logger.error(f"Check-in count failed for class_session={class_session_id}: {e}")
                continue

            logger.info(f"Record {record['id']} | class_session={class_session_id} | check-ins={count}")
            updates.append({"id": record["id"], "fields": {config.field_count: count}})

        if updates:
            airtable.update_records(config.table, updates)
            result.incr("updated", len(updates))

    return result


def execute(environ: Mapping[str, str], argv: List[str]) -> JobResult:
    config = UpdateCheckinsConfig.from_env(environ)
    return run(config, airtable=make_airtable(config.api), mtek=make_mtek(config.api))


def main(argv: Optional[List[str]] = None) -> int:
    return run_job(JOB_NAME, execute, sys.argv[1:] if argv is None else argv)


if __name__ == "__main__":
    sys.exit(main())
