"""Delete every record currently shown in the reservations clean-up view."""
import logging
import sys
from dataclasses import dataclass
from typing import List, Mapping, Optional

from clients.airtable_client import AirtableClient
from config import ApiConfig, get_env, get_int_env
from jobs.base import make_airtable, run_job
from processor.models import JobResult

logger = logging.getLogger(__name__)

JOB_NAME = "clear_reservations_view"


@dataclass(frozen=True)
class ClearViewConfig:
    api: ApiConfig
    table: str = "Class Reservations"
    view: str = "TO DELETE DO NOT TOUCH"
    max_records: int = 50000

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "ClearViewConfig":
        return cls(
            api=ApiConfig.from_env(
                environ,
                base_id_vars=("AIRTABLE_CUSTOMER_BASE_ID", "AIRTABLE_BASE_ID"),
                require_mtek=False,
            ),
            table=get_env(environ, "AIRTABLE_RESERVATIONS_TABLE", "Class Reservations"),
            view=get_env(environ, "AIRTABLE_VIEW_TO_DELETE", "TO DELETE DO NOT TOUCH"),
            max_records=get_int_env(environ, "MAX_RECORDS_TO_DELETE", 50000),
        )


def run(config: ClearViewConfig, *, airtable: AirtableClient) -> JobResult:
    """
    Delete the view's records in batches of 10.

    Raises:
        RuntimeError: If the view holds more records than max_records
    """
    result = JobResult(JOB_NAME)
    logger.info(f"Fetching records from table={config.table!r} view={config.view!r}")
    records = airtable.list_records(config.table, view=config.view)
    record_ids = [r["id"] for r in records if r.get("id")]
    logger.info(f"Found {len(record_ids)} record(s) in the view to delete")

    if not record_ids:
        return result
    if len(record_ids) > config.max_records:
        raise RuntimeError(
            f"Refusing to delete {len(record_ids)} records (limit {config.max_records}). "
            "Check your view configuration."
        )

    result.incr("deleted", airtable.delete_records(config.table, record_ids))
    return result


def execute(environ: Mapping[str, str], argv: List[str]) -> JobResult:
    config = ClearViewConfig.from_env(environ)
    return run(config, airtable=make_airtable(config.api))


def main(argv: Optional[List[str]] = None) -> int:
    return run_job(JOB_NAME, execute, sys.argv[1:] if argv is None else argv)


if __name__ == "__main__":
    sys.exit(main())
