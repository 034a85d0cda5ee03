"""Look up MTEK emails for rating contacts (by name) and write them back to Airtable."""
import logging
import sys
from dataclasses import dataclass
from typing import List, Mapping, Optional

from clients.airtable_client import AirtableClient
from clients.mtek_client import MarianaTekClient
from config import ApiConfig, get_env
from jobs.base import RECORD_ERRORS, make_airtable, make_mtek, run_job
from processor.models import JobResult, MtekUser

logger = logging.getLogger(__name__)

JOB_NAME = "sync_contact_emails"


@dataclass(frozen=True)
class SyncEmailsConfig:
    api: ApiConfig
    table: str = "Ratings"
    view: str = "ADD EMAIL DO NOT TOUCH"
    field_email: str = "EMAIL"
    field_contact: str = "Contact"
    field_label: str = "CAL_NAME"

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "SyncEmailsConfig":
        return cls(
            api=ApiConfig.from_env(environ),
            table=get_env(environ, "AIRTABLE_RATINGS_TABLE", "Ratings"),
            view=get_env(environ, "AIRTABLE_VIEW_ADD_EMAIL", "ADD EMAIL DO NOT TOUCH"),
            field_email=get_env(environ, "AIRTABLE_FIELD_EMAIL", "EMAIL"),
            field_contact=get_env(environ, "AIRTABLE_FIELD_CONTACT", "Contact"),
            field_label=get_env(environ, "AIRTABLE_FIELD_CAL_NAME", "CAL_NAME"),
        )


def lookup_email_by_name(mtek: MarianaTekClient, name: str) -> Optional[str]:
    """Email of the first MTEK user matching name, if any."""
    users = mtek.search_users_by_name(name, page_size=1)
    if not users:
        return None
    return MtekUser.from_api(users[0]).email


def run(config: SyncEmailsConfig, *, airtable: AirtableClient, mtek: MarianaTekClient) -> JobResult:
    result = JobResult(JOB_NAME)
    records = airtable.list_records(config.table, view=config.view)
    logger.info(f"Found {len(records)} records in view {config.view!r}")

    for record in records:
        fields = record.get("fields") or {}
        contact = fields.get(config.field_contact)
        label = fields.get(config.field_label)

        if not isinstance(contact, str) or not contact.strip():
            result.incr("skipped_no_contact")
            logger.info(f"[SKIP - no Contact] recordId={record['id']} {config.field_label}={label!r}")
            continue

        try:
            email = lookup_email_by_name(mtek, contact)
            if not email:
                result.incr("skipped_no_match")
                logger.info(f"[NO MATCH] No MTEK user for Contact={contact!r}")
                continue

            airtable.update_record(config.table, record["id"], {config.field_email: email})
            result.incr("updated")
            logger.info(f"[UPDATE] recordId={record['id']} {config.field_email}={email!r}")
        except RECORD_ERRORS as e:
            result.incr("errors")
            logger.error(f"[ERROR] recordId={record['id']} Contact={contact!r} -> {e}")

    return result


def execute(environ: Mapping[str, str], argv: List[str]) -> JobResult:
    config = SyncEmailsConfig.from_env(environ)
    return run(config, airtable=make_airtable(config.api), mtek=make_mtek(config.api))


def main(argv: Optional[List[str]] = None) -> int:
    return run_job(JOB_NAME, execute, sys.argv[1:] if argv is None else argv)


if __name__ == "__main__":
    sys.exit(main())
