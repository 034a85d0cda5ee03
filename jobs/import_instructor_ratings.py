"""
Import an instructor-ratings CSV attached to an Airtable form record.

A run-log record is created first and finished with Completed or ISSUE
plus imported/ignored counts. Feedback rows are deduplicated on
contact + studio + day, so re-importing the same file creates nothing.
"""
import logging
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import requests

from clients.airtable_client import AirtableClient, escape_formula_value, field_equals, link_contains
from clients.mtek_client import MarianaTekClient
from config import ApiConfig, get_int_env, require_env
from jobs.base import RECORD_ERRORS, make_airtable, make_mtek, run_job
from processor.models import JobResult, RecordSkipped
from processor.ratings import RatingRow, RatingsParser, looks_like_email

logger = logging.getLogger(__name__)

JOB_NAME = "import_instructor_ratings"

# Form table
FORM_CSV_UPLOAD = "CSV Upload"
FORM_STUDIO = "Studio"

# Feedbacks table
FEEDBACK_CONTACT = "Contact"
FEEDBACK_CUSTOMER = "Customer"
FEEDBACK_STUDIO = "Studio"
FEEDBACK_DATE = "DATE OF RATING"
FEEDBACK_RATING = "Rating"
FEEDBACK_COMMENT = "COMMENT"
FEEDBACK_CLASSTYPE = "CLASSTYPE"
FEEDBACK_DIRECTED_TO = "Type"
DIRECTED_TO_VALUE = "Instructor Feedback"

# Logs table
LOG_STATUS = "Status"
LOG_TYPE = "Type"
LOG_IMPORTED = "Ratings Imported"
LOG_IGNORED = "Ratings Ignored"
LOG_ISSUE_LOG = "Issue log"
LOG_TYPE_VALUE = "Instructor Ratings Import"
STATUS_STARTED = "Started"
STATUS_COMPLETED = "Completed"
STATUS_ISSUE = "ISSUE"


@dataclass(frozen=True)
class ImportRatingsConfig:
    api: ApiConfig
    form_table: str
    feedbacks_table: str
    logs_table: str
    form_record_id: str
    download_timeout: int = 60

    @classmethod
    def from_env(cls, environ: Mapping[str, str], argv: Optional[List[str]] = None) -> "ImportRatingsConfig":
        api = ApiConfig.from_env(environ, require_mtek=False)
        form_record_id = argv[0] if argv else require_env(environ, "FORM_RECORD_ID")
        return cls(
            api=api,
            form_table=require_env(environ, "FORM_TABLE_ID"),
            feedbacks_table=require_env(environ, "FEEDBACKS_TABLE_ID"),
            logs_table=require_env(environ, "LOGS_TABLE_ID"),
            form_record_id=form_record_id,
            download_timeout=get_int_env(environ, "REQUEST_TIMEOUT", 60),
        )


@dataclass
class CustomerLink:
    """Table the feedback "Customer" field links to, and its primary field name."""
    table_id: str
    primary_field: str


def discover_customer_link(airtable: AirtableClient, feedbacks_table: str) -> CustomerLink:
    """Follow the feedbacks table's Customer link field to the customers table via the schema API."""
    tables = airtable.get_base_tables()
    feedbacks = next(
        (t for t in tables if feedbacks_table in (t.get("id"), t.get("name"))), None
    )
    if feedbacks is None:
        raise RuntimeError(f"Feedbacks table {feedbacks_table} not found in base schema")

    link_field = next(
        (f for f in feedbacks.get("fields") or [] if f.get("name") == FEEDBACK_CUSTOMER), None
    )
    linked_table_id = ((link_field or {}).get("options") or {}).get("linkedTableId")
    customers = next((t for t in tables if t.get("id") == linked_table_id), None)
    if customers is None:
        raise RuntimeError(f"Could not resolve the table linked by {FEEDBACK_CUSTOMER!r}")

    primary = next(
        (f for f in customers.get("fields") or [] if f.get("id") == customers.get("primaryFieldId")),
        None,
    )
    if primary is None:
        raise RuntimeError(f"Table {customers.get('id')} has no primary field")
    return CustomerLink(table_id=customers["id"], primary_field=primary["name"])


def dedupe_formula(contact: str, studio_id: str, date_iso: str) -> str:
    """Formula matching feedback for the same contact, studio and day."""
    return (
        "AND("
        f"{field_equals(FEEDBACK_CONTACT, contact)}, "
        f"{link_contains(FEEDBACK_STUDIO, studio_id)}, "
        f"IS_SAME({{{FEEDBACK_DATE}}}, DATETIME_PARSE(\"{escape_formula_value(date_iso)}\"), 'day')"
        ")"
    )


class RatingsImporter:
    """Per-row work: dedupe, resolve customer, create feedback."""

    def __init__(
        self,
        airtable: AirtableClient,
        config: ImportRatingsConfig,
        studio_id: str,
        customers: CustomerLink,
        mtek: Optional[MarianaTekClient] = None,
    ):
        self.airtable = airtable
        self.config = config
        self.studio_id = studio_id
        self.customers = customers
        self.mtek = mtek

    def resolve_email(self, contact: str) -> Optional[str]:
        """The contact itself if it is an email, else the first MTEK user match with an email."""
        if looks_like_email(contact):
            return contact
        if self.mtek is None:
            return None
        try:
            users = self.mtek.search_users_by_name(contact, page_size=5)
        except RECORD_ERRORS as e:
            logger.warning(f"MTEK name lookup failed for {contact!r}: {e}")
            return None
        for user in users:
            email = (user.get("attributes") or {}).get("email")
            if looks_like_email(email):
                return email
        return None

    def find_customer_id(self, email: str) -> Optional[str]:
        record = self.airtable.find_first(
            self.customers.table_id, field_equals(self.customers.primary_field, email)
        )
        return record["id"] if record else None

    def already_imported(self, row: RatingRow) -> bool:
        formula = dedupe_formula(row.contact, self.studio_id, row.date_iso)
        return self.airtable.find_first(self.config.feedbacks_table, formula) is not None

    def feedback_fields(self, row: RatingRow, customer_id: Optional[str]) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            FEEDBACK_CONTACT: row.contact,
            FEEDBACK_STUDIO: [self.studio_id],
            FEEDBACK_DATE: row.date_iso,
            FEEDBACK_DIRECTED_TO: DIRECTED_TO_VALUE,
        }
        if customer_id:
            fields[FEEDBACK_CUSTOMER] = [customer_id]
        if row.rating is not None:
            fields[FEEDBACK_RATING] = row.rating
        if row.comment:
            fields[FEEDBACK_COMMENT] = row.comment
        if row.class_type:
            fields[FEEDBACK_CLASSTYPE] = row.class_type
        return fields

    def import_row(self, row: RatingRow, result: JobResult) -> None:
        if self.already_imported(row):
            raise RecordSkipped("already imported", f"line {row.line}")

        customer_id = None
        email = self.resolve_email(row.contact)
        if email:
            customer_id = self.find_customer_id(email)
            if not customer_id:
                result.add_issue(f"Line {row.line}: Customer not found in Airtable for {email}")

        self.airtable.create_records(
            self.config.feedbacks_table, [self.feedback_fields(row, customer_id)]
        )


def download_csv(url: str, timeout: int = 60) -> str:
    response = requests.get(url, timeout=timeout)
    response.raise_for_status()
    return response.content.decode("utf-8-sig")


def run(
    config: ImportRatingsConfig,
    *,
    airtable: AirtableClient,
    mtek: Optional[MarianaTekClient] = None,
    fetch_csv=download_csv,
) -> JobResult:
    """
    Import one uploaded CSV.

    Args:
        config: Job configuration
        airtable: Airtable client
        mtek: Optional MTEK client used to resolve names to emails
        fetch_csv: Callable(url, timeout) returning the CSV text

    Returns:
        JobResult with imported/ignored counts and the issue lines
    """
    result = JobResult(JOB_NAME)
    log_id = None

    try:
        created = airtable.create_records(
            config.logs_table, [{LOG_STATUS: STATUS_STARTED, LOG_TYPE: LOG_TYPE_VALUE}]
        )
        log_id = created[0]["id"]

        form = airtable.get_record(config.form_table, config.form_record_id)
        form_fields = form.get("fields") or {}
        studio_id = (form_fields.get(FORM_STUDIO) or [None])[0]
        csv_url = ((form_fields.get(FORM_CSV_UPLOAD) or [{}])[0] or {}).get("url")
        if not studio_id or not csv_url:
            raise RuntimeError("Missing Studio or CSV Upload on form record")

        parser = RatingsParser()
        rows, parse_issues = parser.parse(fetch_csv(csv_url, config.download_timeout))
        for issue in parse_issues:
            result.add_issue(issue)
        result.incr("ignored", parser.skipped)

        importer = RatingsImporter(
            airtable, config, studio_id, discover_customer_link(airtable, config.feedbacks_table), mtek
        )
        for row in rows:
            try:
                importer.import_row(row, result)
            except RecordSkipped as e:
                result.incr("ignored")
                logger.info(f"Line {row.line}: {e}")
                continue
            result.incr("imported")

        fields: Dict[str, Any] = {
            LOG_STATUS: STATUS_ISSUE if result.issues else STATUS_COMPLETED,
            LOG_IMPORTED: result.get("imported"),
            LOG_IGNORED: result.get("ignored"),
        }
        if result.issues:
            fields[LOG_ISSUE_LOG] = "\n".join(result.issues)
        airtable.update_record(config.logs_table, log_id, fields)

    except Exception as e:
        if log_id:
            try:
                airtable.update_record(
                    config.logs_table, log_id, {LOG_STATUS: STATUS_ISSUE, LOG_ISSUE_LOG: str(e)}
                )
            except Exception as log_error:
                logger.error(f"Could not mark run log {log_id} as failed: {log_error}")
        raise

    logger.info(f"Import completed: {result.get('imported')} imported, {result.get('ignored')} ignored")
    return result


def execute(environ: Mapping[str, str], argv: List[str]) -> JobResult:
    config = ImportRatingsConfig.from_env(environ, argv)
    mtek = make_mtek(config.api) if config.api.mtek_token else None
    return run(config, airtable=make_airtable(config.api), mtek=mtek)


def main(argv: Optional[List[str]] = None) -> int:
    return run_job(JOB_NAME, execute, sys.argv[1:] if argv is None else argv)


if __name__ == "__main__":
    sys.exit(main())
