"""Report each first-timer's second booked class to the workflow webhook."""
import logging
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from clients.airtable_client import AirtableClient
from clients.mtek_client import MarianaTekClient
from clients.webhook import WebhookNotifier
from config import ApiConfig, get_env, require_env
from jobs.base import RECORD_ERRORS, make_airtable, make_mtek, run_job
from processor.models import JobResult, RecordSkipped, Reservation

logger = logging.getLogger(__name__)

JOB_NAME = "find_second_class"

PENDING_SECOND_CLASS_FORMULA = "AND({First Class Taken} = 1, {2nd Class Taken} = 0)"


@dataclass(frozen=True)
class FindSecondClassConfig:
    api: ApiConfig
    webhook_url: str
    customers_table: str = "Customers"
    email_field: str = "Email"

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "FindSecondClassConfig":
        return cls(
            api=ApiConfig.from_env(environ, base_id_vars=("CUSTOMER_BASE_ID", "AIRTABLE_BASE_ID")),
            webhook_url=require_env(environ, "SECOND_CLASS_WEBHOOK_URL"),
            customers_table=get_env(environ, "CUSTOMERS_TABLE_NAME", "Customers"),
            email_field=get_env(environ, "CUSTOMER_EMAIL_FIELD", "Email"),
        )


def summarize_reservations(raw: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Reservations ordered by class time, numbered from 1."""
    ordered = sorted((Reservation.from_api(r) for r in raw), key=lambda r: r.sort_key)
    return [
        {
            "order": index,
            "reservation_id": reservation.id,
            "class_session_id": reservation.class_session_id,
            "status": reservation.status,
        }
        for index, reservation in enumerate(ordered, start=1)
    ]


def build_second_class_payload(
    email: str, customer_id: str, user_id: str, reservations: List[Dict[str, Any]]
) -> Dict[str, Any]:
    summary = summarize_reservations(reservations)
    if len(summary) < 2:
        raise RecordSkipped("fewer than 2 reservations", email)
    second = summary[1]
    if not second["class_session_id"]:
        raise RecordSkipped("second reservation has no class session", email)
    return {
        "email": email,
        "airtable_customer_id": customer_id,
        "mtek_user_id": user_id,
        "second_reservation_id": second["reservation_id"],
        "second_class_session_id": second["class_session_id"],
        "second_status": second["status"],
        "reservations": summary,
    }


def run(
    config: FindSecondClassConfig,
    *,
    airtable: AirtableClient,
    mtek: MarianaTekClient,
    webhook: WebhookNotifier,
) -> JobResult:
    result = JobResult(JOB_NAME)
    customers = airtable.list_records(config.customers_table, formula=PENDING_SECOND_CLASS_FORMULA)
    logger.info(f"Found {len(customers)} customer(s) with a first class and no second")

    for record in customers:
        email = (record.get("fields") or {}).get(config.email_field)
        if not email:
            result.incr("skipped")
            logger.warning(f"Skipping record {record['id']}: no email in {config.email_field!r}")
            continue

        try:
            user = mtek.find_user_by_email(email)
            if not user:
                raise RecordSkipped("no MTEK user", email)
            user_id = str(user["id"])
            reservations = mtek.list_reservations({"user": user_id})
            payload = build_second_class_payload(email, record["id"], user_id, reservations)
        except RecordSkipped as e:
            result.incr("skipped")
            logger.info(f"Skipping {email}: {e}")
            continue
        except RECORD_ERRORS as e:
            result.incr("errors")
            logger.error(f"Error processing customer {email}: {e}")
            continue

        logger.info(
            f"Sending second class for {email} "
            f"(class_session={payload['second_class_session_id']}, status={payload['second_status']})"
        )
        if webhook.notify(payload):
            result.incr("sent")
        else:
            result.incr("webhook_failures")

    return result


def execute(environ: Mapping[str, str], argv: List[str]) -> JobResult:
    config = FindSecondClassConfig.from_env(environ)
    return run(
        config,
        airtable=make_airtable(config.api),
        mtek=make_mtek(config.api),
        webhook=WebhookNotifier(config.webhook_url),
    )


def main(argv: Optional[List[str]] = None) -> int:
    return run_job(JOB_NAME, execute, sys.argv[1:] if argv is None else argv)


if __name__ == "__main__":
    sys.exit(main())
