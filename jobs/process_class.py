"""
Rebuild the Airtable reservation rows of one class from MTEK.

Triggered by a repository-dispatch event whose client_payload carries the
Airtable class record id and the MTEK class session id. Existing
reservation rows linked to the class are deleted and recreated from the
current MTEK reservations (cancelled and waitlisted included).

Upsert keys:
    Customers: "Email (lower)" + "Dupe?" (always "No" for synced rows)
"""
import json
import logging
import re
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from clients.airtable_client import AirtableClient, link_contains
from clients.mtek_client import MarianaTekClient
from clients.webhook import WebhookNotifier
from config import ApiConfig, ConfigError, get_env, get_int_env, require_env
from jobs.base import RECORD_ERRORS, make_airtable, make_mtek, run_job
from processor.models import JobResult, MtekUser, Reservation

logger = logging.getLogger(__name__)

JOB_NAME = "process_class"

CLASS_LAST_UPDATE_TIME = "Last update time"

RES_RESERVATION_ID = "MTEK Reservation ID"
RES_STATUS = "Status"
RES_SPOT_NAME = "Spot number"
RES_CLASSES_LINK = "Classes"
RES_CUSTOMER_LINK = "Customer"
RES_IS_NEW = "NEW?"

CUSTOMER_MERGE_FIELDS = ["Email (lower)", "Dupe?"]

_INVISIBLE_RE = re.compile(r"[\u200b-\u200d\ufeff]")


def sanitize_record_id(value: Any) -> str:
    """Strip whitespace and zero-width characters pasted along with record ids."""
    return _INVISIBLE_RE.sub("", str(value)).strip()


def read_dispatch_payload(event_path: str) -> Tuple[str, str]:
    """
    Read (class record id, MTEK class id) from a repository-dispatch event file.

    Raises:
        ConfigError: If the file or either id is missing
    """
    try:
        with open(event_path, encoding="utf-8") as f:
            event = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Cannot read dispatch event {event_path}: {e}") from e

    payload = event.get("client_payload") or {}
    record_id = payload.get("airtable_record_id") or payload.get("recordId")
    mtek_class_id = payload.get("mtek_class_id")
    if not record_id:
        raise ConfigError("No airtable_record_id in client_payload")
    if mtek_class_id is None:
        raise ConfigError("No mtek_class_id in client_payload")
    return sanitize_record_id(record_id), str(mtek_class_id).strip()


@dataclass(frozen=True)
class ProcessClassConfig:
    api: ApiConfig
    class_record_id: str
    mtek_class_id: str
    webhook_url: str
    classes_table: str = "CTT SYNC DO NOT TOUCH"
    reservations_table: str = "Class Reservations"
    customers_table: str = "Customers"
    new_people_tag_id: str = "463"
    page_size: int = 200

    @classmethod
    def from_env(cls, environ: Mapping[str, str], argv: Optional[List[str]] = None) -> "ProcessClassConfig":
        """
        Ids come from the two positional arguments when given, else from
        the event file at GITHUB_EVENT_PATH.
        """
        api = ApiConfig.from_env(environ)
        if argv and len(argv) >= 2:
            record_id, mtek_class_id = sanitize_record_id(argv[0]), argv[1].strip()
        else:
            record_id, mtek_class_id = read_dispatch_payload(require_env(environ, "GITHUB_EVENT_PATH"))
        return cls(
            api=api,
            class_record_id=record_id,
            mtek_class_id=mtek_class_id,
            webhook_url=require_env(environ, "CLASS_WEBHOOK_URL"),
            classes_table=get_env(environ, "AIRTABLE_CTT_TABLE", "CTT SYNC DO NOT TOUCH"),
            reservations_table=get_env(environ, "AIRTABLE_RESERVATIONS_TABLE", "Class Reservations"),
            customers_table=get_env(environ, "AIRTABLE_CUSTOMERS_TABLE", "Customers"),
            new_people_tag_id=get_env(environ, "MTEK_NEW_PEOPLE_TAG_ID", "463"),
            page_size=get_int_env(environ, "MTEK_PAGE_SIZE", 200),
        )


def dedupe_by_id(resources: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen = set()
    unique = []
    for resource in resources:
        resource_id = resource.get("id")
        if resource_id is None or str(resource_id) in seen:
            continue
        seen.add(str(resource_id))
        unique.append(resource)
    return unique


def to_airtable_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


class ClassProcessor:
    """Rebuilds reservation rows for one class record."""

    def __init__(
        self,
        config: ProcessClassConfig,
        airtable: AirtableClient,
        mtek: MarianaTekClient,
        executor: ThreadPoolExecutor,
    ):
        self.config = config
        self.airtable = airtable
        self.mtek = mtek
        self.executor = executor

    def delete_existing_rows(self) -> int:
        rows = self.airtable.list_records(
            self.config.reservations_table,
            formula=link_contains(RES_CLASSES_LINK, self.config.class_record_id),
            fields=[RES_CLASSES_LINK],
        )
        logger.info(f"Found {len(rows)} existing reservation row(s) for class {self.config.class_record_id}")
        if not rows:
            return 0
        return self.airtable.delete_records(self.config.reservations_table, [r["id"] for r in rows])

    def fetch_user_and_spot(self, reservation: Reservation) -> Tuple[Optional[MtekUser], Optional[str]]:
        """Fetch the linked user and spot side by side."""
        user_future = self.executor.submit(self.mtek.get_user, reservation.user_id) if reservation.user_id else None
        spot_future = self.executor.submit(self.mtek.get_spot, reservation.spot_id) if reservation.spot_id else None

        user_data = user_future.result() if user_future else None
        spot_data = spot_future.result() if spot_future else None

        user = MtekUser.from_api(user_data) if user_data else None
        spot_name = ((spot_data or {}).get("attributes") or {}).get("name")
        return user, spot_name

    def upsert_customer(self, email: str, name: str) -> Dict[str, Any]:
        lower = email.lower()
        records = self.airtable.upsert_records(
            self.config.customers_table,
            [{"Email (lower)": lower, "Email": lower, "Name": name or "", "Dupe?": "No"}],
            merge_on=CUSTOMER_MERGE_FIELDS,
        )
        if not records:
            raise RuntimeError("No customer record returned from Airtable upsert")
        logger.info(f"Upserted customer {lower} -> {records[0]['id']}")
        return records[0]

    def build_row(self, reservation: Reservation) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
        """
        Returns:
            (reservation row fields, webhook item or None when there is no customer)
        """
        user, spot_name = self.fetch_user_and_spot(reservation)
        fields: Dict[str, Any] = {
            RES_RESERVATION_ID: reservation.id,
            RES_STATUS: reservation.status,
            RES_SPOT_NAME: spot_name or "",
            RES_CLASSES_LINK: [self.config.class_record_id],
            RES_IS_NEW: reservation.has_tag(self.config.new_people_tag_id),
        }

        if not user or not user.email:
            logger.info(f"Reservation {reservation.id}: no email for user; not linking a customer")
            return fields, None

        customer = self.upsert_customer(user.email, user.full_name)
        customer_fields = customer.get("fields") or {}
        fields[RES_CUSTOMER_LINK] = [customer["id"]]
        item = {
            "classRecordId": self.config.class_record_id,
            "mtekClassId": self.config.mtek_class_id,
            "reservationId": reservation.id,
            "reservationStatus": reservation.status,
            "customerRecordId": customer["id"],
            "measurementNoteId": customer_fields.get("Measurement Note ID"),
            "updatedBoardNameSpivi": customer_fields.get("Updated board name in Spivi"),
            "oldZfBoardName": customer_fields.get("OLD ZF BOARD NAME"),
        }
        return fields, item


def run(
    config: ProcessClassConfig,
    *,
    airtable: AirtableClient,
    mtek: MarianaTekClient,
    webhook: WebhookNotifier,
    now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> JobResult:
    result = JobResult(JOB_NAME)
    logger.info(f"Class record {config.class_record_id}, MTEK class session {config.mtek_class_id}")

    reservations = dedupe_by_id(
        mtek.list_reservations({"class_session": config.mtek_class_id}, page_size=config.page_size)
    )
    logger.info(f"Found {len(reservations)} reservation(s) for session {config.mtek_class_id}")

    with ThreadPoolExecutor(max_workers=2) as executor:
        processor = ClassProcessor(config, airtable, mtek, executor)
        result.incr("deleted", processor.delete_existing_rows())

        rows: List[Dict[str, Any]] = []
        webhook_items: List[Dict[str, Any]] = []
        for raw in reservations:
            reservation = Reservation.from_api(raw)
            try:
                fields, item = processor.build_row(reservation)
            except RECORD_ERRORS as e:
                result.incr("errors")
                logger.error(f"Error processing reservation {reservation.id}: {e}")
                continue
            rows.append(fields)
            if item:
                webhook_items.append(item)

    created = airtable.create_records(config.reservations_table, rows) if rows else []
    result.incr("created", len(created))

    airtable.update_records(
        config.classes_table,
        [{"id": config.class_record_id, "fields": {CLASS_LAST_UPDATE_TIME: to_airtable_timestamp(now())}}],
    )

    if webhook.notify(webhook_items):
        logger.info(f"Sent {len(webhook_items)} item(s) to webhook")
    else:
        result.incr("webhook_failures")
    return result


def execute(environ: Mapping[str, str], argv: List[str]) -> JobResult:
    config = ProcessClassConfig.from_env(environ, argv)
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
