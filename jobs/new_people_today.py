"""
Link first-time visitors booked today or tomorrow to their Airtable customer record.

Pending reservations tagged "new people" are resolved to an MTEK user
(by guest email, else by the user relationship). The customer is found
by email, or created, and then stamped with phone number, first class
date, profile creation date and a link to the class record.
"""
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from clients.airtable_client import AirtableClient, field_equals
from clients.mtek_client import MarianaTekClient
from config import DEFAULT_TIMEZONE, ApiConfig, get_env, get_int_env
from jobs.base import RECORD_ERRORS, make_airtable, make_mtek, run_job
from processor.models import ClassSession, JobResult, MtekUser, RecordSkipped, Reservation
from processor.timezones import local_date_string

logger = logging.getLogger(__name__)

JOB_NAME = "new_people_today"

FIELD_CLASS_ID = "Class ID"
FIELD_EMAIL = "Email"
FIELD_PHONE_NUMBER = "Phone number"
FIELD_FIRST_CLASS_DATE = "First Class Date (Imported)"
FIELD_PROFILE_CREATED = "Profile Created"
FIELD_FIRST_CLASS_LINK = "First Class"


@dataclass(frozen=True)
class NewPeopleConfig:
    api: ApiConfig
    classes_table: str = "CTT SYNC DO NOT TOUCH"
    customers_table: str = "Customers"
    new_people_tag_id: str = "463"
    timezone: str = DEFAULT_TIMEZONE
    page_size: int = 2000

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "NewPeopleConfig":
        return cls(
            api=ApiConfig.from_env(environ),
            classes_table=get_env(environ, "AIRTABLE_CTT_TABLE", "CTT SYNC DO NOT TOUCH"),
            customers_table=get_env(environ, "AIRTABLE_CUSTOMERS_TABLE", "Customers"),
            new_people_tag_id=get_env(environ, "MTEK_NEW_PEOPLE_TAG_ID", "463"),
            timezone=get_env(environ, "TIMEZONE", DEFAULT_TIMEZONE),
            page_size=get_int_env(environ, "MTEK_PAGE_SIZE", 2000),
        )


class NewPersonLinker:
    """Resolve one tagged reservation to a customer update."""

    def __init__(self, config: NewPeopleConfig, airtable: AirtableClient, mtek: MarianaTekClient):
        self.config = config
        self.airtable = airtable
        self.mtek = mtek

    def resolve_user(self, reservation: Reservation) -> Tuple[MtekUser, str]:
        """
        Returns:
            (user, email to search customers by)
        """
        if reservation.guest_email:
            data = self.mtek.find_user_by_email(reservation.guest_email)
            if not data:
                raise RecordSkipped("no user for guest email", reservation.guest_email)
            return MtekUser.from_api(data), reservation.guest_email

        if not reservation.user_id:
            raise RecordSkipped("no user id", reservation.id)
        data = self.mtek.get_user(reservation.user_id)
        if not data:
            raise RecordSkipped("user not found in MTEK", reservation.user_id)
        user = MtekUser.from_api(data)
        if not user.email:
            raise RecordSkipped("user has no email", reservation.user_id)
        return user, user.email

    def find_or_create_customer(self, email: str) -> str:
        record = self.airtable.find_first(self.config.customers_table, field_equals(FIELD_EMAIL, email))
        if record:
            return record["id"]
        logger.info(f"No customer for email={email}; creating one")
        created = self.airtable.create_records(self.config.customers_table, [{FIELD_EMAIL: email}])
        if not created:
            raise RecordSkipped("customer create returned nothing", email)
        return created[0]["id"]

    def process(self, reservation: Reservation) -> None:
        if not reservation.has_tag(self.config.new_people_tag_id):
            raise RecordSkipped("no new-people tag")
        if not reservation.class_session_id:
            raise RecordSkipped("no class session", reservation.id)

        user, email = self.resolve_user(reservation)

        class_record = self.airtable.find_first(
            self.config.classes_table, field_equals(FIELD_CLASS_ID, reservation.class_session_id)
        )
        if not class_record:
            raise RecordSkipped("no class record", reservation.class_session_id)

        customer_id = self.find_or_create_customer(email)
        session_data = self.mtek.get_class_session(reservation.class_session_id)
        session = ClassSession.from_api(session_data) if session_data else None

        fields: Dict[str, Any] = {}
        if user.phone_number is not None:
            fields[FIELD_PHONE_NUMBER] = user.phone_number
        if session is not None and session.start_datetime is not None:
            fields[FIELD_FIRST_CLASS_DATE] = session.start_datetime
        if user.date_joined is not None:
            fields[FIELD_PROFILE_CREATED] = user.date_joined
        fields[FIELD_FIRST_CLASS_LINK] = [class_record["id"]]

        logger.info(f"Updating customer {customer_id} for reservation {reservation.id}, email={email}")
        self.airtable.update_records(
            self.config.customers_table, [{"id": customer_id, "fields": fields}]
        )


def run(
    config: NewPeopleConfig,
    *,
    airtable: AirtableClient,
    mtek: MarianaTekClient,
    now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> JobResult:
    result = JobResult(JOB_NAME)
    current = now()
    today = local_date_string(current, config.timezone)
    tomorrow = local_date_string(current, config.timezone, offset_days=1)

    reservations = mtek.list_reservations(
        {
            "class_session_min_date": today,
            "class_session_max_date": tomorrow,
            "status": "pending",
        },
        page_size=config.page_size,
    )
    logger.info(f"Fetched {len(reservations)} pending reservations for {today}..{tomorrow}")

    linker = NewPersonLinker(config, airtable, mtek)
    for raw in reservations:
        reservation = Reservation.from_api(raw)
        try:
            linker.process(reservation)
            result.incr("processed")
        except RecordSkipped as e:
            result.incr("skipped")
            logger.debug(f"Reservation {reservation.id} skipped: {e}")
        except RECORD_ERRORS as e:
            result.incr("errors")
            logger.error(f"Error processing reservation {reservation.id}: {e}")

    return result


def execute(environ: Mapping[str, str], argv: List[str]) -> JobResult:
    config = NewPeopleConfig.from_env(environ)
    return run(config, airtable=make_airtable(config.api), mtek=make_mtek(config.api))


def main(argv: Optional[List[str]] = None) -> int:
    return run_job(JOB_NAME, execute, sys.argv[1:] if argv is None else argv)


if __name__ == "__main__":
    sys.exit(main())
