"""
Send reminders for tomorrow's pending reservations, one UTC hour bucket at a time.

Every run handles the hours of tomorrow that have come due since the last
run (see processor.catch_up) and then persists the watermark. A failure
fetching reservations or the studio lookup aborts the run before the
watermark moves, so the next run retries the same hours.
"""
import html
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from clients.airtable_client import AirtableClient
from clients.email_client import EmailClient, EmailConfig
from clients.mtek_client import MarianaTekClient
from clients.webhook import WebhookNotifier
from config import ApiConfig, ConfigError, get_bool_env, get_env, get_int_env
from jobs.base import RECORD_ERRORS, make_airtable, make_mtek, run_job
from processor.catch_up import hour_window, plan_catch_up
from processor.models import (
    ClassSession,
    JobResult,
    MtekUser,
    RecordSkipped,
    Reservation,
    Studio,
)
from storage.watermark_store import watermark_store_from_env

logger = logging.getLogger(__name__)

JOB_NAME = "send_reminders"
DEFAULT_WATERMARK_PATH = ".state/send_reminders.json"


@dataclass(frozen=True)
class SendRemindersConfig:
    api: ApiConfig
    studios_table: str
    webhook_url: str = ""
    email: Optional[EmailConfig] = None
    day_offset: int = 1
    checkpoint_each_hour: bool = False
    page_size: int = 100
    email_subject: str = "See you tomorrow at {studio_name}"

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "SendRemindersConfig":
        api = ApiConfig.from_env(environ)
        studios_table = get_env(environ, "AIRTABLE_STUDIOS_TABLE")
        if not studios_table:
            raise ConfigError("Missing env var: AIRTABLE_STUDIOS_TABLE")
        webhook_url = get_env(environ, "MAKE_WEBHOOK_URL")
        email = EmailConfig.from_env(environ)
        if not webhook_url and email is None:
            raise ConfigError("Missing env var: MAKE_WEBHOOK_URL or EMAIL_CLIENT_ID")
        return cls(
            api=api,
            studios_table=studios_table,
            webhook_url=webhook_url,
            email=email,
            day_offset=get_int_env(environ, "REMINDER_DAY_OFFSET", 1),
            checkpoint_each_hour=get_bool_env(environ, "WATERMARK_CHECKPOINT_EACH_HOUR"),
            page_size=get_int_env(environ, "MTEK_PAGE_SIZE", 100),
            email_subject=get_env(
                environ, "REMINDER_EMAIL_SUBJECT", "See you tomorrow at {studio_name}"
            ),
        )


def load_studios(airtable: AirtableClient, table: str) -> Dict[str, Studio]:
    """Studios keyed by MTEK location id."""
    records = airtable.list_records(
        table, fields=["MTEK Location ID", "Studio name", "Studio email"]
    )
    studios: Dict[str, Studio] = {}
    for record in records:
        fields = record.get("fields") or {}
        location_id = fields.get("MTEK Location ID")
        if location_id is None or location_id == "":
            continue
        studios[str(location_id)] = Studio(
            name=fields.get("Studio name") or "",
            email=fields.get("Studio email") or "",
        )
    return studios


def build_reminder_payload(
    reservation: Reservation,
    session: ClassSession,
    user: Optional[MtekUser],
    studio: Optional[Studio],
) -> Dict[str, Any]:
    """Flat reminder payload; the guest email wins over the account email."""
    user_email = user.email if user else None
    return {
        "email": reservation.guest_email or user_email or "",
        "first_name": user.first_name if user else "",
        "guest_email": reservation.guest_email,
        "class_label": session.public_note or session.class_type_display,
        "instructor_names": session.instructor_names,
        "reservation_id": reservation.id,
        "class_session_id": session.id,
        "studio_name": studio.name if studio else "",
        "studio_email": studio.email if studio else "",
    }


def render_reminder_email(payload: Dict[str, Any]) -> str:
    name = html.escape(payload["first_name"] or "there")
    label = html.escape(payload["class_label"] or "your class")
    parts = [f"<p>Hi {name},</p>", f"<p>This is a reminder about {label} tomorrow"]
    if payload["instructor_names"]:
        parts[-1] += f" with {html.escape(payload['instructor_names'])}"
    if payload["studio_name"]:
        parts[-1] += f" at {html.escape(payload['studio_name'])}"
    parts[-1] += ".</p>"
    return "\n".join(parts)


class ReminderSender:
    """Per-reservation work of one run: lookups, payload, delivery."""

    def __init__(
        self,
        mtek: MarianaTekClient,
        studios: Dict[str, Studio],
        *,
        webhook: Optional[WebhookNotifier] = None,
        email: Optional[EmailClient] = None,
        email_subject: str = "",
        result: JobResult,
    ):
        self.mtek = mtek
        self.studios = studios
        self.webhook = webhook
        self.email = email
        self.email_subject = email_subject
        self.result = result

    def process(self, reservation: Reservation) -> None:
        if not reservation.class_session_id:
            raise RecordSkipped("no class session", reservation.id)

        session_data = self.mtek.get_class_session(reservation.class_session_id)
        if not session_data:
            raise RecordSkipped("class session not found", reservation.class_session_id)
        session = ClassSession.from_api(session_data)

        user = None
        if reservation.user_id:
            user_data = self.mtek.get_user(reservation.user_id)
            user = MtekUser.from_api(user_data) if user_data else None

        studio = self.studios.get(session.location_id or "")
        payload = build_reminder_payload(reservation, session, user, studio)
        self.deliver(payload)

    def deliver(self, payload: Dict[str, Any]) -> None:
        if self.email is not None and not payload["email"]:
            raise RecordSkipped("no email address", payload["reservation_id"])

        delivered = False
        if self.webhook is not None:
            if self.webhook.notify(payload):
                delivered = True
            else:
                self.result.incr("webhook_failures")

        if self.email is not None:
            self.email.send(
                payload["email"],
                self.email_subject.format(**payload),
                render_reminder_email(payload),
                reply_to=payload["studio_email"] or None,
            )
            delivered = True

        if delivered:
            self.result.incr("sent")


def run(
    config: SendRemindersConfig,
    *,
    airtable: AirtableClient,
    mtek: MarianaTekClient,
    store,
    webhook: Optional[WebhookNotifier] = None,
    email: Optional[EmailClient] = None,
    now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> JobResult:
    """
    Process every unhandled hour bucket of the target date.

    Args:
        config: Job configuration
        airtable: Client for the base holding the studios table
        mtek: Mariana Tek client
        store: Watermark store (load()/save())
        webhook: Optional webhook delivery
        email: Optional email delivery
        now: Clock returning an aware UTC datetime

    Returns:
        JobResult with sent/skipped/errors counters and the processed hours
    """
    result = JobResult(JOB_NAME)
    plan = plan_catch_up(store.load(), now(), config.day_offset)
    watermark = plan.watermark

    logger.info(
        f"Target date {plan.target_date}, current hour {plan.current_hour}, "
        f"last processed {watermark.last_processed_hour}",
        extra={'hours': plan.hours}
    )
    if plan.is_empty:
        logger.info("All hour buckets already processed; nothing to do")
        return result

    studios = load_studios(airtable, config.studios_table)
    logger.info(f"Loaded {len(studios)} studios")

    sender = ReminderSender(
        mtek,
        studios,
        webhook=webhook,
        email=email,
        email_subject=config.email_subject,
        result=result,
    )
    processed_hours: List[int] = []

    for hour in plan.hours:
        start, end = hour_window(plan.target_date, hour)
        reservations = mtek.list_reservations(
            {
                "class_session_min_datetime": start.strftime("%Y-%m-%dT%H:%M:%SZ"),
                # half-open bucket: stop one second before the next hour
                "class_session_max_datetime": (end - timedelta(seconds=1)).strftime("%Y-%m-%dT%H:%M:%SZ"),
                "status": "pending",
            },
            page_size=config.page_size,
        )
        logger.info(f"Hour {hour:02d}: {len(reservations)} pending reservations")

        for raw in reservations:
            reservation = Reservation.from_api(raw)
            try:
                sender.process(reservation)
            except RecordSkipped as e:
                result.incr("skipped")
                logger.warning(f"Skipping reservation {reservation.id}: {e}")
            except RECORD_ERRORS as e:
                result.incr("errors")
                logger.error(f"Error processing reservation {reservation.id}: {e}")

        processed_hours.append(hour)
        result.incr("hours")
        if config.checkpoint_each_hour:
            watermark.advance(hour)
            store.save(watermark)

    watermark.advance(plan.hours[-1])
    store.save(watermark)
    result.counts["last_processed_hour"] = watermark.last_processed_hour
    logger.info(f"Processed hour buckets {processed_hours} for {plan.target_date}")
    return result


def execute(environ: Mapping[str, str], argv: List[str]) -> JobResult:
    config = SendRemindersConfig.from_env(environ)
    return run(
        config,
        airtable=make_airtable(config.api),
        mtek=make_mtek(config.api),
        store=watermark_store_from_env(environ, JOB_NAME, DEFAULT_WATERMARK_PATH),
        webhook=WebhookNotifier(config.webhook_url) if config.webhook_url else None,
        email=EmailClient(config.email) if config.email else None,
    )


def main(argv: Optional[List[str]] = None) -> int:
    return run_job(JOB_NAME, execute, sys.argv[1:] if argv is None else argv)


if __name__ == "__main__":
    sys.exit(main())
