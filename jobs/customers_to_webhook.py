"""
Forward new MTEK customers (by join date) to the workflow webhook.

Rows come from the "Customers - Details" table report; columns are found
by header name. Customers who already have upcoming reservations, or who
have no email, are skipped.
"""
import logging
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from clients.mtek_client import MarianaTekClient
from clients.pagination import Page, fetch_all_pages
from clients.webhook import WebhookNotifier
from config import (
    DEFAULT_MTEK_BASE_URL,
    ApiConfig,
    ConfigError,
    get_env,
    get_int_env,
    normalize_mtek_base_url,
    require_env,
)
from jobs.base import make_mtek, run_job
from processor.models import JobResult

logger = logging.getLogger(__name__)

JOB_NAME = "customers_to_webhook"

REQUIRED_HEADERS = {
    "customer_id": "Customer ID",
    "email": "Email",
    "first_name": "First Name",
    "last_name": "Last Name",
    "full_name": "Full Name",
    "join_date": "Join Date",
    "home_location": "Home Location",
    "total_upcoming": "Total Upcoming Reservations",
}


def yesterday_utc(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return (now.date() - timedelta(days=1)).isoformat()


@dataclass(frozen=True)
class CustomersToWebhookConfig:
    api: ApiConfig
    webhook_url: str
    target_date: str
    report_id: str = "336"
    report_slug: str = "customers-details"
    page_size: int = 500

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "CustomersToWebhookConfig":
        target_date = get_env(environ, "TARGET_DATE") or yesterday_utc()
        try:
            datetime.strptime(target_date, "%Y-%m-%d")
        except ValueError:
            raise ConfigError(f"TARGET_DATE must be YYYY-MM-DD, got {target_date!r}") from None
        # report-only job: no Airtable credentials
        api = ApiConfig(
            airtable_token="",
            airtable_base_id="",
            mtek_token=require_env(environ, "MTEK_API_TOKEN"),
            mtek_base_url=normalize_mtek_base_url(
                get_env(environ, "MTEK_BASE_URL", DEFAULT_MTEK_BASE_URL)
            ),
            request_timeout=get_int_env(environ, "REQUEST_TIMEOUT", 60),
            mtek_max_attempts=get_int_env(environ, "MTEK_MAX_ATTEMPTS", 5),
        )
        return cls(
            api=api,
            webhook_url=require_env(environ, "MAKE_WEBHOOK_URL"),
            target_date=target_date,
            report_id=get_env(environ, "MTEK_CUSTOMERS_REPORT_ID", "336"),
            report_slug=get_env(environ, "MTEK_CUSTOMERS_REPORT_SLUG", "customers-details"),
            page_size=get_int_env(environ, "MTEK_REPORT_PAGE_SIZE", 500),
        )


def fetch_report(
    mtek: MarianaTekClient, config: CustomersToWebhookConfig
) -> Tuple[List[str], List[List[Any]]]:
    """
    Page through the report for the target join date.

    Returns:
        (headers from the first page, all rows)
    """
    headers: List[str] = []
    filters = {
        "min_join_date_day": config.target_date,
        "max_join_date_day": config.target_date,
    }

    def fetch_page(page: Optional[int]) -> Page:
        page = page or 1
        attrs = mtek.fetch_table_report_page(
            config.report_id, config.report_slug, page, config.page_size, filters
        )
        rows = attrs.get("rows") or []
        if not headers:
            headers.extend(attrs.get("headers") or [])
        logger.info(f"Report page {page}: {len(rows)} rows")
        more = bool(attrs.get("max_results_exceeded")) and len(rows) >= config.page_size
        return Page(items=rows, next_cursor=page + 1 if more else None)

    rows = fetch_all_pages(fetch_page, page_size=config.page_size)
    return headers, rows


def column_index(headers: List[str]) -> Dict[str, int]:
    """Map each required column to its position; fail on a missing header."""
    index = {}
    for key, header in REQUIRED_HEADERS.items():
        if header not in headers:
            raise RuntimeError(f"Header not found: {header}")
        index[key] = headers.index(header)
    return index


def build_customer_payload(row: List[Any], idx: Dict[str, int], target_date: str) -> Dict[str, Any]:
    def cell(key):
        return _cell(row, idx, key)

    email = str(cell("email"))
    first_name = cell("first_name") or ""
    last_name = cell("last_name") or ""
    join_date = cell("join_date") or None
    return {
        "target_date": target_date,
        "customer_id": cell("customer_id"),
        "email": email,
        "email_lower": email.strip().lower(),
        "first_name": first_name,
        "last_name": last_name,
        "full_name": cell("full_name") or f"{first_name} {last_name}".strip() or email,
        "join_date": join_date,
        "join_date_date_only": str(join_date)[:10] if join_date else None,
        "home_location": cell("home_location") or None,
        "total_upcoming_reservations": _to_int(cell("total_upcoming")),
    }


def _cell(row: List[Any], idx: Dict[str, int], key: str) -> Any:
    return row[idx[key]] if idx[key] < len(row) else None


def _to_int(value: Any) -> Optional[int]:
    """Blank cells count as 0. Anything unparsable is None."""
    if value is None or str(value).strip() == "":
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def run(
    config: CustomersToWebhookConfig,
    *,
    mtek: MarianaTekClient,
    webhook: WebhookNotifier,
    pause: Callable[[float], None] = time.sleep,
) -> JobResult:
    result = JobResult(JOB_NAME)
    logger.info(f"Target join date {config.target_date}")

    headers, rows = fetch_report(mtek, config)
    logger.info(f"Total rows from report: {len(rows)}")
    if not headers:
        raise RuntimeError("No headers returned from report")
    idx = column_index(headers)

    for row in rows:
        if not _cell(row, idx, "email"):
            result.incr("skipped_no_email")
            continue
        payload = build_customer_payload(row, idx, config.target_date)
        # an unreadable count may hide upcoming bookings
        if payload["total_upcoming_reservations"] != 0:
            result.incr("skipped_upcoming")
            continue

        if webhook.notify(payload):
            result.incr("sent")
        else:
            result.incr("webhook_failures")
        pause(0.1)

    return result


def execute(environ: Mapping[str, str], argv: List[str]) -> JobResult:
    config = CustomersToWebhookConfig.from_env(environ)
    return run(config, mtek=make_mtek(config.api), webhook=WebhookNotifier(config.webhook_url))


def main(argv: Optional[List[str]] = None) -> int:
    return run_job(JOB_NAME, execute, sys.argv[1:] if argv is None else argv)


if __name__ == "__main__":
    sys.exit(main())
