"""
Build the per-class bike measurements sheet and link its PDF export on the class record.

Usage: generate_measurements_sheet <CLASS_RECORD_ID>
"""
import logging
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from googleapiclient.errors import HttpError

from clients.airtable_client import AirtableClient
from clients.google_sheets import SheetsGenerator, load_credentials
from config import ApiConfig, ConfigError, get_env, get_int_env, require_env
from jobs.base import make_airtable, run_job
from processor.models import JobResult, first_value

logger = logging.getLogger(__name__)

JOB_NAME = "generate_measurements_sheet"

CLASS_NAME = "Class!"
CLASS_RESERVATIONS = "Class Reservations"
CLASS_DOWNLOAD_PDF = "Download PDF"
CLASS_PDF_LINK = "PDF LINK"

RES_STATUS = "Status"
RES_SPOT = "Spot number"
RES_CHANGE = "CHANGE SINCE LAST UPDATE?"
# Lookup fields written to columns B..G and I, in sheet order
RES_NAME = "Name (from Customer)"
RES_SHOE = "Shoe Size (from Customer)"
RES_SEAT_HEIGHT = "Seat height (from Customer)"
RES_SEAT_POS = "Seat position (from Customer)"
RES_HB_HEIGHT = "Handlebar height (from Customer)"
RES_HB_POS = "Handlebar position (from Customer)"
RES_NOTES = "Class NOTES (from Customer)"


@dataclass(frozen=True)
class MeasurementsSheetConfig:
    api: ApiConfig
    class_record_id: str
    template_id: str
    folder_id: str = ""
    classes_table: str = "CTT SYNC DO NOT TOUCH"
    reservations_table: str = "Class Reservations"
    sheet_name: str = "Sheet1"
    max_rows: int = 200
    class_name_cell: str = "A1"

    @classmethod
    def from_env(cls, environ: Mapping[str, str], argv: Optional[List[str]] = None) -> "MeasurementsSheetConfig":
        if not argv:
            raise ConfigError("Usage: generate_measurements_sheet <CLASS_RECORD_ID>")
        return cls(
            api=ApiConfig.from_env(environ, require_mtek=False),
            class_record_id=argv[0].strip(),
            template_id=require_env(environ, "GOOGLE_TEMPLATE_SPREADSHEET_ID"),
            folder_id=get_env(environ, "GOOGLE_DESTINATION_FOLDER_ID"),
            classes_table=get_env(environ, "AIRTABLE_CTT_TABLE", "CTT SYNC DO NOT TOUCH"),
            reservations_table=get_env(environ, "AIRTABLE_RESERVATIONS_TABLE", "Class Reservations"),
            sheet_name=get_env(environ, "GOOGLE_SHEET_NAME", "Sheet1"),
            max_rows=get_int_env(environ, "GOOGLE_SHEET_MAX_ROWS", 200),
            class_name_cell=get_env(environ, "GOOGLE_CLASS_NAME_CELL", "A1"),
        )


def normalize_spot(value: Any) -> str:
    return "" if value is None else str(value).strip()


def index_spot_rows(column_a: List[List[Any]]) -> Dict[str, int]:
    """Map spot label -> 1-based sheet row from the template's column A."""
    spot_rows = {}
    for offset, row in enumerate(column_a):
        spot = normalize_spot(row[0]) if row else ""
        if spot:
            spot_rows[spot] = offset + 1
    return spot_rows


def measurement_row(spot: str, fields: Dict[str, Any]) -> List[Any]:
    return [
        spot,
        first_value(fields.get(RES_NAME)),
        first_value(fields.get(RES_SHOE)),
        first_value(fields.get(RES_SEAT_HEIGHT)),
        first_value(fields.get(RES_SEAT_POS)),
        first_value(fields.get(RES_HB_HEIGHT)),
        first_value(fields.get(RES_HB_POS)),
        "" if fields.get(RES_CHANGE) is None else fields.get(RES_CHANGE),
        first_value(fields.get(RES_NOTES)),
    ]


def run(
    config: MeasurementsSheetConfig,
    *,
    airtable: AirtableClient,
    sheets: SheetsGenerator,
) -> JobResult:
    result = JobResult(JOB_NAME)
    record_id = config.class_record_id
    logger.info(f"Generating measurements sheet for class record {record_id}")

    class_fields = airtable.get_record(config.classes_table, record_id).get("fields") or {}
    class_name = str(class_fields.get(CLASS_NAME) or "").strip() or record_id
    reservation_ids = class_fields.get(CLASS_RESERVATIONS)
    if not isinstance(reservation_ids, list):
        reservation_ids = []
    logger.info(f"Class name: {class_name} | Reservations linked: {len(reservation_ids)}")

    spreadsheet_id = sheets.copy_template(
        config.template_id,
        f"Class Info + Measurements - {class_name}",
        config.folder_id or None,
    )

    name_range = f"{config.sheet_name}!{config.class_name_cell}"
    try:
        sheets.write_range(spreadsheet_id, name_range, [[class_name]])
    except HttpError as e:
        logger.warning(f"Failed to write class name into {name_range}: {e}")

    spot_rows = index_spot_rows(
        sheets.read_range(spreadsheet_id, f"{config.sheet_name}!A1:A{config.max_rows}")
    )
    logger.info(f"Indexed {len(spot_rows)} spot rows from template")

    for reservation_id in reservation_ids:
        fields = airtable.get_record(config.reservations_table, reservation_id).get("fields") or {}
        status = str(fields.get(RES_STATUS) or "")
        if "cancel" in status.lower():
            result.incr("skipped_cancelled")
            logger.info(f"Skipping reservation {reservation_id} (status: {status})")
            continue

        spot = normalize_spot(fields.get(RES_SPOT))
        row_number = spot_rows.get(spot) if spot else None
        if not row_number:
            result.incr("skipped_no_spot")
            logger.info(f"Skipping reservation {reservation_id} (spot {spot!r} not in template)")
            continue

        sheets.write_range(
            spreadsheet_id,
            f"{config.sheet_name}!A{row_number}:I{row_number}",
            [measurement_row(spot, fields)],
        )
        result.incr("rows_written")

    web_view_link = sheets.get_web_view_link(spreadsheet_id)
    pdf_url = SheetsGenerator.pdf_export_url(spreadsheet_id)
    logger.info(f"PDF URL: {pdf_url}")

    airtable.update_record(
        config.classes_table,
        record_id,
        {CLASS_DOWNLOAD_PDF: [{"url": pdf_url}], CLASS_PDF_LINK: web_view_link},
    )
    return result


def execute(environ: Mapping[str, str], argv: List[str]) -> JobResult:
    config = MeasurementsSheetConfig.from_env(environ, argv)
    sheets = SheetsGenerator.from_credentials(load_credentials(environ))
    return run(config, airtable=make_airtable(config.api), sheets=sheets)


def main(argv: Optional[List[str]] = None) -> int:
    return run_job(JOB_NAME, execute, sys.argv[1:] if argv is None else argv)


if __name__ == "__main__":
    sys.exit(main())
