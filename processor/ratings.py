"""CSV parsing and normalization for instructor rating exports."""
import csv
import io
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def looks_like_email(value: Optional[str]) -> bool:
    return bool(_EMAIL_RE.match(str(value or "").strip()))


def normalize_header(header: str) -> str:
    """Lowercase, collapse whitespace, drop '_' and '-' so column order and spelling don't matter."""
    text = re.sub(r"\s+", " ", str(header or "").lower())
    return re.sub(r"[_-]", "", text).strip()


@dataclass
class RatingRow:
    """One usable rating line from the CSV."""
    line: int
    contact: str
    date_iso: str
    rating: Optional[Union[int, float]]
    comment: str
    class_type: str


class RatingsParser:
    """Parser turning a ratings CSV export into RatingRow objects."""

    DATE_FORMATS = [
        '%Y-%m-%d',      # ISO 8601
        '%m/%d/%Y',      # US format
        '%m/%d/%y',      # US format, short year
        '%m-%d-%Y',      # US format with dashes
        '%B %d, %Y',     # Full month name
        '%b %d, %Y',     # Abbreviated month name
        '%Y/%m/%d',      # Alternative ISO format
    ]

    def __init__(self):
        self.skipped = 0

    def parse(self, csv_text: str) -> Tuple[List[RatingRow], List[str]]:
        """
        Parse CSV text.

        Args:
            csv_text: Raw CSV with a header row

        Returns:
            (usable rows, issue lines for rows that were ignored)
        """
        table = [
            row for row in csv.reader(io.StringIO(csv_text.lstrip("\ufeff")))
            if any(cell.strip() for cell in row)
        ]
        if not table:
            return [], ["CSV is empty"]

        self.skipped = 0
        headers = [normalize_header(h) for h in table[0]]
        rows: List[RatingRow] = []
        issues: List[str] = []

        for offset, cells in enumerate(table[1:]):
            line = offset + 2  # header is line 1
            values = self._by_header(headers, cells)
            contact = values.get("contact", "").strip()
            raw_date = values.get("date") or values.get("date of rating") or ""
            date_iso = self.normalize_date_only(raw_date)

            if not contact or not date_iso:
                issues.append(f"Line {line}: Missing contact or date")
                self.skipped += 1
                continue

            rating = self._parse_rating(values.get("rating", ""))
            if values.get("rating", "").strip() and rating is None:
                issues.append(f"Line {line}: Rating {values['rating']!r} is not a number")

            rows.append(RatingRow(
                line=line,
                contact=contact,
                date_iso=date_iso,
                rating=rating,
                comment=values.get("comment", "").strip(),
                class_type=values.get("class", "").strip(),
            ))

        logger.info(f"Parsed {len(rows)} usable rating rows out of {len(table) - 1}")
        return rows, issues

    def _by_header(self, headers: List[str], cells: List[str]) -> Dict[str, str]:
        values: Dict[str, str] = {}
        for index, name in enumerate(headers):
            if name and name not in values:
                values[name] = cells[index] if index < len(cells) else ""
        return values

    def _parse_rating(self, raw: str) -> Optional[Union[int, float]]:
        raw = raw.strip()
        if not raw:
            return None
        try:
            number = float(raw)
        except ValueError:
            return None
        if not math.isfinite(number):
            return None
        return int(number) if number.is_integer() else number

    def normalize_date_only(self, raw: str) -> Optional[str]:
        """
        Normalize a date to midnight UTC in Airtable's format.

        Args:
            raw: Date string, optionally with a time part that is dropped

        Returns:
            "YYYY-MM-DDT00:00:00.000Z" or None if parsing fails
        """
        text = (raw or "").strip()
        if not text:
            return None
        # "2026-02-02T10:00:00Z", "2/2/2026 10:00" -> date part only
        candidates = [text, re.split(r"[T ]", text, maxsplit=1)[0]]

        for candidate in candidates:
            for fmt in self.DATE_FORMATS:
                try:
                    parsed = datetime.strptime(candidate, fmt)
                except ValueError:
                    continue
                return parsed.strftime('%Y-%m-%dT00:00:00.000Z')
        return None
