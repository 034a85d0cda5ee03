"""Airtable REST client: offset pagination, batched writes, formula helpers."""
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import quote

import requests

from clients.http_retry import raise_for_status
from clients.pagination import Page, fetch_all_pages

logger = logging.getLogger(__name__)

AIRTABLE_API_URL = "https://api.airtable.com/v0"


def escape_formula_value(value: Any) -> str:
    """Escape a value for use inside a double-quoted formula string."""
    return str(value if value is not None else "").replace("\\", "\\\\").replace('"', '\\"')


def field_equals(field_name: str, value: Any) -> str:
    """Formula matching records whose field equals value exactly."""
    return f'{{{field_name}}} = "{escape_formula_value(value)}"'


def link_contains(field_name: str, record_id: str) -> str:
    """Formula matching records whose linked-record field contains record_id."""
    return f'FIND("{escape_formula_value(record_id)}", ARRAYJOIN({{{field_name}}})) > 0'


def chunked(items: List[Any], size: int) -> Iterable[List[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class AirtableClient:
    """Client for one Airtable base."""

    BATCH_SIZE = 10  # Airtable per-request write/delete limit

    def __init__(
        self,
        token: str,
        base_id: str,
        *,
        session: Optional[requests.Session] = None,
        base_url: str = AIRTABLE_API_URL,
        timeout: int = 60,
        page_delay: float = 0.12,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the client.

        Args:
            token: Personal access token
            base_id: Airtable base id (app...)
            session: Optional requests session
            base_url: API root
            timeout: Per-request timeout in seconds
            page_delay: Pause between list pages to stay under the rate limit
            sleep: Sleep function (injectable for tests)
        """
        self.base_id = base_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.page_delay = page_delay
        self._sleep = sleep
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        })

    def table_url(self, table: str, record_id: Optional[str] = None) -> str:
        url = f"{self.base_url}/{self.base_id}/{quote(table, safe='')}"
        if record_id:
            url = f"{url}/{record_id}"
        return url

    def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        raise_for_status(response)
        if not response.content:
            return {}
        return response.json()

    def list_records(
        self,
        table: str,
        *,
        view: Optional[str] = None,
        formula: Optional[str] = None,
        fields: Optional[List[str]] = None,
        page_size: int = 100,
        max_records: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        List every record of a table, following the offset cursor.

        Args:
            table: Table name or id
            view: Optional view name restricting and ordering records
            formula: Optional filterByFormula expression
            fields: Optional list of field names to return
            page_size: Records per page (Airtable max 100)
            max_records: Optional cap on the number of records returned

        Returns:
            Raw record dicts ({"id", "fields", "createdTime"})
        """
        url = self.table_url(table)
        base_params: List[tuple] = [("pageSize", page_size)]
        if view:
            base_params.append(("view", view))
        if formula:
            base_params.append(("filterByFormula", formula))
        for name in fields or []:
            base_params.append(("fields[]", name))

        def fetch_page(offset: Optional[str]) -> Page:
            params = list(base_params)
            if offset:
                params.append(("offset", offset))
                self._sleep(self.page_delay)
            payload = self._request("GET", url, params=params)
            return Page(items=payload.get("records") or [], next_cursor=payload.get("offset"))

        records = fetch_all_pages(fetch_page, max_items=max_records)
        logger.info(f"Listed {len(records)} records from {table}")
        return records

    def find_first(self, table: str, formula: str) -> Optional[Dict[str, Any]]:
        """Return the first record matching formula, or None."""
        payload = self._request(
            "GET",
            self.table_url(table),
            params={"filterByFormula": formula, "pageSize": 1, "maxRecords": 1},
        )
        records = payload.get("records") or []
        return records[0] if records else None

    def get_record(self, table: str, record_id: str) -> Dict[str, Any]:
        return self._request("GET", self.table_url(table, record_id))

    def create_records(
        self, table: str, fields_list: List[Dict[str, Any]], *, typecast: bool = False
    ) -> List[Dict[str, Any]]:
        """Create records in batches of 10 and return the created records."""
        created: List[Dict[str, Any]] = []
        for batch in chunked(fields_list, self.BATCH_SIZE):
            body: Dict[str, Any] = {"records": [{"fields": fields} for fields in batch]}
            if typecast:
                body["typecast"] = True
            payload = self._request("POST", self.table_url(table), json=body)
            created.extend(payload.get("records") or [])
        logger.info(f"Created {len(created)} records in {table}")
        return created

    def update_records(self, table: str, updates: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Update records in batches of 10.

        Args:
            table: Table name or id
            updates: Items shaped {"id": ..., "fields": {...}}
        """
        updated: List[Dict[str, Any]] = []
        for batch in chunked(updates, self.BATCH_SIZE):
            payload = self._request("PATCH", self.table_url(table), json={"records": batch})
            updated.extend(payload.get("records") or [])
        return updated

    def update_record(self, table: str, record_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", self.table_url(table, record_id), json={"fields": fields})

    def upsert_records(
        self, table: str, fields_list: List[Dict[str, Any]], merge_on: List[str]
    ) -> List[Dict[str, Any]]:
        """
        Update-or-create records keyed on the merge_on fields.

        Args:
            table: Table name or id
            fields_list: Field maps, each containing every merge_on field
            merge_on: Field names Airtable matches existing records on
        """
        records: List[Dict[str, Any]] = []
        for batch in chunked(fields_list, self.BATCH_SIZE):
            body = {
                "performUpsert": {"fieldsToMergeOn": list(merge_on)},
                "records": [{"fields": fields} for fields in batch],
            }
            payload = self._request("PATCH", self.table_url(table), json=body)
            records.extend(payload.get("records") or [])
        return records

    def delete_records(self, table: str, record_ids: List[str]) -> int:
        """Delete records in batches of 10; returns the number deleted."""
        deleted = 0
        batches = list(chunked(record_ids, self.BATCH_SIZE))
        for index, batch in enumerate(batches, start=1):
            params = [("records[]", record_id) for record_id in batch]
            payload = self._request("DELETE", self.table_url(table), params=params)
            count = len(payload.get("records") or [])
            deleted += count
            logger.info(f"Batch {index}/{len(batches)} deleted {count} record(s) from {table}")
        return deleted

    def get_base_tables(self) -> List[Dict[str, Any]]:
        """Return the base schema (tables with fields) from the metadata API."""
        url = f"{self.base_url}/meta/bases/{self.base_id}/tables"
        return self._request("GET", url).get("tables") or []
