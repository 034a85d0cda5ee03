"""Mariana Tek (JSON:API) client with rate-limit retry and link pagination."""
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import urljoin

import requests

from clients.http_retry import DEFAULT_MAX_ATTEMPTS, request_with_retry
from clients.pagination import Page, fetch_all_pages
from config import DEFAULT_MTEK_BASE_URL

logger = logging.getLogger(__name__)

JSONAPI_MEDIA_TYPE = "application/vnd.api+json"


def format_mtek_datetime(value: datetime) -> str:
    """Render an aware datetime as the Z-suffixed UTC string MTEK filters accept."""
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


class MarianaTekClient:
    """Client for the Mariana Tek admin API."""

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_MTEK_BASE_URL,
        *,
        session: Optional[requests.Session] = None,
        timeout: int = 60,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_url = f"{base_url.rstrip('/')}/api"
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._sleep = sleep
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": JSONAPI_MEDIA_TYPE,
        })

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith("http"):
            return path_or_url
        return f"{self.api_url}/{path_or_url.lstrip('/')}"

    def request(self, method: str, path_or_url: str, **kwargs) -> Dict[str, Any]:
        response = request_with_retry(
            self.session,
            method,
            self._url(path_or_url),
            max_attempts=self.max_attempts,
            sleep=self._sleep,
            timeout=self.timeout,
            **kwargs,
        )
        if not response.content:
            return {}
        return response.json()

    def get(self, path_or_url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.request("GET", path_or_url, params=params)

    def list_all(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        page_size: Optional[int] = None,
        max_items: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch every resource from a list endpoint.

        A links.next (or meta.next) URL is followed verbatim. Without one,
        page numbers are advanced while meta.pagination reports more pages
        or while full pages of page_size keep coming back.

        Args:
            path: Endpoint path relative to /api
            params: Filter query parameters
            page_size: Requested page size
            max_items: Optional cap on returned items

        Returns:
            JSON:API resource objects in server order
        """
        base_params = dict(params or {})
        if page_size:
            base_params["page_size"] = page_size

        def fetch_page(cursor: Union[None, int, str]) -> Page:
            if cursor is None:
                page_number = 1
                payload = self.get(path, params=base_params)
            elif isinstance(cursor, int):
                page_number = cursor
                payload = self.get(path, params={**base_params, "page": cursor})
            else:
                page_number = None
                payload = self.get(cursor)

            data = self._extract_list(payload, path)
            return Page(items=data, next_cursor=self._next_cursor(payload, data, page_number, page_size))

        return fetch_all_pages(fetch_page, max_items=max_items)

    def _extract_list(self, payload: Dict[str, Any], path: str) -> List[Dict[str, Any]]:
        if isinstance(payload.get("data"), list):
            return payload["data"]
        if isinstance(payload.get("reservations"), list):
            return payload["reservations"]
        logger.warning(f"Unexpected list response structure for {path}")
        return []

    def _next_cursor(
        self,
        payload: Dict[str, Any],
        data: List[Dict[str, Any]],
        page_number: Optional[int],
        page_size: Optional[int],
    ) -> Union[None, int, str]:
        links = payload.get("links") or {}
        meta = payload.get("meta") or {}
        next_link = links.get("next") or meta.get("next")
        if next_link:
            return urljoin(self.api_url + "/", next_link)

        if page_number is None:
            return None

        pagination = meta.get("pagination") or {}
        total_pages = pagination.get("pages")
        if total_pages:
            return page_number + 1 if page_number < int(total_pages) else None

        if page_size and len(data) >= page_size:
            return page_number + 1
        return None

    def get_resource(self, path: str) -> Optional[Dict[str, Any]]:
        """GET a single resource and return its data object (first item if a list)."""
        data = self.get(path).get("data")
        if isinstance(data, list):
            return data[0] if data else None
        return data or None

    # Users

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.get_resource(f"users/{user_id}")

    def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        users = self.get("users", params={"email": email}).get("data") or []
        if len(users) > 1:
            logger.warning(f"Multiple users found for email {email}, using id={users[0].get('id')}")
        return users[0] if users else None

    def search_users_by_name(self, name: str, *, page_size: int = 1) -> List[Dict[str, Any]]:
        params = {"name_query": name.strip(), "page_size": page_size}
        return self.get("users", params=params).get("data") or []

    # Scheduling

    def get_class_session(self, class_session_id: str) -> Optional[Dict[str, Any]]:
        return self.get_resource(f"class_sessions/{class_session_id}")

    def get_spot(self, spot_id: str) -> Optional[Dict[str, Any]]:
        return self.get_resource(f"spots/{spot_id}")

    def find_location_id_by_name(self, name: str) -> Optional[str]:
        data = self.get("locations", params={"name": name, "page_size": 1}).get("data") or []
        return str(data[0]["id"]) if data else None

    def find_class_sessions(
        self,
        location_id: str,
        min_datetime: datetime,
        max_datetime: datetime,
        *,
        page_size: int = 1,
    ) -> List[Dict[str, Any]]:
        """Class sessions at a location starting within [min_datetime, max_datetime]."""
        params = {
            "location": location_id,
            "min_datetime": format_mtek_datetime(min_datetime),
            "max_datetime": format_mtek_datetime(max_datetime),
            "page_size": page_size,
        }
        return self.get("class_sessions", params=params).get("data") or []

    def list_reservations(
        self, params: Dict[str, Any], *, page_size: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        return self.list_all("reservations", params, page_size=page_size)

    # Notes

    def _note_document(self, user_id: str, author_id: str, text: str, note_id: Optional[str] = None):
        document: Dict[str, Any] = {
            "data": {
                "type": "user_notes",
                "attributes": {"text": text, "is_pinned": True},
                "relationships": {
                    "user": {"data": {"type": "users", "id": str(user_id)}},
                    "author": {"data": {"type": "users", "id": str(author_id)}},
                },
            }
        }
        if note_id is not None:
            document["data"]["id"] = str(note_id)
        return document

    def create_user_note(self, user_id: str, author_id: str, text: str) -> Optional[str]:
        """Create a pinned note on a user; returns the new note id."""
        payload = self.request(
            "POST",
            "user_notes",
            json=self._note_document(user_id, author_id, text),
            headers={"Content-Type": JSONAPI_MEDIA_TYPE},
        )
        note_id = (payload.get("data") or {}).get("id")
        return str(note_id) if note_id is not None else None

    def update_user_note(self, note_id: str, user_id: str, author_id: str, text: str) -> None:
        self.request(
            "PUT",
            f"user_notes/{note_id}",
            json=self._note_document(user_id, author_id, text, note_id=note_id),
            headers={"Content-Type": JSONAPI_MEDIA_TYPE},
        )

    # Reports

    def fetch_table_report_page(
        self,
        report_id: str,
        slug: str,
        page: int,
        page_size: int,
        filters: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Return the attributes block (headers, rows, max_results_exceeded) of one report page."""
        params = {"id": report_id, "slug": slug, "page_size": page_size, "page": page}
        params.update(filters or {})
        payload = self.get("table_report_data", params=params)
        return (payload.get("data") or {}).get("attributes") or {}
