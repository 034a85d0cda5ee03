"""Google Drive/Sheets access for generating per-class spreadsheets."""
import json
import logging
from typing import Any, List, Mapping, Optional

from google.oauth2 import service_account
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from config import ConfigError, get_env

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/spreadsheets",
]
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"


def load_credentials(environ: Mapping[str, str]):
    """
    Build Google credentials from the environment.

    GOOGLE_SERVICE_ACCOUNT_JSON (raw key JSON) wins; otherwise an OAuth
    refresh token from GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET and
    GOOGLE_REFRESH_TOKEN is used.

    Raises:
        ConfigError: If neither form is configured or the key JSON is invalid
    """
    raw_key = get_env(environ, "GOOGLE_SERVICE_ACCOUNT_JSON")
    if raw_key:
        try:
            info = json.loads(raw_key)
            return service_account.Credentials.from_service_account_info(info, scopes=SCOPES)
        except ValueError as e:
            raise ConfigError(f"Invalid GOOGLE_SERVICE_ACCOUNT_JSON: {e}") from e

    refresh_token = get_env(environ, "GOOGLE_REFRESH_TOKEN")
    client_id = get_env(environ, "GOOGLE_CLIENT_ID")
    client_secret = get_env(environ, "GOOGLE_CLIENT_SECRET")
    if refresh_token and client_id and client_secret:
        return Credentials(
            token=None,
            refresh_token=refresh_token,
            client_id=client_id,
            client_secret=client_secret,
            token_uri=GOOGLE_TOKEN_URI,
            scopes=SCOPES,
        )

    raise ConfigError(
        "Missing env var: GOOGLE_SERVICE_ACCOUNT_JSON or "
        "GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET/GOOGLE_REFRESH_TOKEN"
    )


class SheetsGenerator:
    """Thin wrapper over the Drive v3 and Sheets v4 discovery clients."""

    def __init__(self, drive: Any, sheets: Any):
        self.drive = drive
        self.sheets = sheets

    @classmethod
    def from_credentials(cls, credentials) -> "SheetsGenerator":
        drive = build("drive", "v3", credentials=credentials, cache_discovery=False)
        sheets = build("sheets", "v4", credentials=credentials, cache_discovery=False)
        return cls(drive, sheets)

    def copy_template(self, template_id: str, name: str, folder_id: Optional[str] = None) -> str:
        """Copy a template file and return the new file id."""
        body: dict = {"name": name}
        if folder_id:
            body["parents"] = [folder_id]
        copied = self.drive.files().copy(
            fileId=template_id, body=body, supportsAllDrives=True
        ).execute()
        file_id = copied.get("id")
        if not file_id:
            raise RuntimeError("Failed to create spreadsheet from template (no ID)")
        logger.info(f"Created spreadsheet {file_id} from template {template_id}")
        return file_id

    def write_range(self, spreadsheet_id: str, a1_range: str, values: List[List[Any]]) -> None:
        self.sheets.spreadsheets().values().update(
            spreadsheetId=spreadsheet_id,
            range=a1_range,
            valueInputOption="RAW",
            body={"values": values},
        ).execute()

    def read_range(self, spreadsheet_id: str, a1_range: str) -> List[List[Any]]:
        result = self.sheets.spreadsheets().values().get(
            spreadsheetId=spreadsheet_id, range=a1_range
        ).execute()
        return result.get("values") or []

    def get_web_view_link(self, file_id: str) -> str:
        meta = self.drive.files().get(
            fileId=file_id, fields="webViewLink", supportsAllDrives=True
        ).execute()
        return meta.get("webViewLink") or ""

    @staticmethod
    def pdf_export_url(spreadsheet_id: str) -> str:
        return f"https://docs.google.com/spreadsheets/d/{spreadsheet_id}/export?format=pdf"
