"""
Spreadsheet sink — Google Sheets over the v4 REST API.

The sweeper needs three calls: read the header row, rewrite it when new
columns appear, append one data row. Auth is the partner's own service
account; the token exchange goes through google-auth with an httpx-backed
transport so the whole sink runs on one HTTP client.
"""

import json
from typing import Any, Iterable, Mapping, Protocol
from urllib.parse import quote

import google.auth.exceptions
import google.auth.transport
import httpx
from google.oauth2 import service_account

from tracker.core.export_queue import ExportDestination

SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"


class SheetsClient(Protocol):
    def read_header(self) -> list[str]: ...

    def write_header(self, header: list[str]) -> None: ...

    def append_row(self, row: list[Any]) -> None: ...


# ---------------------------------------------------------------------------
# Header/row alignment (pure)
# ---------------------------------------------------------------------------

def merge_header(existing: Iterable[str], keys: Iterable[str]) -> tuple[list[str], list[str]]:
    """Existing header plus any payload keys it lacks, in payload order. Returns (header, added)."""
    header = list(existing)
    known = set(header)
    added = []
    for key in keys:
        if key not in known:
            header.append(key)
            known.add(key)
            added.append(key)
    return header, added


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False)
    return value


def align_row(header: list[str], data: Mapping[str, Any]) -> list[Any]:
    """One cell per header column; columns the payload doesn't mention stay empty."""
    positions: dict[str, int] = {}
    for index, name in enumerate(header):
        positions.setdefault(name, index)

    row: list[Any] = [""] * len(header)
    for key, value in data.items():
        if key in positions:
            row[positions[key]] = _cell(value)
    return row


# ---------------------------------------------------------------------------
# Google implementation
# ---------------------------------------------------------------------------

class _HttpxResponse(google.auth.transport.Response):
    def __init__(self, resp: httpx.Response):
        self._resp = resp

    @property
    def status(self) -> int:
        return self._resp.status_code

    @property
    def headers(self):
        return dict(self._resp.headers)

    @property
    def data(self) -> bytes:
        return self._resp.content


class HttpxAuthRequest(google.auth.transport.Request):
    """google-auth transport adapter over an httpx.Client."""

    def __init__(self, http: httpx.Client):
        self._http = http

    def __call__(self, url, method="GET", body=None, headers=None, timeout=None, **kwargs):
        try:
            resp = self._http.request(method, url, content=body, headers=headers, timeout=timeout)
        except httpx.HTTPError as e:
            raise google.auth.exceptions.TransportError(str(e)) from e
        return _HttpxResponse(resp)


def _a1(sheet_name: str, cells: str) -> str:
    escaped = sheet_name.replace("'", "''")
    return f"'{escaped}'!{cells}"


class GoogleSheetsClient:
    def __init__(self, destination: ExportDestination, http: httpx.Client, api_base: str):
        self.destination = destination
        self._http = http
        self._api_base = api_base.rstrip("/")
        info = json.loads(destination.credentials_json)
        self._credentials = service_account.Credentials.from_service_account_info(
            info, scopes=[SHEETS_SCOPE]
        )

    def _auth_headers(self) -> dict[str, str]:
        if not self._credentials.valid:
            self._credentials.refresh(HttpxAuthRequest(self._http))
        return {"Authorization": f"Bearer {self._credentials.token}"}

    def _values_url(self, a1_range: str, suffix: str = "") -> str:
        sheet_id = quote(self.destination.spreadsheet_id, safe="")
        return f"{self._api_base}/spreadsheets/{sheet_id}/values/{quote(a1_range, safe='')}{suffix}"

    def read_header(self) -> list[str]:
        resp = self._http.get(
            self._values_url(_a1(self.destination.sheet_name, "1:1")),
            headers=self._auth_headers(),
        )
        resp.raise_for_status()
        values = resp.json().get("values") or [[]]
        return [str(v) for v in values[0]]

    def write_header(self, header: list[str]) -> None:
        resp = self._http.put(
            self._values_url(_a1(self.destination.sheet_name, "1:1")),
            params={"valueInputOption": "RAW"},
            json={"values": [header]},
            headers=self._auth_headers(),
        )
        resp.raise_for_status()

    def append_row(self, row: list[Any]) -> None:
        resp = self._http.post(
            self._values_url(_a1(self.destination.sheet_name, "A1"), ":append"),
            params={"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
            json={"values": [row]},
            headers=self._auth_headers(),
        )
        resp.raise_for_status()
