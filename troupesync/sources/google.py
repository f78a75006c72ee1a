"""
troupesync.sources.google — Google Drive / Sheets / Forms Client
=================================================================

Thin read-only client for the three Google APIs attendance is pulled from.
Every call is bounded by a timeout.  Transient failures (connection errors,
HTTP 429 and 5xx) are retried with exponential backoff + jitter; answers
that say the data is gone or unusable are not retried:

- 403 / 404 / 410 → :class:`SourceUnreachable` (the file is gone or shared away)
- 401, or a transient failure that outlasts the retries →
  :class:`ProviderUnavailable`, which aborts the whole pass
- other 4xx, or a body that isn't the expected JSON → :class:`SourceMalformed`

The client is synchronous; adapters run on worker threads.
"""

from __future__ import annotations

import logging
import os
import random
import time
from collections.abc import Callable
from typing import Any

import httpx

from troupesync.constants import (
    DRIVE_API,
    FORMS_API,
    SHEETS_EXPORT_URL,
)
from troupesync.errors import ProviderUnavailable, SourceMalformed, SourceUnreachable

logger = logging.getLogger(__name__)

_GONE_STATUSES = frozenset({403, 404, 410})
_MAX_BACKOFF = 30.0


class GoogleClient:
    """Bounded, retrying access to Drive, Sheets exports and Forms.

    Parameters
    ----------
    token:
        OAuth bearer token.  Defaults to ``GOOGLE_API_TOKEN`` from the
        environment; requests are sent unauthenticated when neither is set.
    timeout:
        Per-request timeout in seconds.
    max_retries:
        Retries after the first attempt for transient failures.
    backoff:
        Base delay in seconds, doubled per attempt.
    transport:
        Optional ``httpx`` transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        token: str | None = None,
        *,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff: float = 0.5,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.token = token if token is not None else os.getenv("GOOGLE_API_TOKEN", "")
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.Client | None = None

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    def open(self) -> None:
        """Create the underlying connection pool (idempotent)."""
        if self._client is not None:
            return
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        self._client = httpx.Client(
            timeout=self.timeout,
            headers=headers,
            transport=self._transport or httpx.HTTPTransport(retries=1),
            follow_redirects=True,
        )

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> GoogleClient:
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------
    def _request(self, url: str, params: dict[str, Any] | None = None) -> httpx.Response:
        self.open()
        assert self._client is not None
        last_error = "no attempt made"
        for attempt in range(self.max_retries + 1):
            if attempt:
                delay = min(self.backoff * (2 ** (attempt - 1)), _MAX_BACKOFF)
                self._sleep(delay + random.uniform(0, delay * 0.5))
            try:
                response = self._client.get(url, params=params)
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "GET %s failed (attempt %d/%d): %s",
                    url, attempt + 1, self.max_retries + 1, last_error,
                )
                continue

            status = response.status_code
            if status < 400:
                return response
            if status == 401:
                raise ProviderUnavailable(f"{url} answered 401; check GOOGLE_API_TOKEN")
            if status in _GONE_STATUSES:
                raise SourceUnreachable(f"{url} answered {status}")
            if status == 429 or status >= 500:
                last_error = f"HTTP {status}"
                logger.warning(
                    "GET %s answered %d (attempt %d/%d)",
                    url, status, attempt + 1, self.max_retries + 1,
                )
                continue
            raise SourceMalformed(f"{url} answered {status}")

        raise ProviderUnavailable(f"{url} kept failing: {last_error}")

    def get_json(self, url: str, params: dict[str, Any] | None = None) -> dict:
        response = self._request(url, params)
        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceMalformed(f"{url} did not return JSON") from exc
        if not isinstance(payload, dict):
            raise SourceMalformed(f"{url} returned {type(payload).__name__}, expected object")
        return payload

    def get_text(self, url: str) -> str:
        return self._request(url).text

    # -------------------------------------------------------------------
    # Drive
    # -------------------------------------------------------------------
    def list_folder(self, folder_id: str) -> list[dict]:
        """Direct children of a Drive folder (id, name, mimeType, createdTime)."""
        files: list[dict] = []
        page_token: str | None = None
        while True:
            params = {
                "q": f"'{folder_id}' in parents and trashed = false",
                "fields": "nextPageToken, files(id, name, mimeType, createdTime)",
                "pageSize": 1000,
            }
            if page_token:
                params["pageToken"] = page_token
            payload = self.get_json(f"{DRIVE_API}/files", params)
            batch = payload.get("files", [])
            if not isinstance(batch, list):
                raise SourceMalformed(f"Drive listing for {folder_id} has no file list")
            files.extend(batch)
            page_token = payload.get("nextPageToken")
            if not page_token:
                return files

    # -------------------------------------------------------------------
    # Sheets
    # -------------------------------------------------------------------
    def export_sheet_csv(self, spreadsheet_id: str) -> str:
        return self.get_text(SHEETS_EXPORT_URL.format(id=spreadsheet_id))

    # -------------------------------------------------------------------
    # Forms
    # -------------------------------------------------------------------
    def get_form(self, form_id: str) -> dict:
        return self.get_json(f"{FORMS_API}/forms/{form_id}")

    def list_form_responses(self, form_id: str) -> list[dict]:
        responses: list[dict] = []
        page_token: str | None = None
        while True:
            params = {"pageToken": page_token} if page_token else None
            payload = self.get_json(f"{FORMS_API}/forms/{form_id}/responses", params)
            batch = payload.get("responses", [])
            if not isinstance(batch, list):
                raise SourceMalformed(f"Responses for form {form_id} are not a list")
            responses.extend(batch)
            page_token = payload.get("nextPageToken")
            if not page_token:
                return responses
