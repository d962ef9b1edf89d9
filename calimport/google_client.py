from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from calimport.models import GoogleConfig

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar.readonly"]


class RecoverableAuthError(RuntimeError):
    """The stored credential needs interactive user authorization.

    ``recovery`` holds what the host needs to start the consent flow:
    ``authorization_url`` and the OAuth ``state``.
    """

    def __init__(self, message: str, recovery: dict[str, Any]) -> None:
        super().__init__(message)
        self.recovery = recovery


class GoogleCalendarClient:
    def __init__(self, config: GoogleConfig) -> None:
        self.config = config
        self._service: Any = None

    def _secrets_path(self) -> Path:
        if not self.config.client_secrets_file:
            raise RuntimeError("Google config is incomplete: client_secrets_file is not set.")
        path = Path(self.config.client_secrets_file)
        if not path.exists():
            raise RuntimeError(f"Google client secrets file not found: {path}")
        return path

    def _flow(self, state: str | None = None) -> Flow:
        return Flow.from_client_secrets_file(
            str(self._secrets_path()),
            scopes=SCOPES,
            redirect_uri=self.config.redirect_uri,
            state=state,
            autogenerate_code_verifier=False,
        )

    def authorization_request(self) -> dict[str, Any]:
        url, state = self._flow().authorization_url(
            access_type="offline",
            include_granted_scopes="true",
            prompt="consent",
        )
        return {"authorization_url": url, "state": state}

    def _reauthorization_required(self, reason: str) -> RecoverableAuthError:
        logger.warning("Google authorization required: %s", reason)
        return RecoverableAuthError(f"Google authorization required: {reason}", self.authorization_request())

    def _save_credentials(self, creds: Credentials) -> None:
        token_path = Path(self.config.token_file)
        token_path.parent.mkdir(parents=True, exist_ok=True)
        token_path.write_text(creds.to_json(), encoding="utf-8")
        token_path.chmod(0o600)

    def _load_credentials(self) -> Credentials:
        self._secrets_path()
        token_path = Path(self.config.token_file)
        if not token_path.exists():
            raise self._reauthorization_required("no stored token")
        creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)
        if creds.valid:
            return creds
        if creds.expired and creds.refresh_token:
            try:
                creds.refresh(Request())
            except RefreshError as exc:
                raise self._reauthorization_required(f"token refresh rejected ({exc})") from exc
            self._save_credentials(creds)
            return creds
        raise self._reauthorization_required("stored token is invalid")

    def _connect(self) -> None:
        if self._service is not None:
            return
        creds = self._load_credentials()
        self._service = build("calendar", "v3", credentials=creds, cache_discovery=False)

    def list_page(self, calendar_id: str, page_token: str = "") -> dict[str, Any]:
        self._connect()
        params: dict[str, Any] = {"calendarId": calendar_id, "maxResults": self.config.page_size}
        if page_token:
            params["pageToken"] = page_token
        try:
            return self._service.events().list(**params).execute()
        except RefreshError as exc:
            raise self._reauthorization_required(f"token refresh rejected during events.list ({exc})") from exc
        except HttpError as exc:
            if exc.resp.status == 401:
                raise self._reauthorization_required(f"HTTP 401 from events.list ({exc.reason})") from exc
            raise

    def complete_authorization(self, code: str, state: str) -> None:
        flow = self._flow(state=state)
        flow.fetch_token(code=code)
        self._save_credentials(flow.credentials)
        self._service = None
        logger.info("Stored Google credentials in %s", self.config.token_file)
