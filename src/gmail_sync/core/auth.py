"""OAuth 2.0 credentials for the Gmail API with on-disk token caching."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import Resource, build

from gmail_sync.core.exceptions import AuthenticationError
from gmail_sync.core.gmail_client import GmailClient
from gmail_sync.core.telemetry import TelemetryLog

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]


class GmailAuth:
    """Loads cached credentials and builds the Gmail service.

    ``load_stored_credentials()`` never opens a browser; the interactive
    consent flow only runs from ``authorize()``.
    """

    def __init__(
        self, credentials_path: Path, token_path: Path, *, telemetry: TelemetryLog | None = None
    ) -> None:
        self._credentials_path = credentials_path
        self._token_path = token_path
        self._telemetry = telemetry
        self._creds: Credentials | None = None
        self._service: Resource | None = None

    @property
    def credentials(self) -> Credentials | None:
        return self._creds

    def load_stored_credentials(self) -> bool:
        """Load the cached token, refreshing it if expired.

        Returns:
            True if usable credentials with the readonly scope are available.
        """
        if not self._token_path.exists():
            logger.info("No cached token at %s", self._token_path)
            return False

        try:
            creds = Credentials.from_authorized_user_file(str(self._token_path), SCOPES)
        except Exception as e:
            logger.warning("Failed to load cached token: %s", e)
            return False

        if not creds.has_scopes(SCOPES):
            logger.warning("Cached token lacks the gmail.readonly scope; re-authorization required")
            return False

        if not creds.valid:
            if not (creds.expired and creds.refresh_token):
                return False
            try:
                creds.refresh(Request())
            except Exception as e:
                logger.warning("Token refresh failed: %s", e)
                return False
            _save_token(creds, self._token_path)

        if creds is not self._creds:
            self._service = None
        self._creds = creds
        return True

    def authorize(self) -> Credentials:
        """Run the installed-app consent flow and cache the resulting token.

        Raises:
            AuthenticationError: If the client secrets are missing or the flow fails.
        """
        if not self._credentials_path.exists():
            raise AuthenticationError(
                f"Credentials file not found: {self._credentials_path}. "
                "Download it from Google Cloud Console."
            )
        try:
            flow = InstalledAppFlow.from_client_secrets_file(str(self._credentials_path), SCOPES)
            creds = flow.run_local_server(port=0)
        except Exception as e:
            raise AuthenticationError(f"OAuth flow failed: {e}") from e

        _save_token(creds, self._token_path)
        logger.info("Authorization successful, token cached at %s", self._token_path)
        self._creds = creds
        self._service = None
        return creds

    def build_service(self) -> Resource:
        """Build (once) the Gmail API service for the loaded credentials."""
        if self._creds is None and not self.load_stored_credentials():
            raise AuthenticationError("Gmail authentication required")
        if self._service is None:
            self._service = build("gmail", "v1", credentials=self._creds, cache_discovery=False)
        return self._service

    def get_profile(self) -> dict[str, Any]:
        """Return the account profile: emailAddress, messagesTotal, threadsTotal, historyId."""
        return GmailClient(self.build_service(), telemetry=self._telemetry).get_profile()


def _save_token(creds: Credentials, token_path: Path) -> None:
    """Save credentials to the token cache file."""
    token_path.parent.mkdir(parents=True, exist_ok=True)
    token_path.write_text(creds.to_json())
