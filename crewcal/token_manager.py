from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable
from urllib.parse import urlencode

import requests

from crewcal.config_manager import ConfigManager
from crewcal.errors import OAuthError, TokenRefreshError
from crewcal.models import CalendarConnection, MicrosoftConfig, utc_now
from crewcal.repository import AssignmentRepository


logger = logging.getLogger(__name__)

REFRESH_BUFFER = timedelta(minutes=5)


def needs_refresh(expires_at: datetime, now: datetime) -> bool:
    return now >= expires_at - REFRESH_BUFFER


@dataclass
class TokenResponse:
    access_token: str
    refresh_token: str | None
    expires_at: datetime

    @classmethod
    def from_payload(cls, payload: dict[str, Any], now: datetime) -> "TokenResponse":
        access_token = str(payload.get("access_token") or "").strip()
        if not access_token:
            raise ValueError("Token response does not contain an access_token.")
        expires_in = int(payload.get("expires_in") or 3600)
        return cls(
            access_token=access_token,
            refresh_token=str(payload.get("refresh_token") or "").strip() or None,
            expires_at=now + timedelta(seconds=expires_in),
        )


def _error_text(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:300]
    if isinstance(payload, dict):
        return str(payload.get("error_description") or payload.get("error") or "")[:300]
    return str(payload)[:300]


class TokenLifecycleManager:
    """Keeps stored access tokens usable.

    Refreshes for one connection are serialized in-process; the row is re-read under the
    lock so a caller that waited reuses the refresh another thread just stored. Writers in
    other processes race as last writer wins on the single token ``UPDATE``.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        repository: AssignmentRepository,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config_manager = config_manager
        self.repository = repository
        self.clock = clock
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, connection_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(connection_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[connection_id] = lock
            return lock

    def _microsoft(self) -> tuple[MicrosoftConfig, int]:
        config = self.config_manager.load()
        return config.microsoft, config.sync.request_timeout_seconds

    @staticmethod
    def _endpoint(microsoft: MicrosoftConfig, name: str) -> str:
        return f"{microsoft.authority_url}/{microsoft.tenant_id}/oauth2/v2.0/{name}"

    def get_valid_token(self, connection: CalendarConnection) -> tuple[str, CalendarConnection]:
        if not needs_refresh(connection.token_expires_at, self.clock()):
            return connection.access_token, connection
        with self._lock_for(connection.id):
            current = self.repository.get_connection(connection.id) or connection
            if not needs_refresh(current.token_expires_at, self.clock()):
                return current.access_token, current
            tokens = self.refresh(current.refresh_token)
            refresh_token = tokens.refresh_token or current.refresh_token
            self.repository.update_connection_tokens(
                current.id,
                access_token=tokens.access_token,
                refresh_token=refresh_token,
                token_expires_at=tokens.expires_at,
            )
            logger.info("Refreshed access token for connection %s", current.id)
            updated = replace(
                current,
                access_token=tokens.access_token,
                refresh_token=refresh_token,
                token_expires_at=tokens.expires_at,
            )
            return updated.access_token, updated

    def refresh(self, refresh_token: str) -> TokenResponse:
        microsoft, timeout = self._microsoft()
        if not microsoft.is_configured():
            raise TokenRefreshError("Microsoft OAuth is not configured.")
        try:
            return self._token_request(
                microsoft,
                timeout,
                {
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except (requests.RequestException, ValueError) as exc:
            raise TokenRefreshError(f"Token refresh failed: {exc}") from exc

    def exchange_code(self, code: str) -> TokenResponse:
        microsoft, timeout = self._microsoft()
        if not microsoft.is_configured():
            raise OAuthError("Microsoft OAuth is not configured.")
        if not str(code or "").strip():
            raise OAuthError("Authorization code is missing.")
        try:
            return self._token_request(
                microsoft,
                timeout,
                {
                    "code": code,
                    "grant_type": "authorization_code",
                },
            )
        except (requests.RequestException, ValueError) as exc:
            raise OAuthError(f"Authorization code exchange failed: {exc}") from exc

    def _token_request(self, microsoft: MicrosoftConfig, timeout: int, grant: dict[str, str]) -> TokenResponse:
        body = {
            "client_id": microsoft.client_id,
            "client_secret": microsoft.client_secret,
            "redirect_uri": microsoft.redirect_uri,
            "scope": " ".join(microsoft.scopes),
            **grant,
        }
        response = requests.post(
            self._endpoint(microsoft, "token"),
            data=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=timeout,
        )
        if not response.ok:
            raise ValueError(f"HTTP {response.status_code}: {_error_text(response)}")
        return TokenResponse.from_payload(response.json(), self.clock())

    def authorization_url(self, state: str) -> str:
        microsoft, _ = self._microsoft()
        if not microsoft.is_configured():
            raise OAuthError("Microsoft OAuth is not configured.")
        query = urlencode(
            {
                "client_id": microsoft.client_id,
                "response_type": "code",
                "redirect_uri": microsoft.redirect_uri,
                "response_mode": "query",
                "scope": " ".join(microsoft.scopes),
                "state": state,
                "prompt": "select_account",
            }
        )
        return f"{self._endpoint(microsoft, 'authorize')}?{query}"
