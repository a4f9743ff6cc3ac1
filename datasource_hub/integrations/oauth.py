from __future__ import annotations

from typing import Any

import httpx

from datasource_hub.integrations.base import IntegrationError
from datasource_hub.utils.config import OAuthConfig, load_oauth_config
from datasource_hub.utils.logging import get_logger

LOGGER = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


class GoogleOAuthClient:
    """Offline-access OAuth flow for Google Analytics data sources."""

    def __init__(self, config: OAuthConfig, http_client: httpx.Client | None = None) -> None:
        self.config = config
        self._http = http_client or httpx.Client(timeout=30.0)

    def generate_auth_url(self) -> str:
        url = httpx.URL(
            GOOGLE_AUTH_URL,
            params={
                "client_id": self.config.client_id,
                "redirect_uri": self.config.redirect_uri,
                "response_type": "code",
                "access_type": "offline",
                "include_granted_scopes": "true",
                "prompt": "consent",
                "scope": self.config.scope,
            },
        )
        return str(url)

    def get_token(self, code: str) -> dict[str, Any]:
        """Exchange an authorization code for tokens."""
        return self._post_token(
            {
                "code": code,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "redirect_uri": self.config.redirect_uri,
                "grant_type": "authorization_code",
            }
        )

    def refresh_access_token(self, refresh_token: str) -> dict[str, Any]:
        return self._post_token(
            {
                "refresh_token": refresh_token,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "grant_type": "refresh_token",
            }
        )

    def _post_token(self, data: dict[str, str]) -> dict[str, Any]:
        try:
            response = self._http.post(GOOGLE_TOKEN_URL, data=data)
            response.raise_for_status()
        except httpx.HTTPStatusError as error:
            LOGGER.warning("Google token endpoint returned %s", error.response.status_code)
            raise IntegrationError(_describe_error(error.response)) from error
        except httpx.HTTPError as error:
            raise IntegrationError(f"Could not reach Google: {error}") from error
        return response.json()


def _describe_error(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    return payload.get("error_description") or payload.get("error") or f"HTTP {response.status_code}"


def get_oauth_client() -> GoogleOAuthClient:
    return GoogleOAuthClient(load_oauth_config())
