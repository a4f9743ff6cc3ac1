from __future__ import annotations

from collections.abc import Mapping
from typing import Any, ClassVar

from datasource_hub.db.schema import DataSourceType
from datasource_hub.integrations.base import (
    IntegrationError,
    SourceIntegration,
    SourceProperties,
    UnsupportedOperation,
)
from datasource_hub.integrations.oauth import GoogleOAuthClient, get_oauth_client


class GoogleAnalyticsIntegration(SourceIntegration):
    """Reporting-API source; it has no SQL surface, only a refresh token to validate."""

    datasource_type: ClassVar[DataSourceType] = DataSourceType.GOOGLE_ANALYTICS
    sensitive_params: ClassVar[frozenset[str]] = frozenset({"refreshToken"})

    def __init__(self, *, oauth_client: GoogleOAuthClient | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._oauth_client = oauth_client

    @property
    def oauth_client(self) -> GoogleOAuthClient:
        if self._oauth_client is None:
            self._oauth_client = get_oauth_client()
        return self._oauth_client

    def properties(self) -> SourceProperties:
        return SourceProperties(
            query_language="none",
            supports_test_queries=False,
            supports_dimension_slices=False,
        )

    def test_connection(self) -> None:
        refresh_token = self.params.get("refreshToken")
        if not refresh_token:
            raise IntegrationError("Missing Google Analytics refresh token")
        tokens = self.oauth_client.refresh_access_token(refresh_token)
        if not tokens.get("access_token"):
            raise IntegrationError("Google did not return an access token")

    def get_test_query(
        self, query: str, template_variables: Mapping[str, Any] | None, *, limit: int
    ) -> str:
        raise UnsupportedOperation("Google Analytics does not support SQL queries")

    def get_dimension_slices_query(
        self, exposure_query: Mapping[str, Any], *, lookback_days: int, max_values: int
    ) -> str:
        raise UnsupportedOperation("Google Analytics does not support dimension slices")
