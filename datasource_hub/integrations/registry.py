from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from datasource_hub.db.schema import DataSource, DataSourceType
from datasource_hub.integrations.base import IntegrationError, SourceIntegration
from datasource_hub.integrations.bigquery import BigQueryIntegration
from datasource_hub.integrations.google_analytics import GoogleAnalyticsIntegration
from datasource_hub.integrations.sql import SqlAlchemyIntegration
from datasource_hub.utils.crypto import decrypt_json, encrypt_json

IntegrationFactory = Callable[[DataSource], SourceIntegration]

SQL_SOURCE_TYPES = frozenset(
    {
        DataSourceType.POSTGRES,
        DataSourceType.MYSQL,
        DataSourceType.REDSHIFT,
        DataSourceType.SNOWFLAKE,
        DataSourceType.SQLITE,
    }
)


def build_integration(
    datasource_type: DataSourceType | str,
    *,
    datasource_id: str | None,
    params: Mapping[str, Any],
    settings: Mapping[str, Any] | None = None,
    projects: list[str] | None = None,
) -> SourceIntegration:
    source_type = DataSourceType(datasource_type)
    common = {
        "datasource_id": datasource_id,
        "params": params,
        "settings": settings,
        "projects": projects,
    }
    if source_type in SQL_SOURCE_TYPES:
        return SqlAlchemyIntegration(datasource_type=source_type, **common)
    if source_type is DataSourceType.BIGQUERY:
        return BigQueryIntegration(**common)
    if source_type is DataSourceType.GOOGLE_ANALYTICS:
        return GoogleAnalyticsIntegration(**common)
    raise IntegrationError(f"Unsupported data source type: {source_type.value}")


def get_source_integration(datasource: DataSource) -> SourceIntegration:
    """Build the live integration for a stored data source, decrypting its params."""
    return build_integration(
        datasource.type,
        datasource_id=datasource.id,
        params=decrypt_json(datasource.params),
        settings=datasource.settings,
        projects=datasource.projects,
    )


def merge_params(
    integration: SourceIntegration, updates: Mapping[str, Any]
) -> dict[str, Any]:
    """Overlay ``updates`` on the live params; blank secrets keep their stored value."""
    secret_keys = integration.get_sensitive_param_keys()
    merged = dict(integration.params)
    for key, value in updates.items():
        if key in secret_keys and not value:
            continue
        merged[key] = value
    integration.params = merged
    return merged


def encrypt_params(params: Mapping[str, Any]) -> str:
    return encrypt_json(dict(params))
