from __future__ import annotations

import concurrent.futures
from typing import Any

import google.auth.exceptions
import pytest

from datasource_hub.db.schema import DataSourceType
from datasource_hub.integrations import bigquery
from datasource_hub.integrations.base import IntegrationError
from datasource_hub.integrations.registry import build_integration


class _TimedOutJob:
    job_id = "job-timeout"

    def result(self) -> Any:
        raise concurrent.futures.TimeoutError()


class _StubClient:
    project = "acme"

    def __init__(self, query_error: Exception | None = None) -> None:
        self.query_error = query_error

    def query(self, sql: str) -> _TimedOutJob:
        if self.query_error is not None:
            raise self.query_error
        return _TimedOutJob()


def _integration(client: _StubClient) -> bigquery.BigQueryIntegration:
    integration = build_integration(DataSourceType.BIGQUERY, datasource_id="ds_bq", params={})
    assert isinstance(integration, bigquery.BigQueryIntegration)
    integration._client = client  # type: ignore[assignment]
    return integration


def test_credential_refresh_failure_becomes_integration_error() -> None:
    integration = _integration(_StubClient(google.auth.exceptions.RefreshError("invalid_grant")))

    with pytest.raises(IntegrationError, match="invalid_grant"):
        integration.run_query("SELECT 1")


def test_job_timeout_becomes_integration_error() -> None:
    started: list[str] = []
    integration = _integration(_StubClient())

    with pytest.raises(IntegrationError):
        integration.run_query("SELECT 1", on_started=started.append)

    assert started == ["job-timeout"]


def test_dataset_listing_maps_auth_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def _refuse(**_: Any) -> Any:
        raise google.auth.exceptions.DefaultCredentialsError("no credentials")

    monkeypatch.setattr(bigquery, "build_bigquery_client", _refuse)

    with pytest.raises(IntegrationError, match="no credentials"):
        bigquery.list_bigquery_datasets(project_id="acme", client_email="", private_key="")
