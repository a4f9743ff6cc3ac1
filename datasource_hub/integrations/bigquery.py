from __future__ import annotations

import concurrent.futures
import time
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any, ClassVar

import google.api_core.exceptions
import google.auth.exceptions
from google.cloud import bigquery
from google.oauth2 import service_account

from datasource_hub.db.schema import DataSourceType, QueryRun
from datasource_hub.integrations.base import (
    AutoFactTableToCreate,
    IntegrationError,
    QueryResponse,
    SourceIntegration,
    SourceProperties,
    UnsupportedOperation,
    build_auto_fact_tables,
    build_dimension_slices_sql,
    normalize_rows,
)
from datasource_hub.utils.logging import get_logger

LOGGER = get_logger(__name__)

BIGQUERY_SCOPES = ("https://www.googleapis.com/auth/bigquery",)
BIGQUERY_ERRORS = (
    google.api_core.exceptions.GoogleAPIError,
    google.auth.exceptions.GoogleAuthError,
    concurrent.futures.TimeoutError,
)


def build_bigquery_client(
    *, project_id: str | None, client_email: str | None, private_key: str | None
) -> bigquery.Client:
    """Create a client from service-account fields, or from ambient credentials when none are given."""
    if not client_email or not private_key:
        return bigquery.Client(project=project_id or None)
    credentials = service_account.Credentials.from_service_account_info(
        {
            "type": "service_account",
            "project_id": project_id,
            "client_email": client_email,
            # keys pasted into forms arrive with escaped newlines
            "private_key": private_key.replace("\\n", "\n"),
            "token_uri": "https://oauth2.googleapis.com/token",
        },
        scopes=BIGQUERY_SCOPES,
    )
    return bigquery.Client(project=project_id or credentials.project_id, credentials=credentials)


def list_bigquery_datasets(
    *, project_id: str, client_email: str, private_key: str
) -> list[str]:
    try:
        client = build_bigquery_client(
            project_id=project_id, client_email=client_email, private_key=private_key
        )
        return [dataset.dataset_id for dataset in client.list_datasets()]
    except (*BIGQUERY_ERRORS, ValueError) as error:
        raise IntegrationError(str(error)) from error


class BigQueryIntegration(SourceIntegration):
    datasource_type: ClassVar[DataSourceType] = DataSourceType.BIGQUERY
    sensitive_params: ClassVar[frozenset[str]] = frozenset({"privateKey", "clientEmail"})

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._client: bigquery.Client | None = None

    def properties(self) -> SourceProperties:
        return SourceProperties(
            supports_auto_generated_fact_tables=self.tracks_event_schema(),
            supports_information_schema=True,
            supports_cancellation=True,
        )

    @property
    def client(self) -> bigquery.Client:
        if self._client is None:
            try:
                self._client = build_bigquery_client(
                    project_id=self.params.get("projectId"),
                    client_email=self.params.get("clientEmail"),
                    private_key=self.params.get("privateKey"),
                )
            except ValueError as error:
                raise IntegrationError(f"Invalid BigQuery credentials: {error}") from error
        return self._client

    def test_connection(self) -> None:
        self.run_query("SELECT 1")

    def run_query(
        self,
        sql: str,
        *,
        query_id: str | None = None,
        on_started: Callable[[str], None] | None = None,
    ) -> QueryResponse:
        started = time.perf_counter()
        try:
            job = self.client.query(sql)
            if on_started is not None:
                on_started(job.job_id)
            rows = normalize_rows(dict(row.items()) for row in job.result())
        except BIGQUERY_ERRORS as error:
            raise IntegrationError(str(error)) from error
        return QueryResponse(rows=rows, duration_ms=(time.perf_counter() - started) * 1000)

    def cancel_query(self, query_run: QueryRun) -> bool:
        if not query_run.external_id:
            return False
        try:
            self.client.cancel_job(query_run.external_id)
        except BIGQUERY_ERRORS as error:
            LOGGER.warning("Failed to cancel BigQuery job %s: %s", query_run.external_id, error)
            return False
        LOGGER.info("Cancelled BigQuery job %s for query %s", query_run.external_id, query_run.id)
        return True

    def get_dimension_slices_query(
        self, exposure_query: Mapping[str, Any], *, lookback_days: int, max_values: int
    ) -> str:
        end = datetime.now(UTC)
        return build_dimension_slices_sql(
            exposure_query,
            start=end - timedelta(days=lookback_days),
            end=end,
            max_values=max_values,
            string_type="STRING",
        )

    def get_auto_fact_tables_to_create(
        self, existing_fact_tables: Sequence[Any], schema: str
    ) -> list[AutoFactTableToCreate]:
        if not self.tracks_event_schema():
            raise UnsupportedOperation("Datasource does not support automatic fact tables")
        project_id = self.params.get("projectId") or self.client.project
        dataset_ref = f"{project_id}.{schema}"
        try:
            tables = {
                item.table_id: [field.name for field in self.client.get_table(item.reference).schema]
                for item in self.client.list_tables(dataset_ref)
            }
        except BIGQUERY_ERRORS as error:
            raise IntegrationError(str(error)) from error
        return build_auto_fact_tables(
            tables,
            existing_event_names=[getattr(table, "event_name", "") for table in existing_fact_tables],
            table_ref=lambda table_name: f"`{dataset_ref}.{table_name}`",
        )
