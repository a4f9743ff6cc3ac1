from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import Any

from datasource_hub.db.metadata import MetadataRepository
from datasource_hub.integrations.base import (
    IntegrationError,
    SourceIntegration,
    build_limited_query,
    render_sql_template,
)
from datasource_hub.integrations.registry import IntegrationFactory, get_source_integration
from datasource_hub.services.context import RequestContext
from datasource_hub.services.errors import (
    DataSourceValidationError,
    NotFoundError,
    PermissionDenied,
)
from datasource_hub.services.job_queue import CREATE_AUTO_GENERATED_FACT_TABLES, JobQueue
from datasource_hub.utils.audit import record_audit
from datasource_hub.utils.logging import get_logger, log_event, log_warning_event

LOGGER = get_logger(__name__)

COLUMN_INFERENCE_LIMIT = 5
UNSUPPORTED_MESSAGE = "Datasource does not support automatic fact tables"
_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}([ T]\d{2}:\d{2}(:\d{2}(\.\d+)?)?)?")


def infer_datatype(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int | float):
        return "number"
    if isinstance(value, str):
        return "date" if _DATE_PATTERN.match(value) else "string"
    return "other"


def infer_columns(rows: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Describe the columns of a sample result, typing each from its first non-null value."""
    columns: dict[str, str] = {}
    for row in rows:
        for name, value in row.items():
            if columns.get(name, "") not in ("", "other"):
                continue
            columns[name] = "" if value is None else infer_datatype(value)
    return [
        {
            "column": name,
            "name": name,
            "datatype": datatype or "other",
            "numberFormat": "",
            "deleted": False,
        }
        for name, datatype in columns.items()
    ]


class AutoFactTableService:
    """Proposes fact tables from tracked-event schemas and commits confirmed ones."""

    def __init__(
        self,
        *,
        metadata_repository: MetadataRepository,
        job_queue: JobQueue,
        integration_factory: IntegrationFactory = get_source_integration,
    ) -> None:
        self.repo = metadata_repository
        self.job_queue = job_queue
        self.integration_factory = integration_factory

    def discover(self, context: RequestContext, datasource_id: str, schema: str) -> dict[str, Any]:
        datasource = self.repo.get_datasource(context.organization_id, datasource_id)
        if datasource is None:
            raise NotFoundError("Cannot find data source")
        permissions = context.permissions
        if not permissions.can_create_fact_table({"projects": datasource.projects}):
            permissions.throw_permission_error()
        if not permissions.can_run_schema_queries(datasource):
            permissions.throw_permission_error()

        integration = self.integration_factory(datasource)
        if not integration.properties().supports_auto_generated_fact_tables:
            return {"status": 200, "autoFactTablesToCreate": [], "message": UNSUPPORTED_MESSAGE}

        try:
            existing = self.repo.list_fact_tables_by_datasource(context.organization_id, datasource.id)
            candidates = integration.get_auto_fact_tables_to_create(existing, schema)
        except Exception as exc:  # noqa: BLE001 - discovery failures are reported in the body
            log_warning_event(LOGGER, "fact_tables.discover_failed", datasource_id=datasource_id, error=str(exc))
            return {"status": 200, "autoFactTablesToCreate": [], "message": str(exc)}

        log_event(LOGGER, "fact_tables.discovered", datasource_id=datasource_id, count=len(candidates))
        return {
            "status": 200,
            "autoFactTablesToCreate": [candidate.to_payload() for candidate in candidates],
        }

    def commit(
        self, context: RequestContext, datasource_id: str, fact_tables: Sequence[Mapping[str, Any]]
    ) -> dict[str, Any]:
        datasource = self.repo.get_datasource(context.organization_id, datasource_id)
        if datasource is None:
            raise PermissionDenied(f"Invalid data source: {datasource_id}")
        if not context.permissions.can_create_fact_table({"projects": datasource.projects}):
            context.permissions.throw_permission_error()

        integration = self.integration_factory(datasource)
        prepared = [
            {
                "name": fact_table["name"],
                "eventName": fact_table["name"],
                "sql": fact_table["sql"],
                "userIdTypes": list(fact_table.get("userIdTypes") or []),
                "columns": self._infer_fact_table_columns(integration, fact_table["sql"]),
            }
            for fact_table in fact_tables
        ]
        if not prepared:
            return {"status": 200}

        job = self.job_queue.enqueue(
            CREATE_AUTO_GENERATED_FACT_TABLES,
            context.organization_id,
            {
                "organizationId": context.organization_id,
                "datasourceId": datasource.id,
                "userId": context.user_id,
                "factTables": prepared,
            },
            triggered_by=context.user_id,
        )
        record_audit(
            "fact_tables.auto_commit",
            "queued",
            user=context.user_id,
            organization=context.organization_id,
            details={"datasource": datasource.id, "count": len(prepared), "job": job.id},
        )
        return {"status": 200}

    def _infer_fact_table_columns(self, integration: SourceIntegration, sql: str) -> list[dict[str, Any]]:
        try:
            query = build_limited_query(render_sql_template(sql), COLUMN_INFERENCE_LIMIT)
            response = integration.run_query(query)
        except IntegrationError as error:
            raise DataSourceValidationError(str(error)) from error
        columns = infer_columns(response.rows)
        if not columns:
            raise DataSourceValidationError("SQL did not return any rows")
        return columns
