from __future__ import annotations

import copy
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from datasource_hub.db.metadata import MetadataRepository
from datasource_hub.db.schema import DataSource, DataSourceType, Metric, QueryRun
from datasource_hub.integrations.base import IntegrationError, SourceIntegration
from datasource_hub.integrations.bigquery import list_bigquery_datasets
from datasource_hub.integrations.oauth import GoogleOAuthClient, get_oauth_client
from datasource_hub.integrations.registry import (
    IntegrationFactory,
    encrypt_params,
    get_source_integration,
    merge_params,
)
from datasource_hub.services.context import RequestContext
from datasource_hub.services.errors import (
    DataSourceInUseError,
    DataSourceValidationError,
    NotFoundError,
)
from datasource_hub.services.job_queue import CREATE_AUTO_GENERATED_METRICS, JobQueue
from datasource_hub.utils.audit import record_audit
from datasource_hub.utils.config import QueryConfig, load_query_config
from datasource_hub.utils.crypto import EncryptionError
from datasource_hub.utils.logging import get_logger, log_event, log_timing, log_warning_event
from datasource_hub.utils.metrics import emit_datasource_metric

LOGGER = get_logger(__name__)

DEFAULT_EVENT_SETTINGS = {
    "experimentEvent": "$experiment_started",
    "experimentIdProperty": "Experiment name",
    "variationIdProperty": "Variant name",
}
TYPE_CHANGE_MESSAGE = "Cannot change the type of an existing data source. Create a new one instead."
DEFAULT_DATASOURCE_MESSAGE = (
    "Error: This is the default data source for your organization. You must select a new "
    "default data source in your Organization Settings before deleting this one."
)

BigQueryDatasetLister = Callable[..., list[str]]


# Serialization helpers -------------------------------------------------
def datasource_payload(datasource: DataSource, integration: SourceIntegration | None) -> dict[str, Any]:
    """Serialize a data source; ``integration`` is None when its params could not be decrypted."""
    payload: dict[str, Any] = {
        "id": datasource.id,
        "name": datasource.name,
        "description": datasource.description,
        "type": datasource.type.value,
        "settings": datasource.settings or {},
        "projects": list(datasource.projects or []),
        "params": integration.non_sensitive_params() if integration is not None else {},
        "dateCreated": datasource.date_created,
        "dateUpdated": datasource.date_updated,
    }
    if integration is None:
        payload["decryptionError"] = True
    return payload


def query_run_payload(query_run: QueryRun) -> dict[str, Any]:
    return {
        "id": query_run.id,
        "datasource": query_run.datasource_id,
        "language": query_run.language,
        "query": query_run.query,
        "status": query_run.status.value,
        "result": query_run.result,
        "error": query_run.error,
        "externalId": query_run.external_id,
        "createdAt": query_run.created_at,
        "startedAt": query_run.started_at,
        "finishedAt": query_run.finished_at,
    }


def metric_payload(metric: Metric) -> dict[str, Any]:
    return {
        "id": metric.id,
        "datasource": metric.datasource_id,
        "name": metric.name,
        "description": metric.description,
        "type": metric.type,
        "sql": metric.sql,
        "userIdTypes": list(metric.user_id_types or []),
        "projects": list(metric.projects or []),
        "owner": metric.owner,
        "dateCreated": metric.date_created,
    }


def with_default_event_settings(settings: Mapping[str, Any] | None) -> dict[str, Any]:
    """Fill in event property names the caller left out, never overriding supplied ones."""
    merged = copy.deepcopy(dict(settings or {}))
    merged["events"] = {**DEFAULT_EVENT_SETTINGS, **(merged.get("events") or {})}
    return merged


# Delete cascade steps --------------------------------------------------
# Each guard raises DataSourceInUseError; they run in the order listed in DELETE_GUARDS.
def ensure_not_default_datasource(
    repo: MetadataRepository, context: RequestContext, datasource: DataSource
) -> None:
    if context.default_datasource_id == datasource.id:
        raise DataSourceInUseError(DEFAULT_DATASOURCE_MESSAGE)


def ensure_no_metrics(repo: MetadataRepository, context: RequestContext, datasource: DataSource) -> None:
    if repo.list_metrics_by_datasource(context.organization_id, datasource.id):
        raise DataSourceInUseError("Error: Please delete all metrics tied to this datasource first.")


def ensure_no_segments(repo: MetadataRepository, context: RequestContext, datasource: DataSource) -> None:
    if repo.list_segments_by_datasource(context.organization_id, datasource.id):
        raise DataSourceInUseError("Error: Please delete all segments tied to this datasource first.")


def ensure_no_dimensions(
    repo: MetadataRepository, context: RequestContext, datasource: DataSource
) -> None:
    if repo.list_dimensions_by_datasource(context.organization_id, datasource.id):
        raise DataSourceInUseError("Error: Please delete all dimensions tied to this datasource first.")


DELETE_GUARDS = (
    ensure_not_default_datasource,
    ensure_no_metrics,
    ensure_no_segments,
    ensure_no_dimensions,
)


def remove_information_schema(
    repo: MetadataRepository, context: RequestContext, datasource: DataSource
) -> bool:
    """Drop the cached warehouse metadata a deleted data source pointed at."""
    information_schema_id = (datasource.settings or {}).get("informationSchemaId")
    if not information_schema_id:
        return False
    try:
        with repo.session.begin_nested():
            repo.delete_information_schema(context.organization_id, information_schema_id)
            repo.delete_information_schema_tables(context.organization_id, information_schema_id)
    except SQLAlchemyError:
        LOGGER.exception(
            "Failed to remove information schema %s for data source %s",
            information_schema_id,
            datasource.id,
        )
        return False
    return True


class DataSourceService:
    """Data-source lifecycle: authorization, validation, mutation, then cascading cleanup."""

    def __init__(
        self,
        *,
        metadata_repository: MetadataRepository,
        job_queue: JobQueue,
        integration_factory: IntegrationFactory = get_source_integration,
        oauth_client_factory: Callable[[], GoogleOAuthClient] = get_oauth_client,
        bigquery_dataset_lister: BigQueryDatasetLister = list_bigquery_datasets,
        query_config: QueryConfig | None = None,
    ) -> None:
        self.repo = metadata_repository
        self.job_queue = job_queue
        self.integration_factory = integration_factory
        self.oauth_client_factory = oauth_client_factory
        self.bigquery_dataset_lister = bigquery_dataset_lister
        self.query_config = query_config or load_query_config()

    def _require_datasource(self, context: RequestContext, datasource_id: str) -> DataSource:
        datasource = self.repo.get_datasource(context.organization_id, datasource_id)
        if datasource is None:
            raise NotFoundError("Cannot find data source")
        return datasource

    # Reads -------------------------------------------------------------
    def _readable_integration(self, datasource: DataSource) -> SourceIntegration | None:
        try:
            return self.integration_factory(datasource)
        except EncryptionError as error:
            log_warning_event(
                LOGGER, "datasource.decryption_failed", datasource_id=datasource.id, error=str(error)
            )
            return None

    def list_datasources(self, context: RequestContext) -> list[dict[str, Any]]:
        return [
            datasource_payload(datasource, self._readable_integration(datasource))
            for datasource in self.repo.list_datasources(context.organization_id)
            if context.permissions.can_read_datasource(datasource)
        ]

    def get_datasource(self, context: RequestContext, datasource_id: str) -> dict[str, Any]:
        datasource = self._require_datasource(context, datasource_id)
        if not context.permissions.can_read_datasource(datasource):
            context.permissions.throw_permission_error()
        return datasource_payload(datasource, self._readable_integration(datasource))

    def list_metrics(self, context: RequestContext, datasource_id: str) -> list[dict[str, Any]]:
        return [
            metric_payload(metric)
            for metric in self.repo.list_metrics_by_datasource(context.organization_id, datasource_id)
            if context.permissions.can_read_data(metric.projects)
        ]

    def list_queries(self, context: RequestContext, datasource_id: str) -> list[dict[str, Any]]:
        datasource = self._require_datasource(context, datasource_id)
        if not context.permissions.can_read_data(datasource.projects):
            context.permissions.throw_permission_error()
        return [
            query_run_payload(query_run)
            for query_run in self.repo.list_query_runs_by_datasource(context.organization_id, datasource.id)
        ]

    def get_queries_by_ids(
        self, context: RequestContext, query_ids: Sequence[str]
    ) -> list[dict[str, Any] | None]:
        """Return one entry per requested id, in request order, ``None`` where nothing matched."""
        found = {
            query_run.id: query_run
            for query_run in self.repo.get_query_runs_by_ids(context.organization_id, query_ids)
        }
        return [
            query_run_payload(found[query_id]) if query_id in found else None for query_id in query_ids
        ]

    # Create ------------------------------------------------------------
    def create_datasource(self, context: RequestContext, payload: Mapping[str, Any]) -> str:
        projects = list(payload.get("projects") or [])
        if not context.permissions.can_create_datasource({"projects": projects}):
            context.permissions.throw_permission_error()

        try:
            settings = with_default_event_settings(payload.get("settings"))
            params = dict(payload.get("params") or {})
            draft = DataSource(
                organization_id=context.organization_id,
                name=payload.get("name") or "",
                type=DataSourceType(payload["type"]),
                params=encrypt_params(params),
                settings=settings,
                projects=projects,
            )
            self.integration_factory(draft).test_connection()
            datasource = self.repo.create_datasource(
                organization_id=context.organization_id,
                name=draft.name,
                type=draft.type,
                params=draft.params,
                settings=settings,
                description=payload.get("description"),
                projects=projects,
            )
        except (IntegrationError, EncryptionError, SQLAlchemyError, ValueError, KeyError) as exc:
            record_audit(
                "datasource.create",
                "failure",
                user=context.user_id,
                organization=context.organization_id,
                details={"name": payload.get("name"), "error": str(exc)},
            )
            raise DataSourceValidationError(str(exc) or "An error occurred") from exc

        record_audit(
            "datasource.create",
            "success",
            user=context.user_id,
            organization=context.organization_id,
            details={"datasource": datasource.id, "type": datasource.type.value},
        )
        emit_datasource_metric("created", datasource_id=datasource.id, type=datasource.type.value)
        return datasource.id

    # Update ------------------------------------------------------------
    def update_datasource(
        self, context: RequestContext, datasource_id: str, payload: Mapping[str, Any]
    ) -> None:
        """Apply a partial update; ``payload`` holds only the keys the caller sent."""
        datasource = self._require_datasource(context, datasource_id)
        permissions = context.permissions
        if not permissions.can_update_datasource_settings(datasource):
            permissions.throw_permission_error()

        params = payload.get("params")
        if params is not None and not permissions.can_update_datasource_params(datasource):
            permissions.throw_permission_error()

        projects = payload.get("projects")
        if projects is not None and not permissions.can_update_datasource_settings({"projects": projects}):
            permissions.throw_permission_error()

        requested_type = payload.get("type")
        if requested_type and requested_type != datasource.type:
            raise DataSourceValidationError(TYPE_CHANGE_MESSAGE)

        metrics_to_create = payload.get("metricsToCreate") or []
        if metrics_to_create:
            self.job_queue.enqueue(
                CREATE_AUTO_GENERATED_METRICS,
                context.organization_id,
                {
                    "organizationId": context.organization_id,
                    "datasourceId": datasource.id,
                    "userId": context.user_id,
                    "metricsToCreate": [dict(metric) for metric in metrics_to_create],
                },
                triggered_by=context.user_id,
            )

        try:
            updates = self._build_updates(datasource, payload)
            with log_timing(LOGGER, "datasource.update", datasource_id=datasource.id):
                self.repo.update_datasource(datasource, updates)
        except (IntegrationError, EncryptionError, SQLAlchemyError) as exc:
            LOGGER.error("Failed to update data source %s: %s", datasource.id, exc)
            record_audit(
                "datasource.update",
                "failure",
                user=context.user_id,
                organization=context.organization_id,
                details={"datasource": datasource.id, "error": str(exc)},
            )
            raise DataSourceValidationError(str(exc) or "An error occurred") from exc

        record_audit(
            "datasource.update",
            "success",
            user=context.user_id,
            organization=context.organization_id,
            details={"datasource": datasource.id, "fields": sorted(updates)},
        )

    def _build_updates(self, datasource: DataSource, payload: Mapping[str, Any]) -> dict[str, Any]:
        updates: dict[str, Any] = {}
        if payload.get("name"):
            updates["name"] = payload["name"]
        if "description" in payload:
            updates["description"] = payload["description"]
        if payload.get("settings"):
            updates["settings"] = copy.deepcopy(dict(payload["settings"]))
        if payload.get("projects") is not None:
            updates["projects"] = list(payload["projects"])

        params = payload.get("params")
        if params is None:
            return updates
        params = dict(params)
        if datasource.type is DataSourceType.GOOGLE_ANALYTICS and params.get("refreshToken"):
            tokens = self.oauth_client_factory().get_token(params["refreshToken"])
            params["refreshToken"] = tokens.get("refresh_token") or ""

        integration = self.integration_factory(datasource)
        merge_params(integration, params)
        integration.test_connection()
        updates["params"] = encrypt_params(integration.params)
        return updates

    # Delete ------------------------------------------------------------
    def delete_datasource(self, context: RequestContext, datasource_id: str) -> None:
        datasource = self._require_datasource(context, datasource_id)
        if not context.permissions.can_delete_datasource(datasource):
            context.permissions.throw_permission_error()

        for guard in DELETE_GUARDS:
            guard(self.repo, context, datasource)

        self.repo.delete_datasource(context.organization_id, datasource.id)
        schema_removed = remove_information_schema(self.repo, context, datasource)
        log_event(
            LOGGER,
            "datasource.deleted",
            datasource_id=datasource.id,
            information_schema_removed=schema_removed,
        )
        record_audit(
            "datasource.delete",
            "success",
            user=context.user_id,
            organization=context.organization_id,
            details={"datasource": datasource.id},
        )

    # Exposure queries --------------------------------------------------
    def update_exposure_query(
        self,
        context: RequestContext,
        datasource_id: str,
        exposure_query_id: str,
        updates: Mapping[str, Any],
    ) -> None:
        datasource = self._require_datasource(context, datasource_id)
        if not context.permissions.can_update_datasource_settings(datasource):
            context.permissions.throw_permission_error()

        settings = copy.deepcopy(dict(datasource.settings or {}))
        exposure_queries = (settings.get("queries") or {}).get("exposure") or []
        index = next(
            (position for position, entry in enumerate(exposure_queries) if entry.get("id") == exposure_query_id),
            None,
        )
        if index is None:
            raise NotFoundError("Cannot find exposure query")
        exposure_queries[index] = {**exposure_queries[index], **dict(updates)}

        try:
            self.repo.update_datasource(datasource, {"settings": settings})
        except SQLAlchemyError as exc:
            LOGGER.error("Failed to update exposure query %s: %s", exposure_query_id, exc)
            raise DataSourceValidationError(str(exc) or "An error occurred") from exc
        record_audit(
            "exposure_query.update",
            "success",
            user=context.user_id,
            organization=context.organization_id,
            details={
                "datasource": datasource.id,
                "exposure_query": exposure_query_id,
                "fields": sorted(updates),
            },
        )

    # Queries -----------------------------------------------------------
    def test_query(
        self,
        context: RequestContext,
        datasource_id: str,
        query: str,
        template_variables: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        datasource = self._require_datasource(context, datasource_id)
        if not context.permissions.can_run_test_queries(datasource):
            context.permissions.throw_permission_error()

        integration = self.integration_factory(datasource)
        if not integration.properties().supports_test_queries:
            raise DataSourceValidationError("Testing not supported on this data source")
        sql = integration.get_test_query(
            query, template_variables, limit=self.query_config.test_query_limit
        )
        try:
            response = integration.run_query(sql)
        except IntegrationError as error:
            log_event(LOGGER, "datasource.test_query_failed", datasource_id=datasource.id, error=str(error))
            return {"status": 200, "sql": sql, "error": str(error)}
        return {
            "status": 200,
            "duration": response.duration_ms,
            "results": response.rows,
            "sql": sql,
        }

    # External providers ------------------------------------------------
    def google_oauth_url(self, context: RequestContext, projects: Sequence[str] | None) -> str:
        if not context.permissions.can_create_datasource({"projects": list(projects or [])}):
            context.permissions.throw_permission_error()
        return self.oauth_client_factory().generate_auth_url()

    def fetch_bigquery_datasets(
        self, *, project_id: str, client_email: str, private_key: str
    ) -> list[str]:
        datasets = self.bigquery_dataset_lister(
            project_id=project_id, client_email=client_email, private_key=private_key
        )
        return [dataset for dataset in datasets if dataset]
