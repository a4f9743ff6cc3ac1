from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from datasource_hub.db.metadata import MetadataRepository, session_scope
from datasource_hub.db.schema import (
    TERMINAL_SLICE_STATUSES,
    DataSource,
    DimensionSlices,
    DimensionSlicesStatus,
    QueryStatus,
)
from datasource_hub.integrations.base import IntegrationError, SourceIntegration
from datasource_hub.integrations.registry import IntegrationFactory, get_source_integration
from datasource_hub.services.context import RequestContext
from datasource_hub.services.errors import DataSourceValidationError, NotFoundError
from datasource_hub.utils.audit import record_audit
from datasource_hub.utils.config import QueryConfig, load_query_config
from datasource_hub.utils.logging import get_logger, log_event, log_warning_event
from datasource_hub.utils.metrics import measure_datasource

LOGGER = get_logger(__name__)

DIMENSION_SLICES_QUERY_NAME = "dimension_slices"
ACTIVE_SLICE_STATUSES = (DimensionSlicesStatus.PENDING, DimensionSlicesStatus.RUNNING)


def find_exposure_query(settings: Mapping[str, Any] | None, exposure_query_id: str) -> dict[str, Any] | None:
    exposure_queries = ((settings or {}).get("queries") or {}).get("exposure") or []
    for exposure_query in exposure_queries:
        if exposure_query.get("id") == exposure_query_id:
            return dict(exposure_query)
    return None


def process_dimension_slices_result(
    rows: Sequence[Mapping[str, Any]], dimensions: Sequence[str]
) -> list[dict[str, Any]]:
    """Group raw slice rows per dimension, converting unit counts into percentages."""
    grouped: dict[str, list[dict[str, Any]]] = {name: [] for name in dimensions}
    for row in rows:
        dimension = str(row.get("dimension_name") or "")
        total_units = float(row.get("total_units") or 0)
        units = float(row.get("units") or 0)
        value = row.get("dimension_value")
        grouped.setdefault(dimension, []).append(
            {
                "name": "" if value is None else str(value),
                "percent": (units / total_units * 100) if total_units else 0.0,
            }
        )
    return [
        {"dimension": dimension, "dimensionSlices": slices} for dimension, slices in grouped.items()
    ]


def dimension_slices_payload(record: DimensionSlices) -> dict[str, Any]:
    return {
        "id": record.id,
        "datasource": record.datasource_id,
        "exposureQueryId": record.exposure_query_id,
        "lookbackDays": record.lookback_days,
        "status": record.status.value,
        "results": list(record.results or []),
        "error": record.error,
        "queries": list(record.queries or []),
        "dateCreated": record.date_created,
        "dateUpdated": record.date_updated,
    }


class DimensionSlicesService:
    """Runs and tracks dimension-slice analyses for exposure queries.

    Every status change is a conditional update committed in its own session, so
    a cancel from another request wins over a completion that lands later.
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session],
        integration_factory: IntegrationFactory = get_source_integration,
        query_config: QueryConfig | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.integration_factory = integration_factory
        self.query_config = query_config or load_query_config()

    # Reads -------------------------------------------------------------
    def get(self, context: RequestContext, slices_id: str) -> dict[str, Any]:
        with session_scope(self.session_factory) as session:
            record = MetadataRepository(session).get_dimension_slices(context.organization_id, slices_id)
            if record is None:
                raise NotFoundError("Could not find dimension slices")
            return dimension_slices_payload(record)

    def latest(
        self, context: RequestContext, datasource_id: str, exposure_query_id: str
    ) -> dict[str, Any] | None:
        with session_scope(self.session_factory) as session:
            record = MetadataRepository(session).get_latest_dimension_slices(
                context.organization_id, datasource_id, exposure_query_id
            )
            return dimension_slices_payload(record) if record is not None else None

    # Start -------------------------------------------------------------
    def start(
        self,
        context: RequestContext,
        *,
        datasource_id: str,
        exposure_query_id: str,
        lookback_days: int | None = None,
    ) -> dict[str, Any]:
        lookback = self.query_config.default_lookback_days if lookback_days is None else lookback_days
        if lookback <= 0:
            raise DataSourceValidationError("lookbackDays must be a positive integer")

        with session_scope(self.session_factory) as session:
            repo = MetadataRepository(session)
            datasource = repo.get_datasource(context.organization_id, datasource_id)
            if datasource is None:
                raise NotFoundError("Cannot find data source")
            if not context.permissions.can_run_schema_queries(datasource):
                context.permissions.throw_permission_error()
            exposure_query = find_exposure_query(datasource.settings, exposure_query_id)
            if exposure_query is None:
                raise NotFoundError("Cannot find exposure query")
            integration = self.integration_factory(datasource)
            if not integration.properties().supports_dimension_slices:
                raise DataSourceValidationError("Data source does not support dimension slices")
            record = repo.create_dimension_slices(
                organization_id=context.organization_id,
                datasource_id=datasource.id,
                exposure_query_id=exposure_query_id,
                lookback_days=lookback,
            )
            slices_id = record.id

        record_audit(
            "dimension_slices.start",
            "queued",
            user=context.user_id,
            organization=context.organization_id,
            details={"datasource": datasource_id, "exposure_query": exposure_query_id, "id": slices_id},
        )
        with measure_datasource("dimension_slices.run", datasource_id=datasource_id):
            self._run(context, integration, slices_id, exposure_query, lookback)
        return self.get(context, slices_id)

    def _run(
        self,
        context: RequestContext,
        integration: SourceIntegration,
        slices_id: str,
        exposure_query: Mapping[str, Any],
        lookback_days: int,
    ) -> None:
        try:
            sql = integration.get_dimension_slices_query(
                exposure_query,
                lookback_days=lookback_days,
                max_values=self.query_config.dimension_slices_max_values,
            )
        except Exception as error:  # noqa: BLE001 - failures are recorded on the record
            self._fail(slices_id, None, _failure_message(error))
            return

        with session_scope(self.session_factory) as session:
            repo = MetadataRepository(session)
            query_run = repo.create_query_run(
                organization_id=context.organization_id,
                datasource_id=integration.datasource_id or "",
                query=sql,
                language=integration.properties().query_language,
                status=QueryStatus.RUNNING,
            )
            query_run.started_at = datetime.now(UTC)
            query_id = query_run.id
            moved = repo.transition_dimension_slices(
                slices_id,
                from_statuses=[DimensionSlicesStatus.PENDING],
                to_status=DimensionSlicesStatus.RUNNING,
                queries=[_query_pointer(query_id, QueryStatus.RUNNING)],
            )
            if not moved:
                repo.transition_query_run(
                    query_id,
                    from_statuses=[QueryStatus.RUNNING],
                    to_status=QueryStatus.CANCELLED,
                    finished_at=datetime.now(UTC),
                )
        if not moved:
            LOGGER.info("Dimension slices %s was cancelled before it started", slices_id)
            return

        try:
            response = integration.run_query(
                sql, query_id=query_id, on_started=lambda external_id: self._mark_started(query_id, external_id)
            )
            results = process_dimension_slices_result(response.rows, exposure_query.get("dimensions") or [])
        except Exception as error:  # noqa: BLE001 - failures are recorded on the record
            if not isinstance(error, IntegrationError):
                LOGGER.exception("Dimension slices %s failed unexpectedly", slices_id)
            self._fail(slices_id, query_id, _failure_message(error))
            return

        with session_scope(self.session_factory) as session:
            repo = MetadataRepository(session)
            repo.transition_query_run(
                query_id,
                from_statuses=[QueryStatus.RUNNING],
                to_status=QueryStatus.SUCCEEDED,
                result=response.rows,
                finished_at=datetime.now(UTC),
            )
            completed = repo.transition_dimension_slices(
                slices_id,
                from_statuses=[DimensionSlicesStatus.RUNNING],
                to_status=DimensionSlicesStatus.COMPLETED,
                results=results,
                queries=[_query_pointer(query_id, QueryStatus.SUCCEEDED)],
            )
        if completed:
            log_event(LOGGER, "dimension_slices.completed", slices_id=slices_id, rows=len(response.rows))
        else:
            LOGGER.info("Dimension slices %s finished after cancellation; result discarded", slices_id)

    def _mark_started(self, query_id: str, external_id: str) -> None:
        with session_scope(self.session_factory) as session:
            MetadataRepository(session).set_query_run_external_id(query_id, external_id)

    def _fail(self, slices_id: str, query_id: str | None, message: str) -> None:
        with session_scope(self.session_factory) as session:
            repo = MetadataRepository(session)
            fields: dict[str, Any] = {"error": message}
            if query_id is not None:
                repo.transition_query_run(
                    query_id,
                    from_statuses=[QueryStatus.QUEUED, QueryStatus.RUNNING],
                    to_status=QueryStatus.FAILED,
                    error=message,
                    finished_at=datetime.now(UTC),
                )
                fields["queries"] = [_query_pointer(query_id, QueryStatus.FAILED)]
            repo.transition_dimension_slices(
                slices_id,
                from_statuses=ACTIVE_SLICE_STATUSES,
                to_status=DimensionSlicesStatus.ERROR,
                **fields,
            )
        log_warning_event(LOGGER, "dimension_slices.error", slices_id=slices_id, error=message)

    # Cancel ------------------------------------------------------------
    def cancel(self, context: RequestContext, slices_id: str) -> None:
        with session_scope(self.session_factory) as session:
            repo = MetadataRepository(session)
            record = repo.get_dimension_slices(context.organization_id, slices_id)
            if record is None:
                raise NotFoundError("Could not cancel automatic dimension")
            if record.status in TERMINAL_SLICE_STATUSES:
                return
            datasource = repo.get_datasource(context.organization_id, record.datasource_id)
            if datasource is not None and not context.permissions.can_run_schema_queries(datasource):
                context.permissions.throw_permission_error()
            query_ids = [pointer.get("query") for pointer in record.queries or [] if pointer.get("query")]
            query_runs = repo.get_query_runs_by_ids(context.organization_id, query_ids)

        if datasource is not None:
            self._cancel_in_flight(datasource, query_runs)

        with session_scope(self.session_factory) as session:
            repo = MetadataRepository(session)
            for query_run in query_runs:
                repo.transition_query_run(
                    query_run.id,
                    from_statuses=[QueryStatus.QUEUED, QueryStatus.RUNNING],
                    to_status=QueryStatus.CANCELLED,
                    finished_at=datetime.now(UTC),
                )
            cancelled = repo.transition_dimension_slices(
                slices_id,
                from_statuses=ACTIVE_SLICE_STATUSES,
                to_status=DimensionSlicesStatus.CANCELLED,
                queries=[_query_pointer(run.id, QueryStatus.CANCELLED) for run in query_runs],
            )
        if cancelled:
            record_audit(
                "dimension_slices.cancel",
                "success",
                user=context.user_id,
                organization=context.organization_id,
                details={"id": slices_id},
            )

    def _cancel_in_flight(self, datasource: DataSource, query_runs: Sequence[Any]) -> None:
        active = [run for run in query_runs if run.status in (QueryStatus.QUEUED, QueryStatus.RUNNING)]
        if not active:
            return
        integration = self.integration_factory(datasource)
        if not integration.properties().supports_cancellation:
            return
        for query_run in active:
            try:
                integration.cancel_query(query_run)
            except IntegrationError as error:
                log_warning_event(LOGGER, "query.cancel_failed", query_id=query_run.id, error=str(error))


def _query_pointer(query_id: str, status: QueryStatus) -> dict[str, str]:
    return {"name": DIMENSION_SLICES_QUERY_NAME, "query": query_id, "status": status.value}


def _failure_message(error: Exception) -> str:
    return str(error) or error.__class__.__name__
