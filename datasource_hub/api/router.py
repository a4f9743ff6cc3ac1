from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Header, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from datasource_hub.db.metadata import (
    MetadataRepository,
    build_engine,
    create_session_factory,
    init_database,
    session_scope,
)
from datasource_hub.integrations.base import IntegrationError
from datasource_hub.integrations.bigquery import list_bigquery_datasets
from datasource_hub.integrations.oauth import GoogleOAuthClient, get_oauth_client
from datasource_hub.integrations.registry import IntegrationFactory, get_source_integration
from datasource_hub.services.context import RequestContext
from datasource_hub.services.datasource_service import BigQueryDatasetLister, DataSourceService
from datasource_hub.services.dimension_slices import DimensionSlicesService
from datasource_hub.services.errors import AuthenticationError, DatasourceHubError, PermissionDenied
from datasource_hub.services.fact_tables import AutoFactTableService
from datasource_hub.services.job_queue import JobQueue
from datasource_hub.services.jobs import register_datasource_jobs
from datasource_hub.utils.crypto import EncryptionError
from datasource_hub.utils.logging import get_logger

LOGGER = get_logger(__name__)


class CreateDataSourceRequest(BaseModel):
    name: Annotated[str, Field(min_length=1)]
    description: str | None = None
    type: str
    params: dict[str, Any] = Field(default_factory=dict)
    settings: dict[str, Any] = Field(default_factory=dict)
    projects: list[str] | None = None

    model_config = ConfigDict(populate_by_name=True)


class AutoMetricPayload(BaseModel):
    name: str
    type: str = "binomial"
    sql: str | None = None
    description: str = ""
    user_id_types: Annotated[list[str], Field(alias="userIdTypes", default_factory=list)]
    should_create: Annotated[bool, Field(alias="shouldCreate", default=True)]

    model_config = ConfigDict(populate_by_name=True)


class UpdateDataSourceRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    type: str | None = None
    params: dict[str, Any] | None = None
    settings: dict[str, Any] | None = None
    projects: list[str] | None = None
    metrics_to_create: Annotated[
        list[AutoMetricPayload] | None, Field(alias="metricsToCreate", default=None)
    ]

    model_config = ConfigDict(populate_by_name=True)


class UpdateExposureQueryRequest(BaseModel):
    updates: dict[str, Any] = Field(default_factory=dict)


class OAuthRedirectRequest(BaseModel):
    projects: list[str] | None = None


class TestQueryRequest(BaseModel):
    query: str
    datasource_id: Annotated[str, Field(alias="datasourceId")]
    template_variables: Annotated[
        dict[str, Any] | None, Field(alias="templateVariables", default=None)
    ]

    model_config = ConfigDict(populate_by_name=True)


class StartDimensionSlicesRequest(BaseModel):
    datasource_id: Annotated[str, Field(alias="dataSourceId")]
    query_id: Annotated[str, Field(alias="queryId")]
    lookback_days: Annotated[int | None, Field(alias="lookbackDays", default=None, gt=0)]

    model_config = ConfigDict(populate_by_name=True)


class BigQueryDatasetsRequest(BaseModel):
    project_id: Annotated[str, Field(alias="projectId")]
    client_email: str
    private_key: str

    model_config = ConfigDict(populate_by_name=True)


class DiscoverFactTablesRequest(BaseModel):
    schema_name: Annotated[str, Field(alias="schema", default="")]

    model_config = ConfigDict(populate_by_name=True)


class AutoFactTablePayload(BaseModel):
    name: Annotated[str, Field(min_length=1)]
    sql: Annotated[str, Field(min_length=1)]
    user_id_types: Annotated[list[str], Field(alias="userIdTypes", default_factory=list)]

    model_config = ConfigDict(populate_by_name=True)


class CommitFactTablesRequest(BaseModel):
    datasource_id: Annotated[str, Field(alias="datasourceId")]
    fact_tables: Annotated[list[AutoFactTablePayload], Field(alias="factTables", default_factory=list)]

    model_config = ConfigDict(populate_by_name=True)


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": status_code, "message": message})


def _validation_message(error: RequestValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()) if part != "body")
        parts.append(f"{location}: {item.get('msg')}" if location else str(item.get("msg")))
    return "; ".join(parts) or "Invalid request"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DatasourceHubError)
    async def _handle_service_error(request: Request, exc: DatasourceHubError) -> JSONResponse:
        if exc.status_code >= 500:
            LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return _error_response(exc.status_code, exc.message)

    @app.exception_handler(IntegrationError)
    async def _handle_integration_error(request: Request, exc: IntegrationError) -> JSONResponse:
        LOGGER.warning("Integration failure on %s %s: %s", request.method, request.url.path, exc)
        return _error_response(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(EncryptionError)
    async def _handle_encryption_error(request: Request, exc: EncryptionError) -> JSONResponse:
        LOGGER.error("Params encryption failure on %s: %s", request.url.path, exc)
        return _error_response(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(RequestValidationError)
    async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response(status.HTTP_400_BAD_REQUEST, _validation_message(exc))


def create_app(
    *,
    integration_factory: IntegrationFactory | None = None,
    oauth_client_factory: Callable[[], GoogleOAuthClient] | None = None,
    bigquery_dataset_lister: BigQueryDatasetLister | None = None,
    job_queue: JobQueue | None = None,
) -> FastAPI:
    """Create a FastAPI instance exposing data-source management endpoints."""
    engine = build_engine()
    init_database(engine)
    SessionFactory = create_session_factory(engine)
    resolved_integration_factory = integration_factory or get_source_integration
    resolved_oauth_factory = oauth_client_factory or get_oauth_client
    resolved_dataset_lister = bigquery_dataset_lister or list_bigquery_datasets
    queue = register_datasource_jobs(job_queue or JobQueue(), SessionFactory)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        queue.shutdown(wait=True)

    app = FastAPI(
        title="Data Source Hub API",
        version="0.1.0",
        lifespan=lifespan,
    )
    register_exception_handlers(app)
    app.state.session_factory = SessionFactory
    app.state.job_queue = queue

    def get_repository() -> Iterator[MetadataRepository]:
        with session_scope(SessionFactory) as session:
            yield MetadataRepository(session)

    def get_request_context(
        repo: MetadataRepository = Depends(get_repository),
        organization_id: Annotated[str | None, Header(alias="X-Organization-Id")] = None,
        user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
    ) -> RequestContext:
        if not organization_id or not user_id:
            raise AuthenticationError("Missing X-Organization-Id or X-User-Id header")
        organization = repo.get_organization(organization_id)
        member = repo.get_member(organization_id, user_id) if organization is not None else None
        if organization is None or member is None:
            raise PermissionDenied("User not found")
        return RequestContext.from_member(organization, member)

    def get_datasource_service(
        repo: MetadataRepository = Depends(get_repository),
    ) -> DataSourceService:
        return DataSourceService(
            metadata_repository=repo,
            job_queue=queue,
            integration_factory=resolved_integration_factory,
            oauth_client_factory=resolved_oauth_factory,
            bigquery_dataset_lister=resolved_dataset_lister,
        )

    def get_dimension_slices_service() -> DimensionSlicesService:
        return DimensionSlicesService(
            session_factory=SessionFactory,
            integration_factory=resolved_integration_factory,
        )

    def get_fact_table_service(
        repo: MetadataRepository = Depends(get_repository),
    ) -> AutoFactTableService:
        return AutoFactTableService(
            metadata_repository=repo,
            job_queue=queue,
            integration_factory=resolved_integration_factory,
        )

    # Data sources ------------------------------------------------------
    @app.get("/datasources")
    def list_datasources(
        context: RequestContext = Depends(get_request_context),
        service: DataSourceService = Depends(get_datasource_service),
    ) -> dict[str, Any]:
        return {"status": 200, "datasources": service.list_datasources(context)}

    @app.get("/datasource/{datasource_id}")
    def get_datasource(
        datasource_id: str,
        context: RequestContext = Depends(get_request_context),
        service: DataSourceService = Depends(get_datasource_service),
    ) -> dict[str, Any]:
        return {"status": 200, **service.get_datasource(context, datasource_id)}

    @app.post("/datasources")
    def create_datasource(
        payload: CreateDataSourceRequest,
        context: RequestContext = Depends(get_request_context),
        service: DataSourceService = Depends(get_datasource_service),
    ) -> dict[str, Any]:
        datasource_id = service.create_datasource(context, payload.model_dump())
        return {"status": 200, "id": datasource_id}

    @app.put("/datasource/{datasource_id}")
    def update_datasource(
        datasource_id: str,
        payload: UpdateDataSourceRequest,
        context: RequestContext = Depends(get_request_context),
        service: DataSourceService = Depends(get_datasource_service),
    ) -> dict[str, Any]:
        service.update_datasource(
            context, datasource_id, payload.model_dump(exclude_unset=True, by_alias=True)
        )
        return {"status": 200}

    @app.delete("/datasource/{datasource_id}")
    def delete_datasource(
        datasource_id: str,
        context: RequestContext = Depends(get_request_context),
        service: DataSourceService = Depends(get_datasource_service),
    ) -> dict[str, Any]:
        service.delete_datasource(context, datasource_id)
        return {"status": 200}

    @app.put("/datasource/{datasource_id}/exposureQuery/{exposure_query_id}")
    def update_exposure_query(
        datasource_id: str,
        exposure_query_id: str,
        payload: UpdateExposureQueryRequest,
        context: RequestContext = Depends(get_request_context),
        service: DataSourceService = Depends(get_datasource_service),
    ) -> dict[str, Any]:
        service.update_exposure_query(context, datasource_id, exposure_query_id, payload.updates)
        return {"status": 200}

    @app.get("/datasource/{datasource_id}/metrics")
    def list_datasource_metrics(
        datasource_id: str,
        context: RequestContext = Depends(get_request_context),
        service: DataSourceService = Depends(get_datasource_service),
    ) -> dict[str, Any]:
        return {"status": 200, "metrics": service.list_metrics(context, datasource_id)}

    @app.get("/datasource/{datasource_id}/queries")
    def list_datasource_queries(
        datasource_id: str,
        context: RequestContext = Depends(get_request_context),
        service: DataSourceService = Depends(get_datasource_service),
    ) -> dict[str, Any]:
        return {"status": 200, "queries": service.list_queries(context, datasource_id)}

    @app.post("/datasources/fetch-bigquery-datasets")
    def fetch_bigquery_datasets(
        payload: BigQueryDatasetsRequest,
        context: RequestContext = Depends(get_request_context),
        service: DataSourceService = Depends(get_datasource_service),
    ) -> dict[str, Any]:
        datasets = service.fetch_bigquery_datasets(
            project_id=payload.project_id,
            client_email=payload.client_email,
            private_key=payload.private_key,
        )
        return {"status": 200, "datasets": datasets}

    # Queries -----------------------------------------------------------
    @app.post("/oauth/google")
    def google_oauth_redirect(
        payload: OAuthRedirectRequest,
        context: RequestContext = Depends(get_request_context),
        service: DataSourceService = Depends(get_datasource_service),
    ) -> dict[str, Any]:
        return {"status": 200, "url": service.google_oauth_url(context, payload.projects)}

    @app.post("/query/test")
    def test_query(
        payload: TestQueryRequest,
        context: RequestContext = Depends(get_request_context),
        service: DataSourceService = Depends(get_datasource_service),
    ) -> dict[str, Any]:
        return service.test_query(
            context, payload.datasource_id, payload.query, payload.template_variables
        )

    @app.get("/queries/{ids}")
    def get_queries(
        ids: str,
        context: RequestContext = Depends(get_request_context),
        service: DataSourceService = Depends(get_datasource_service),
    ) -> dict[str, Any]:
        query_ids = [value.strip() for value in ids.split(",")]
        return {"status": 200, "queries": service.get_queries_by_ids(context, query_ids)}

    # Dimension slices --------------------------------------------------
    @app.get("/dimension-slices/{slices_id}")
    def get_dimension_slices(
        slices_id: str,
        context: RequestContext = Depends(get_request_context),
        service: DimensionSlicesService = Depends(get_dimension_slices_service),
    ) -> dict[str, Any]:
        return {"status": 200, "dimensionSlices": service.get(context, slices_id)}

    @app.get("/dimension-slices/datasource/{datasource_id}/{exposure_query_id}")
    def get_latest_dimension_slices(
        datasource_id: str,
        exposure_query_id: str,
        context: RequestContext = Depends(get_request_context),
        service: DimensionSlicesService = Depends(get_dimension_slices_service),
    ) -> dict[str, Any]:
        return {
            "status": 200,
            "dimensionSlices": service.latest(context, datasource_id, exposure_query_id),
        }

    @app.post("/dimension-slices")
    def start_dimension_slices(
        payload: StartDimensionSlicesRequest,
        context: RequestContext = Depends(get_request_context),
        service: DimensionSlicesService = Depends(get_dimension_slices_service),
    ) -> dict[str, Any]:
        record = service.start(
            context,
            datasource_id=payload.datasource_id,
            exposure_query_id=payload.query_id,
            lookback_days=payload.lookback_days,
        )
        return {"status": 200, "dimensionSlices": record}

    @app.post("/dimension-slices/{slices_id}/cancel")
    def cancel_dimension_slices(
        slices_id: str,
        context: RequestContext = Depends(get_request_context),
        service: DimensionSlicesService = Depends(get_dimension_slices_service),
    ) -> dict[str, Any]:
        service.cancel(context, slices_id)
        return {"status": 200}

    # Fact tables -------------------------------------------------------
    @app.post("/datasources/{datasource_id}/fact-tables/auto")
    def discover_fact_tables(
        datasource_id: str,
        payload: DiscoverFactTablesRequest,
        context: RequestContext = Depends(get_request_context),
        service: AutoFactTableService = Depends(get_fact_table_service),
    ) -> dict[str, Any]:
        return service.discover(context, datasource_id, payload.schema_name)

    @app.post("/fact-tables/auto")
    def commit_fact_tables(
        payload: CommitFactTablesRequest,
        context: RequestContext = Depends(get_request_context),
        service: AutoFactTableService = Depends(get_fact_table_service),
    ) -> dict[str, Any]:
        return service.commit(
            context,
            payload.datasource_id,
            [fact_table.model_dump(by_alias=True) for fact_table in payload.fact_tables],
        )

    return app
