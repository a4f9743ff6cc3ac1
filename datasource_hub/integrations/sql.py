from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping, Sequence
from typing import Any, ClassVar

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from datasource_hub.db.schema import DataSourceType, QueryRun
from datasource_hub.integrations.base import (
    AutoFactTableToCreate,
    IntegrationError,
    QueryResponse,
    SourceIntegration,
    SourceProperties,
    UnsupportedOperation,
    build_auto_fact_tables,
    normalize_rows,
)
from datasource_hub.utils.logging import get_logger

LOGGER = get_logger(__name__)

_DRIVERS: Mapping[DataSourceType, tuple[str, int | None]] = {
    DataSourceType.POSTGRES: ("postgresql+psycopg2", 5432),
    DataSourceType.REDSHIFT: ("postgresql+psycopg2", 5439),
    DataSourceType.MYSQL: ("mysql+pymysql", 3306),
    DataSourceType.SNOWFLAKE: ("snowflake", None),
}


class _InFlightRegistry:
    """Thread-safe map from query id to the DBAPI connection executing it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: dict[str, Any] = {}

    def register(self, query_id: str, connection: Any) -> None:
        with self._lock:
            self._connections[query_id] = connection

    def release(self, query_id: str) -> None:
        with self._lock:
            self._connections.pop(query_id, None)

    def get(self, query_id: str) -> Any | None:
        with self._lock:
            return self._connections.get(query_id)


in_flight_queries = _InFlightRegistry()


class SqlAlchemyIntegration(SourceIntegration):
    """Warehouse reachable through a SQLAlchemy dialect."""

    datasource_type: ClassVar[DataSourceType] = DataSourceType.POSTGRES

    def __init__(self, *, datasource_type: DataSourceType | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if datasource_type is not None:
            self.datasource_type = datasource_type
        self._engine: Engine | None = None

    def properties(self) -> SourceProperties:
        return SourceProperties(
            supports_auto_generated_fact_tables=self.tracks_event_schema(),
            supports_information_schema=True,
            supports_cancellation=True,
        )

    # ---- connection ----
    def build_url(self) -> URL | str:
        if self.datasource_type is DataSourceType.SQLITE:
            path = self.params.get("path") or ":memory:"
            return f"sqlite:///{path}"
        driver, default_port = _DRIVERS[self.datasource_type]
        if self.datasource_type is DataSourceType.SNOWFLAKE:
            query = {
                key: str(self.params[key])
                for key in ("warehouse", "role", "schema")
                if self.params.get(key)
            }
            return URL.create(
                driver,
                username=self.params.get("username") or self.params.get("user"),
                password=self.params.get("password"),
                host=self.params.get("account"),
                database=self.params.get("database"),
                query=query,
            )
        port = self.params.get("port") or default_port
        return URL.create(
            driver,
            username=self.params.get("user") or self.params.get("username"),
            password=self.params.get("password"),
            host=self.params.get("host"),
            port=int(port) if port else None,
            database=self.params.get("database"),
        )

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            try:
                self._engine = create_engine(self.build_url(), poolclass=NullPool, future=True)
            except (SQLAlchemyError, ImportError) as error:
                raise IntegrationError(f"Could not create a connection: {error}") from error
        return self._engine

    def test_connection(self) -> None:
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError as error:
            raise IntegrationError(_error_message(error)) from error

    # ---- queries ----
    def run_query(
        self,
        sql: str,
        *,
        query_id: str | None = None,
        on_started: Callable[[str], None] | None = None,
    ) -> QueryResponse:
        started = time.perf_counter()
        try:
            with self.engine.connect() as connection:
                if query_id:
                    in_flight_queries.register(query_id, connection.connection.dbapi_connection)
                    if on_started is not None:
                        on_started(query_id)
                try:
                    result = connection.execute(text(sql))
                    rows = normalize_rows(result.mappings().all()) if result.returns_rows else []
                finally:
                    if query_id:
                        in_flight_queries.release(query_id)
        except SQLAlchemyError as error:
            raise IntegrationError(_error_message(error)) from error
        return QueryResponse(rows=rows, duration_ms=(time.perf_counter() - started) * 1000)

    def cancel_query(self, query_run: QueryRun) -> bool:
        connection = in_flight_queries.get(query_run.id)
        if connection is None:
            return False
        for hook in ("cancel", "interrupt"):
            cancel = getattr(connection, hook, None)
            if callable(cancel):
                cancel()
                LOGGER.info("Cancelled query %s via %s", query_run.id, hook)
                return True
        LOGGER.warning("Driver for query %s exposes no cancel hook", query_run.id)
        return False

    # ---- schema ----
    def get_auto_fact_tables_to_create(
        self, existing_fact_tables: Sequence[Any], schema: str
    ) -> list[AutoFactTableToCreate]:
        if not self.tracks_event_schema():
            raise UnsupportedOperation("Datasource does not support automatic fact tables")
        try:
            inspector = inspect(self.engine)
            tables = {
                table_name: [column["name"] for column in inspector.get_columns(table_name, schema=schema or None)]
                for table_name in inspector.get_table_names(schema=schema or None)
            }
        except SQLAlchemyError as error:
            raise IntegrationError(_error_message(error)) from error

        preparer = self.engine.dialect.identifier_preparer

        def _table_ref(table_name: str) -> str:
            quoted = preparer.quote(table_name)
            return f"{preparer.quote_schema(schema)}.{quoted}" if schema else quoted

        return build_auto_fact_tables(
            tables,
            existing_event_names=[getattr(table, "event_name", "") for table in existing_fact_tables],
            table_ref=_table_ref,
        )


def _error_message(error: SQLAlchemyError) -> str:
    cause = getattr(error, "orig", None)
    return str(cause) if cause is not None else str(error)
