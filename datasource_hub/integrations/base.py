from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any, ClassVar

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from datasource_hub.db.schema import DataSourceType, QueryRun
from datasource_hub.utils.logging import get_logger

LOGGER = get_logger(__name__)

SQL_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
TRACKED_EVENT_SCHEMA_FORMATS = frozenset({"segment", "rudderstack"})
RESERVED_EVENT_TABLES = frozenset(
    {"identifies", "users", "pages", "screens", "tracks", "groups", "aliases", "accounts"}
)
USER_ID_COLUMNS = ("user_id", "anonymous_id")
DEFAULT_SENSITIVE_PARAMS = frozenset(
    {
        "password",
        "privateKey",
        "private_key",
        "refreshToken",
        "accessToken",
        "secret",
        "secretAccessKey",
        "apiKey",
        "caCert",
        "clientCert",
        "clientKey",
        "privateKeyPassword",
    }
)

_TEMPLATE_ENV = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)


class IntegrationError(RuntimeError):
    """Raised when a warehouse or provider call fails."""


class UnsupportedOperation(IntegrationError):
    """Raised when an integration is asked for a capability it does not declare."""


@dataclass(frozen=True)
class SourceProperties:
    query_language: str = "sql"
    supports_test_queries: bool = True
    supports_dimension_slices: bool = True
    supports_auto_generated_fact_tables: bool = False
    supports_information_schema: bool = False
    supports_cancellation: bool = False


@dataclass(frozen=True)
class AutoFactTableToCreate:
    name: str
    event_name: str
    sql: str
    user_id_types: tuple[str, ...] = ()
    should_create: bool = True

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "eventName": self.event_name,
            "sql": self.sql,
            "userIdTypes": list(self.user_id_types),
            "shouldCreate": self.should_create,
        }


@dataclass
class QueryResponse:
    rows: list[dict[str, Any]] = field(default_factory=list)
    duration_ms: float = 0.0


def to_jsonable(value: Any) -> Any:
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, bytes):
        return value.hex()
    return value


def normalize_rows(rows: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    return [{str(key): to_jsonable(value) for key, value in row.items()} for row in rows]


def default_template_variables(now: datetime | None = None, *, days: int = 7) -> dict[str, Any]:
    end = now or datetime.now(UTC)
    start = end - timedelta(days=days)
    return {
        "startDate": start.strftime(SQL_DATE_FORMAT),
        "endDate": end.strftime(SQL_DATE_FORMAT),
        "startDateUnix": int(start.timestamp()),
        "endDateUnix": int(end.timestamp()),
    }


def render_sql_template(sql: str, variables: Mapping[str, Any] | None = None) -> str:
    """Render ``{{ variable }}`` placeholders, failing on unknown names."""
    context = {**default_template_variables(), **dict(variables or {})}
    try:
        return _TEMPLATE_ENV.from_string(sql).render(**context)
    except TemplateError as error:
        raise IntegrationError(f"Error compiling SQL template: {error}") from error


def build_limited_query(sql: str, limit: int) -> str:
    body = sql.strip().rstrip(";")
    return f"SELECT * FROM (\n{body}\n) AS __limited LIMIT {int(limit)}"


def _sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def build_dimension_slices_sql(
    exposure_query: Mapping[str, Any],
    *,
    start: datetime,
    end: datetime,
    max_values: int,
    string_type: str = "VARCHAR(256)",
) -> str:
    """Portable SQL computing the top values of each exposure-query dimension."""
    dimensions = [name for name in exposure_query.get("dimensions") or [] if name]
    if not dimensions:
        raise IntegrationError("Exposure query has no dimensions to analyze")
    user_id_type = exposure_query.get("userIdType") or "user_id"
    exposure_sql = render_sql_template(
        exposure_query.get("query") or "",
        {"startDate": start.strftime(SQL_DATE_FORMAT), "endDate": end.strftime(SQL_DATE_FORMAT)},
    ).strip().rstrip(";")

    dimension_ctes = []
    for index, dimension in enumerate(dimensions):
        dimension_ctes.append(
            f"  __dim{index} AS (\n"
            f"    SELECT {_sql_literal(dimension)} AS dimension_name,"
            f" CAST({dimension} AS {string_type}) AS dimension_value,"
            f" COUNT(DISTINCT {user_id_type}) AS units\n"
            f"    FROM __experimentUnits\n"
            f"    GROUP BY {dimension}\n"
            f"    ORDER BY units DESC\n"
            f"    LIMIT {int(max_values)}\n"
            f"  )"
        )
    union = "\n  UNION ALL\n".join(f"  SELECT * FROM __dim{index}" for index in range(len(dimensions)))
    return (
        "WITH\n"
        f"  __rawExperiment AS (\n{exposure_sql}\n  ),\n"
        "  __experimentUnits AS (\n"
        "    SELECT * FROM __rawExperiment\n"
        f"    WHERE timestamp >= {_sql_literal(start.strftime(SQL_DATE_FORMAT))}\n"
        "  ),\n"
        "  __totalUnits AS (\n"
        f"    SELECT COUNT(DISTINCT {user_id_type}) AS total_units FROM __experimentUnits\n"
        "  ),\n"
        + ",\n".join(dimension_ctes)
        + "\nSELECT __slices.dimension_name, __slices.dimension_value, __slices.units,"
        " __totalUnits.total_units\n"
        f"FROM (\n{union}\n) AS __slices\n"
        "CROSS JOIN __totalUnits"
    )


def build_auto_fact_tables(
    tables: Mapping[str, Sequence[str]],
    *,
    existing_event_names: Iterable[str],
    table_ref: Callable[[str], str],
) -> list[AutoFactTableToCreate]:
    """Propose one fact table per tracked-event table that is not already covered."""
    existing = {name.lower() for name in existing_event_names if name}
    candidates: list[AutoFactTableToCreate] = []
    for table_name in sorted(tables):
        lowered = table_name.lower()
        if lowered in RESERVED_EVENT_TABLES or lowered.startswith("_") or lowered in existing:
            continue
        columns = list(tables[table_name])
        user_id_types = tuple(column for column in USER_ID_COLUMNS if column in columns)
        if not user_id_types or "timestamp" not in columns:
            continue
        selected = [*user_id_types, "timestamp"]
        selected.extend(column for column in columns if column not in selected)
        column_list = ",\n  ".join(selected)
        candidates.append(
            AutoFactTableToCreate(
                name=table_name,
                event_name=table_name,
                sql=f"SELECT\n  {column_list}\nFROM {table_ref(table_name)}",
                user_id_types=user_id_types,
            )
        )
    return candidates


class SourceIntegration(ABC):
    """One live connection to an external analytics or warehouse system."""

    datasource_type: ClassVar[DataSourceType]
    sensitive_params: ClassVar[frozenset[str]] = DEFAULT_SENSITIVE_PARAMS

    def __init__(
        self,
        *,
        datasource_id: str | None,
        params: Mapping[str, Any],
        settings: Mapping[str, Any] | None = None,
        projects: Sequence[str] | None = None,
    ) -> None:
        self.datasource_id = datasource_id
        self.params: dict[str, Any] = dict(params)
        self.settings: dict[str, Any] = dict(settings or {})
        self.projects: list[str] = list(projects or [])

    @abstractmethod
    def properties(self) -> SourceProperties: ...

    @abstractmethod
    def test_connection(self) -> None: ...

    def run_query(
        self,
        sql: str,
        *,
        query_id: str | None = None,
        on_started: Callable[[str], None] | None = None,
    ) -> QueryResponse:
        raise UnsupportedOperation(f"{self.datasource_type.value} does not support SQL queries")

    def cancel_query(self, query_run: QueryRun) -> bool:
        LOGGER.info("No cancellation hook for %s query %s", self.datasource_type.value, query_run.id)
        return False

    def get_test_query(
        self, query: str, template_variables: Mapping[str, Any] | None, *, limit: int
    ) -> str:
        return build_limited_query(render_sql_template(query, template_variables), limit)

    def get_dimension_slices_query(
        self, exposure_query: Mapping[str, Any], *, lookback_days: int, max_values: int
    ) -> str:
        end = datetime.now(UTC)
        return build_dimension_slices_sql(
            exposure_query,
            start=end - timedelta(days=lookback_days),
            end=end,
            max_values=max_values,
        )

    def get_auto_fact_tables_to_create(
        self, existing_fact_tables: Sequence[Any], schema: str
    ) -> list[AutoFactTableToCreate]:
        raise UnsupportedOperation("Datasource does not support automatic fact tables")

    def get_sensitive_param_keys(self) -> frozenset[str]:
        return self.sensitive_params

    def non_sensitive_params(self) -> dict[str, Any]:
        secret_keys = self.get_sensitive_param_keys()
        return {key: value for key, value in self.params.items() if key not in secret_keys}

    def tracks_event_schema(self) -> bool:
        return (self.settings.get("schemaFormat") or "") in TRACKED_EVENT_SCHEMA_FORMATS
