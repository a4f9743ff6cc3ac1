from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from datasource_hub.api.router import create_app
from datasource_hub.db.metadata import MetadataRepository, session_scope
from datasource_hub.db.schema import DataSourceType
from datasource_hub.services.job_queue import JobQueue
from tests.fixtures.fake_warehouse import datasource_settings, exposure_query
from tests.fixtures.organization import SeededOrganization

Headers = Callable[..., dict[str, str]]


def _timestamp(days_ago: int) -> str:
    return (datetime.now(UTC) - timedelta(days=days_ago)).strftime("%Y-%m-%d %H:%M:%S")


@pytest.fixture
def warehouse_path(tmp_path: Path) -> Path:
    path = tmp_path / "warehouse.db"
    engine = create_engine(f"sqlite:///{path}")
    with engine.begin() as connection:
        connection.execute(
            text("CREATE TABLE exposures (user_id TEXT, timestamp TEXT, country TEXT, device TEXT)")
        )
        connection.execute(
            text(
                "INSERT INTO exposures VALUES (:user_id, :timestamp, :country, :device)"
            ),
            [
                {"user_id": "u1", "timestamp": _timestamp(1), "country": "US", "device": "ios"},
                {"user_id": "u1", "timestamp": _timestamp(2), "country": "US", "device": "ios"},
                {"user_id": "u2", "timestamp": _timestamp(3), "country": "US", "device": "android"},
                {"user_id": "u3", "timestamp": _timestamp(4), "country": "CA", "device": "ios"},
                {"user_id": "u4", "timestamp": _timestamp(60), "country": "FR", "device": "ios"},
            ],
        )
        connection.execute(
            text("CREATE TABLE signed_up (user_id TEXT, anonymous_id TEXT, timestamp TEXT, plan TEXT)")
        )
        connection.execute(
            text("INSERT INTO signed_up VALUES ('u1', 'a1', :timestamp, 'pro')"),
            {"timestamp": _timestamp(1)},
        )
        connection.execute(text("CREATE TABLE tracks (user_id TEXT, timestamp TEXT, event TEXT)"))
        connection.execute(text("CREATE TABLE identifies (user_id TEXT, timestamp TEXT)"))
    engine.dispose()
    return path


@pytest.fixture
def warehouse_client(sqlite_url: str, seeded: SeededOrganization) -> TestClient:
    return TestClient(create_app(job_queue=JobQueue(concurrency=1)))


@pytest.fixture
def warehouse_id(create_datasource: Callable[..., str], warehouse_path: Path) -> str:
    return create_datasource(
        name="Local warehouse",
        type=DataSourceType.SQLITE,
        params={"path": str(warehouse_path)},
        settings=datasource_settings(
            exposure_query("eq_1", query="SELECT user_id, timestamp, country, device FROM exposures"),
            schemaFormat="segment",
        ),
    )


def test_dimension_slices_against_sqlite(
    warehouse_client: TestClient, auth_headers: Headers, warehouse_id: str
) -> None:
    response = warehouse_client.post(
        "/dimension-slices",
        json={"dataSourceId": warehouse_id, "queryId": "eq_1", "lookbackDays": 30},
        headers=auth_headers(),
    )

    record = response.json()["dimensionSlices"]
    assert record["status"] == "completed", record["error"]
    slices = {
        entry["dimension"]: {item["name"]: item["percent"] for item in entry["dimensionSlices"]}
        for entry in record["results"]
    }
    assert slices["country"] == {"US": pytest.approx(200 / 3), "CA": pytest.approx(100 / 3)}
    assert slices["device"] == {"ios": pytest.approx(200 / 3), "android": pytest.approx(100 / 3)}

    query_id = record["queries"][0]["query"]
    query = warehouse_client.get(f"/queries/{query_id}", headers=auth_headers()).json()["queries"][0]
    assert query["status"] == "succeeded"
    assert query["externalId"] == query_id
    assert len(query["result"]) == 4


def test_test_query_against_sqlite(
    warehouse_client: TestClient, auth_headers: Headers, warehouse_id: str
) -> None:
    response = warehouse_client.post(
        "/query/test",
        json={
            "query": (
                "SELECT country, COUNT(DISTINCT user_id) AS users FROM exposures "
                "WHERE timestamp >= '{{ startDate }}' AND device = '{{ device }}' "
                "GROUP BY country ORDER BY country"
            ),
            "datasourceId": warehouse_id,
            "templateVariables": {"device": "ios"},
        },
        headers=auth_headers(),
    )

    body = response.json()
    assert body["status"] == 200
    assert body["results"] == [{"country": "CA", "users": 1}, {"country": "US", "users": 1}]
    assert body["duration"] >= 0


def test_test_query_sql_error_is_returned_in_body(
    warehouse_client: TestClient, auth_headers: Headers, warehouse_id: str
) -> None:
    response = warehouse_client.post(
        "/query/test",
        json={"query": "SELECT * FROM missing_table", "datasourceId": warehouse_id},
        headers=auth_headers(),
    )

    assert response.status_code == 200
    assert "no such table" in response.json()["error"]


def test_auto_fact_tables_discover_then_commit(
    warehouse_client: TestClient,
    auth_headers: Headers,
    warehouse_id: str,
    session_factory: sessionmaker[Session],
    seeded: SeededOrganization,
) -> None:
    discovered = warehouse_client.post(
        f"/datasources/{warehouse_id}/fact-tables/auto", json={"schema": ""}, headers=auth_headers()
    ).json()

    candidates = {candidate["eventName"]: candidate for candidate in discovered["autoFactTablesToCreate"]}
    assert sorted(candidates) == ["exposures", "signed_up"]
    signed_up = candidates["signed_up"]
    assert signed_up["userIdTypes"] == ["user_id", "anonymous_id"]

    committed = warehouse_client.post(
        "/fact-tables/auto",
        json={
            "datasourceId": warehouse_id,
            "factTables": [
                {"name": signed_up["name"], "sql": signed_up["sql"], "userIdTypes": signed_up["userIdTypes"]}
            ],
        },
        headers=auth_headers(),
    )
    assert committed.json() == {"status": 200}
    assert warehouse_client.app.state.job_queue.wait_for_idle(timeout=5)

    with session_scope(session_factory) as session:
        [fact_table] = MetadataRepository(session).list_fact_tables_by_datasource(
            seeded.organization_id, warehouse_id
        )
        columns = {column["column"]: column["datatype"] for column in fact_table.columns}
    assert columns == {"user_id": "string", "anonymous_id": "string", "timestamp": "date", "plan": "string"}

    rediscovered = warehouse_client.post(
        f"/datasources/{warehouse_id}/fact-tables/auto", json={"schema": ""}, headers=auth_headers()
    ).json()
    assert [candidate["eventName"] for candidate in rediscovered["autoFactTablesToCreate"]] == ["exposures"]


def test_connection_update_against_sqlite(
    warehouse_client: TestClient, auth_headers: Headers, warehouse_id: str, tmp_path: Path
) -> None:
    unreachable = tmp_path / "missing-dir" / "warehouse.db"

    response = warehouse_client.put(
        f"/datasource/{warehouse_id}", json={"params": {"path": str(unreachable)}}, headers=auth_headers()
    )

    assert response.status_code == 400
    detail = warehouse_client.get(f"/datasource/{warehouse_id}", headers=auth_headers()).json()
    assert detail["params"]["path"].endswith("warehouse.db")
    assert "missing-dir" not in detail["params"]["path"]
