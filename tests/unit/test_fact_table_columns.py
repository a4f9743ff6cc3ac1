from __future__ import annotations

from datasource_hub.services.fact_tables import infer_columns, infer_datatype


def test_infer_datatype() -> None:
    assert infer_datatype(True) == "boolean"
    assert infer_datatype(3) == "number"
    assert infer_datatype(2.5) == "number"
    assert infer_datatype("2024-01-02 10:00:00") == "date"
    assert infer_datatype("2024-01-02T10:00:00+00:00") == "date"
    assert infer_datatype("signup") == "string"
    assert infer_datatype({"nested": 1}) == "other"


def test_infer_columns_uses_first_non_null_value() -> None:
    rows = [
        {"user_id": "u1", "timestamp": "2024-01-01 00:00:00", "amount": None},
        {"user_id": "u2", "timestamp": "2024-01-02 00:00:00", "amount": 12.5},
    ]

    columns = infer_columns(rows)

    assert [column["column"] for column in columns] == ["user_id", "timestamp", "amount"]
    assert [column["datatype"] for column in columns] == ["string", "date", "number"]
    assert all(column["deleted"] is False for column in columns)


def test_infer_columns_all_null_column_is_other() -> None:
    assert infer_columns([{"payload": None}])[0]["datatype"] == "other"


def test_infer_columns_of_empty_result() -> None:
    assert infer_columns([]) == []
