from __future__ import annotations

import unittest
from unittest.mock import patch

from app.services.schema_guard import REQUIRED_ENUM_VALUES, REQUIRED_TABLE_COLUMNS, verify_runtime_schema


class _FakeResult:
    def __init__(self, value):
        self._value = value

    def scalar(self):  # type: ignore[no-untyped-def]
        return self._value


class _FakeConnection:
    def __init__(self, version_value):
        self._version_value = version_value

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return _FakeResult(self._version_value)


class _FakeEngine:
    def __init__(self, version_value):
        self._version_value = version_value

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._version_value)


class _FakeInspector:
    def __init__(self, *, columns_by_table: dict[str, set[str]], enums: list[dict[str, object]]):
        self._columns_by_table = columns_by_table
        self._enums = enums

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        columns = self._columns_by_table[table_name]
        return [{"name": item} for item in columns]

    def get_enums(self):  # type: ignore[no-untyped-def]
        return self._enums


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_required_columns_exist(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table={name: set(columns) | {"created_at"} for name, columns in REQUIRED_TABLE_COLUMNS.items()},
            enums=[{"name": name, "labels": sorted(labels)} for name, labels in REQUIRED_ENUM_VALUES.items()],
        )
        fake_engine = _FakeEngine("0001_initial")

        with patch("app.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])

    def test_verify_runtime_schema_reports_missing_columns(self) -> None:
        columns_by_table = {name: set(columns) for name, columns in REQUIRED_TABLE_COLUMNS.items()}
        columns_by_table["checkins"] = {"id", "uuid", "offender_id", "due_date", "status"}
        columns_by_table["scheduler_locks"] = {"name"}
        fake_inspector = _FakeInspector(
            columns_by_table=columns_by_table,
            enums=[
                {"name": "offender_status", "labels": ["INITIAL", "VERIFIED", "INACTIVE"]},
                {"name": "checkin_status", "labels": ["CREATED", "SUBMITTED", "REVIEWED"]},
                {"name": "checkin_phase", "labels": ["STARTED", "SUBMITTED", "REVIEW_STARTED", "REVIEWED", "EXPIRED"]},
                {"name": "job_type", "labels": sorted(REQUIRED_ENUM_VALUES["job_type"])},
            ],
        )
        fake_engine = _FakeEngine("")

        with patch("app.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:checkins:auto_id_check,survey_response", result.issues)
        self.assertIn("MISSING_COLUMNS:scheduler_locks:lock_until,locked_at,locked_by", result.issues)
        self.assertIn("MISSING_ENUM_VALUES:checkin_status:EXPIRED", result.issues)
        self.assertIn("ENUM_NOT_FOUND:job_run_status", result.warnings)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)


if __name__ == "__main__":
    unittest.main()
