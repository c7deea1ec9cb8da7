# =============================================================================
# Unit Tests — Employee CSV Import
# =============================================================================

from __future__ import annotations

import asyncio
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest

from payrollpro.db.models import Employee, EmployeeStatus, ImportJobStatus
from payrollpro.services.csv_import import (
    ParsedCsv,
    build_preview,
    import_status,
    map_rows,
    parse_csv,
    upsert_employees,
    validate_header_mapping,
)


def _run(coro):
    return asyncio.run(coro)


MAPPING = {
    "ID": "id",
    "First Name": "firstName",
    "Last Name": "lastName",
    "Email": "email",
    "Start Date": "startDate",
    "Status": "status",
}

CSV_TEXT = (
    "ID,First Name,Last Name,Email,Start Date,Status\n"
    "E1,Ada,Lovelace,ada@example.com,2024-01-15,Active\n"
    "\n"
    'E2,"Grace, Rear Adm.",Hopper,,2023-05-01,active\n'
    "E3,Alan,Turing,alan.example.com,2022-02-02,active\n"
    "E4,Linus,Torvalds,linus@example.com,15/01/2024,on leave\n"
)


@pytest.fixture
def csv_file(tmp_path):
    path = tmp_path / "employees.csv"
    path.write_text(CSV_TEXT, encoding="utf-8")
    return path


class TestParseCsv:
    def test_headers_and_rows(self, csv_file):
        parsed = parse_csv(csv_file)
        assert parsed.headers == ["ID", "First Name", "Last Name", "Email", "Start Date", "Status"]
        # Blank line skipped
        assert parsed.record_count == 4
        assert parsed.rows[1][1] == "Grace, Rear Adm."

    def test_bom_is_stripped(self, tmp_path):
        path = tmp_path / "bom.csv"
        path.write_bytes("\ufeffEmail\n a@b.co \n".encode("utf-8"))
        parsed = parse_csv(path)
        assert parsed.headers == ["Email"]
        assert parsed.rows == [["a@b.co"]]

    def test_empty_file_rejected(self, tmp_path):
        path = tmp_path / "empty.csv"
        path.write_text("\n\n", encoding="utf-8")
        with pytest.raises(ValueError, match="empty"):
            parse_csv(path)


class TestPreview:
    def test_limit_and_missing_cells(self):
        parsed = ParsedCsv(headers=["a", "b"], rows=[["1"], ["2", "3"], ["4", "5"]])
        assert build_preview(parsed, limit=2) == [
            {"a": "1", "b": ""},
            {"a": "2", "b": "3"},
        ]


class TestValidateHeaderMapping:
    def test_valid_mapping(self):
        validate_header_mapping(MAPPING)

    def test_snake_case_targets_accepted(self):
        validate_header_mapping({"f": "first_name", "l": "last_name", "e": "email"})

    def test_empty_mapping(self):
        with pytest.raises(ValueError, match="required"):
            validate_header_mapping({})

    def test_unknown_target(self):
        with pytest.raises(ValueError, match="Unknown target fields: salary"):
            validate_header_mapping(dict(MAPPING, Pay="salary"))

    def test_missing_required(self):
        mapping = {"First Name": "firstName", "Email": "email", "Ignored": ""}
        with pytest.raises(ValueError, match="not mapped: lastName"):
            validate_header_mapping(mapping)


class TestMapRows:
    def test_errors_warnings_and_records(self, csv_file):
        result = map_rows(parse_csv(csv_file), MAPPING)

        assert result.failed_rows == 2
        assert result.errors == [
            {"line": 3, "message": "Missing required field: email"},
            {"line": 4, "message": "Invalid email format: alan.example.com"},
        ]
        # E4 keeps the row but drops the bad date and the unknown status
        assert result.warnings == 2
        assert [r["employee_id"] for r in result.records] == ["E1", "E4"]

        ada, linus = result.records
        assert ada["hire_date"] == date(2024, 1, 15)
        assert ada["status"] == EmployeeStatus.ACTIVE
        assert "hire_date" not in linus
        assert "status" not in linus

    def test_generated_employee_id(self):
        parsed = ParsedCsv(
            headers=["First", "Last", "Mail"],
            rows=[["Ada", "Lovelace", "ada@example.com"]],
        )
        result = map_rows(parsed, {"First": "firstName", "Last": "lastName", "Mail": "email"})
        employee_id = result.records[0]["employee_id"]
        assert employee_id.startswith("EMP-")
        assert len(employee_id) == 12

    def test_short_row_reports_every_missing_field(self):
        parsed = ParsedCsv(headers=["First", "Last", "Mail"], rows=[["Ada"]])
        result = map_rows(parsed, {"First": "firstName", "Last": "lastName", "Mail": "email"})
        assert result.failed_rows == 1
        assert [e["message"] for e in result.errors] == [
            "Missing required field: lastName",
            "Missing required field: email",
        ]


class TestImportStatus:
    def test_all_failed_is_error(self):
        assert import_status(3, 3) == ImportJobStatus.ERROR

    def test_partial_failure_completes(self):
        assert import_status(3, 2) == ImportJobStatus.COMPLETED

    def test_header_only_file_is_error(self):
        assert import_status(0, 0) == ImportJobStatus.ERROR


class TestUpsertEmployees:
    def _session(self, existing):
        session = MagicMock()
        result = MagicMock()
        result.scalars.return_value = existing
        session.execute = AsyncMock(return_value=result)
        session.flush = AsyncMock()
        return session

    def test_inserts_new_and_updates_existing(self):
        current = Employee(
            employee_id="E1", first_name="Old", last_name="Name", email="old@example.com",
        )
        session = self._session([current])
        records = [
            {"employee_id": "E1", "first_name": "Ada", "last_name": "Lovelace",
             "email": "ada@example.com"},
            {"employee_id": "E2", "first_name": "Grace", "last_name": "Hopper",
             "email": "grace@example.com"},
        ]

        written = _run(upsert_employees(session, records, import_job_id="job-1"))

        assert written == 2
        assert current.first_name == "Ada"
        assert current.import_job_id == "job-1"
        added = session.add.call_args.args[0]
        assert added.employee_id == "E2"
        assert added.import_job_id == "job-1"
        session.flush.assert_awaited_once()

    def test_duplicate_ids_in_one_file_insert_once(self):
        session = self._session([])
        records = [
            {"employee_id": "E9", "first_name": "A", "last_name": "B", "email": "a@b.co"},
            {"employee_id": "E9", "first_name": "C", "last_name": "D", "email": "c@d.co"},
        ]
        assert _run(upsert_employees(session, records)) == 2
        assert session.add.call_count == 1
        assert session.add.call_args.args[0].first_name == "C"

    def test_no_records_skips_database(self):
        session = self._session([])
        assert _run(upsert_employees(session, [])) == 0
        session.execute.assert_not_called()
