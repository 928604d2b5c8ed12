import csv

import pytest
from openpyxl import Workbook

from fitness_data import (TEMPLATE_EXAMPLE_ROWS, TEMPLATE_HEADERS, SpreadsheetFormatError, derive_bmi,
                          filter_students, fitness_dimensions, list_grades, load_students,
                          normalize_gender, write_template)


def _write_xlsx(path, rows):
    wb = Workbook()
    ws = wb.active
    ws.append(TEMPLATE_HEADERS)
    for row in rows:
        ws.append(row)
    wb.save(path)
    return path


def _assert_matches_template(records):
    assert len(records) == 2
    for record, row in zip(records, TEMPLATE_EXAMPLE_ROWS):
        grade, student_id, name, _, age, height, weight, bmi, grip, reach, jump, shuttle = row
        assert record.grade == grade
        assert record.student_id == student_id
        assert record.name == name
        assert record.age == age
        assert record.height == height
        assert record.weight == weight
        assert record.bmi == pytest.approx(bmi)
        assert record.handgrip == pytest.approx(grip)
        assert record.sit_and_reach == pytest.approx(reach)
        assert record.standing_long_jump == jump
        assert record.shuttle_run == shuttle
    assert [r.gender for r in records] == ["M", "F"]


@pytest.mark.parametrize("filename", ["template.xlsx", "template.csv"])
def test_template_round_trips(tmp_path, filename):
    path = write_template(tmp_path / filename)
    records = load_students(path, stamp=42)

    _assert_matches_template(records)
    assert [r.id for r in records] == ["student-0-42", "student-1-42"]


def test_template_sheet_layout(tmp_path):
    from openpyxl import load_workbook

    path = write_template(tmp_path / "t.xlsx")
    wb = load_workbook(path)
    ws = wb.active
    assert ws.title == "學生數據"
    rows = [list(r) for r in ws.iter_rows(values_only=True)]
    assert rows[0] == TEMPLATE_HEADERS
    assert len(rows) == 3


def test_rows_without_name_are_skipped_and_ids_stay_dense(tmp_path):
    path = _write_xlsx(tmp_path / "s.xlsx", [
        ["F1", "1", "Amy", "F", 12, 150, 40],
        ["F1", "2", None, "M", 12, 150, 40],
        [],
        ["F2", "3", "Ben", "M", 13, 160, 50],
    ])
    records = load_students(path, stamp=7)
    assert [r.name for r in records] == ["Amy", "Ben"]
    assert [r.id for r in records] == ["student-0-7", "student-1-7"]


def test_zero_in_name_column_skips_row(tmp_path):
    path = _write_xlsx(tmp_path / "s.xlsx", [
        ["F1", "1", 0, "F", 12, 150, 40],
        ["F1", "2", "Amy", "F", 12, 150, 40],
    ])
    records = load_students(path, stamp=3)
    assert [r.name for r in records] == ["Amy"]
    assert records[0].id == "student-0-3"


def test_missing_and_non_numeric_values_default_to_zero(tmp_path):
    path = tmp_path / "s.csv"
    with path.open("w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(TEMPLATE_HEADERS)
        w.writerow(["F1", "9", "Cat", "", "n/a", "", "abc"])
    (record,) = load_students(path)
    assert record.gender == "M"
    assert record.age == 0
    assert record.height == 0
    assert record.weight == 0
    assert record.bmi == 0
    assert record.shuttle_run == 0


def test_bmi_is_derived_when_absent(tmp_path):
    path = _write_xlsx(tmp_path / "s.xlsx", [["F1", "1", "Amy", "女", 12, 160, 50, None]])
    (record,) = load_students(path)
    assert record.bmi == derive_bmi(160, 50) == 19.53


@pytest.mark.parametrize(
    "token,expected",
    [("男", "M"), ("女", "F"), ("female", "F"), ("F", "F"), ("M", "M"), ("", "M"), (None, "M"), ("女生", "F")],
)
def test_gender_normalization(token, expected):
    assert normalize_gender(token) == expected


def test_unsupported_suffix_is_a_format_error(tmp_path):
    path = tmp_path / "old.xls"
    path.write_bytes(b"\xd0\xcf\x11\xe0")
    with pytest.raises(SpreadsheetFormatError):
        load_students(path)


def test_corrupt_workbook_is_a_format_error(tmp_path):
    path = tmp_path / "broken.xlsx"
    path.write_bytes(b"not a zip archive")
    with pytest.raises(SpreadsheetFormatError):
        load_students(path)


def test_filters_and_grades(make_record):
    records = [
        make_record(1, grade="F2", name="陳大文"),
        make_record(2, grade="F1", name="李小美"),
        make_record(3, grade="F1", name="陳小明"),
    ]
    assert list_grades(records) == ["F1", "F2"]
    assert filter_students(records) == records
    assert [r.name for r in filter_students(records, grade="F1")] == ["李小美", "陳小明"]
    assert [r.name for r in filter_students(records, search="陳")] == ["陳大文", "陳小明"]
    assert [r.name for r in filter_students(records, grade="F1", search="陳")] == ["陳小明"]
    assert filter_students(records, search=records[0].student_id) == [records[0]]


def test_fitness_dimensions(make_record):
    record = make_record(1, bmi=24, standing_long_jump=300, sit_and_reach=10, shuttle_run=20, handgrip=30)
    dims = dict(fitness_dimensions(record))
    assert dims["Power"] == 100
    assert dims["Body composition"] == 84
    assert dims["Flexibility"] == 40
    assert dims["Cardio"] == 50
    assert dims["Strength"] == 60

    assert dict(fitness_dimensions(make_record(2, bmi=0)))["Body composition"] == 100
