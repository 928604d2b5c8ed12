#!/usr/bin/env python3
# fitness_data.py
"""
Student fitness spreadsheet handling.

- Reads the first worksheet of an .xlsx (openpyxl) or a .csv export
- Row 1 is a header; data rows are mapped by column position (COLUMN_SCHEMA_V1)
- Rows without a name are skipped; numeric cells default to 0
- Writes the blank template teachers fill in (header + two example rows)
- Small helpers for the UI/CLI: grade list, grade/search filter, fitness dimensions
"""

from __future__ import annotations

import csv
import math
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from openpyxl import Workbook, load_workbook


class SpreadsheetFormatError(ValueError):
    """The uploaded file could not be read as a fitness spreadsheet."""


# --------------------------- Data Models ---------------------------

@dataclass(frozen=True)
class StudentRecord:
    """One spreadsheet row. Immutable for the whole session."""
    id: str                        # synthetic, unique per ingestion
    grade: str                     # cohort label used for class ranking
    student_id: str                # school-assigned number
    name: str
    gender: str                    # "M" or "F"
    age: float
    height: float                  # cm
    weight: float                  # kg
    bmi: float
    handgrip: float = 0.0          # kg
    sit_and_reach: float = 0.0     # cm
    standing_long_jump: float = 0.0  # cm
    shuttle_run: float = 0.0       # 15m shuttle run count

    @property
    def gender_label(self) -> str:
        return "Female" if self.gender == "F" else "Male"


# Column position -> field. Bump the version and add a new mapping rather than
# editing this one; existing spreadsheets depend on these offsets.
COLUMN_SCHEMA_VERSION = 1
COLUMN_SCHEMA_V1: Tuple[str, ...] = (
    "grade",
    "student_id",
    "name",
    "gender",
    "age",
    "height",
    "weight",
    "bmi",
    "handgrip",
    "sit_and_reach",
    "standing_long_jump",
    "shuttle_run",
)
NUMERIC_FIELDS = {
    "age", "height", "weight", "bmi",
    "handgrip", "sit_and_reach", "standing_long_jump", "shuttle_run",
}

TEMPLATE_HEADERS: List[str] = [
    "年級Grade", "學號", "名", "姓別", "年齡", "身高", "體重", "BMI",
    "手握力(kg)", "坐位體前屈(cm)", "立定跳遠(cm)", "15米折返跑",
]
TEMPLATE_EXAMPLE_ROWS: List[List[object]] = [
    ["F1", "2024001", "陳大文", "男", 12, 155, 45, 18.7, 22.5, 12.3, 180, 25],
    ["F1", "2024002", "李小美", "女", 12, 150, 40, 17.8, 18.2, 18.5, 165, 20],
]
TEMPLATE_SHEET_TITLE = "學生數據"
TEMPLATE_FILENAME = "fitness_template.xlsx"

SUPPORTED_SUFFIXES = {".xlsx", ".csv"}


# --------------------------- Cell normalization ---------------------------

def _cell_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        # openpyxl hands back 2024001.0 for numeric student ids
        return str(int(value))
    return str(value).strip()


def _cell_number(value: object) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return 0.0
        try:
            number = float(text)
        except ValueError:
            return 0.0
    return number if math.isfinite(number) else 0.0


def normalize_gender(token: object) -> str:
    raw = _cell_text(token) or "M"
    if "女" in raw or raw.upper().startswith("F"):
        return "F"
    return "M"


def derive_bmi(height_cm: float, weight_kg: float) -> float:
    if height_cm <= 0:
        return 0.0
    return round(weight_kg / (height_cm / 100) ** 2, 2)


def row_to_record(row: Sequence[object], index: int, stamp: int) -> Optional[StudentRecord]:
    """Map one data row through COLUMN_SCHEMA_V1. Returns None for skipped rows."""
    cells = list(row) + [None] * (len(COLUMN_SCHEMA_V1) - len(row))
    values: Dict[str, object] = dict(zip(COLUMN_SCHEMA_V1, cells))

    raw_name = values["name"]
    name = _cell_text(raw_name)
    # a falsy cell (blank, 0) means no student on this row
    if not name or (isinstance(raw_name, (int, float)) and raw_name == 0):
        return None

    numbers = {field: _cell_number(values[field]) for field in NUMERIC_FIELDS}
    if not numbers["bmi"]:
        numbers["bmi"] = derive_bmi(numbers["height"], numbers["weight"])

    return StudentRecord(
        id=f"student-{index}-{stamp}",
        grade=_cell_text(values["grade"]),
        student_id=_cell_text(values["student_id"]),
        name=name,
        gender=normalize_gender(values["gender"]),
        **numbers,
    )


# --------------------------- Reading ---------------------------

def _read_xlsx_rows(path: Path) -> List[Tuple[object, ...]]:
    try:
        wb = load_workbook(path, read_only=True, data_only=True)
    except Exception as e:
        raise SpreadsheetFormatError(f"Could not open workbook {path.name}: {e}") from e
    try:
        sheet = wb.worksheets[0] if wb.worksheets else None
        if sheet is None:
            raise SpreadsheetFormatError(f"Workbook {path.name} has no worksheets.")
        return [tuple(r) for r in sheet.iter_rows(values_only=True)]
    finally:
        wb.close()


def _read_csv_rows(path: Path) -> List[Tuple[object, ...]]:
    try:
        with path.open(newline="", encoding="utf-8-sig") as f:
            return [tuple(r) for r in csv.reader(f)]
    except (UnicodeDecodeError, csv.Error) as e:
        raise SpreadsheetFormatError(f"Could not read CSV {path.name}: {e}") from e


def load_students(path: Path, *, stamp: Optional[int] = None) -> List[StudentRecord]:
    """
    Parse a fitness spreadsheet into StudentRecords (input order preserved).
    Raises SpreadsheetFormatError for unsupported or unreadable files.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise SpreadsheetFormatError(
            f"Unsupported file type '{suffix or path.name}'. Use .xlsx or .csv."
        )
    if not path.is_file():
        raise SpreadsheetFormatError(f"File not found: {path}")

    rows = _read_xlsx_rows(path) if suffix == ".xlsx" else _read_csv_rows(path)
    stamp = int(time.time() * 1000) if stamp is None else stamp

    records: List[StudentRecord] = []
    for row in rows[1:]:
        if not row or not any(c not in (None, "") for c in row):
            continue
        record = row_to_record(row, len(records), stamp)
        if record is not None:
            records.append(record)
    return records


# --------------------------- Template ---------------------------

def write_template(out_path: Path) -> Path:
    """Write the blank input template (.xlsx, or .csv if that suffix is given)."""
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    if out_path.suffix.lower() == ".csv":
        with out_path.open("w", newline="", encoding="utf-8-sig") as f:
            w = csv.writer(f)
            w.writerow(TEMPLATE_HEADERS)
            w.writerows(TEMPLATE_EXAMPLE_ROWS)
        return out_path

    wb = Workbook()
    ws = wb.active
    ws.title = TEMPLATE_SHEET_TITLE
    ws.append(TEMPLATE_HEADERS)
    for row in TEMPLATE_EXAMPLE_ROWS:
        ws.append(row)
    wb.save(out_path)
    return out_path


# --------------------------- Helpers for the UI ---------------------------

def list_grades(records: Sequence[StudentRecord]) -> List[str]:
    return sorted({r.grade for r in records})


def filter_students(records: Sequence[StudentRecord],
                    grade: str = "all",
                    search: str = "") -> List[StudentRecord]:
    search = (search or "").strip()
    out: List[StudentRecord] = []
    for r in records:
        if grade not in ("all", "", None) and r.grade != grade:
            continue
        if search and search not in r.name and search not in r.student_id:
            continue
        out.append(r)
    return out


def fitness_dimensions(record: StudentRecord) -> List[Tuple[str, float]]:
    """Five 0-100 indicators shown on the report (power, body comp, flexibility, cardio, strength)."""
    bmi = record.bmi or 22
    return [
        ("Power", min(100.0, record.standing_long_jump / 2.5)),
        ("Body composition", max(0.0, 100 - abs(bmi - 22) * 8)),
        ("Flexibility", min(100.0, record.sit_and_reach * 4)),
        ("Cardio", min(100.0, record.shuttle_run * 2.5)),
        ("Strength", min(100.0, record.handgrip * 2)),
    ]
