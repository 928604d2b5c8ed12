import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from assessment_agent import AssessmentResult  # noqa: E402
from fitness_data import StudentRecord  # noqa: E402


def build_record(idx: int, grade: str = "F1", name: str = "", **overrides) -> StudentRecord:
    fields = dict(
        id=f"student-{idx}-1700000000000",
        grade=grade,
        student_id=f"2024{idx:03d}",
        name=name or f"Student {idx}",
        gender="M" if idx % 2 else "F",
        age=12,
        height=150,
        weight=42,
        bmi=18.67,
        handgrip=20,
        sit_and_reach=10,
        standing_long_jump=170,
        shuttle_run=22,
    )
    fields.update(overrides)
    return StudentRecord(**fields)


def build_result(student_id: str, score: float = 75) -> AssessmentResult:
    return AssessmentResult(
        student_id=student_id,
        summary="Healthy build with good explosive power.",
        bmi_category="Normal",
        fitness_level="Good",
        comparison_macau="Around P60 for age group",
        comparison_china="Good (80-89)",
        ranking_score=score,
        exercise_suggestions=["Jump rope 3x per week", "Stretch after class"],
        nutrition_suggestions=["More leafy vegetables"],
        strengths=["Standing long jump"],
        weaknesses=["Flexibility"],
    )


@pytest.fixture()
def make_record():
    return build_record


@pytest.fixture()
def make_result():
    return build_result
