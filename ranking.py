# ranking.py
"""
Class and school rankings derived from whatever assessments exist right now.

Nothing is cached: every call re-reads the records and the result mapping, so
rankings taken mid-batch are relative to the students analyzed so far.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from assessment_agent import AssessmentResult
from fitness_data import StudentRecord


@dataclass(frozen=True)
class Ranking:
    global_rank: int
    total_global: int
    class_rank: int
    total_class: int


def _first_match_rank(scores: Sequence[float], score: float) -> int:
    """1-based index of the first occurrence of `score` in the scores sorted high to low.

    Equal scores therefore share a rank and no secondary key is used.
    """
    ordered = sorted(scores, reverse=True)
    return ordered.index(score) + 1


def compute_ranking(student_id: str,
                    records: Sequence[StudentRecord],
                    results: Mapping[str, AssessmentResult]) -> Optional[Ranking]:
    """Rank one student among all assessed students and among those in the same grade."""
    report = results.get(student_id)
    if report is None:
        return None

    all_scores = [r.ranking_score for r in results.values()]

    student = next((s for s in records if s.id == student_id), None)
    grade = student.grade if student is not None else None
    class_ids = {s.id for s in records if s.grade == grade}
    class_scores = [r.ranking_score for sid, r in results.items() if sid in class_ids]

    return Ranking(
        global_rank=_first_match_rank(all_scores, report.ranking_score),
        total_global=len(all_scores),
        class_rank=_first_match_rank(class_scores, report.ranking_score) if class_scores else 0,
        total_class=len(class_scores),
    )
