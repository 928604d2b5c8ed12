# report_pdf.py
"""
A4 fitness reports drawn with PyMuPDF.

One page per student: identity header, composite score, the seven measurements,
class/school rank, five fitness dimension bars, the two standards comparisons,
summary, strengths/weaknesses and the exercise/nutrition suggestions.
The batch export simply draws one such page per student, in the order given.
"""

from __future__ import annotations

import re
import sys
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import fitz  # PyMuPDF

from assessment_agent import AssessmentResult
from fitness_data import StudentRecord, fitness_dimensions
from ranking import Ranking

# Built-in CJK font; also covers Latin text. Names in the sheets are usually Chinese.
DEFAULT_FONT = "china-t"

NAVY = (0.05, 0.16, 0.40)
YELLOW = (0.98, 0.80, 0.08)
GREY = (0.45, 0.50, 0.56)
LIGHT = (0.94, 0.96, 0.98)
WHITE = (1, 1, 1)
BODY_FONT_SIZES = (8.5, 7.5, 6.5, 5.5)


class ReportRenderError(RuntimeError):
    """A report could not be produced."""


@dataclass
class ReportEntry:
    record: StudentRecord
    assessment: AssessmentResult
    ranking: Optional[Ranking]


# --------------------------- Filenames ---------------------------

def _safe_name(text: str) -> str:
    cleaned = re.sub(r'[\\/:*?"<>|\s]+', "_", text.strip())
    return cleaned or "student"


def report_filename(record: StudentRecord) -> str:
    return f"fitness_report-{_safe_name(record.name)}.pdf"


def batch_filename(grade: str = "all") -> str:
    return f"fitness_reports-{_safe_name(grade or 'all')}.pdf"


# --------------------------- Drawing ---------------------------

def _fmt(value: float, unit: str = "") -> str:
    text = str(int(value)) if float(value).is_integer() else f"{value:g}"
    return f"{text} {unit}".strip()


def _bullets(items: Sequence[str]) -> str:
    return "\n".join(f"- {i}" for i in items) if items else "-"


def _section(page: fitz.Page, rect: fitz.Rect, title: str, body: str, fontname: str) -> None:
    page.insert_text((rect.x0, rect.y0 + 10), title, fontname=fontname, fontsize=11, color=NAVY)
    body_rect = fitz.Rect(rect.x0, rect.y0 + 16, rect.x1, rect.y1)
    # insert_textbox writes nothing and returns < 0 when the text does not fit
    for fontsize in BODY_FONT_SIZES:
        if page.insert_textbox(body_rect, body, fontname=fontname, fontsize=fontsize,
                               color=(0.15, 0.15, 0.15)) >= 0:
            return
    print(f"[WARN] Report section '{title}' truncated to fit the page.", file=sys.stderr)
    while len(body) > 1:
        body = body[: len(body) // 2]
        if page.insert_textbox(body_rect, body + " ...", fontname=fontname,
                               fontsize=BODY_FONT_SIZES[-1], color=(0.15, 0.15, 0.15)) >= 0:
            return


def _draw_student_page(page: fitz.Page, entry: ReportEntry, fontname: str) -> None:
    record, report, ranking = entry.record, entry.assessment, entry.ranking
    width = page.rect.width
    margin = 36

    # Header band
    page.draw_rect(fitz.Rect(0, 0, width, 190), color=None, fill=NAVY)
    page.draw_rect(fitz.Rect(0, 190, width, 194), color=None, fill=YELLOW)
    page.insert_text((margin, 48), f"{record.grade} Physical Fitness Report",
                     fontname=fontname, fontsize=10, color=YELLOW)
    page.insert_text((margin, 84), record.name, fontname=fontname, fontsize=28, color=WHITE)
    page.insert_text((margin, 106), f"{record.student_id}  |  {record.gender_label}  |  {_fmt(record.age)} yrs",
                     fontname=fontname, fontsize=11, color=(0.75, 0.82, 0.95))

    score_box = fitz.Rect(width - margin - 120, 30, width - margin, 115)
    page.draw_rect(score_box, color=None, fill=WHITE)
    page.insert_text((score_box.x0 + 10, score_box.y0 + 16), "Composite score",
                     fontname=fontname, fontsize=8, color=GREY)
    page.insert_text((score_box.x0 + 10, score_box.y0 + 56), _fmt(report.ranking_score),
                     fontname=fontname, fontsize=34, color=NAVY)
    page.insert_text((score_box.x0 + 10, score_box.y0 + 76), report.fitness_level,
                     fontname=fontname, fontsize=9, color=(0.1, 0.55, 0.25))

    metrics: List[Tuple[str, str]] = [
        ("Height", _fmt(record.height, "cm")),
        ("Weight", _fmt(record.weight, "kg")),
        ("BMI", _fmt(record.bmi)),
        ("Grip", _fmt(record.handgrip, "kg")),
        ("Sit & reach", _fmt(record.sit_and_reach, "cm")),
        ("Long jump", _fmt(record.standing_long_jump, "cm")),
        ("Shuttle run", _fmt(record.shuttle_run)),
    ]
    cell_w = (width - 2 * margin) / len(metrics)
    for i, (label, value) in enumerate(metrics):
        x = margin + i * cell_w
        page.insert_text((x + 4, 140), label, fontname=fontname, fontsize=7.5, color=YELLOW)
        page.insert_text((x + 4, 160), value, fontname=fontname, fontsize=10, color=WHITE)

    # Rankings
    y = 212
    half = (width - 2 * margin - 12) / 2
    rank_boxes = [
        (f"Class rank ({record.grade})", ranking.class_rank if ranking else 0, ranking.total_class if ranking else 0),
        ("School rank", ranking.global_rank if ranking else 0, ranking.total_global if ranking else 0),
    ]
    for i, (label, rank, total) in enumerate(rank_boxes):
        box = fitz.Rect(margin + i * (half + 12), y, margin + i * (half + 12) + half, y + 56)
        page.draw_rect(box, color=None, fill=LIGHT)
        page.insert_text((box.x0 + 12, box.y0 + 16), label, fontname=fontname, fontsize=8, color=GREY)
        page.insert_text((box.x0 + 12, box.y0 + 46), f"{rank} / {total}",
                         fontname=fontname, fontsize=22, color=NAVY)

    # Fitness dimensions
    y = 290
    page.insert_text((margin, y), "Fitness dimensions", fontname=fontname, fontsize=11, color=NAVY)
    bar_x = margin + 100
    bar_w = 150
    for i, (label, value) in enumerate(fitness_dimensions(record)):
        row_y = y + 14 + i * 16
        page.insert_text((margin, row_y + 8), label, fontname=fontname, fontsize=8, color=GREY)
        page.draw_rect(fitz.Rect(bar_x, row_y, bar_x + bar_w, row_y + 10), color=None, fill=LIGHT)
        filled = bar_w * max(0.0, min(100.0, value)) / 100
        if filled > 0:
            page.draw_rect(fitz.Rect(bar_x, row_y, bar_x + filled, row_y + 10), color=None, fill=YELLOW)
        page.insert_text((bar_x + bar_w + 6, row_y + 8), f"{value:.0f}", fontname=fontname, fontsize=8, color=NAVY)

    right_x = margin + 300
    _section(page, fitz.Rect(right_x, y - 10, width - margin, y + 100), "Standards comparison",
             f"BMI: {report.bmi_category}\n"
             f"2014 national standard: {report.comparison_china}\n"
             f"2020 Macau report: {report.comparison_macau}", fontname)

    col_w = (width - 2 * margin - 12) / 2
    left_x0, left_x1 = margin, margin + col_w
    right_x0, right_x1 = margin + col_w + 12, width - margin
    bottom = page.rect.height - margin

    _section(page, fitz.Rect(margin, 400, width - margin, 500), "Assessment summary", report.summary, fontname)
    _section(page, fitz.Rect(left_x0, 505, left_x1, 610), "Strengths", _bullets(report.strengths), fontname)
    _section(page, fitz.Rect(right_x0, 505, right_x1, 610), "Areas to improve", _bullets(report.weaknesses), fontname)
    _section(page, fitz.Rect(left_x0, 615, left_x1, bottom), "Exercise prescription",
             _bullets(report.exercise_suggestions), fontname)
    _section(page, fitz.Rect(right_x0, 615, right_x1, bottom), "Nutrition advice",
             _bullets(report.nutrition_suggestions), fontname)


def _render(entries: Sequence[ReportEntry], fontname: str) -> bytes:
    doc = fitz.open()
    try:
        width, height = fitz.paper_size("a4")  # 595 x 842 pts
        for entry in entries:
            page = doc.new_page(width=width, height=height)
            _draw_student_page(page, entry, fontname)
        return doc.tobytes()
    except Exception as e:
        raise ReportRenderError(f"Failed to render report: {e}") from e
    finally:
        doc.close()


# --------------------------- Public API ---------------------------

def render_student_report(record: StudentRecord,
                          assessment: AssessmentResult,
                          ranking: Optional[Ranking],
                          *, fontname: str = DEFAULT_FONT) -> bytes:
    if assessment.student_id != record.id:
        raise ReportRenderError(f"Assessment belongs to {assessment.student_id}, not {record.id}.")
    return _render([ReportEntry(record, assessment, ranking)], fontname)


def render_batch_report(entries: Sequence[ReportEntry], *, fontname: str = DEFAULT_FONT) -> bytes:
    """One page per entry, in the given order."""
    if not entries:
        raise ReportRenderError("No analyzed students to export.")
    return _render(entries, fontname)


def collect_entries(records: Sequence[StudentRecord], analyzer) -> List[ReportEntry]:
    """Students (in the given order) that have an assessment, with a fresh ranking each."""
    results = analyzer.results
    return [
        ReportEntry(r, results[r.id], analyzer.ranking(r.id))
        for r in records
        if r.id in results
    ]
