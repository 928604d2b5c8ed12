#!/usr/bin/env python3
# main.py
"""
Fitness report CLI: spreadsheet in, AI assessments + rankings + PDF reports out.
- Reads the first sheet of an .xlsx (or a .csv) in the fixed column layout (see --template)
- Creates outputs under ./outputs/run_<timestamp>/ unless --out is given
- Analyzes students in groups of --max-async (default 5); a failed student is logged and skipped
- Writes analysis_results.csv with scores, fitness level and class/school rank per student
- Writes one PDF per analyzed student plus a combined PDF for the --grade/--search selection

Notes:
- OPENAI_API_KEY must be set (environment or .env) before any analysis starts.
- --template <path> only writes the blank input template and exits.
"""

from __future__ import annotations

import argparse
import asyncio
import csv
import json
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv; load_dotenv(override=True)

from assessment_agent import AssessmentClient, MissingCredentialError, require_credential
from batch_analyzer import DEFAULT_CONCURRENCY, BatchAnalyzer, BatchProgress
from fitness_data import (COLUMN_SCHEMA_VERSION, SpreadsheetFormatError, StudentRecord,
                          filter_students, load_students, write_template)
from report_pdf import (ReportRenderError, batch_filename, collect_entries, render_batch_report,
                        render_student_report, report_filename)


# --------------------------- Data Models ---------------------------

@dataclass
class CLIConfig:
    input_path: Path
    out_dir: Path
    max_async: int
    model: Optional[str]
    grade: str
    search: str
    write_pdfs: bool


# --------------------------- Helpers ---------------------------

def _timestamp() -> str:
    return time.strftime("%Y%m%d_%H%M%S")

def _ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)

def _print_progress(event: BatchProgress) -> None:
    if event.done:
        print(f"[INFO] Batch complete: {event.completed}/{event.total}", file=sys.stderr)
        return
    mark = "ok" if event.succeeded else "failed"
    print(f"[INFO] {event.percent:3d}% ({event.completed}/{event.total}) {event.student_id} {mark}",
          file=sys.stderr)

def _write_results_csv(analyzer: BatchAnalyzer, out_path: Path) -> None:
    results = analyzer.results
    failures = analyzer.failures
    with out_path.open("w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(["student_id", "name", "grade", "status", "ranking_score", "fitness_level",
                    "class_rank", "total_class", "global_rank", "total_global", "summary"])
        for r in analyzer.records:
            report = results.get(r.id)
            if report is None:
                status = "failed" if r.id in failures else "pending"
                w.writerow([r.student_id, r.name, r.grade, status, "", "", "", "", "", "",
                            failures.get(r.id, "")])
                continue
            rank = analyzer.ranking(r.id)
            w.writerow([r.student_id, r.name, r.grade, "done", report.ranking_score, report.fitness_level,
                        rank.class_rank, rank.total_class, rank.global_rank, rank.total_global,
                        report.summary])

def _write_run_manifest(cfg: CLIConfig, analyzer: BatchAnalyzer, manifest_path: Path,
                        warnings: List[str]) -> None:
    payload = {
        "config": {
            "input_path": str(cfg.input_path.resolve()),
            "column_schema_version": COLUMN_SCHEMA_VERSION,
            "max_async": cfg.max_async,
            "model": cfg.model,
            "grade": cfg.grade,
            "search": cfg.search,
            "out_dir": str(cfg.out_dir.resolve()),
        },
        "students": analyzer.total,
        "analyzed": len(analyzer.results),
        "failures": [
            {"id": sid, "error": msg} for sid, msg in analyzer.failures.items()
        ],
        "warnings": warnings,
    }
    manifest_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

def _write_reports(cfg: CLIConfig, analyzer: BatchAnalyzer, reports_dir: Path,
                   warnings: List[str]) -> int:
    """Per-student PDFs plus the combined one. Returns the number of files written."""
    _ensure_dir(reports_dir)
    written = 0
    results = analyzer.results
    for r in analyzer.records:
        report = results.get(r.id)
        if report is None:
            continue
        try:
            pdf = render_student_report(r, report, analyzer.ranking(r.id))
        except ReportRenderError as e:
            print(f"[ERROR] PDF for {r.name} failed: {e}", file=sys.stderr)
            warnings.append(f"PDF for {r.name} failed: {e}")
            continue
        (reports_dir / report_filename(r)).write_bytes(pdf)
        written += 1

    selection: List[StudentRecord] = filter_students(analyzer.records, cfg.grade, cfg.search)
    entries = collect_entries(selection, analyzer)
    if not entries:
        warnings.append("No analyzed students in the selection; combined PDF skipped.")
        return written
    try:
        combined = render_batch_report(entries)
    except ReportRenderError as e:
        print(f"[ERROR] Combined PDF failed: {e}", file=sys.stderr)
        warnings.append(f"Combined PDF failed: {e}")
        return written
    (reports_dir / batch_filename(cfg.grade)).write_bytes(combined)
    return written + 1


# --------------------------- CLI ---------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fitness-report",
        description="Analyze a student fitness spreadsheet with an AI assessor and export PDF reports.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--file",
        default=None,
        help="Spreadsheet with student measurements (.xlsx or .csv)."
    )
    parser.add_argument(
        "--template",
        default=None,
        help="Write the blank input template to this path (.xlsx or .csv) and exit."
    )
    parser.add_argument(
        "--max-async",
        type=int,
        default=DEFAULT_CONCURRENCY,
        help="Students analyzed concurrently per group."
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Assessment model (default: $FITNESS_MODEL or gpt-5-mini)."
    )
    parser.add_argument(
        "--grade",
        default="all",
        help="Grade to include in the combined PDF ('all' for every grade)."
    )
    parser.add_argument(
        "--search",
        default="",
        help="Only include names or student numbers containing this text in the combined PDF."
    )
    parser.add_argument(
        "--no-pdf",
        action="store_true",
        help="Skip PDF export."
    )
    parser.add_argument(
        "--out",
        default=None,
        help="Optional output directory. Defaults to ./outputs/run_<timestamp>/"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.template:
        path = write_template(Path(args.template).expanduser())
        print(f"[INFO] Template written to {path}", file=sys.stderr)
        return 0

    if not args.file:
        parser.print_usage(sys.stderr)
        print("[ERROR] --file is required unless --template is given.", file=sys.stderr)
        return 2

    try:
        require_credential()
    except MissingCredentialError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 2

    input_path = Path(args.file).expanduser()
    try:
        records = load_students(input_path)
    except SpreadsheetFormatError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 2

    default_out = Path("./outputs") / f"run_{_timestamp()}"
    out_dir = Path(args.out).expanduser().resolve() if args.out else default_out.resolve()
    _ensure_dir(out_dir)

    cfg = CLIConfig(
        input_path=input_path,
        out_dir=out_dir,
        max_async=max(1, int(args.max_async)),
        model=args.model,
        grade=args.grade,
        search=args.search,
        write_pdfs=not args.no_pdf,
    )

    warnings: List[str] = []
    if not records:
        print("[WARN] No student rows found (rows without a name are skipped).", file=sys.stderr)
        warnings.append("No student rows found.")

    analyzer = BatchAnalyzer(AssessmentClient(model=cfg.model), concurrency=cfg.max_async)
    analyzer.subscribe(_print_progress)
    if records:
        asyncio.run(analyzer.run_batch(records))

    results_csv = out_dir / "analysis_results.csv"
    _write_results_csv(analyzer, results_csv)

    pdf_count = 0
    reports_dir = out_dir / "reports"
    if cfg.write_pdfs and analyzer.results:
        pdf_count = _write_reports(cfg, analyzer, reports_dir, warnings)

    manifest_path = out_dir / "run_manifest.json"
    _write_run_manifest(cfg, analyzer, manifest_path, warnings)

    # ---- Summary ----
    print("\n=== Fitness Analysis Complete ===")
    print(f" Input file      : {input_path}")
    print(f" Students        : {len(records)}")
    print(f" Analyzed        : {len(analyzer.results)}")
    print(f" Failed          : {len(analyzer.failures)}")
    print(f" Max async       : {cfg.max_async}")
    print(f" Output dir      : {out_dir}")
    print("\nArtifacts:")
    print(f" - {results_csv}")
    print(f" - {manifest_path}")
    if pdf_count:
        print(f" - {pdf_count} PDF file(s) in {reports_dir}")
    print()

    return 0


if __name__ == "__main__":
    sys.exit(main())
