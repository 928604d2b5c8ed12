import asyncio
import io
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv
from flask import Flask, jsonify, render_template, request, send_file
from werkzeug.utils import secure_filename

from assessment_agent import AssessmentClient, MissingCredentialError, require_credential
from batch_analyzer import DEFAULT_CONCURRENCY, BatchAnalyzer
from fitness_data import (SUPPORTED_SUFFIXES, TEMPLATE_FILENAME, SpreadsheetFormatError, StudentRecord,
                          filter_students, list_grades, load_students, write_template)
from report_pdf import (ReportRenderError, batch_filename, collect_entries, render_batch_report,
                        render_student_report, report_filename)

load_dotenv(override=True)

BASE_DIR = Path(__file__).resolve().parent
UPLOAD_DIR = BASE_DIR / "uploads"

app = Flask(__name__)

# Application state. The analyzer owns records, results and progress; everything
# else here is view state (filters, status line, settings).
analyzer: Optional[BatchAnalyzer] = None
status_message: str = "Idle"
max_concurrent: int = DEFAULT_CONCURRENCY
filter_grade: str = "all"
search_term: str = ""


def _make_assessor():
    return AssessmentClient()


def _get_analyzer() -> BatchAnalyzer:
    global analyzer
    if analyzer is None:
        analyzer = BatchAnalyzer(_make_assessor(), concurrency=max_concurrent)
    return analyzer


def _launch_batch(batch_analyzer: BatchAnalyzer, records: List[StudentRecord]) -> None:
    """Run the batch on a background thread so the request returns immediately."""
    thread = threading.Thread(
        target=lambda: asyncio.run(batch_analyzer.run_batch(records)),
        name="fitness-batch",
        daemon=True,
    )
    thread.start()


def _student_status(student_id: str, results: Dict, failures: Dict) -> str:
    if student_id in results:
        return "done"
    if student_id in failures:
        return "failed"
    return "pending"


def _build_state_payload() -> Dict[str, object]:
    if analyzer is None:
        records: List[StudentRecord] = []
        results: Dict = {}
        failures: Dict = {}
        progress, analyzing, selected_id = 0, False, None
    else:
        records = analyzer.records
        results = analyzer.results
        failures = analyzer.failures
        progress, analyzing, selected_id = analyzer.progress, analyzer.is_analyzing, analyzer.selected_id

    visible = filter_students(records, filter_grade, search_term)
    students = []
    for s in visible:
        report = results.get(s.id)
        students.append({
            "id": s.id,
            "studentId": s.student_id,
            "name": s.name,
            "grade": s.grade,
            "status": _student_status(s.id, results, failures),
            "score": report.ranking_score if report else None,
        })

    return {
        "status": status_message,
        "progress": progress,
        "isAnalyzing": analyzing,
        "selectedId": selected_id,
        "maxConcurrent": max_concurrent,
        "filterGrade": filter_grade,
        "search": search_term,
        "grades": list_grades(records),
        "totalStudents": len(records),
        "students": students,
        "exportable": sum(1 for s in visible if s.id in results),
    }


@app.route("/")
def index():
    return render_template("index.html", state=_build_state_payload())


@app.route("/state")
def get_state():
    return jsonify(_build_state_payload())


@app.route("/upload", methods=["POST"])
def upload():
    global status_message

    try:
        require_credential()
    except MissingCredentialError as e:
        status_message = "API key missing"
        return jsonify({"message": str(e)}), 400

    file_storage = request.files.get("file")
    if file_storage is None or not file_storage.filename:
        return jsonify({"message": "No file uploaded."}), 400

    suffix = Path(file_storage.filename).suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        return jsonify({"message": "Upload an .xlsx or .csv file."}), 400

    # secure_filename drops non-ASCII names entirely, so keep our own suffix
    stem = secure_filename(Path(file_storage.filename).stem) or "upload"
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    filepath = UPLOAD_DIR / f"{time.strftime('%Y%m%d_%H%M%S')}_{stem}{suffix}"
    file_storage.save(filepath)

    try:
        records = load_students(filepath)
    except SpreadsheetFormatError as e:
        status_message = "Spreadsheet could not be read"
        return jsonify({"message": f"Spreadsheet could not be read: {e}"}), 400

    if not records:
        status_message = "No students found"
        return jsonify({"message": "No student rows found in the spreadsheet."}), 400

    batch_analyzer = _get_analyzer()
    batch_analyzer.concurrency = max_concurrent
    _launch_batch(batch_analyzer, records)

    status_message = f"Analyzing {len(records)} students"
    return jsonify({
        "message": "Upload accepted; analysis started.",
        "students": len(records),
        "status": status_message,
    })


@app.route("/select", methods=["POST"])
def select_student():
    payload = request.get_json(silent=True) or {}
    student_id = payload.get("studentId")
    if analyzer is None or not student_id or analyzer.record_for(student_id) is None:
        return jsonify({"message": "Student not found."}), 404
    analyzer.selected_id = student_id
    return jsonify({"selectedId": student_id})


@app.route("/filters", methods=["POST"])
def update_filters():
    global filter_grade, search_term
    payload = request.get_json(silent=True) or {}
    grade = payload.get("grade", filter_grade)
    search = payload.get("search", search_term)
    if not isinstance(grade, str) or not isinstance(search, str):
        return jsonify({"message": "grade and search must be strings."}), 400
    filter_grade = grade.strip() or "all"
    search_term = search.strip()
    return jsonify(_build_state_payload())


@app.route("/report/<student_id>")
def get_report(student_id: str):
    record = analyzer.record_for(student_id) if analyzer is not None else None
    if record is None:
        return jsonify({"message": "Student not found."}), 404
    report = analyzer.result_for(student_id)
    if report is None:
        failures = analyzer.failures
        return jsonify({
            "message": "No assessment for this student yet.",
            "status": "failed" if student_id in failures else "pending",
            "error": failures.get(student_id),
        }), 404

    ranking = analyzer.ranking(student_id)
    if ranking is None:
        # a new upload replaced the batch between the two reads
        return jsonify({"message": "No assessment for this student yet.", "status": "pending"}), 404
    return jsonify({
        "student": {
            "id": record.id,
            "studentId": record.student_id,
            "name": record.name,
            "grade": record.grade,
            "gender": record.gender,
            "age": record.age,
            "height": record.height,
            "weight": record.weight,
            "bmi": record.bmi,
            "handgrip": record.handgrip,
            "sitAndReach": record.sit_and_reach,
            "standingLongJump": record.standing_long_jump,
            "shuttleRun": record.shuttle_run,
        },
        "assessment": report.model_dump(),
        "ranking": {
            "globalRank": ranking.global_rank,
            "totalGlobal": ranking.total_global,
            "classRank": ranking.class_rank,
            "totalClass": ranking.total_class,
        },
    })


@app.route("/report/<student_id>/pdf")
def download_report(student_id: str):
    record = analyzer.record_for(student_id) if analyzer is not None else None
    report = analyzer.result_for(student_id) if record is not None else None
    if record is None or report is None:
        return jsonify({"message": "No assessment for this student."}), 404
    try:
        pdf = render_student_report(record, report, analyzer.ranking(student_id))
    except ReportRenderError as e:
        return jsonify({"message": f"Failed to generate PDF: {e}"}), 500
    return send_file(io.BytesIO(pdf), mimetype="application/pdf", as_attachment=True,
                     download_name=report_filename(record))


@app.route("/reports/pdf")
def download_all_reports():
    if analyzer is None:
        return jsonify({"message": "No students loaded."}), 404
    selection = filter_students(analyzer.records, filter_grade, search_term)
    entries = collect_entries(selection, analyzer)
    if not entries:
        return jsonify({"message": "No analyzed students match the current filters."}), 404
    try:
        pdf = render_batch_report(entries)
    except ReportRenderError as e:
        return jsonify({"message": f"Failed to generate PDF: {e}"}), 500
    return send_file(io.BytesIO(pdf), mimetype="application/pdf", as_attachment=True,
                     download_name=batch_filename(filter_grade))


@app.route("/template")
def download_template():
    path = write_template(UPLOAD_DIR / TEMPLATE_FILENAME)
    return send_file(path, as_attachment=True, download_name=TEMPLATE_FILENAME)


@app.route("/settings/concurrency", methods=["POST"])
def update_concurrency():
    global max_concurrent
    payload = request.get_json(silent=True) or {}
    value = payload.get("maxConcurrent")
    if not isinstance(value, int) or isinstance(value, bool) or not (1 <= value <= 10):
        return jsonify({"message": "maxConcurrent must be an integer between 1 and 10."}), 400
    max_concurrent = value
    return jsonify({"message": "Updated.", "maxConcurrent": max_concurrent})


if __name__ == "__main__":
    app.run(debug=True)
