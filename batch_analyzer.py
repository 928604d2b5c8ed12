# batch_analyzer.py
"""
Batch analysis of every ingested student against the assessment service.

- Records are split into groups of `concurrency`; one group is in flight at a time
  and every member must settle (success or failure) before the next group starts.
- Successful assessments land in the result mapping as soon as they arrive.
- Failures are logged and counted; they never stop the batch and are not retried.
- Each batch gets a generation number. Settlements from a superseded batch are dropped.

The analyzer is the only owner of results/progress; the CLI and the Flask app
hold a reference to it and read snapshots or subscribe to progress events.
"""

from __future__ import annotations

import asyncio
import sys
import threading
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from assessment_agent import AssessmentError, AssessmentResult
from fitness_data import StudentRecord
from ranking import Ranking, compute_ranking

DEFAULT_CONCURRENCY = 5

Assessor = Callable[[StudentRecord], Awaitable[AssessmentResult]]


@dataclass(frozen=True)
class BatchProgress:
    """Event sent to subscribers after every settlement and once at the end."""
    generation: int
    completed: int
    total: int
    percent: int
    student_id: Optional[str] = None
    succeeded: Optional[bool] = None
    done: bool = False


ProgressCallback = Callable[[BatchProgress], None]


def progress_percent(completed: int, total: int) -> int:
    """round(completed / total * 100) with halves rounded up."""
    if total <= 0:
        return 0
    return (completed * 200 + total) // (2 * total)


def chunked(records: List[StudentRecord], size: int) -> List[List[StudentRecord]]:
    return [records[i:i + size] for i in range(0, len(records), size)]


class BatchAnalyzer:
    def __init__(self, assess: Assessor, *, concurrency: int = DEFAULT_CONCURRENCY) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._assess = assess
        self.concurrency = concurrency
        self._lock = threading.Lock()
        self._subscribers: List[ProgressCallback] = []
        self._records: List[StudentRecord] = []
        self._record_ids: Set[str] = set()
        self._results: Dict[str, AssessmentResult] = {}
        self._failures: Dict[str, str] = {}
        self._completed = 0
        self._generation = 0
        self._analyzing = False
        self.selected_id: Optional[str] = None

    # ---------- observation ----------

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, event: BatchProgress) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                print(f"[WARN] Progress observer failed: {type(e).__name__}: {e}", file=sys.stderr)

    # ---------- snapshots ----------

    @property
    def records(self) -> List[StudentRecord]:
        with self._lock:
            return list(self._records)

    @property
    def results(self) -> Dict[str, AssessmentResult]:
        with self._lock:
            return dict(self._results)

    @property
    def failures(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._failures)

    @property
    def completed(self) -> int:
        return self._completed

    @property
    def total(self) -> int:
        return len(self._records)

    @property
    def progress(self) -> int:
        with self._lock:
            return progress_percent(self._completed, len(self._records))

    @property
    def is_analyzing(self) -> bool:
        return self._analyzing

    @property
    def generation(self) -> int:
        return self._generation

    def result_for(self, student_id: str) -> Optional[AssessmentResult]:
        with self._lock:
            return self._results.get(student_id)

    def record_for(self, student_id: str) -> Optional[StudentRecord]:
        with self._lock:
            return next((r for r in self._records if r.id == student_id), None)

    def ranking(self, student_id: str) -> Optional[Ranking]:
        with self._lock:
            records = list(self._records)
            results = dict(self._results)
        return compute_ranking(student_id, records, results)

    # ---------- batch ----------

    def _begin(self, records: List[StudentRecord]) -> int:
        with self._lock:
            self._generation += 1
            self._records = list(records)
            self._record_ids = {r.id for r in records}
            self._results = {}
            self._failures = {}
            self._completed = 0
            self._analyzing = True
            return self._generation

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _settle(self, generation: int, record: StudentRecord,
                result: Optional[AssessmentResult], error: Optional[BaseException]) -> None:
        with self._lock:
            if not self._is_current(generation):
                return
            if result is not None:
                if record.id in self._record_ids and record.id not in self._results:
                    if result.student_id != record.id:
                        result = result.model_copy(update={"student_id": record.id})
                    self._results[record.id] = result
            else:
                self._failures[record.id] = f"{type(error).__name__}: {error}"
            self._completed += 1
            event = BatchProgress(
                generation=generation,
                completed=self._completed,
                total=len(self._records),
                percent=progress_percent(self._completed, len(self._records)),
                student_id=record.id,
                succeeded=result is not None,
            )
        self._notify(event)

    async def _analyze_one(self, generation: int, record: StudentRecord) -> None:
        try:
            result = await self._assess(record)
            if result is None:
                raise AssessmentError("Empty response")
        except Exception as e:
            if self._is_current(generation):
                print(f"[WARN] Analysis failed for {record.name} ({record.id}): {type(e).__name__}: {e}",
                      file=sys.stderr)
            self._settle(generation, record, None, e)
        else:
            self._settle(generation, record, result, None)

    def _finish(self, generation: int) -> None:
        with self._lock:
            if not self._is_current(generation):
                return
            self._analyzing = False
            if self._records:
                self.selected_id = self._records[0].id
            event = BatchProgress(
                generation=generation,
                completed=self._completed,
                total=len(self._records),
                percent=progress_percent(self._completed, len(self._records)),
                done=True,
            )
        self._notify(event)

    async def run_batch(self, records: Iterable[StudentRecord]) -> Dict[str, AssessmentResult]:
        """
        Analyze every record, one group of `concurrency` at a time.
        Returns a snapshot of the result mapping once the batch has settled.
        """
        records = list(records)
        if not records:
            return self.results

        generation = self._begin(records)
        try:
            for group in chunked(records, self.concurrency):
                if not self._is_current(generation):
                    # a newer batch took over; stop dispatching this one
                    break
                await asyncio.gather(*(self._analyze_one(generation, r) for r in group))
        finally:
            self._finish(generation)
        return self.results
