import asyncio

import pytest

from assessment_agent import AssessmentError
from batch_analyzer import BatchAnalyzer, chunked, progress_percent


@pytest.mark.parametrize(
    "completed,total,expected",
    [(0, 5, 0), (1, 3, 33), (2, 3, 67), (1, 8, 13), (5, 5, 100), (0, 0, 0)],
)
def test_progress_rounds_half_up(completed, total, expected):
    assert progress_percent(completed, total) == expected


def test_twelve_records_with_one_failure(make_record, make_result):
    records = [make_record(i) for i in range(12)]
    failing = records[6].id  # seventh record, second group

    async def assess(record):
        await asyncio.sleep(0)
        if record.id == failing:
            raise AssessmentError("Empty response")
        return make_result(record.id, 60 + len(record.id) % 7)

    analyzer = BatchAnalyzer(assess, concurrency=5)
    assert [len(g) for g in chunked(records, analyzer.concurrency)] == [5, 5, 2]

    results = asyncio.run(analyzer.run_batch(records))

    assert analyzer.completed == 12
    assert analyzer.progress == 100
    assert len(results) == 11
    assert failing not in results
    assert list(analyzer.failures) == [failing]
    assert "AssessmentError" in analyzer.failures[failing]
    assert analyzer.is_analyzing is False
    assert analyzer.selected_id == records[0].id


def test_failure_is_logged_with_student_name(make_record, capsys):
    records = [make_record(0, name="Chan Tai Man")]

    async def assess(record):
        raise RuntimeError("service unavailable")

    analyzer = BatchAnalyzer(assess)
    asyncio.run(analyzer.run_batch(records))

    err = capsys.readouterr().err
    assert "[WARN] Analysis failed for Chan Tai Man" in err
    assert "service unavailable" in err
    assert analyzer.progress == 100
    assert analyzer.results == {}


def test_none_result_counts_as_logged_failure(make_record, capsys):
    records = [make_record(0, name="Lee Siu Mei")]

    async def assess(record):
        return None

    analyzer = BatchAnalyzer(assess)
    asyncio.run(analyzer.run_batch(records))

    assert analyzer.results == {}
    assert analyzer.failures[records[0].id] == "AssessmentError: Empty response"
    assert "[WARN] Analysis failed for Lee Siu Mei" in capsys.readouterr().err


def test_failing_observer_does_not_stop_batch(make_record, make_result, capsys):
    records = [make_record(i) for i in range(6)]
    assessed = []

    async def assess(record):
        assessed.append(record.id)
        return make_result(record.id)

    def observer(event):
        if event.completed == 1:
            raise RuntimeError("observer broke")

    analyzer = BatchAnalyzer(assess, concurrency=2)
    analyzer.subscribe(observer)
    results = asyncio.run(analyzer.run_batch(records))

    assert sorted(assessed) == sorted(r.id for r in records)
    assert len(results) == 6
    assert analyzer.completed == 6
    assert analyzer.progress == 100
    assert analyzer.is_analyzing is False
    assert "[WARN] Progress observer failed: RuntimeError: observer broke" in capsys.readouterr().err


class _Interrupted(BaseException):
    pass


def test_batch_finishes_when_dispatch_is_interrupted(make_record):
    records = [make_record(i) for i in range(3)]

    async def assess(record):
        raise _Interrupted()

    analyzer = BatchAnalyzer(assess, concurrency=3)
    with pytest.raises(_Interrupted):
        asyncio.run(analyzer.run_batch(records))

    assert analyzer.is_analyzing is False


def test_groups_never_overlap(make_record, make_result):
    records = [make_record(i) for i in range(11)]
    delays = [0.004, 0.001, 0.003, 0.0, 0.002]
    events = []
    in_flight = 0
    peak = 0

    async def assess(record):
        nonlocal in_flight, peak
        idx = records.index(record)
        events.append(("start", idx))
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(delays[idx % len(delays)])
        in_flight -= 1
        events.append(("settle", idx))
        if idx == 3:
            raise AssessmentError("schema violation")
        return make_result(record.id)

    analyzer = BatchAnalyzer(assess, concurrency=4)
    asyncio.run(analyzer.run_batch(records))

    assert peak <= 4
    position = {event: i for i, event in enumerate(events)}
    groups = chunked(list(range(len(records))), 4)
    for current, following in zip(groups, groups[1:]):
        last_settle = max(position[("settle", i)] for i in current)
        first_start = min(position[("start", i)] for i in following)
        assert last_settle < first_start


def test_results_only_grow_and_stay_within_batch(make_record, make_result):
    records = [make_record(i) for i in range(7)]
    batch_ids = {r.id for r in records}

    async def assess(record):
        await asyncio.sleep(0.001 * (len(record.id) % 3))
        if record is records[2]:
            raise AssessmentError("boom")
        return make_result(record.id)

    analyzer = BatchAnalyzer(assess, concurrency=3)
    snapshots = []
    percents = []

    def observe(event):
        snapshots.append(set(analyzer.results))
        percents.append(event.percent)

    analyzer.subscribe(observe)
    asyncio.run(analyzer.run_batch(records))

    assert len(snapshots) == len(records) + 1  # one per settlement plus the final event
    for before, after in zip(snapshots, snapshots[1:]):
        assert before <= after
    assert all(s <= batch_ids for s in snapshots)
    assert percents == sorted(percents)
    assert percents[-1] == 100


def test_progress_events_report_each_settlement(make_record, make_result):
    records = [make_record(i) for i in range(3)]

    async def assess(record):
        if record is records[1]:
            raise AssessmentError("bad")
        return make_result(record.id)

    analyzer = BatchAnalyzer(assess, concurrency=2)
    events = []
    unsubscribe = analyzer.subscribe(events.append)
    asyncio.run(analyzer.run_batch(records))
    unsubscribe()

    settled = [e for e in events if not e.done]
    assert [e.completed for e in settled] == [1, 2, 3]
    assert sorted(e.succeeded for e in settled) == [False, True, True]
    assert events[-1].done and events[-1].percent == 100

    asyncio.run(analyzer.run_batch(records))
    assert len(events) == 4  # unsubscribed before the second batch


def test_empty_input_is_a_no_op(make_record, make_result):
    calls = []

    async def assess(record):
        calls.append(record)
        return make_result(record.id)

    analyzer = BatchAnalyzer(assess)
    first = [make_record(0)]
    asyncio.run(analyzer.run_batch(first))

    assert asyncio.run(analyzer.run_batch([])) == analyzer.results
    assert analyzer.generation == 1
    assert len(calls) == 1
    assert set(analyzer.results) == {first[0].id}


def test_new_batch_resets_previous_results(make_record, make_result):
    async def assess(record):
        return make_result(record.id)

    analyzer = BatchAnalyzer(assess, concurrency=2)
    asyncio.run(analyzer.run_batch([make_record(i) for i in range(3)]))
    second = [make_record(i, grade="F2") for i in range(10, 12)]
    asyncio.run(analyzer.run_batch(second))

    assert set(analyzer.results) == {r.id for r in second}
    assert analyzer.completed == 2
    assert analyzer.records == second


def test_superseded_batch_results_are_discarded(make_record, make_result):
    batch_a = [make_record(i, name=f"A{i}") for i in range(4)]
    batch_b = [make_record(i, name=f"B{i}") for i in range(20, 23)]
    a_ids = {r.id for r in batch_a}
    started_a = []

    async def scenario():
        gate = asyncio.Event()

        async def assess(record):
            if record.id in a_ids:
                started_a.append(record.id)
                await gate.wait()
            return make_result(record.id)

        analyzer = BatchAnalyzer(assess, concurrency=2)
        task_a = asyncio.create_task(analyzer.run_batch(batch_a))
        await asyncio.sleep(0)
        await analyzer.run_batch(batch_b)
        gate.set()
        await task_a
        return analyzer

    analyzer = asyncio.run(scenario())

    assert set(analyzer.results) == {r.id for r in batch_b}
    assert analyzer.completed == len(batch_b)
    assert analyzer.progress == 100
    assert analyzer.generation == 2
    assert analyzer.selected_id == batch_b[0].id
    # the stale batch never dispatched its second group
    assert len(started_a) == 2


def test_result_back_reference_matches_record(make_record, make_result):
    record = make_record(0)

    async def assess(rec):
        return make_result("someone-else")

    analyzer = BatchAnalyzer(assess)
    asyncio.run(analyzer.run_batch([record]))
    assert analyzer.result_for(record.id).student_id == record.id


def test_concurrency_must_be_positive():
    async def assess(record):
        return None

    with pytest.raises(ValueError):
        BatchAnalyzer(assess, concurrency=0)
