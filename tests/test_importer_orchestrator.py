import threading
import time

import pytest

from crm_app.importer.errors import RemoteError
from crm_app.importer.pipeline import (
    MODE_COURSES,
    ProgressCounter,
    RowOutcome,
    clamp_concurrency,
    classify_level,
    run_import,
)
from crm_app.importer.records import Stage


def _outcomes(summary):
    return [result.outcome for result in summary.results]


def test_enrollment_rows_update_matching_courses(liceo_store):
    rows = [
        {"RBD": "12345", "AGNO": "2025", "NIVEL": "1° Medio", "N_ALU": "30"},
        {"RBD": "12345", "AGNO": "2025", "ID_NIVEL": "7", "N_ALU": "1.020"},
    ]

    summary = run_import(liceo_store, rows, concurrency=2)

    assert _outcomes(summary) == [RowOutcome.UPDATED, RowOutcome.UPDATED]
    assert liceo_store.headcount_of("liceo-a-s1") == 30
    assert liceo_store.headcount_of("liceo-a-p4") == 1020
    assert summary.courses_updated == 2
    assert summary.orgs_total == 1
    assert summary.orgs_created == 0
    assert summary.errors == 0


def test_new_org_with_missing_course_definitions_is_created_but_rows_skipped(fake_store):
    rows = [
        {"rbd": 100, "colegio_nombre": "Liceo A", "id_nivel": 12, "agno": 2025, "n_alu": 30},
        {"rbd": 100, "id_nivel": 13, "agno": 2025, "n_alu": 28},
    ]

    summary = run_import(fake_store, rows, concurrency=1)

    assert len(fake_store.created_orgs) == 1
    created = fake_store.created_orgs[0]
    assert created.code == 100
    assert created.name == "Liceo A"
    assert fake_store.created_courses == []

    assert _outcomes(summary) == [RowOutcome.SKIPPED, RowOutcome.SKIPPED]
    assert "(Secondary, 1, 2025)" in summary.results[0].messages[-1]
    assert "(Secondary, 2, 2025)" in summary.results[1].messages[-1]
    assert summary.orgs_created == 1
    assert summary.skipped == 2
    assert summary.courses_updated == 0


def test_new_org_takes_the_file_name_even_when_a_nameless_row_creates_it(monkeypatch, fake_store):
    def slow_for_named_row(level_raw, level_code, *, strict=False):
        if level_code == 12:
            time.sleep(0.05)
        return classify_level(level_raw, level_code, strict=strict)

    monkeypatch.setattr("crm_app.importer.pipeline.orchestrator.classify_level", slow_for_named_row)
    rows = [
        {"rbd": 100, "colegio_nombre": "Liceo A", "id_nivel": 12, "agno": 2025, "n_alu": 30},
        {"rbd": 100, "id_nivel": 13, "agno": 2025, "n_alu": 28},
    ]

    summary = run_import(fake_store, rows, concurrency=8)

    assert len(fake_store.created_orgs) == 1
    assert fake_store.created_orgs[0].name == "Liceo A"
    assert summary.orgs_created == 1
    assert not any("name missing" in message for result in summary.results for message in result.messages)


def test_rerunning_the_same_input_is_idempotent(liceo_store):
    rows = [{"rbd": 12345, "agno": 2025, "id_nivel": grade + 3, "n_alu": 20 + grade} for grade in range(1, 9)]
    rows.append({"rbd": 55555, "colegio_nombre": "Escuela Nueva", "agno": 2025, "nivel": "1° Básico", "n_alu": 9})

    first = run_import(liceo_store, rows, concurrency=4)
    snapshot = {course_id: liceo_store.headcount_of(course_id) for course_id in liceo_store.courses}
    second = run_import(liceo_store, rows, concurrency=4)

    assert {course_id: liceo_store.headcount_of(course_id) for course_id in liceo_store.courses} == snapshot
    assert len(liceo_store.created_orgs) == 1
    assert first.orgs_created == 1
    assert second.orgs_created == 0
    assert first.courses_updated == second.courses_updated == 8
    assert second.counts[RowOutcome.UPDATED.value] == 8
    assert second.counts[RowOutcome.SKIPPED.value] == 1


def test_concurrent_rows_for_one_new_code_create_a_single_org(make_store):
    store = make_store(create_delay=0.05)
    rows = [
        {"rbd": 4242, "colegio_nombre": "Liceo Concurrente", "id_nivel": code, "agno": 2025, "n_alu": 10}
        for code in range(4, 16)
    ]

    summary = run_import(store, rows, concurrency=8)

    assert len(store.orgs_with_code(4242)) == 1
    assert len(store.created_orgs) == 1
    assert summary.orgs_created == 1
    assert len({result.org_id for result in summary.results}) == 1
    assert all(result.outcome == RowOutcome.SKIPPED for result in summary.results)


def test_one_failing_row_does_not_affect_the_others(fake_store):
    org = fake_store.add_org(100, "Liceo A")
    courses = [fake_store.add_course(org, Stage.PRIMARY, grade, 2025) for grade in range(1, 9)]
    courses += [fake_store.add_course(org, Stage.SECONDARY, grade, 2025) for grade in range(1, 3)]
    fake_store.failing_course_ids.add(courses[4].id)
    rows = [{"rbd": 100, "agno": 2025, "id_nivel": code, "n_alu": 15} for code in range(4, 14)]

    summary = run_import(fake_store, rows, concurrency=4)

    assert summary.counts[RowOutcome.UPDATED.value] == 9
    assert summary.errors == 1
    failed = summary.error_rows()[0]
    assert failed.row_index == 5
    assert failed.org_id == org.id
    assert "boom" in failed.messages[-1]
    assert all(fake_store.headcount_of(course.id) == 15 for course in courses if course is not courses[4])


def test_invalid_rows_are_reported_without_creating_orgs(fake_store):
    rows = [
        {"rbd": 1, "nivel": "1° Básico", "n_alu": "treinta"},
        {"rbd": 2, "nivel": "1° Básico", "n_alu": "0"},
        {"rbd": 3, "nivel": "1° Básico"},
        {"nivel": "1° Básico", "n_alu": "12"},
        {"nivel": "1° Básico"},
    ]

    summary = run_import(fake_store, rows)

    assert _outcomes(summary) == [
        RowOutcome.FAILED,
        RowOutcome.FAILED,
        RowOutcome.FAILED,
        RowOutcome.FAILED,
        RowOutcome.SKIPPED,
    ]
    assert "'treinta' is not a number" in summary.results[0].messages[-1]
    assert "Invalid headcount 0" in summary.results[1].messages[-1]
    assert summary.results[2].messages[-1] == "Missing headcount."
    assert "no organization id, code or name" in summary.results[3].messages[-1]
    assert fake_store.created_orgs == []


def test_unrecognized_level_defaults_to_first_primary_with_message(fake_store):
    org = fake_store.add_org(100, "Liceo A")
    course = fake_store.add_course(org, Stage.PRIMARY, 1, 2025)

    summary = run_import(fake_store, [{"rbd": 100, "agno": 2025, "nivel": "Kinder", "n_alu": 18}])

    result = summary.results[0]
    assert result.outcome == RowOutcome.UPDATED
    assert result.course_id == course.id
    assert any("defaulted to (Primary, 1)" in message for message in result.messages)


def test_strict_levels_fail_unrecognized_rows(fake_store):
    org = fake_store.add_org(100, "Liceo A")
    fake_store.add_course(org, Stage.PRIMARY, 1, 2025)

    summary = run_import(fake_store, [{"rbd": 100, "agno": 2025, "nivel": "Kinder", "n_alu": 18}], level_strict=True)

    assert summary.results[0].outcome == RowOutcome.FAILED
    assert fake_store.headcount_updates == []


def test_course_definition_mode_creates_then_skips(fake_store):
    rows = [
        {"rbd": 100, "colegio_nombre": "Liceo A", "agno": 2025, "id_nivel": 12},
        {"rbd": 100, "agno": 2025, "id_nivel": 13},
    ]

    first = run_import(fake_store, rows, mode=MODE_COURSES, concurrency=1)
    second = run_import(fake_store, rows, mode=MODE_COURSES, concurrency=1)

    assert _outcomes(first) == [RowOutcome.CREATED, RowOutcome.CREATED]
    assert first.courses_created == 2
    assert first.orgs_created == 1
    assert _outcomes(second) == [RowOutcome.SKIPPED, RowOutcome.SKIPPED]
    assert "already defined" in second.results[0].messages[-1]
    assert len(fake_store.created_courses) == 2

    enrollment = run_import(fake_store, [{"rbd": 100, "agno": 2025, "id_nivel": 12, "n_alu": 31}])
    assert enrollment.results[0].outcome == RowOutcome.UPDATED


def test_snapshot_failure_aborts_the_job(fake_store):
    fake_store.fail_snapshot = True

    with pytest.raises(RemoteError):
        run_import(fake_store, [{"rbd": 1, "n_alu": 1}])


def test_unknown_mode_is_rejected(fake_store):
    with pytest.raises(ValueError):
        run_import(fake_store, [], mode="students")


def test_cancelled_before_start_schedules_nothing(liceo_store):
    cancel_event = threading.Event()
    cancel_event.set()

    summary = run_import(liceo_store, [{"rbd": 12345, "id_nivel": 4, "n_alu": 5}], cancel_event=cancel_event)

    assert summary.cancelled
    assert summary.rows_total == 1
    assert summary.rows_processed == 0
    assert liceo_store.headcount_updates == []


def test_cancellation_stops_scheduling_and_keeps_completed_rows(liceo_store):
    cancel_event = threading.Event()
    progress = ProgressCounter(lambda completed, total: cancel_event.set())
    rows = [{"rbd": 12345, "agno": 2025, "id_nivel": code, "n_alu": 10} for code in range(4, 10)]

    summary = run_import(liceo_store, rows, concurrency=1, cancel_event=cancel_event, progress=progress)

    assert summary.cancelled
    assert 1 <= summary.rows_processed <= 2
    assert summary.rows_total == 6
    assert len(liceo_store.headcount_updates) == summary.rows_processed
    assert progress.completed == summary.rows_processed


def test_progress_counter_reports_every_row(liceo_store):
    seen = []
    progress = ProgressCounter(lambda completed, total: seen.append((completed, total)))
    rows = [{"rbd": 12345, "agno": 2025, "id_nivel": code, "n_alu": 10} for code in range(4, 8)]

    run_import(liceo_store, rows, concurrency=2, progress=progress)

    assert sorted(seen) == [(1, 4), (2, 4), (3, 4), (4, 4)]
    assert progress.fraction == 1.0


def test_failing_progress_callback_does_not_abort_the_job(liceo_store, caplog):
    def broken_callback(completed, total):
        raise RuntimeError("progress sink offline")

    rows = [{"rbd": 12345, "agno": 2025, "id_nivel": code, "n_alu": 10} for code in range(4, 8)]

    summary = run_import(liceo_store, rows, concurrency=2, progress=ProgressCounter(broken_callback))

    assert summary.rows_processed == 4
    assert summary.courses_updated == 4
    assert summary.errors == 0
    assert "Import progress callback failed" in caplog.text


@pytest.mark.parametrize("value, expected", [(0, 1), (-5, 1), (8, 8), (500, 32), ("4", 4), ("x", 8), (None, 8)])
def test_clamp_concurrency(value, expected):
    assert clamp_concurrency(value) == expected


def test_level_text_without_grade_is_noted_on_the_row(liceo_store):
    summary = run_import(liceo_store, [{"rbd": 12345, "agno": 2025, "nivel": "Educación Básica", "n_alu": 12}])

    result = summary.results[0]
    assert result.outcome == RowOutcome.UPDATED
    assert result.course_id == "liceo-a-p1"
    assert any("has no grade; assumed (Primary, 1)" in message for message in result.messages)
