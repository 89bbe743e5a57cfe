from datetime import datetime, timedelta

from engine.schedule import available_exams, dashboard, is_eligible, latest_result
from models import Exam, Result, Student

NOW = datetime(2025, 5, 1, 8, 0)


def exam(**overrides):
    fields = dict(id='e1', title='T', packet_id='p1', scheduled_start=NOW - timedelta(hours=1),
                  scheduled_end=NOW + timedelta(hours=1), duration_minutes=60,
                  class_target=('9A',), is_active=True)
    fields.update(overrides)
    return Exam(**fields)


def result(rid, timestamp, student_id='s1', exam_id='e1', score=0):
    return Result(id=rid, exam_id=exam_id, exam_title='T', student_id=student_id, student_name='A',
                  student_class='9A', score=score, answers={}, timestamp=timestamp)


A = Student(id='s1', name='Ahmad', student_class='9A')
C = Student(id='s3', name='Citra', student_class='9B')


def test_eligibility_needs_class_switch_and_window():
    assert is_eligible(exam(), A, NOW)
    assert not is_eligible(exam(), C, NOW)
    assert not is_eligible(exam(is_active=False), A, NOW)
    assert not is_eligible(exam(), A, NOW - timedelta(hours=2))
    assert not is_eligible(exam(), A, NOW + timedelta(hours=2))
    assert not is_eligible(exam(scheduled_start=None), A, NOW)


def test_window_bounds_are_inclusive():
    e = exam()
    assert is_eligible(e, A, e.scheduled_start)
    assert is_eligible(e, A, e.scheduled_end)


def test_latest_result_by_timestamp_then_storage_order():
    results = [
        result('r1', '2025-05-01T08:00:00'),
        result('r2', '2025-05-01T09:00:00'),
        result('r3', '2025-05-01T09:00:00'),
        result('r4', '2025-05-01T10:00:00', student_id='s2'),
        result('r5', '2025-05-01T11:00:00', exam_id='e2'),
    ]
    assert latest_result(results, 's1', 'e1').id == 'r3'
    assert latest_result(results, 's3', 'e1') is None


def test_available_exams_respect_reattempt_policy(store):
    ahmad = store.students.get('s1')
    citra = store.students.get('s3')
    ids = [e.id for e, _, _ in available_exams(store, ahmad)]
    assert set(ids) == {'e1', 'e2', 'e3'}
    assert [e.id for e, _, _ in available_exams(store, citra)] == ['e1']

    store.add_result(result('r1', '2025-05-01T08:00:00', exam_id='e1'))
    rows = {e.id: latest for e, _, latest in available_exams(store, ahmad)}
    assert rows['e1'].id == 'r1'
    ids = [e.id for e, _, _ in available_exams(store, ahmad, allow_reattempts=False)]
    assert 'e1' not in ids


def test_dashboard_lists_pending_first(store):
    store.add_result(result('r1', '2025-05-01T08:00:00', exam_id='e1'))
    rows = dashboard(store, store.students.get('s1'))
    assert [r['done'] for r in rows] == [False, False, True]
    assert rows[-1]['exam'].id == 'e1'
    assert rows[-1]['result'].id == 'r1'
