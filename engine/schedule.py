"""
Which exams a student may take, and the status of the ones they took.
"""

from datetime import datetime


def is_eligible(exam, student, now=None):
    """Class targeted, switched on, and inside the schedule window."""
    now = now or datetime.now()
    return (
        student.student_class in exam.class_target
        and exam.is_active
        and exam.is_open_at(now)
    )


def results_for(results, student_id, exam_id=None):
    return [
        r for r in results
        if r.student_id == student_id and (exam_id is None or r.exam_id == exam_id)
    ]


def latest_result(results, student_id, exam_id):
    """Most recent attempt by timestamp; equal timestamps resolve to the one stored last."""
    latest = None
    latest_key = None
    for position, result in enumerate(results):
        if result.student_id != student_id or result.exam_id != exam_id:
            continue
        key = (result.submitted_at or datetime.min, position)
        if latest_key is None or key >= latest_key:
            latest, latest_key = result, key
    return latest


def available_exams(store, student, now=None, allow_reattempts=True):
    """(exam, packet, latest_result) for every exam the student can start now."""
    now = now or datetime.now()
    results = store.results.all()
    rows = []
    for exam in store.exams.all():
        if not is_eligible(exam, student, now):
            continue
        latest = latest_result(results, student.id, exam.id)
        if latest is not None and not allow_reattempts:
            continue
        rows.append((exam, store.packets.get(exam.packet_id), latest))
    rows.sort(key=lambda row: (row[0].scheduled_start or datetime.min, row[0].title))
    return rows


def dashboard(store, student):
    """Every exam targeted at the student's class, pending ones first."""
    results = store.results.all()
    rows = []
    for exam in store.exams.all():
        if student.student_class not in exam.class_target:
            continue
        latest = latest_result(results, student.id, exam.id)
        rows.append({'exam': exam, 'done': latest is not None, 'result': latest})
    rows.sort(key=lambda row: row['done'])
    return rows
