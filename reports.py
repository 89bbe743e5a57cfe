"""
Read-only views over the store for the monitoring, analysis and result screens.

Stored answers use the canonical option order, so they are judged here with
the same scoring rules against the question bank as it is stored.
"""

import csv
import io
from dataclasses import dataclass, field

from engine.schedule import latest_result
from engine.scoring import is_correct
from models import QuestionType, answer_from_json, option_letter

DISTRACTOR_COLUMNS = 5  # options A..E


@dataclass
class MonitorRow:
    no: int
    student_id: str
    name: str
    nis: str
    nisn: str
    student_class: str
    status: str  # online | done | offline
    score: int = None
    violation_count: int = 0
    is_disqualified: bool = False
    remaining_seconds: int = None

    def to_json(self):
        return {
            'no': self.no, 'studentId': self.student_id, 'name': self.name, 'nis': self.nis,
            'nisn': self.nisn, 'class': self.student_class, 'status': self.status,
            'score': self.score, 'violationCount': self.violation_count,
            'isDisqualified': self.is_disqualified, 'remainingSeconds': self.remaining_seconds,
        }


def monitoring_rows(store, registry, exam, class_filter=''):
    """One row per student of the exam's target classes: live, finished or not started."""
    classes = [c for c in exam.class_target if not class_filter or c == class_filter]
    students = [s for s in store.get_students_all() if s.student_class in classes]
    students.sort(key=lambda s: (s.student_class, s.name))
    live = {s.student.id: s for s in registry.live_sessions(exam.id)}
    results = store.results.all()

    rows = []
    for no, student in enumerate(students, 1):
        row = MonitorRow(no, student.id, student.name, student.nis, student.nisn,
                         student.student_class, status='offline')
        session = live.get(student.id)
        latest = latest_result(results, student.id, exam.id)
        if session is not None:
            row.status = 'online'
            row.violation_count = session.violation_count
            row.remaining_seconds = session.remaining_seconds
        elif latest is not None:
            row.status = 'done'
            row.score = latest.score
            row.violation_count = latest.violation_count
            row.is_disqualified = latest.is_disqualified
        rows.append(row)
    return rows


@dataclass
class ItemAnalysis:
    question_no: int
    question_type: QuestionType
    correct_count: int = 0
    total_attempts: int = 0
    distractors: dict = field(default_factory=dict)

    @property
    def ratio(self):
        return self.correct_count / self.total_attempts if self.total_attempts else 0.0

    @property
    def difficulty(self):
        if self.ratio > 0.7:
            return 'Easy'
        if self.ratio < 0.3:
            return 'Hard'
        return 'Medium'


def item_analysis(store, exam):
    questions = store.list_questions_by_packet(exam.packet_id)
    results = [r for r in store.results.all() if r.exam_id == exam.id]
    items = []
    for question in questions:
        item = ItemAnalysis(question.number, question.type)
        for result in results:
            raw = result.answers.get(question.id)
            if raw is None:
                continue
            item.total_attempts += 1
            answer = answer_from_json(question, raw)
            if question.type == QuestionType.SINGLE_CHOICE and answer is not None:
                item.distractors[answer.index] = item.distractors.get(answer.index, 0) + 1
            if is_correct(question, answer):
                item.correct_count += 1
        items.append(item)
    items.sort(key=lambda i: i.question_no)
    return items


def item_analysis_csv(items):
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(['Question No', 'Difficulty', 'Correct', 'Attempts']
                    + [f'Option {option_letter(i)}' for i in range(DISTRACTOR_COLUMNS)])
    for item in items:
        writer.writerow([item.question_no, item.difficulty, item.correct_count, item.total_attempts]
                        + [item.distractors.get(i, 0) for i in range(DISTRACTOR_COLUMNS)])
    return buf.getvalue()


def _describe(question, answer):
    if answer is None:
        return 'Blank'
    if question.type == QuestionType.SINGLE_CHOICE:
        return option_letter(answer.index)
    if question.type == QuestionType.MULTI_SELECT:
        return ', '.join(option_letter(i) for i in sorted(answer.indices)) or 'Blank'
    if question.type == QuestionType.MATRIX_TRUE_FALSE:
        labels = dict(zip(('a', 'b'), question.options))
        return '; '.join(labels.get(c, '-') if c else '-' for c in answer.choices)
    return str(answer.value)


def _describe_key(question):
    if question.type == QuestionType.SINGLE_CHOICE:
        return option_letter(question.correct_answer_index)
    if question.type == QuestionType.MULTI_SELECT:
        return ', '.join(option_letter(i) for i in sorted(question.correct_answer_indices))
    if question.type == QuestionType.MATRIX_TRUE_FALSE:
        labels = dict(zip(('a', 'b'), question.options))
        return '; '.join(labels.get(r.correct_column, '-') for r in question.matching_pairs)
    return 'Reviewed by teacher'


def answer_review(questions, result):
    """Per-question breakdown of one stored Result for the student's result page."""
    review = []
    for question in sorted(questions, key=lambda q: q.number):
        if question.parse_error is not None:
            review.append({'number': question.number, 'type': question.type.label,
                           'correct': False, 'answer': '-', 'key': 'Unavailable'})
            continue
        answer = answer_from_json(question, result.answers.get(question.id))
        review.append({
            'number': question.number,
            'type': question.type.label,
            'correct': is_correct(question, answer),
            'answer': _describe(question, answer),
            'key': _describe_key(question),
        })
    return review
