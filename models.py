"""
Domain records for the CBT portal and their spreadsheet row format.

Every record travels to the Apps Script backend as a flat row with camelCase
keys. Nested values (options, answer keys, statement rows, answers) are JSON
strings inside a single cell. Rows are parsed once, here, when they enter the
data store; nothing downstream re-parses them.
"""

import json
import logging
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum

logger = logging.getLogger(__name__)

CATEGORIES = ('Literasi', 'Numerasi')
MATRIX_COLUMNS = ('a', 'b')
DEFAULT_MATRIX_LABELS = ['Benar', 'Salah']


class UserRole(str, Enum):
    ADMIN = 'admin'
    TEACHER = 'guru'
    STUDENT = 'siswa'


class QuestionType(str, Enum):
    SINGLE_CHOICE = 'PG'
    MULTI_SELECT = 'PGK'
    MATRIX_TRUE_FALSE = 'BS'
    ESSAY = 'ESSAY'
    MATCHING = 'JODOHKAN'

    @property
    def label(self):
        return _TYPE_LABELS[self]


_TYPE_LABELS = {
    QuestionType.SINGLE_CHOICE: 'Single choice',
    QuestionType.MULTI_SELECT: 'Multiple select',
    QuestionType.MATRIX_TRUE_FALSE: 'True/False matrix',
    QuestionType.ESSAY: 'Essay',
    QuestionType.MATCHING: 'Matching',
}

SHUFFLED_TYPES = (QuestionType.SINGLE_CHOICE, QuestionType.MULTI_SELECT)
SCORED_TYPES = SHUFFLED_TYPES + (QuestionType.MATRIX_TRUE_FALSE,)


# ==================== CELL PARSING ====================

def parse_bool(value):
    """Sheets hand booleans back as True/False or as 'TRUE'/'false' strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value or '').strip().lower() in ('true', '1', 'yes', 'y')


def parse_int(value, default=0):
    if isinstance(value, bool):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def parse_json(value, default):
    """Decode a JSON cell. Already-decoded values pass through; blank cells give default."""
    if isinstance(value, (list, dict)):
        return value
    if value is None or str(value).strip() == '':
        return default
    return json.loads(value)


def parse_timestamp(value):
    """Parse an ISO-like timestamp into a naive server-local datetime, or None."""
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value or '').strip()
        if not text:
            return None
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone().replace(tzinfo=None)
    return dt


def parse_class_target(value):
    """classTarget is either '9A,9B' or a JSON array string."""
    if isinstance(value, (list, tuple, set, frozenset)):
        items = value
    else:
        text = str(value or '').strip()
        if text.startswith('['):
            try:
                items = json.loads(text)
            except ValueError:
                items = text.strip('[]').replace('"', '').split(',')
        else:
            items = text.split(',')
    return tuple(dict.fromkeys(str(c).strip() for c in items if str(c).strip()))


def now_iso():
    return datetime.now().isoformat(timespec='microseconds')


def option_letter(index):
    return chr(65 + index) if isinstance(index, int) and 0 <= index < 26 else '?'


def _text(row, key, default=''):
    value = row.get(key)
    return default if value is None else str(value)


# ==================== RECORDS ====================

@dataclass
class Student:
    id: str
    name: str
    student_class: str
    no: str = ''
    nis: str = ''
    nisn: str = ''

    @classmethod
    def from_row(cls, row):
        return cls(
            id=_text(row, 'id'),
            name=_text(row, 'name').strip(),
            student_class=_text(row, 'class').strip(),
            no=_text(row, 'no'),
            nis=_text(row, 'nis'),
            nisn=_text(row, 'nisn'),
        )

    def to_row(self):
        return {'id': self.id, 'no': self.no, 'name': self.name, 'class': self.student_class,
                'nis': self.nis, 'nisn': self.nisn}


@dataclass
class MatrixRow:
    """One statement of a True/False matrix (or one pair of a Matching question)."""
    statement: str
    correct_column: str

    def to_row(self):
        return {'left': self.statement, 'right': self.correct_column}


@dataclass
class Question:
    id: str
    packet_id: str
    number: int
    text: str
    type: QuestionType
    stimulus: str = ''
    image: str = ''
    category: str = ''
    options: list = field(default_factory=list)
    correct_answer_index: int = None
    correct_answer_indices: frozenset = frozenset()
    matching_pairs: list = field(default_factory=list)
    # Session copies only: option_order[i] is the canonical index of displayed option i
    option_order: list = None
    parse_error: str = None

    @property
    def stimulus_is_image(self):
        return self.stimulus.startswith(('http://', 'https://', 'data:'))

    @property
    def is_scored(self):
        return self.parse_error is None and self.type in SCORED_TYPES

    def canonical_index(self, index):
        """Translate a displayed option index back to the stored option order."""
        if self.option_order is None or not isinstance(index, int) or isinstance(index, bool):
            return index
        if 0 <= index < len(self.option_order):
            return self.option_order[index]
        return index

    def validate(self):
        """Raise ValueError when answer keys do not fit the options."""
        n = len(self.options)
        if self.type == QuestionType.SINGLE_CHOICE:
            if n < 2:
                raise ValueError('single choice needs at least two options')
            if self.correct_answer_index is None or not 0 <= self.correct_answer_index < n:
                raise ValueError(f'answer key {self.correct_answer_index} outside {n} options')
        elif self.type == QuestionType.MULTI_SELECT:
            if n < 2:
                raise ValueError('multiple select needs at least two options')
            if not self.correct_answer_indices:
                raise ValueError('multiple select needs at least one correct option')
            bad = sorted(i for i in self.correct_answer_indices if not 0 <= i < n)
            if bad:
                raise ValueError(f'answer keys {bad} outside {n} options')
        elif self.type == QuestionType.MATRIX_TRUE_FALSE:
            if n != 2:
                raise ValueError('true/false matrix needs exactly two column labels')
            if not self.matching_pairs:
                raise ValueError('true/false matrix has no statements')
            for row in self.matching_pairs:
                if row.correct_column not in MATRIX_COLUMNS:
                    raise ValueError(f'unknown column key {row.correct_column!r}')

    @classmethod
    def from_row(cls, row):
        """Build a Question; malformed structure yields a placeholder carrying parse_error."""
        question = cls(
            id=_text(row, 'id'),
            packet_id=_text(row, 'packetId'),
            number=parse_int(row.get('number'), 0),
            text=_text(row, 'text'),
            type=QuestionType.ESSAY,
            stimulus=_text(row, 'stimulus'),
            image=_text(row, 'image'),
            category=_text(row, 'category'),
        )
        try:
            question.type = QuestionType(_text(row, 'type', QuestionType.SINGLE_CHOICE.value).strip().upper())
            question.options = [str(o) for o in parse_json(row.get('options'), [])]
            if question.type == QuestionType.SINGLE_CHOICE:
                raw = row.get('correctAnswerIndex')
                question.correct_answer_index = None if raw in (None, '') else int(float(raw))
            elif question.type == QuestionType.MULTI_SELECT:
                question.correct_answer_indices = frozenset(
                    int(i) for i in parse_json(row.get('correctAnswerIndices'), []))
            elif question.type in (QuestionType.MATRIX_TRUE_FALSE, QuestionType.MATCHING):
                if question.type == QuestionType.MATRIX_TRUE_FALSE and not question.options:
                    question.options = list(DEFAULT_MATRIX_LABELS)
                question.matching_pairs = [
                    MatrixRow(str(p.get('left', '')), str(p.get('right', '')))
                    for p in parse_json(row.get('matchingPairs'), [])
                ]
            question.validate()
        except (TypeError, ValueError, AttributeError) as e:
            question.parse_error = str(e) or e.__class__.__name__
            logger.warning('Question %s (packet %s) is malformed: %s',
                           question.id, question.packet_id, question.parse_error)
        return question

    def to_row(self):
        return {
            'id': self.id,
            'packetId': self.packet_id,
            'number': self.number,
            'stimulus': self.stimulus,
            'text': self.text,
            'image': self.image,
            'type': self.type.value,
            'options': json.dumps(self.options),
            'correctAnswerIndex': self.correct_answer_index if self.correct_answer_index is not None else 0,
            'correctAnswerIndices': json.dumps(sorted(self.correct_answer_indices)),
            'matchingPairs': json.dumps([p.to_row() for p in self.matching_pairs]),
            'category': self.category,
        }

    def copy(self):
        """Independent copy for a session; mutable members are duplicated."""
        return replace(
            self,
            options=list(self.options),
            matching_pairs=[replace(p) for p in self.matching_pairs],
            option_order=list(self.option_order) if self.option_order is not None else None,
        )


@dataclass
class Packet:
    id: str
    name: str
    category: str
    total_questions: int = 0
    question_types: str = ''

    @classmethod
    def from_row(cls, row):
        return cls(
            id=_text(row, 'id'),
            name=_text(row, 'name'),
            category=_text(row, 'category'),
            total_questions=parse_int(row.get('totalQuestions'), 0),
            question_types=_text(row, 'questionTypes'),
        )

    def to_row(self):
        return {'id': self.id, 'name': self.name, 'category': self.category,
                'totalQuestions': self.total_questions, 'questionTypes': self.question_types}


@dataclass
class Exam:
    id: str
    title: str
    packet_id: str
    scheduled_start: datetime
    scheduled_end: datetime
    duration_minutes: int
    class_target: tuple = ()
    is_active: bool = True

    @property
    def duration_seconds(self):
        return max(0, self.duration_minutes) * 60

    def is_open_at(self, moment):
        if self.scheduled_start is None or self.scheduled_end is None:
            return False
        return self.scheduled_start <= moment <= self.scheduled_end

    @classmethod
    def from_row(cls, row):
        return cls(
            id=_text(row, 'id'),
            title=_text(row, 'title'),
            packet_id=_text(row, 'packetId'),
            scheduled_start=parse_timestamp(row.get('scheduledStart')),
            scheduled_end=parse_timestamp(row.get('scheduledEnd')),
            duration_minutes=parse_int(row.get('durationMinutes'), 0),
            class_target=parse_class_target(row.get('classTarget')),
            is_active=parse_bool(row.get('isActive')),
        )

    def to_row(self):
        return {
            'id': self.id,
            'title': self.title,
            'packetId': self.packet_id,
            'scheduledStart': self.scheduled_start.isoformat() if self.scheduled_start else '',
            'scheduledEnd': self.scheduled_end.isoformat() if self.scheduled_end else '',
            'durationMinutes': self.duration_minutes,
            'classTarget': ','.join(self.class_target),
            'questions': '[]',
            'isActive': self.is_active,
        }


@dataclass
class Result:
    id: str
    exam_id: str
    exam_title: str
    student_id: str
    student_name: str
    student_class: str
    score: int
    answers: dict
    timestamp: str
    violation_count: int = 0
    is_disqualified: bool = False
    literasi_score: int = 0
    numerasi_score: int = 0

    @property
    def submitted_at(self):
        return parse_timestamp(self.timestamp)

    @classmethod
    def from_row(cls, row):
        try:
            answers = parse_json(row.get('answers'), {})
            if not isinstance(answers, dict):
                raise ValueError('answers is not an object')
        except ValueError as e:
            logger.warning('Result %s has unreadable answers: %s', row.get('id'), e)
            answers = {}
        return cls(
            id=_text(row, 'id'),
            exam_id=_text(row, 'examId'),
            exam_title=_text(row, 'examTitle'),
            student_id=_text(row, 'studentId'),
            student_name=_text(row, 'studentName'),
            student_class=_text(row, 'studentClass'),
            score=parse_int(row.get('score'), 0),
            answers=answers,
            timestamp=_text(row, 'timestamp'),
            violation_count=parse_int(row.get('violationCount'), 0),
            is_disqualified=parse_bool(row.get('isDisqualified')),
            literasi_score=parse_int(row.get('literasiScore'), 0),
            numerasi_score=parse_int(row.get('numerasiScore'), 0),
        )

    def to_row(self):
        return {
            'id': self.id,
            'examId': self.exam_id,
            'examTitle': self.exam_title,
            'studentId': self.student_id,
            'studentName': self.student_name,
            'studentClass': self.student_class,
            'score': self.score,
            'literasiScore': self.literasi_score,
            'numerasiScore': self.numerasi_score,
            'answers': json.dumps(self.answers),
            'timestamp': self.timestamp,
            'violationCount': self.violation_count,
            'isDisqualified': self.is_disqualified,
        }


@dataclass
class SchoolSettings:
    schoolName: str = 'SMPN 3 Pacet'
    loginTitle: str = 'CBT Online'
    academicYear: str = '2025/2026'
    semester: str = 'Genap'
    adminPassword: str = 'admin'
    teacherLiterasiPassword: str = 'guru'
    teacherNumerasiPassword: str = 'guru'

    PASSWORD_KEYS = ('adminPassword', 'teacherLiterasiPassword', 'teacherNumerasiPassword')

    @classmethod
    def keys(cls):
        return [f.name for f in fields(cls)]

    @classmethod
    def from_rows(cls, rows):
        """Merge Key/Value rows of the Settings sheet over the defaults."""
        settings = cls()
        known = set(cls.keys())
        for row in rows or []:
            key, value = row.get('Key'), row.get('Value')
            if key in known and value not in (None, ''):
                setattr(settings, key, str(value))
        return settings

    def to_rows(self):
        return [{'Key': key, 'Value': getattr(self, key)} for key in self.keys()]

    def teacher_password(self, category):
        return {
            'Literasi': self.teacherLiterasiPassword,
            'Numerasi': self.teacherNumerasiPassword,
        }.get(category)


# ==================== ANSWERS ====================

class AnswerError(ValueError):
    """An answer value does not have the shape its question type requires."""


@dataclass(frozen=True)
class SingleChoiceAnswer:
    index: int

    def to_json(self):
        return self.index


@dataclass(frozen=True)
class MultiSelectAnswer:
    indices: frozenset

    def to_json(self):
        return sorted(self.indices)


@dataclass(frozen=True)
class MatrixAnswer:
    choices: tuple

    def to_json(self):
        return list(self.choices)


@dataclass(frozen=True)
class OpenAnswer:
    """Essay text or a Matching response; stored, never auto-scored."""
    value: object

    def to_json(self):
        return self.value


def _is_index(value):
    return isinstance(value, int) and not isinstance(value, bool)


def parse_answer(question, value):
    """Check the shape of a value written by the exam page and wrap it by question type.

    Correctness is not checked: an out-of-range index is stored as given.
    """
    if question.parse_error is not None:
        raise AnswerError('This question could not be loaded and cannot be answered.')
    if question.type == QuestionType.SINGLE_CHOICE:
        if not _is_index(value):
            raise AnswerError('Expected the index of one option.')
        return SingleChoiceAnswer(value)
    if question.type == QuestionType.MULTI_SELECT:
        if not isinstance(value, (list, tuple)) or not all(_is_index(v) for v in value):
            raise AnswerError('Expected a list of option indices.')
        return MultiSelectAnswer(frozenset(value))
    if question.type == QuestionType.MATRIX_TRUE_FALSE:
        if not isinstance(value, (list, tuple)) or not all(v in MATRIX_COLUMNS or v is None for v in value):
            raise AnswerError("Expected one of 'a', 'b' or null per statement.")
        return MatrixAnswer(tuple(value))
    if isinstance(value, str) and len(value) > 5000:
        value = value[:5000]
    return OpenAnswer(value)


def answer_from_json(question, value):
    """Rehydrate a stored answer; wrong shapes come back as None instead of raising."""
    if value is None:
        return None
    try:
        return parse_answer(question, value)
    except AnswerError:
        return None


def to_canonical(question, answer):
    """Express a session answer in the stored option order of the question."""
    if isinstance(answer, SingleChoiceAnswer):
        return SingleChoiceAnswer(question.canonical_index(answer.index))
    if isinstance(answer, MultiSelectAnswer):
        return MultiSelectAnswer(frozenset(question.canonical_index(i) for i in answer.indices))
    return answer
