import json
from datetime import datetime, timedelta, timezone

import pytest

from models import (
    AnswerError, Exam, MatrixAnswer, MultiSelectAnswer, OpenAnswer, Question, QuestionType,
    Result, SchoolSettings, SingleChoiceAnswer, answer_from_json, parse_answer, parse_bool,
    parse_class_target, parse_int, parse_timestamp, to_canonical,
)


def question_row(**overrides):
    row = {'id': 'q1', 'packetId': 'p1', 'number': 1, 'type': 'PG', 'text': 'Soal',
           'options': json.dumps(['A', 'B', 'C']), 'correctAnswerIndex': 1, 'category': 'Literasi'}
    row.update(overrides)
    return row


class TestCellParsing:

    @pytest.mark.parametrize('value,expected', [
        (True, True), ('TRUE', True), ('true', True), (1, True),
        (False, False), ('FALSE', False), ('', False), (None, False), (0, False),
    ])
    def test_parse_bool(self, value, expected):
        assert parse_bool(value) is expected

    def test_parse_int_falls_back(self):
        assert parse_int('60') == 60
        assert parse_int('7.0') == 7
        assert parse_int('abc', 5) == 5
        assert parse_int(None) == 0

    def test_class_target_accepts_both_formats(self):
        assert parse_class_target('9A, 9B') == ('9A', '9B')
        assert parse_class_target('["9A","9C"]') == ('9A', '9C')
        assert parse_class_target('') == ()
        assert parse_class_target('9A,9A') == ('9A',)

    def test_timestamp_with_offset_becomes_local_naive(self):
        utc = datetime(2025, 3, 1, 2, 0, tzinfo=timezone.utc)
        parsed = parse_timestamp('2025-03-01T02:00:00Z')
        assert parsed.tzinfo is None
        assert parsed == utc.astimezone().replace(tzinfo=None)

    def test_timestamp_garbage_is_none(self):
        assert parse_timestamp('not a date') is None
        assert parse_timestamp('') is None


class TestQuestionRows:

    def test_single_choice(self):
        q = Question.from_row(question_row())
        assert q.type == QuestionType.SINGLE_CHOICE
        assert q.options == ['A', 'B', 'C']
        assert q.correct_answer_index == 1
        assert q.parse_error is None
        assert q.is_scored

    def test_multi_select_key_is_a_set(self):
        q = Question.from_row(question_row(type='PGK', correctAnswerIndices='[2, 0]'))
        assert q.correct_answer_indices == frozenset({0, 2})

    def test_matrix_defaults_column_labels(self):
        q = Question.from_row(question_row(
            type='BS', options='', matchingPairs=json.dumps([{'left': 'x', 'right': 'a'}])))
        assert q.options == ['Benar', 'Salah']
        assert q.matching_pairs[0].statement == 'x'
        assert q.matching_pairs[0].correct_column == 'a'

    @pytest.mark.parametrize('overrides', [
        {'options': '["A", "B"'},              # broken JSON
        {'correctAnswerIndex': 7},             # key outside the options
        {'type': 'UNKNOWN'},
        {'type': 'BS', 'matchingPairs': json.dumps([{'left': 'x', 'right': 'c'}]), 'options': ''},
        {'type': 'PGK', 'correctAnswerIndices': '[0, 9]'},
        {'type': 'PGK', 'correctAnswerIndices': '[]'},         # nothing marked correct
    ])
    def test_malformed_question_becomes_placeholder(self, overrides):
        q = Question.from_row(question_row(**overrides))
        assert q.parse_error
        assert q.id == 'q1'
        assert not q.is_scored

    def test_row_survives_a_round_trip_through_the_sheet(self):
        q = Question.from_row(question_row(type='PGK', correctAnswerIndices='[0, 2]'))
        again = Question.from_row(q.to_row())
        assert again.correct_answer_indices == q.correct_answer_indices
        assert again.options == q.options

    def test_copy_is_independent(self):
        q = Question.from_row(question_row())
        c = q.copy()
        c.options.append('D')
        assert q.options == ['A', 'B', 'C']


class TestExamAndResult:

    def test_exam_window(self):
        now = datetime(2025, 5, 1, 8, 0)
        exam = Exam.from_row({'id': 'e1', 'title': 'T', 'packetId': 'p1',
                              'scheduledStart': '2025-05-01T07:00:00', 'scheduledEnd': '2025-05-01T09:00:00',
                              'durationMinutes': '90', 'classTarget': '9A', 'isActive': 'TRUE'})
        assert exam.is_open_at(now)
        assert not exam.is_open_at(now + timedelta(hours=2))
        assert exam.duration_seconds == 90 * 60
        assert exam.class_target == ('9A',)

    def test_result_answers_are_json_in_the_sheet(self):
        result = Result(id='r1', exam_id='e1', exam_title='T', student_id='s1', student_name='A',
                        student_class='9A', score=50, answers={'q1': 0, 'q2': [0, 2]},
                        timestamp='2025-05-01T08:00:00', violation_count=1)
        row = result.to_row()
        assert json.loads(row['answers']) == {'q1': 0, 'q2': [0, 2]}
        assert Result.from_row(row).answers == result.answers

    def test_unreadable_answers_do_not_break_loading(self):
        result = Result.from_row({'id': 'r1', 'answers': '{oops', 'score': '80'})
        assert result.answers == {}
        assert result.score == 80


class TestSettings:

    def test_rows_merge_over_defaults(self):
        settings = SchoolSettings.from_rows([
            {'Key': 'schoolName', 'Value': 'SMP Contoh'},
            {'Key': 'unknownKey', 'Value': 'x'},
            {'Key': 'semester', 'Value': ''},
        ])
        assert settings.schoolName == 'SMP Contoh'
        assert settings.semester == 'Genap'
        assert settings.teacher_password('Numerasi') == 'guru'
        assert settings.teacher_password('Sains') is None


class TestAnswers:

    def test_shapes_by_type(self):
        pg = Question.from_row(question_row())
        pgk = Question.from_row(question_row(type='PGK', correctAnswerIndices='[0]'))
        bs = Question.from_row(question_row(
            type='BS', options='', matchingPairs=json.dumps([{'left': 'x', 'right': 'a'}])))
        essay = Question.from_row(question_row(type='ESSAY', options=''))
        assert parse_answer(pg, 2) == SingleChoiceAnswer(2)
        assert parse_answer(pgk, [1, 0, 1]) == MultiSelectAnswer(frozenset({0, 1}))
        assert parse_answer(bs, ['a', None]) == MatrixAnswer(('a', None))
        assert parse_answer(essay, 'jawaban') == OpenAnswer('jawaban')

    @pytest.mark.parametrize('value', ['1', True, [0], None, 1.5])
    def test_single_choice_rejects_other_shapes(self, value):
        with pytest.raises(AnswerError):
            parse_answer(Question.from_row(question_row()), value)

    def test_matrix_rejects_unknown_column(self):
        bs = Question.from_row(question_row(
            type='BS', options='', matchingPairs=json.dumps([{'left': 'x', 'right': 'a'}])))
        with pytest.raises(AnswerError):
            parse_answer(bs, ['c'])

    def test_placeholder_question_cannot_be_answered(self):
        broken = Question.from_row(question_row(correctAnswerIndex=9))
        with pytest.raises(AnswerError):
            parse_answer(broken, 0)
        assert answer_from_json(broken, 0) is None

    def test_essay_text_is_capped(self):
        essay = Question.from_row(question_row(type='ESSAY', options=''))
        assert len(parse_answer(essay, 'x' * 6000).value) == 5000

    def test_to_canonical_maps_displayed_indices_back(self):
        q = Question.from_row(question_row(type='PGK', correctAnswerIndices='[0]'))
        q.option_order = [2, 0, 1]
        assert to_canonical(q, SingleChoiceAnswer(0)) == SingleChoiceAnswer(2)
        assert to_canonical(q, MultiSelectAnswer(frozenset({0, 2}))) == MultiSelectAnswer(frozenset({2, 1}))
