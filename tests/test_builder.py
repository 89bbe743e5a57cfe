import json
import random
from collections import Counter

import pytest

from engine.builder import SessionBuilder, SessionUnavailable, build_questions, shuffle_options
from models import Question


def make_questions():
    return [
        Question.from_row({'id': 'q1', 'number': 1, 'type': 'PG', 'text': 'q1',
                           'options': json.dumps(['Rumput', 'Belalang', 'Katak', 'Ular']),
                           'correctAnswerIndex': 0}),
        Question.from_row({'id': 'q2', 'number': 2, 'type': 'PGK', 'text': 'q2',
                           'options': json.dumps(['2', '4', '5', '9']),
                           'correctAnswerIndices': '[0, 2]'}),
        Question.from_row({'id': 'q3', 'number': 3, 'type': 'BS', 'text': 'q3',
                           'matchingPairs': json.dumps([{'left': 'x', 'right': 'a'},
                                                        {'left': 'y', 'right': 'b'}])}),
        Question.from_row({'id': 'q4', 'number': 4, 'type': 'PG', 'text': 'broken',
                           'options': json.dumps(['A', 'B']), 'correctAnswerIndex': 5}),
    ]


def test_question_order_is_a_permutation():
    questions = make_questions()
    built = build_questions(questions, random.Random(3))
    assert sorted(q.id for q in built) == ['q1', 'q2', 'q3', 'q4']


@pytest.mark.parametrize('seed', range(20))
def test_answer_key_follows_the_shuffled_options(seed):
    originals = {q.id: q for q in make_questions()}
    for q in build_questions(list(originals.values()), random.Random(seed)):
        original = originals[q.id]
        if q.id == 'q1':
            assert q.options[q.correct_answer_index] == 'Rumput'
            assert sorted(q.options) == sorted(original.options)
        elif q.id == 'q2':
            assert {q.options[i] for i in q.correct_answer_indices} == {'2', '5'}
        if q.option_order is not None:
            assert [original.options[i] for i in q.option_order] == q.options


def test_matrix_and_placeholder_questions_keep_their_options():
    built = {q.id: q for q in build_questions(make_questions(), random.Random(1))}
    assert built['q3'].option_order is None
    assert built['q3'].options == ['Benar', 'Salah']
    assert built['q4'].option_order is None
    assert built['q4'].parse_error


def test_stored_questions_are_not_touched():
    questions = make_questions()
    before = [(q.options[:], q.correct_answer_index, q.correct_answer_indices) for q in questions]
    build_questions(questions, random.Random(9))
    assert [(q.options, q.correct_answer_index, q.correct_answer_indices) for q in questions] == before
    assert all(q.option_order is None for q in questions)


def test_sessions_are_independent():
    questions = make_questions()
    first = build_questions(questions, random.Random(1))
    second = build_questions(questions, random.Random(2))
    first[0].options.append('extra')
    assert all('extra' not in q.options for q in second)
    assert all(a is not b for a in first for b in second)


def test_correct_option_position_is_roughly_uniform():
    question = make_questions()[0]
    rng = random.Random(2024)
    positions = Counter(shuffle_options(question.copy(), rng).correct_answer_index for _ in range(4000))
    assert set(positions) == {0, 1, 2, 3}
    for count in positions.values():
        assert 850 < count < 1150


def test_question_order_is_roughly_uniform():
    questions = make_questions()[:3]
    rng = random.Random(7)
    orderings = Counter(tuple(q.id for q in build_questions(questions, rng)) for _ in range(6000))
    # 3! orderings, about 1000 each
    assert len(orderings) == 6
    for count in orderings.values():
        assert 850 < count < 1150


def test_builder_rejects_empty_packet(store):
    builder = SessionBuilder(store, rng_factory=lambda: random.Random(0))
    with pytest.raises(SessionUnavailable):
        builder.build('p2')
    assert len(builder.build('p1')) == 3
