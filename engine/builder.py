"""
Exam session builder.

Turns a packet's stored questions into an attempt-local list: question order
shuffled, and for single-choice and multiple-select questions the options
shuffled with the answer key moved along with them. Stored questions are
never touched; every session gets fresh copies and its own RNG.
"""

import logging
import random

from models import QuestionType, SHUFFLED_TYPES

logger = logging.getLogger(__name__)


class SessionUnavailable(Exception):
    """The exam or its packet cannot be resolved into at least one question."""


def shuffle_options(question, rng):
    """Shuffle the options of a session copy in place and remap its answer key."""
    order = list(range(len(question.options)))
    rng.shuffle(order)
    question.options = [question.options[i] for i in order]
    question.option_order = order
    # new position of each canonical index
    position = {orig: pos for pos, orig in enumerate(order)}

    if question.type == QuestionType.SINGLE_CHOICE:
        question.correct_answer_index = position[question.correct_answer_index]
    elif question.type == QuestionType.MULTI_SELECT:
        question.correct_answer_indices = frozenset(position[i] for i in question.correct_answer_indices)
    return question


def build_questions(questions, rng=None):
    """Return shuffled, independent copies of questions."""
    rng = rng or random.Random()
    session_questions = [q.copy() for q in questions]
    rng.shuffle(session_questions)
    for question in session_questions:
        # Matrix rows carry their own column keys; malformed keys cannot be remapped
        if question.type in SHUFFLED_TYPES and question.parse_error is None:
            shuffle_options(question, rng)
    return session_questions


class SessionBuilder:
    """Resolves an exam's packet through the store and builds its session questions."""

    def __init__(self, store, rng_factory=random.Random):
        self.store = store
        self.rng_factory = rng_factory

    def build(self, packet_id):
        questions = self.store.list_questions_by_packet(packet_id)
        if not questions:
            raise SessionUnavailable(f'Packet {packet_id!r} has no questions')
        return build_questions(questions, self.rng_factory())
