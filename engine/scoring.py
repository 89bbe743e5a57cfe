"""
Scoring engine.

Pure functions of (questions, answers). Each question is binary correct or
incorrect; the score is the rounded percentage of correct questions over the
questions of the session. Nothing here mutates its inputs or raises for a
missing or oddly shaped answer.
"""

from models import (
    CATEGORIES, MatrixAnswer, MultiSelectAnswer, QuestionType, SingleChoiceAnswer,
)


def is_correct(question, answer):
    """Judge one answer against the (session-local) answer key of its question."""
    if answer is None or question.parse_error is not None:
        return False

    if question.type == QuestionType.SINGLE_CHOICE:
        return isinstance(answer, SingleChoiceAnswer) and answer.index == question.correct_answer_index

    if question.type == QuestionType.MULTI_SELECT:
        # All or nothing: a subset or a superset of the key is wrong
        return (isinstance(answer, MultiSelectAnswer) and bool(answer.indices)
                and answer.indices == question.correct_answer_indices)

    if question.type == QuestionType.MATRIX_TRUE_FALSE:
        if not isinstance(answer, MatrixAnswer):
            return False
        rows = question.matching_pairs
        if not rows or len(answer.choices) != len(rows):
            return False
        return all(choice == row.correct_column for choice, row in zip(answer.choices, rows))

    # Essay and Matching are reviewed by hand
    return False


def percentage(correct, total):
    """round(correct / total * 100) with halves rounded up; 0 when total is 0."""
    if total <= 0:
        return 0
    return (correct * 200 + total) // (2 * total)


def count_correct(questions, answers):
    return sum(1 for q in questions if is_correct(q, answers.get(q.id)))


def score(questions, answers):
    """Score 0..100 for the session's question list and its answer map."""
    questions = list(questions)
    return percentage(count_correct(questions, answers), len(questions))


def category_scores(questions, answers):
    """The same rule restricted to each subject category present in CATEGORIES."""
    scores = {}
    for category in CATEGORIES:
        subset = [q for q in questions if q.category == category]
        scores[category] = percentage(count_correct(subset, answers), len(subset))
    return scores
