"""
Exam session engine.

One ExamSession is one student's attempt:

    LOADING --start()--> IN_PROGRESS --submit()--> FINISHED
       |                      |
       +--(unresolvable)      +--abandon()--> ABANDONED (no Result)

The countdown ticker and the proctoring monitor both run outside the request
that owns the page, so every mutation happens under the session's re-entrant
lock and submit() only ever leaves IN_PROGRESS once. A second submit returns
the Result of the first without writing anything.
"""

import logging
import random
import secrets
import threading
import time
from enum import Enum

from database.db import generate_id
from engine import scoring
from engine.builder import SessionBuilder, SessionUnavailable
from engine.proctoring import ProctoringMonitor
from models import (
    AnswerError, MatrixAnswer, MultiSelectAnswer, OpenAnswer, Result, now_iso,
    parse_answer, to_canonical,
)

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    LOADING = 'loading'
    IN_PROGRESS = 'in_progress'
    FINISHED = 'finished'
    ABANDONED = 'abandoned'


class SubmitReason(str, Enum):
    MANUAL = 'manual'
    TIME_EXPIRED = 'time_expired'
    VIOLATIONS = 'violations'


class SessionClosed(Exception):
    """The session is not in progress, so it no longer accepts changes."""


class ConfirmationRequired(Exception):
    """A manual submit arrived without the student's confirmation."""


def is_answered(answer):
    if answer is None:
        return False
    if isinstance(answer, MultiSelectAnswer):
        return bool(answer.indices)
    if isinstance(answer, MatrixAnswer):
        return any(c is not None for c in answer.choices)
    if isinstance(answer, OpenAnswer):
        return answer.value not in (None, '', [], {})
    return True


def question_payload(question, position):
    """What the exam page may see of a question: never the answer key."""
    return {
        'id': question.id,
        'position': position + 1,
        'type': question.type.value,
        'text': question.text,
        'stimulus': question.stimulus,
        'stimulusIsImage': question.stimulus_is_image,
        'image': question.image,
        'options': list(question.options),
        'statements': [row.statement for row in question.matching_pairs],
        'error': question.parse_error is not None,
    }


class ExamSession:

    def __init__(self, store, builder=None, violation_threshold=3, session_id=None, clock=time.monotonic):
        self.id = session_id or secrets.token_urlsafe(16)
        self.store = store
        self.builder = builder or SessionBuilder(store)
        self.clock = clock
        self.lock = threading.RLock()
        self.state = SessionState.LOADING
        self.exam_id = None
        self.exam = None
        self.student = None
        self.questions = []
        self._by_id = {}
        self.current_index = 0
        self.answers = {}
        self.doubtful = set()
        self.remaining_seconds = 0
        self.result = None
        self.submit_reason = None
        self.load_error = None
        self.created_at = clock()
        self.ended_at = None
        self.monitor = ProctoringMonitor(
            threshold=violation_threshold,
            on_threshold=self._on_violation_threshold,
            label=f'session {self.id}',
        )

    @property
    def violation_count(self):
        return self.monitor.violation_count

    @property
    def violation_threshold(self):
        return self.monitor.threshold

    @property
    def in_progress(self):
        return self.state == SessionState.IN_PROGRESS

    # ── lifecycle ───────────────────────────────────────────────────────
    def start(self, exam_id, student):
        """Resolve the exam and build the questions. False leaves the session LOADING."""
        with self.lock:
            if self.state != SessionState.LOADING:
                return self.state == SessionState.IN_PROGRESS
            self.exam_id = exam_id
            self.student = student
            exam = self.store.get_exam(exam_id)
            if exam is None:
                self.load_error = 'exam not found'
                logger.warning('Session %s: exam %s not found', self.id, exam_id)
                return False
            try:
                questions = self.builder.build(exam.packet_id)
            except SessionUnavailable as e:
                self.load_error = str(e)
                logger.warning('Session %s: %s', self.id, e)
                return False

            self.exam = exam
            self.questions = questions
            self._by_id = {q.id: q for q in questions}
            self.current_index = 0
            self.answers = {}
            self.doubtful = set()
            self.remaining_seconds = exam.duration_seconds
            self.monitor.attach()
            self.state = SessionState.IN_PROGRESS
            logger.info('Session %s started: exam %s, student %s, %d questions, %ds',
                        self.id, exam.id, student.id, len(questions), self.remaining_seconds)
            return True

    def abandon(self):
        """Drop an unfinished attempt. Nothing is persisted."""
        with self.lock:
            if self.state in (SessionState.LOADING, SessionState.IN_PROGRESS):
                self.monitor.detach()
                self.state = SessionState.ABANDONED
                self.ended_at = self.clock()
                logger.info('Session %s abandoned with %d answers', self.id, len(self.answers))

    def _require_in_progress(self):
        if self.state != SessionState.IN_PROGRESS:
            raise SessionClosed(f'Session is {self.state.value}')

    # ── student actions ─────────────────────────────────────────────────
    def record_answer(self, question_id, value):
        """Store (overwrite) the answer to one question; None clears it."""
        with self.lock:
            self._require_in_progress()
            question = self._by_id.get(question_id)
            if question is None:
                raise AnswerError('Unknown question.')
            if value is None:
                self.answers.pop(question_id, None)
                return None
            answer = parse_answer(question, value)
            self.answers[question_id] = answer
            return answer

    def toggle_doubtful(self, question_id):
        with self.lock:
            self._require_in_progress()
            if question_id not in self._by_id:
                raise AnswerError('Unknown question.')
            if question_id in self.doubtful:
                self.doubtful.discard(question_id)
                return False
            self.doubtful.add(question_id)
            return True

    def navigate(self, target_index):
        with self.lock:
            self._require_in_progress()
            if isinstance(target_index, bool) or not isinstance(target_index, int):
                return False
            if not 0 <= target_index < len(self.questions):
                return False
            self.current_index = target_index
            return True

    def report_visibility(self, hidden):
        """Page visibility changed. May force-submit; returns a ViolationNotice or None."""
        with self.lock:
            return self.monitor.visibility_changed(hidden)

    # ── clock ───────────────────────────────────────────────────────────
    def tick(self):
        """One second passed. Expiry force-submits the session."""
        with self.lock:
            if self.state != SessionState.IN_PROGRESS:
                return False
            self.remaining_seconds = max(0, self.remaining_seconds - 1)
            if self.remaining_seconds == 0:
                logger.info('Session %s: time expired', self.id)
                self.submit(forced=True, reason=SubmitReason.TIME_EXPIRED)
            return True

    # ── submission ──────────────────────────────────────────────────────
    def _on_violation_threshold(self):
        self.submit(forced=True, reason=SubmitReason.VIOLATIONS)

    def submit(self, forced=False, reason=None, confirmed=False):
        """Score, persist one Result and finish. Later calls return that same Result."""
        with self.lock:
            if self.state == SessionState.FINISHED:
                return self.result
            self._require_in_progress()
            if not forced and not confirmed:
                raise ConfirmationRequired('Please confirm that you want to finish the exam.')

            violations = self.monitor.violation_count
            reason = reason or SubmitReason.MANUAL
            final_score = scoring.score(self.questions, self.answers)
            by_category = scoring.category_scores(self.questions, self.answers)
            stored_answers = {
                qid: to_canonical(self._by_id[qid], answer).to_json()
                for qid, answer in self.answers.items()
            }
            result = Result(
                id=generate_id(),
                exam_id=self.exam.id,
                exam_title=self.exam.title,
                student_id=self.student.id,
                student_name=self.student.name,
                student_class=self.student.student_class,
                score=final_score,
                answers=stored_answers,
                timestamp=now_iso(),
                violation_count=violations,
                is_disqualified=forced and violations >= self.monitor.threshold,
                literasi_score=by_category['Literasi'],
                numerasi_score=by_category['Numerasi'],
            )
            # A failed write leaves the session in progress for a later retry
            saved = self.store.add_result(result)
            self.monitor.detach()
            self.result = saved
            self.submit_reason = reason
            self.state = SessionState.FINISHED
            self.ended_at = self.clock()
            logger.info('Session %s submitted (%s): score %d, violations %d%s',
                        self.id, reason.value, final_score, violations,
                        ', DISQUALIFIED' if result.is_disqualified else '')
            return self.result

    # ── views ───────────────────────────────────────────────────────────
    def navigation(self):
        with self.lock:
            return [
                {
                    'index': i,
                    'answered': is_answered(self.answers.get(q.id)),
                    'doubtful': q.id in self.doubtful,
                    'current': i == self.current_index,
                }
                for i, q in enumerate(self.questions)
            ]

    def current_question(self):
        with self.lock:
            if not self.questions:
                return None
            return self.questions[self.current_index]

    def snapshot(self, include_questions=False):
        """JSON-ready state for the exam page."""
        with self.lock:
            data = {
                'id': self.id,
                'examId': self.exam_id,
                'state': self.state.value,
                'remainingSeconds': self.remaining_seconds,
                'currentIndex': self.current_index,
                'totalQuestions': len(self.questions),
                'answers': {qid: a.to_json() for qid, a in self.answers.items()},
                'doubtful': sorted(self.doubtful),
                'violationCount': self.monitor.violation_count,
                'violationThreshold': self.monitor.threshold,
                'navigation': self.navigation(),
            }
            if self.state == SessionState.LOADING:
                data['loadError'] = 'This exam cannot be loaded right now.'
            if self.result is not None:
                data['result'] = {
                    'score': self.result.score,
                    'isDisqualified': self.result.is_disqualified,
                    'reason': self.submit_reason.value,
                }
            if include_questions:
                data['questions'] = [question_payload(q, i) for i, q in enumerate(self.questions)]
            return data


class SessionRegistry:
    """Live sessions of this process, plus the one-second ticker that drives them."""

    def __init__(self, store, violation_threshold=3, grace_seconds=600,
                 rng_factory=random.Random, clock=time.monotonic):
        self.store = store
        self.violation_threshold = violation_threshold
        self.grace_seconds = grace_seconds
        self.builder = SessionBuilder(store, rng_factory=rng_factory)
        self.clock = clock
        self._sessions = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._ticker = None

    def create(self, exam_id, student):
        session = ExamSession(self.store, builder=self.builder,
                              violation_threshold=self.violation_threshold, clock=self.clock)
        session.start(exam_id, student)
        with self._lock:
            self._sessions[session.id] = session
        return session

    def get(self, session_id):
        with self._lock:
            return self._sessions.get(session_id)

    def discard(self, session_id):
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            session.abandon()
        return session

    def sessions(self):
        with self._lock:
            return list(self._sessions.values())

    def live_sessions(self, exam_id=None):
        return [
            s for s in self.sessions()
            if s.in_progress and (exam_id is None or s.exam_id == exam_id)
        ]

    def tick_all(self):
        for session in self.sessions():
            try:
                session.tick()
            except Exception:
                logger.exception('Session %s: tick failed', session.id)
        self.purge()

    def purge(self):
        """Forget sessions that ended (or never loaded) longer ago than the grace period."""
        now = self.clock()
        with self._lock:
            stale = [
                sid for sid, s in self._sessions.items()
                if (s.ended_at is not None and now - s.ended_at > self.grace_seconds)
                or (s.state == SessionState.LOADING and now - s.created_at > self.grace_seconds)
            ]
            for sid in stale:
                del self._sessions[sid]
        return len(stale)

    def start_ticker(self, interval=1.0):
        if self._ticker is not None:
            return
        self._stop.clear()

        def _run():
            deadline = time.monotonic() + interval
            while not self._stop.wait(max(0.0, deadline - time.monotonic())):
                deadline += interval
                try:
                    self.tick_all()
                except Exception:
                    logger.exception('Exam ticker failed')

        self._ticker = threading.Thread(target=_run, name='cbt-exam-ticker', daemon=True)
        self._ticker.start()

    def stop_ticker(self):
        self._stop.set()
        if self._ticker is not None:
            self._ticker.join(timeout=5)
            self._ticker = None
