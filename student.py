"""
Student screens and the JSON API the exam page talks to.

The exam page only displays state. Every answer, flag, navigation step and
visibility change is posted here and applied to the server-side session; the
page re-reads /state to stay in step with the countdown.
"""

import logging

from flask import (
    Blueprint, abort, flash, jsonify, redirect, render_template, request, session, url_for,
)

from auth import student_api_required, student_required, validate_csrf
from engine.schedule import available_exams, dashboard as dashboard_rows, is_eligible, results_for
from engine.session import ConfirmationRequired, SessionClosed, SessionState, SubmitReason
from models import AnswerError, parse_bool
from reports import answer_review

logger = logging.getLogger(__name__)


def _json_error(message, status):
    return jsonify({'error': message}), status


def create_student_blueprint(store, registry, allow_reattempts=True):
    bp = Blueprint('student', __name__, url_prefix='/student')

    def _me():
        student = store.students.get(session.get('student_id'))
        if student is None:
            abort(403)
        return student

    def _own_session(session_id):
        """The exam session, only if it belongs to the logged-in student."""
        exam_session = registry.get(session_id)
        if exam_session is None or exam_session.student is None \
                or exam_session.student.id != session.get('student_id'):
            abort(404)
        return exam_session

    # ==================== PAGES ====================

    @bp.route('/dashboard')
    @student_required
    def dashboard():
        """Exams of my class and whether I finished them."""
        me = _me()
        return render_template('student/dashboard.html', student=me, rows=dashboard_rows(store, me))

    @bp.route('/exams')
    @student_required
    def exams():
        """Exams I can start right now."""
        me = _me()
        rows = available_exams(store, me, allow_reattempts=allow_reattempts)
        return render_template('student/exams.html', student=me, rows=rows)

    @bp.route('/exams/<exam_id>/start', methods=['POST'])
    @student_required
    def start_exam(exam_id):
        """Build a fresh randomized session for this exam."""
        validate_csrf()
        me = _me()
        exam = store.get_exam(exam_id)
        if exam is None or not is_eligible(exam, me):
            flash('This exam is not open for you.', 'error')
            return redirect(url_for('student.exams'))
        if not allow_reattempts and results_for(store.results.all(), me.id, exam.id):
            flash('You have already taken this exam.', 'error')
            return redirect(url_for('student.exams'))

        previous = registry.get(session.get('exam_session_id', ''))
        if previous is not None and previous.in_progress:
            if previous.exam_id == exam_id:
                return redirect(url_for('student.take_exam', session_id=previous.id))
            registry.discard(previous.id)

        exam_session = registry.create(exam_id, me)
        session['exam_session_id'] = exam_session.id
        return redirect(url_for('student.take_exam', session_id=exam_session.id))

    @bp.route('/session/<session_id>')
    @student_required
    def take_exam(session_id):
        """Exam interface with timer and questions."""
        exam_session = _own_session(session_id)
        if exam_session.state == SessionState.FINISHED:
            return redirect(url_for('student.finished', session_id=session_id))
        if exam_session.state != SessionState.IN_PROGRESS:
            # Blocking loading state; the exam could not be resolved
            return render_template('student/exam_loading.html', exam_id=exam_session.exam_id), 503
        return render_template(
            'student/exam.html',
            exam=exam_session.exam,
            exam_session=exam_session,
            state=exam_session.snapshot(include_questions=True),
        )

    @bp.route('/session/<session_id>/finished')
    @student_required
    def finished(session_id):
        """Finish screen with the stored score."""
        exam_session = _own_session(session_id)
        if exam_session.result is None:
            return redirect(url_for('student.take_exam', session_id=session_id))
        if session.get('exam_session_id') == session_id:
            session.pop('exam_session_id', None)
        return render_template('student/finished.html', exam=exam_session.exam,
                               result=exam_session.result, reason=exam_session.submit_reason)

    @bp.route('/results')
    @student_required
    def results():
        """All my attempts, newest first."""
        me = _me()
        mine = results_for(store.results.all(), me.id)
        mine.sort(key=lambda r: r.timestamp, reverse=True)
        return render_template('student/results.html', student=me, results=mine)

    @bp.route('/results/<result_id>')
    @student_required
    def result_detail(result_id):
        """Per-question review of one attempt."""
        me = _me()
        result = store.results.get(result_id)
        if result is None or result.student_id != me.id:
            abort(404)
        exam = store.get_exam(result.exam_id)
        questions = store.list_questions_by_packet(exam.packet_id) if exam else []
        return render_template('student/result_detail.html', result=result, exam=exam,
                               review=answer_review(questions, result))

    # ==================== EXAM SESSION API ====================

    def _payload():
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def _state(exam_session, **extra):
        data = exam_session.snapshot()
        data.update(extra)
        return jsonify(data)

    @bp.route('/session/<session_id>/state')
    @student_api_required
    def state(session_id):
        exam_session = _own_session(session_id)
        return _state(exam_session)

    @bp.route('/session/<session_id>/answer', methods=['POST'])
    @student_api_required
    def answer(session_id):
        validate_csrf()
        exam_session = _own_session(session_id)
        data = _payload()
        try:
            exam_session.record_answer(str(data.get('questionId', '')), data.get('value'))
        except AnswerError as e:
            return _json_error(str(e), 400)
        except SessionClosed:
            return _state(exam_session), 409
        return _state(exam_session)

    @bp.route('/session/<session_id>/doubtful', methods=['POST'])
    @student_api_required
    def doubtful(session_id):
        validate_csrf()
        exam_session = _own_session(session_id)
        try:
            exam_session.toggle_doubtful(str(_payload().get('questionId', '')))
        except AnswerError as e:
            return _json_error(str(e), 400)
        except SessionClosed:
            return _state(exam_session), 409
        return _state(exam_session)

    @bp.route('/session/<session_id>/navigate', methods=['POST'])
    @student_api_required
    def navigate(session_id):
        validate_csrf()
        exam_session = _own_session(session_id)
        try:
            moved = exam_session.navigate(_payload().get('index'))
        except SessionClosed:
            return _state(exam_session), 409
        if not moved:
            return _json_error('No such question.', 400)
        return _state(exam_session)

    @bp.route('/session/<session_id>/violation', methods=['POST'])
    @student_api_required
    def violation(session_id):
        validate_csrf()
        exam_session = _own_session(session_id)
        notice = exam_session.report_visibility(parse_bool(_payload().get('hidden', True)))
        return _state(exam_session, notice=notice.to_json() if notice else None)

    @bp.route('/session/<session_id>/submit', methods=['POST'])
    @student_api_required
    def submit(session_id):
        validate_csrf()
        exam_session = _own_session(session_id)
        try:
            exam_session.submit(confirmed=parse_bool(_payload().get('confirmed')),
                                reason=SubmitReason.MANUAL)
        except ConfirmationRequired as e:
            return _json_error(str(e), 400)
        except SessionClosed:
            return _state(exam_session), 409
        return _state(exam_session, redirect=url_for('student.finished', session_id=session_id))

    return bp
