"""
Administrator and teacher screens: students, question packets, exam
schedule, monitoring, item analysis and school settings.

Teachers see and edit only the packets of their own subject category.
"""

import base64
import logging
from dataclasses import replace
from datetime import datetime

from flask import (
    Blueprint, Response, abort, flash, jsonify, redirect, render_template, request, url_for,
)

from auth import admin_required, hash_password, staff_categories, staff_required, validate_csrf
from models import (
    CATEGORIES, MATRIX_COLUMNS, DEFAULT_MATRIX_LABELS, Exam, Packet, Question, QuestionType,
    SchoolSettings, Student, parse_timestamp,
)
from reports import item_analysis, item_analysis_csv, monitoring_rows

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp'}
OPTION_SLOTS = 5       # A..E
STATEMENT_SLOTS = 10   # rows of a true/false matrix or matching question


def allowed_file(filename):
    """Check if uploaded file has allowed extension."""
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def _form_text(name, limit=2000):
    return request.form.get(name, '').strip()[:limit]


def question_row_from_form(packet, question_id, category):
    """Collect the question form into a sheet row so Question.from_row can validate it."""
    q_type = request.form.get('type', QuestionType.SINGLE_CHOICE.value)
    row = {
        'id': question_id,
        'packetId': packet.id,
        'number': request.form.get('number', type=int) or 0,
        'text': _form_text('text', 5000),
        'stimulus': _form_text('stimulus', 20000),
        'image': _form_text('image', 500),
        'type': q_type,
        'category': category,
        'options': [],
    }

    upload = request.files.get('stimulus_image')
    if upload and upload.filename:
        if not allowed_file(upload.filename):
            raise ValueError('Stimulus image must be png, jpg, gif or webp.')
        ext = upload.filename.rsplit('.', 1)[1].lower()
        mime = 'jpeg' if ext == 'jpg' else ext
        row['stimulus'] = f'data:image/{mime};base64,' + base64.b64encode(upload.read()).decode('ascii')

    if q_type in (QuestionType.SINGLE_CHOICE.value, QuestionType.MULTI_SELECT.value):
        # Map form slot numbers to positions among the non-empty options
        filled = [j for j in range(OPTION_SLOTS) if _form_text(f'option_{j}', 1000)]
        row['options'] = [_form_text(f'option_{j}', 1000) for j in filled]
        if q_type == QuestionType.SINGLE_CHOICE.value:
            slot = request.form.get('correct_option', type=int)
            row['correctAnswerIndex'] = filled.index(slot) if slot in filled else -1
        else:
            slots = [int(s) for s in request.form.getlist('correct_options') if s.isdigit()]
            row['correctAnswerIndices'] = [filled.index(s) for s in slots if s in filled]

    elif q_type in (QuestionType.MATRIX_TRUE_FALSE.value, QuestionType.MATCHING.value):
        if q_type == QuestionType.MATRIX_TRUE_FALSE.value:
            row['options'] = [
                _form_text('label_a', 100) or DEFAULT_MATRIX_LABELS[0],
                _form_text('label_b', 100) or DEFAULT_MATRIX_LABELS[1],
            ]
        pairs = []
        for j in range(STATEMENT_SLOTS):
            left = _form_text(f'statement_{j}', 1000)
            if left:
                pairs.append({'left': left, 'right': _form_text(f'key_{j}', 1000)})
        row['matchingPairs'] = pairs
    return row


def create_admin_blueprint(store, registry):
    bp = Blueprint('admin', __name__, url_prefix='/admin')

    def _visible_packets():
        categories = staff_categories()
        packets = store.packets.all()
        if categories is not None:
            packets = [p for p in packets if p.category in categories]
        return sorted(packets, key=lambda p: (p.category, p.name))

    def _packet_or_404(packet_id):
        packet = store.packets.get(packet_id)
        categories = staff_categories()
        if packet is None or (categories is not None and packet.category not in categories):
            abort(404)
        return packet

    def _exam_or_first(exam_id):
        exams = store.exams.all()
        exam = store.get_exam(exam_id) if exam_id else None
        if exam is None and exams:
            exam = exams[0]
        return exams, exam

    # ==================== DASHBOARD ====================

    @bp.route('/dashboard')
    @staff_required
    def dashboard():
        """Headline numbers for administrators and teachers."""
        packets = store.packets.all()
        stats = {
            'students': len(store.students),
            'active_exams': len([e for e in store.exams.all() if e.is_active]),
            'results': len(store.results),
            'live_sessions': len(registry.live_sessions()),
            'packets_by_category': {c: len([p for p in packets if p.category == c]) for c in CATEGORIES},
        }
        return render_template('admin/dashboard.html', stats=stats, last_sync=store.last_sync)

    # ==================== STUDENTS ====================

    @bp.route('/students')
    @admin_required
    def students():
        """Student list, optionally filtered by class."""
        class_filter = request.args.get('class', '')
        all_students = sorted(store.get_students_all(), key=lambda s: (s.student_class, s.name))
        classes = sorted({s.student_class for s in all_students})
        shown = [s for s in all_students if not class_filter or s.student_class == class_filter]
        editing = store.students.get(request.args.get('edit', ''))
        return render_template('admin/students.html', students=shown, classes=classes,
                               class_filter=class_filter, editing=editing)

    @bp.route('/students/save', methods=['POST'])
    @admin_required
    def save_student():
        validate_csrf()
        name = _form_text('name', 255)
        student_class = _form_text('class', 50)
        if not name or not student_class:
            flash('Name and class are required.', 'error')
            return redirect(url_for('admin.students'))
        fields = dict(name=name, student_class=student_class, no=_form_text('no', 20),
                      nis=_form_text('nis', 50), nisn=_form_text('nisn', 50))
        student_id = request.form.get('id', '')
        if student_id and store.students.get(student_id):
            store.students.update(student_id, **fields)
        else:
            store.students.add(Student(id='', **fields))
        flash('Student saved.', 'success')
        return redirect(url_for('admin.students', **{'class': student_class}))

    @bp.route('/students/<student_id>/delete', methods=['POST'])
    @admin_required
    def delete_student(student_id):
        validate_csrf()
        if store.students.delete(student_id):
            flash('Student deleted.', 'success')
        else:
            flash('Student not found.', 'error')
        return redirect(url_for('admin.students'))

    # ==================== QUESTION BANK ====================

    @bp.route('/packets')
    @staff_required
    def packets():
        """Question packets of the categories this user may edit."""
        editing = store.packets.get(request.args.get('edit', ''))
        categories = staff_categories() or CATEGORIES
        return render_template('admin/packets.html', packets=_visible_packets(),
                               editing=editing, categories=categories)

    @bp.route('/packets/save', methods=['POST'])
    @staff_required
    def save_packet():
        validate_csrf()
        name = _form_text('name', 255)
        category = request.form.get('category', '')
        allowed = staff_categories() or CATEGORIES
        if not name or category not in allowed:
            flash('Please enter a name and one of your categories.', 'error')
            return redirect(url_for('admin.packets'))
        packet_id = request.form.get('id', '')
        if packet_id:
            _packet_or_404(packet_id)
            store.packets.update(packet_id, name=name, category=category)
        else:
            store.packets.add(Packet(id='', name=name, category=category))
        flash('Packet saved.', 'success')
        return redirect(url_for('admin.packets'))

    @bp.route('/packets/<packet_id>/delete', methods=['POST'])
    @staff_required
    def delete_packet(packet_id):
        validate_csrf()
        _packet_or_404(packet_id)
        store.delete_packet(packet_id)
        flash('Packet and its questions deleted.', 'success')
        return redirect(url_for('admin.packets'))

    @bp.route('/packets/<packet_id>')
    @staff_required
    def packet_detail(packet_id):
        """Questions of one packet, with the add/edit form."""
        packet = _packet_or_404(packet_id)
        questions = store.list_questions_by_packet(packet_id)
        editing = store.questions.get(request.args.get('edit', ''))
        if editing is not None and editing.packet_id != packet_id:
            editing = None
        next_number = max((q.number for q in questions), default=0) + 1
        return render_template('admin/packet_detail.html', packet=packet, questions=questions,
                               editing=editing, next_number=next_number,
                               types=list(QuestionType), option_slots=OPTION_SLOTS,
                               statement_slots=STATEMENT_SLOTS, columns=MATRIX_COLUMNS)

    @bp.route('/packets/<packet_id>/questions/save', methods=['POST'])
    @staff_required
    def save_question(packet_id):
        validate_csrf()
        packet = _packet_or_404(packet_id)
        question_id = request.form.get('id', '')
        existing = store.questions.get(question_id) if question_id else None
        if existing is not None and existing.packet_id != packet_id:
            abort(404)
        try:
            row = question_row_from_form(packet, question_id, packet.category)
        except ValueError as e:
            flash(str(e), 'error')
            return redirect(url_for('admin.packet_detail', packet_id=packet_id))
        if not row['text']:
            flash('The question text is required.', 'error')
            return redirect(url_for('admin.packet_detail', packet_id=packet_id))
        if existing is not None and not row['stimulus'] and request.form.get('keep_stimulus'):
            row['stimulus'] = existing.stimulus

        question = Question.from_row(row)
        if question.parse_error:
            flash(f'Question not saved: {question.parse_error}.', 'error')
            return redirect(url_for('admin.packet_detail', packet_id=packet_id))
        if question.number <= 0:
            question = replace(question, number=len(store.list_questions_by_packet(packet_id)) + 1)
        store.save_question(question)
        flash(f'Question {question.number} saved.', 'success')
        return redirect(url_for('admin.packet_detail', packet_id=packet_id))

    @bp.route('/packets/<packet_id>/questions/<question_id>/delete', methods=['POST'])
    @staff_required
    def delete_question(packet_id, question_id):
        validate_csrf()
        _packet_or_404(packet_id)
        question = store.questions.get(question_id)
        if question is None or question.packet_id != packet_id:
            abort(404)
        store.delete_question(question_id)
        flash('Question deleted.', 'success')
        return redirect(url_for('admin.packet_detail', packet_id=packet_id))

    # ==================== EXAM SCHEDULE ====================

    @bp.route('/exams')
    @admin_required
    def exams():
        """Scheduled exams with the add/edit form."""
        classes = sorted({s.student_class for s in store.get_students_all()})
        packets = {p.id: p for p in store.packets.all()}
        exams = sorted(store.exams.all(), key=lambda e: e.scheduled_start or datetime.min, reverse=True)
        editing = store.get_exam(request.args.get('edit', ''))
        return render_template('admin/exams.html', exams=exams, packets=packets,
                               classes=classes, editing=editing)

    @bp.route('/exams/save', methods=['POST'])
    @admin_required
    def save_exam():
        validate_csrf()
        title = _form_text('title', 255)
        packet_id = request.form.get('packet_id', '')
        classes = tuple(c.strip() for c in request.form.getlist('classes') if c.strip())
        start = parse_timestamp(request.form.get('scheduled_start'))
        end = parse_timestamp(request.form.get('scheduled_end'))

        if not title or store.packets.get(packet_id) is None or not classes:
            flash('Please enter a title, choose a packet and at least one class.', 'error')
            return redirect(url_for('admin.exams'))
        try:
            duration = int(request.form.get('duration', ''))
            if duration < 1 or duration > 480:  # Max 8 hours
                raise ValueError('Invalid duration')
        except (ValueError, TypeError):
            flash('Please enter a valid duration (1-480 minutes).', 'error')
            return redirect(url_for('admin.exams'))
        if start is None or end is None or end <= start:
            flash('Please enter a schedule whose end is after its start.', 'error')
            return redirect(url_for('admin.exams'))

        fields = dict(title=title, packet_id=packet_id, scheduled_start=start, scheduled_end=end,
                      duration_minutes=duration, class_target=classes)
        exam_id = request.form.get('id', '')
        if exam_id and store.get_exam(exam_id):
            store.exams.update(exam_id, **fields)
        else:
            store.exams.add(Exam(id='', is_active=True, **fields))
        flash('Exam schedule saved.', 'success')
        return redirect(url_for('admin.exams'))

    @bp.route('/exams/<exam_id>/toggle', methods=['POST'])
    @admin_required
    def toggle_exam(exam_id):
        """Switch an exam on or off without touching its schedule."""
        validate_csrf()
        exam = store.get_exam(exam_id)
        if exam is None:
            abort(404)
        store.exams.update(exam_id, is_active=not exam.is_active)
        return redirect(url_for('admin.exams'))

    @bp.route('/exams/<exam_id>/delete', methods=['POST'])
    @admin_required
    def delete_exam(exam_id):
        validate_csrf()
        if store.exams.delete(exam_id):
            flash('Exam deleted.', 'success')
        else:
            flash('Exam not found.', 'error')
        return redirect(url_for('admin.exams'))

    # ==================== MONITORING ====================

    @bp.route('/monitoring')
    @staff_required
    def monitoring():
        """Who is taking, finished or has not started an exam."""
        exams, exam = _exam_or_first(request.args.get('exam_id', ''))
        class_filter = request.args.get('class', '')
        rows = monitoring_rows(store, registry, exam, class_filter) if exam else []
        return render_template('admin/monitoring.html', exams=exams, exam=exam, rows=rows,
                               class_filter=class_filter)

    @bp.route('/api/monitoring')
    @staff_required
    def monitoring_api():
        exam = store.get_exam(request.args.get('exam_id', ''))
        if exam is None:
            return jsonify({'error': 'Exam not found.'}), 404
        rows = monitoring_rows(store, registry, exam, request.args.get('class', ''))
        return jsonify({'examId': exam.id, 'rows': [r.to_json() for r in rows]})

    # ==================== ANALYSIS ====================

    @bp.route('/analysis')
    @staff_required
    def analysis():
        """Item analysis: difficulty and option pick counts per question."""
        exams, exam = _exam_or_first(request.args.get('exam_id', ''))
        items = item_analysis(store, exam) if exam else []
        return render_template('admin/analysis.html', exams=exams, exam=exam, items=items)

    @bp.route('/analysis/<exam_id>.csv')
    @staff_required
    def analysis_csv(exam_id):
        exam = store.get_exam(exam_id)
        if exam is None:
            abort(404)
        return Response(
            item_analysis_csv(item_analysis(store, exam)),
            mimetype='text/csv',
            headers={'Content-Disposition': f'attachment; filename=analysis_{exam_id}.csv'},
        )

    # ==================== SETTINGS ====================

    @bp.route('/settings', methods=['GET', 'POST'])
    @admin_required
    def settings():
        """School identity and login passwords."""
        current = store.settings
        if request.method == 'POST':
            validate_csrf()
            changes = {}
            for key in SchoolSettings.keys():
                value = request.form.get(key, '').strip()
                if key in SchoolSettings.PASSWORD_KEYS:
                    # Blank keeps the existing password
                    if value:
                        if len(value) < 4:
                            flash('Passwords must be at least 4 characters.', 'error')
                            return redirect(url_for('admin.settings'))
                        changes[key] = hash_password(value)
                elif value:
                    changes[key] = value[:255]
            store.save_settings(replace(current, **changes))
            logger.info('School settings updated: %s', ', '.join(sorted(changes)) or 'no changes')
            flash('Settings saved.', 'success')
            return redirect(url_for('admin.settings'))
        return render_template('admin/settings.html', settings=current,
                               script_url=store.remote.url, last_sync=store.last_sync)

    # ==================== ADMIN API FOR ANALYTICS ====================

    @bp.route('/api/analytics')
    @admin_required
    def analytics():
        """Basic admin analytics."""
        results = store.results.all()
        avg_score = sum(r.score for r in results) / len(results) if results else 0
        return jsonify({
            'exam_count': len(store.exams),
            'result_count': len(results),
            'disqualified_count': len([r for r in results if r.is_disqualified]),
            'avg_score': round(float(avg_score), 2),
        })

    return bp
