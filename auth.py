"""
Login, logout and the request guards shared by every blueprint.
"""

import logging
import secrets
from datetime import datetime
from functools import wraps

import bcrypt
from flask import (
    Blueprint, abort, flash, jsonify, redirect, render_template, request, session, url_for,
)

from models import CATEGORIES, UserRole

logger = logging.getLogger(__name__)

# Simple in-memory rate limiting for login (prevents brute force)
_login_attempts = {}
RATE_LIMIT_WINDOW = 300  # 5 minutes
RATE_LIMIT_MAX = 5  # max failed attempts per IP per window

SESSION_KEYS = ('role', 'user_name', 'student_id', 'teacher_category', 'exam_session_id')


def check_rate_limit(ip):
    """Check if IP has exceeded login attempts."""
    now = datetime.now().timestamp()
    if ip not in _login_attempts:
        return True
    # Clean old attempts
    _login_attempts[ip] = [t for t in _login_attempts[ip] if now - t < RATE_LIMIT_WINDOW]
    return len(_login_attempts[ip]) < RATE_LIMIT_MAX


def record_login_attempt(ip, success):
    """Record login attempt. Clear on success."""
    if success:
        _login_attempts.pop(ip, None)
        return
    now = datetime.now().timestamp()
    _login_attempts.setdefault(ip, []).append(now)


# ==================== PASSWORDS ====================

def hash_password(password):
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def check_password(given, stored):
    """bcrypt hashes are checked as such; values typed straight into the sheet are plain text."""
    if not given or not stored:
        return False
    if stored.startswith('$2'):
        try:
            return bcrypt.checkpw(given.encode('utf-8'), stored.encode('utf-8'))
        except ValueError:
            return False
    return secrets.compare_digest(given.encode('utf-8'), stored.encode('utf-8'))


# ==================== CSRF ====================

def generate_csrf_token():
    """Generate CSRF token for forms."""
    if 'csrf_token' not in session:
        session['csrf_token'] = secrets.token_hex(32)
    return session['csrf_token']


def validate_csrf():
    """Validate CSRF token from a form field or the X-CSRF-Token header."""
    token = request.form.get('csrf_token') or request.headers.get('X-CSRF-Token')
    if not token or not secrets.compare_digest(str(token), str(session.get('csrf_token', ''))):
        abort(403, 'Invalid CSRF token')


# ==================== GUARDS ====================

def current_role():
    role = session.get('role')
    try:
        return UserRole(role) if role else None
    except ValueError:
        return None


def staff_categories():
    """None for administrators (all categories), otherwise the teacher's own category."""
    if current_role() == UserRole.TEACHER:
        return (session.get('teacher_category'),)
    return None


def _guard(roles, json_response=False):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if current_role() not in roles:
                if json_response:
                    return jsonify({'error': 'Please log in again.'}), 401
                flash('Please log in first.', 'error')
                return redirect(url_for('auth.login'))
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def admin_required(f):
    """Decorator to require an administrator login."""
    return _guard((UserRole.ADMIN,))(f)


def staff_required(f):
    """Decorator to require an administrator or teacher login."""
    return _guard((UserRole.ADMIN, UserRole.TEACHER))(f)


def student_required(f):
    """Decorator to require a student login."""
    return _guard((UserRole.STUDENT,))(f)


def student_api_required(f):
    return _guard((UserRole.STUDENT,), json_response=True)(f)


def home_for(role):
    if role == UserRole.STUDENT:
        return url_for('student.dashboard')
    if role in (UserRole.ADMIN, UserRole.TEACHER):
        return url_for('admin.dashboard')
    return url_for('auth.login')


# ==================== ROUTES ====================

def create_auth_blueprint(store, registry):
    bp = Blueprint('auth', __name__)

    def _start_user_session(role, name, **extra):
        # Keep the CSRF token, drop everything else from a previous login
        token = session.get('csrf_token')
        session.clear()
        if token:
            session['csrf_token'] = token
        session['role'] = role.value
        session['user_name'] = name
        session.update(extra)
        session.permanent = True

    @bp.route('/')
    def index():
        """Home page - redirect to the user's landing page."""
        return redirect(home_for(current_role()))

    @bp.route('/login', methods=['GET', 'POST'])
    def login():
        """Login for administrators, category teachers and students."""
        settings = store.settings
        students = sorted(store.get_students_all(), key=lambda s: (s.student_class, s.name))
        classes = sorted({s.student_class for s in students})

        def _form(status=200):
            return render_template('login.html', settings=settings, students=students,
                                   classes=classes, categories=CATEGORIES), status

        if request.method == 'GET':
            if current_role():
                return redirect(home_for(current_role()))
            return _form()

        validate_csrf()
        client_ip = request.remote_addr
        if not check_rate_limit(client_ip):
            flash('Too many login attempts. Try again later.', 'error')
            return _form(429)

        role = request.form.get('role', '')
        password = request.form.get('password', '')[:200]

        if role == UserRole.ADMIN.value:
            if check_password(password, settings.adminPassword):
                record_login_attempt(client_ip, True)
                _start_user_session(UserRole.ADMIN, 'Administrator')
                logger.info('Administrator logged in from %s', client_ip)
                return redirect(url_for('admin.dashboard'))
            record_login_attempt(client_ip, False)
            flash('Wrong administrator password.', 'error')

        elif role == UserRole.TEACHER.value:
            category = request.form.get('category', '')
            if category not in CATEGORIES:
                flash('Please choose your subject.', 'error')
            elif check_password(password.strip(), settings.teacher_password(category)):
                record_login_attempt(client_ip, True)
                _start_user_session(UserRole.TEACHER, f'Teacher {category}', teacher_category=category)
                logger.info('%s teacher logged in from %s', category, client_ip)
                return redirect(url_for('admin.dashboard'))
            else:
                record_login_attempt(client_ip, False)
                flash(f'Wrong password for the {category} teacher.', 'error')

        elif role == UserRole.STUDENT.value:
            student = store.students.get(request.form.get('student_id', ''))
            if student is None:
                flash('Please choose your name.', 'error')
            else:
                record_login_attempt(client_ip, True)
                _start_user_session(UserRole.STUDENT, student.name, student_id=student.id)
                return redirect(url_for('student.dashboard'))
        else:
            flash('Please choose a role.', 'error')

        return _form(400)

    @bp.route('/logout')
    def logout():
        """Log out; an unfinished exam is abandoned without a result."""
        exam_session_id = session.get('exam_session_id')
        if exam_session_id:
            registry.discard(exam_session_id)
        for key in SESSION_KEYS:
            session.pop(key, None)
        flash('Logged out successfully.', 'success')
        return redirect(url_for('auth.login'))

    @bp.route('/sync', methods=['POST'])
    def sync():
        """Pull fresh data from the spreadsheet backend."""
        validate_csrf()
        if store.sync():
            flash('Data refreshed from the spreadsheet.', 'success')
        else:
            flash('Could not reach the spreadsheet; showing cached data.', 'error')
        return redirect(request.referrer or url_for('auth.login'))

    return bp
