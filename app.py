"""
CBT Online - Flask Application
Computer-based tests for Literasi and Numerasi with admin, teacher and student panels
"""

import atexit
import logging
import os

from flask import Flask, jsonify, render_template, request
from flask_session import Session

import config
from admin import create_admin_blueprint
from auth import create_auth_blueprint, generate_csrf_token
from database.db import get_store
from engine.session import SessionRegistry
from student import create_student_blueprint

logging.basicConfig(level=config.LOG_LEVEL,
                    format='%(asctime)s %(levelname)s %(name)s: %(message)s')
logger = logging.getLogger(__name__)

ERROR_MESSAGES = {
    400: 'The request could not be understood.',
    403: 'You are not allowed to do that.',
    404: 'The page you are looking for does not exist.',
    413: 'File too large. Maximum upload size is 16 MB.',
    429: 'Too many requests. Please wait a moment.',
    500: 'Something went wrong on our side.',
}
SESSION_API_ENDPOINTS = ('state', 'answer', 'doubtful', 'navigate', 'violation', 'submit')


def _config_from_module():
    return {
        'SECRET_KEY': config.SECRET_KEY,
        'MAX_CONTENT_LENGTH': config.MAX_CONTENT_LENGTH,
        'SESSION_TYPE': config.SESSION_TYPE,
        'SESSION_FILE_DIR': config.SESSION_FILE_DIR,
        'SESSION_PERMANENT': True,
        'SESSION_COOKIE_HTTPONLY': config.SESSION_COOKIE_HTTPONLY,
        'SESSION_COOKIE_SAMESITE': config.SESSION_COOKIE_SAMESITE,
        'SESSION_COOKIE_SECURE': config.SESSION_COOKIE_SECURE,
        'PERMANENT_SESSION_LIFETIME': config.PERMANENT_SESSION_LIFETIME,
        'VIOLATION_THRESHOLD': config.VIOLATION_THRESHOLD,
        'ALLOW_REATTEMPTS': config.ALLOW_REATTEMPTS,
        'SESSION_GRACE_SECONDS': config.SESSION_GRACE_SECONDS,
        'TICK_INTERVAL': config.TICK_INTERVAL,
        'SYNC_INTERVAL_SECONDS': config.SYNC_INTERVAL_SECONDS,
    }


def create_app(overrides=None, store=None, registry=None):
    """Build the application. Tests pass their own store and TESTING=True."""
    app = Flask(__name__)
    app.config.update(_config_from_module())
    app.config.update(overrides or {})

    if app.config.get('SESSION_TYPE'):
        if app.config['SESSION_TYPE'] == 'filesystem':
            os.makedirs(app.config['SESSION_FILE_DIR'], exist_ok=True)
        Session(app)

    store = store or get_store()
    registry = registry or SessionRegistry(
        store,
        violation_threshold=app.config['VIOLATION_THRESHOLD'],
        grace_seconds=app.config['SESSION_GRACE_SECONDS'],
    )
    app.extensions['cbt_store'] = store
    app.extensions['cbt_registry'] = registry

    app.jinja_env.globals['csrf_token'] = generate_csrf_token

    @app.context_processor
    def inject_school():
        return {'school': store.settings}

    @app.after_request
    def add_security_headers(response):
        """Add security headers to all responses."""
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
        response.headers['Permissions-Policy'] = 'camera=(), microphone=(), geolocation=()'
        # Stimulus images may be inline data: URLs or hosted elsewhere
        response.headers['Content-Security-Policy'] = (
            "default-src 'self'; "
            "style-src 'self' 'unsafe-inline'; "
            "script-src 'self'; "
            "img-src 'self' data: https:; "
            "connect-src 'self';"
        )
        if request.path.startswith('/student/session/'):
            response.headers['Cache-Control'] = 'no-store'
        return response

    def _error(code):
        def handler(e):
            if code == 500:
                logger.exception('Internal Server Error: %s', e)
            if request.is_json or request.path.startswith('/admin/api/') \
                    or request.path.rsplit('/', 1)[-1] in SESSION_API_ENDPOINTS:
                return jsonify({'error': getattr(e, 'description', None) or ERROR_MESSAGES[code]}), code
            return render_template('errors/error.html', code=code, message=ERROR_MESSAGES[code]), code
        return handler

    for code in ERROR_MESSAGES:
        app.register_error_handler(code, _error(code))

    app.register_blueprint(create_auth_blueprint(store, registry))
    app.register_blueprint(create_admin_blueprint(store, registry))
    app.register_blueprint(create_student_blueprint(
        store, registry, allow_reattempts=app.config['ALLOW_REATTEMPTS']))

    if not app.config.get('TESTING'):
        registry.start_ticker(app.config['TICK_INTERVAL'])
        store.start_periodic_sync(app.config['SYNC_INTERVAL_SECONDS'])

        def _shutdown():
            registry.stop_ticker()
            store.teardown()

        atexit.register(_shutdown)

    return app


# ==================== MAIN ====================

if __name__ == '__main__':
    import sys

    app = create_app()
    prod_mode = '--prod' in sys.argv or os.environ.get('FLASK_ENV') == 'production'

    if prod_mode:
        # ── Production: Waitress WSGI server ──────────────────────────────
        # The exam ticker and the backend writer run as threads in this process,
        # so run exactly one server process.
        from waitress import serve
        logger.info('Starting production server on port %s with %s threads',
                    config.WAITRESS_PORT, config.WAITRESS_THREADS)
        serve(
            app,
            host='0.0.0.0',
            port=config.WAITRESS_PORT,
            threads=config.WAITRESS_THREADS,
            channel_timeout=120,         # 2-min timeout per request
            connection_limit=2000,       # max open TCP connections
            cleanup_interval=30,
        )
    else:
        # ── Development: Flask server; no reloader, it would start a second ticker ──
        app.run(debug=True, host='0.0.0.0', port=config.WAITRESS_PORT, threaded=True,
                use_reloader=False)
