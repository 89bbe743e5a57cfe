"""
Configuration for the CBT Portal
"""

import os
from pathlib import Path

# Base directory
BASE_DIR = Path(__file__).resolve().parent

# Secret key: CHANGE THIS to a random 64-char string in production!
# Generate one: python -c "import secrets; print(secrets.token_hex(32))"
SECRET_KEY = os.environ.get('SECRET_KEY', 'cbt-secret-key-change-in-production')

# Google Apps Script web app (the spreadsheet backend). Empty = offline mode.
APPS_SCRIPT_URL = os.environ.get('APPS_SCRIPT_URL', '').strip()
REMOTE_TIMEOUT = float(os.environ.get('REMOTE_TIMEOUT', 15))
SYNC_INTERVAL_SECONDS = int(os.environ.get('SYNC_INTERVAL_SECONDS', 60))

# Local mirror of the spreadsheet, loaded at startup before the first sync
CACHE_FILE = os.environ.get('CACHE_FILE', os.path.join(BASE_DIR, 'instance', 'cbt_cache.json'))

# Exam rules
VIOLATION_THRESHOLD = int(os.environ.get('VIOLATION_THRESHOLD', 3))
TICK_INTERVAL = float(os.environ.get('TICK_INTERVAL', 1.0))
ALLOW_REATTEMPTS = os.environ.get('ALLOW_REATTEMPTS', '1').lower() in ('1', 'true', 'yes')
# Finished sessions stay reachable this long so the finish screen can load
SESSION_GRACE_SECONDS = int(os.environ.get('SESSION_GRACE_SECONDS', 600))

# Logging
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

# Upload configuration (stimulus images)
MAX_CONTENT_LENGTH = 16 * 1024 * 1024  # 16 MB max request size

# Session configuration
SESSION_TYPE = 'filesystem'
SESSION_FILE_DIR = os.environ.get('SESSION_FILE_DIR', os.path.join(BASE_DIR, 'flask_session'))
SESSION_COOKIE_HTTPONLY = True
SESSION_COOKIE_SAMESITE = 'Lax'
SESSION_COOKIE_SECURE = os.environ.get('SESSION_COOKIE_SECURE', '0') == '1'
PERMANENT_SESSION_LIFETIME = 4 * 3600  # long enough for the longest exam

# Production server (Waitress): threads = concurrent request handlers
WAITRESS_THREADS = int(os.environ.get('WAITRESS_THREADS', 32))
WAITRESS_PORT = int(os.environ.get('PORT', 5000))
