"""
Data store facade: typed collections over an in-memory cache.

The cache is hydrated from a local JSON mirror at startup, replaced wholesale
by every successful sync with the spreadsheet backend, and written back to
the mirror after each change. Writes go to the backend fire-and-forget on a
single background worker so the order of writes is preserved and no request
ever waits on the spreadsheet.
"""

import json
import logging
import os
import tempfile
import threading
import uuid
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime

import config
from database.remote import AppsScriptClient, RemoteError
from models import Exam, Packet, Question, Result, SchoolSettings, Student

logger = logging.getLogger(__name__)


def generate_id():
    return str(uuid.uuid4())


class Collection:
    """One sheet worth of records, kept in sheet order."""

    def __init__(self, store, sheet, model):
        self._store = store
        self.sheet = sheet
        self.model = model
        self._items = []

    def all(self):
        with self._store.lock:
            return list(self._items)

    def get(self, record_id):
        with self._store.lock:
            return next((i for i in self._items if i.id == record_id), None)

    def filter(self, predicate):
        with self._store.lock:
            return [i for i in self._items if predicate(i)]

    def add(self, item):
        if not item.id:
            item = replace(item, id=generate_id())
        with self._store.lock:
            self._items.append(item)
            self._store.persist_local()
        self._store.push('create', self.sheet, item.to_row())
        return item

    def update(self, record_id, **changes):
        with self._store.lock:
            for idx, item in enumerate(self._items):
                if item.id == record_id:
                    updated = replace(item, **changes)
                    self._items[idx] = updated
                    break
            else:
                return None
            self._store.persist_local()
        self._store.push('update', self.sheet, updated.to_row(), record_id)
        return updated

    def delete(self, record_id):
        with self._store.lock:
            before = len(self._items)
            self._items = [i for i in self._items if i.id != record_id]
            if len(self._items) == before:
                return False
            self._store.persist_local()
        self._store.push('delete', self.sheet, {}, record_id)
        return True

    def load_rows(self, rows):
        items = []
        for row in rows or []:
            if not isinstance(row, dict):
                continue
            item = self.model.from_row(row)
            if item.id:
                items.append(item)
        self._items = items

    def rows(self):
        return [i.to_row() for i in self._items]

    def __len__(self):
        with self._store.lock:
            return len(self._items)


class DataStore:
    """Process-wide cache of the six sheets with explicit init / sync / teardown."""

    def __init__(self, remote=None, cache_file=None):
        self.lock = threading.RLock()
        self.remote = remote or AppsScriptClient('')
        self.cache_file = cache_file
        self.students = Collection(self, 'Students', Student)
        self.packets = Collection(self, 'Packets', Packet)
        self.questions = Collection(self, 'Questions', Question)
        self.exams = Collection(self, 'Exams', Exam)
        self.results = Collection(self, 'Results', Result)
        self._settings = SchoolSettings()
        self.last_sync = None
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix='cbt-remote')
        self._sync_stop = threading.Event()
        self._sync_thread = None

    @property
    def collections(self):
        return (self.students, self.packets, self.questions, self.exams, self.results)

    # ── lifecycle ───────────────────────────────────────────────────────
    def init(self):
        """Hydrate from the local mirror, then try one sync with the backend."""
        self.load_local()
        if self.remote.configured:
            self.sync()
        return self

    def sync(self):
        """Replace the cache with the backend's sheets. Returns True on success."""
        if not self.remote.configured:
            return False
        try:
            data = self.remote.fetch_all()
        except RemoteError as e:
            logger.warning('Sync failed, keeping cached data: %s', e)
            return False
        with self.lock:
            self._apply(data)
            self.last_sync = datetime.now()
            self.persist_local()
        logger.info('Synced %s', ', '.join(f'{c.sheet}={len(c._items)}' for c in self.collections))
        return True

    def start_periodic_sync(self, interval):
        if interval <= 0 or not self.remote.configured or self._sync_thread is not None:
            return
        self._sync_stop.clear()

        def _loop():
            while not self._sync_stop.wait(interval):
                self.sync()

        self._sync_thread = threading.Thread(target=_loop, name='cbt-sync', daemon=True)
        self._sync_thread.start()

    def flush(self, timeout=None):
        """Block until every queued backend write has been attempted."""
        self._writer.submit(lambda: None).result(timeout)

    def teardown(self):
        self._sync_stop.set()
        if self._sync_thread is not None:
            self._sync_thread.join(timeout=5)
            self._sync_thread = None
        self._writer.shutdown(wait=True)
        with self.lock:
            self.persist_local()
        self.remote.close()

    # ── local mirror ────────────────────────────────────────────────────
    def load_local(self):
        if not self.cache_file or not os.path.exists(self.cache_file):
            return False
        try:
            with open(self.cache_file, encoding='utf-8') as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning('Ignoring unreadable cache file %s: %s', self.cache_file, e)
            return False
        with self.lock:
            self._apply(data)
        return True

    def persist_local(self):
        """Write the cache to disk atomically. Caller holds the lock."""
        if not self.cache_file:
            return
        data = {c.sheet: c.rows() for c in self.collections}
        data['Settings'] = self._settings.to_rows()
        directory = os.path.dirname(os.path.abspath(self.cache_file))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=directory, prefix='.cbt-cache-')
            with os.fdopen(fd, 'w', encoding='utf-8') as fh:
                json.dump(data, fh, ensure_ascii=False)
            os.replace(tmp, self.cache_file)
        except OSError:
            logger.exception('Could not write cache file %s', self.cache_file)

    def _apply(self, data):
        for collection in self.collections:
            collection.load_rows(data.get(collection.sheet))
        self._settings = SchoolSettings.from_rows(data.get('Settings'))

    # ── backend writes ──────────────────────────────────────────────────
    def push(self, action, sheet, payload, record_id=None):
        if not self.remote.configured:
            return
        self._writer.submit(self._send, action, sheet, payload, record_id)

    def _send(self, action, sheet, payload, record_id):
        try:
            self.remote.send(action, sheet, payload, record_id)
        except RemoteError as e:
            logger.warning('Backend write lost (kept in cache): %s', e)

    # ── settings ────────────────────────────────────────────────────────
    @property
    def settings(self):
        with self.lock:
            return replace(self._settings)

    def save_settings(self, settings):
        with self.lock:
            self._settings = replace(settings)
            self.persist_local()
        for row in settings.to_rows():
            self.push('update', 'Settings', row, row['Key'])

    # ── accessors used by the exam engine ───────────────────────────────
    def list_questions_by_packet(self, packet_id):
        questions = self.questions.filter(lambda q: q.packet_id == packet_id)
        return sorted(questions, key=lambda q: q.number)

    def get_exam(self, exam_id):
        return self.exams.get(exam_id)

    def get_students_all(self):
        return self.students.all()

    def add_result(self, result):
        return self.results.add(result)

    # ── question bank helpers ───────────────────────────────────────────
    def save_question(self, question):
        """Add or replace a question and refresh its packet's counters."""
        with self.lock:
            if question.id and self.questions.get(question.id) is not None:
                fields = {k: v for k, v in vars(question).items() if k != 'id'}
                saved = self.questions.update(question.id, **fields)
            else:
                saved = self.questions.add(question)
            self.refresh_packet_counts(saved.packet_id)
        return saved

    def delete_question(self, question_id):
        with self.lock:
            question = self.questions.get(question_id)
            if question is None:
                return False
            self.questions.delete(question_id)
            self.refresh_packet_counts(question.packet_id)
        return True

    def delete_packet(self, packet_id):
        """Remove a packet together with its questions."""
        with self.lock:
            for question in self.list_questions_by_packet(packet_id):
                self.questions.delete(question.id)
            return self.packets.delete(packet_id)

    def refresh_packet_counts(self, packet_id):
        packet = self.packets.get(packet_id)
        if packet is None:
            return None
        questions = self.list_questions_by_packet(packet_id)
        counts = Counter(q.type.value for q in questions)
        summary = ','.join(f'{t}:{n}' for t, n in sorted(counts.items()))
        if packet.total_questions == len(questions) and packet.question_types == summary:
            return packet
        return self.packets.update(packet_id, total_questions=len(questions), question_types=summary)


# ── Process-wide default store (created on first use) ──────────────────
_default_store = None
_default_lock = threading.Lock()


def get_store():
    """Return the shared store built from config, initialising it once."""
    global _default_store
    with _default_lock:
        if _default_store is None:
            remote = AppsScriptClient(config.APPS_SCRIPT_URL, timeout=config.REMOTE_TIMEOUT)
            _default_store = DataStore(remote=remote, cache_file=config.CACHE_FILE).init()
        return _default_store
