import json
import random
from datetime import datetime, timedelta

import pytest

import auth
from app import create_app
from database.db import DataStore
from database.remote import RemoteError
from engine.session import SessionRegistry


class FakeRemote:
    """Stands in for the Apps Script client: serves fixed sheets and records writes."""

    url = 'https://script.example/macros/s/test/exec'

    def __init__(self, data=None):
        self.data = data or {}
        self.sent = []
        self.fail_fetch = False
        self.fail_send = False
        self.closed = False

    @property
    def configured(self):
        return True

    def fetch_all(self):
        if self.fail_fetch:
            raise RemoteError('backend unreachable')
        return json.loads(json.dumps(self.data))

    def send(self, action, sheet, payload, record_id=None):
        if self.fail_send:
            raise RemoteError('write failed')
        self.sent.append((action, sheet, payload, record_id))

    def close(self):
        self.closed = True


def iso(dt):
    return dt.replace(microsecond=0).isoformat()


def sample_sheets(now=None):
    now = now or datetime.now()
    return {
        'Settings': [{'Key': 'schoolName', 'Value': 'SMP Contoh'}],
        'Students': [
            {'id': 's1', 'no': '1', 'name': 'Ahmad Siswa', 'class': '9A', 'nis': '1001', 'nisn': '0012345678'},
            {'id': 's2', 'no': '2', 'name': 'Budi Santoso', 'class': '9A', 'nis': '1002', 'nisn': '0012345679'},
            {'id': 's3', 'no': '3', 'name': 'Citra Dewi', 'class': '9B', 'nis': '1003', 'nisn': '0012345680'},
        ],
        'Packets': [
            {'id': 'p1', 'name': 'Paket Campuran', 'category': 'Literasi', 'totalQuestions': 3,
             'questionTypes': 'BS:1,PG:1,PGK:1'},
            {'id': 'p2', 'name': 'Paket Numerasi', 'category': 'Numerasi', 'totalQuestions': 0,
             'questionTypes': ''},
        ],
        'Questions': [
            {'id': 'q1', 'packetId': 'p1', 'number': 1, 'type': 'PG', 'category': 'Literasi',
             'stimulus': 'Perhatikan rantai makanan berikut.',
             'text': 'Organisme yang berperan sebagai produsen adalah...',
             'options': json.dumps(['Rumput', 'Belalang', 'Katak', 'Ular']), 'correctAnswerIndex': 0},
            {'id': 'q2', 'packetId': 'p1', 'number': 2, 'type': 'PGK', 'category': 'Numerasi',
             'text': 'Pilih semua bilangan prima.',
             'options': json.dumps(['2', '4', '5', '9']), 'correctAnswerIndices': json.dumps([0, 2])},
            {'id': 'q3', 'packetId': 'p1', 'number': 3, 'type': 'BS', 'category': 'Literasi',
             'text': 'Tentukan benar atau salah.',
             'options': json.dumps(['Benar', 'Salah']),
             'matchingPairs': json.dumps([
                 {'left': 'Matahari terbit di timur', 'right': 'a'},
                 {'left': 'Air membeku pada 50 derajat', 'right': 'b'},
                 {'left': 'Bumi mengelilingi matahari', 'right': 'a'},
             ])},
        ],
        'Exams': [
            {'id': 'e1', 'title': 'Ujian Tengah Semester', 'packetId': 'p1',
             'scheduledStart': iso(now - timedelta(hours=1)), 'scheduledEnd': iso(now + timedelta(days=1)),
             'durationMinutes': 60, 'classTarget': '9A,9B', 'questions': '[]', 'isActive': True},
            {'id': 'e2', 'title': 'Ujian Kelas 9A', 'packetId': 'p1',
             'scheduledStart': iso(now - timedelta(hours=1)), 'scheduledEnd': iso(now + timedelta(hours=2)),
             'durationMinutes': 1, 'classTarget': '["9A"]', 'questions': '[]', 'isActive': 'TRUE'},
            {'id': 'e3', 'title': 'Ujian Paket Kosong', 'packetId': 'p2',
             'scheduledStart': iso(now - timedelta(hours=1)), 'scheduledEnd': iso(now + timedelta(hours=2)),
             'durationMinutes': 30, 'classTarget': '9A', 'questions': '[]', 'isActive': True},
        ],
        'Results': [],
    }


@pytest.fixture
def remote():
    return FakeRemote(sample_sheets())


@pytest.fixture
def store(remote, tmp_path):
    store = DataStore(remote=remote, cache_file=str(tmp_path / 'cache.json')).init()
    yield store
    store.teardown()


@pytest.fixture
def registry(store):
    seeds = iter(range(1000))
    registry = SessionRegistry(store, violation_threshold=3, grace_seconds=600,
                               rng_factory=lambda: random.Random(next(seeds)))
    yield registry
    registry.stop_ticker()


@pytest.fixture
def student(store):
    return store.students.get('s1')


@pytest.fixture
def app(store, registry):
    auth._login_attempts.clear()
    app = create_app({'TESTING': True, 'SESSION_TYPE': None, 'SECRET_KEY': 'test-secret'},
                     store=store, registry=registry)
    return app


@pytest.fixture
def client(app):
    return app.test_client()


CSRF = 'test-csrf-token'


def login(client, role, **extra):
    with client.session_transaction() as sess:
        sess['csrf_token'] = CSRF
        sess['role'] = role
        sess['user_name'] = extra.pop('user_name', role)
        sess.update(extra)


def post_json(client, url, payload=None, csrf=CSRF):
    headers = {'X-CSRF-Token': csrf} if csrf else {}
    return client.post(url, json=payload or {}, headers=headers)


def answer_key(question):
    """The correct answer to a session question in its displayed option order."""
    if question.type.value == 'PG':
        return question.correct_answer_index
    if question.type.value == 'PGK':
        return sorted(question.correct_answer_indices)
    return [row.correct_column for row in question.matching_pairs]
