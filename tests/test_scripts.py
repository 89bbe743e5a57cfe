from datetime import datetime

import init_cache
import setup_admin
from auth import check_password
from database.db import DataStore
from engine.schedule import is_eligible


def test_seed_adds_demo_data_once(tmp_path):
    store = DataStore(cache_file=str(tmp_path / 'cache.json'))
    assert init_cache.seed(store) == 7
    assert init_cache.seed(store) == 0
    packet = store.packets.get('p1')
    assert packet.total_questions == 2
    assert packet.question_types == 'PG:2'
    exam = store.get_exam('e1')
    assert is_eligible(exam, store.students.get('3'), datetime.now())
    store.teardown()


def test_setup_admin_stores_a_bcrypt_hash(tmp_path, monkeypatch):
    store = DataStore(cache_file=str(tmp_path / 'cache.json'))
    monkeypatch.setattr(setup_admin, 'get_store', lambda: store)
    setup_admin.setup_admin('s3cret!')
    assert store.settings.adminPassword.startswith('$2')
    assert check_password('s3cret!', store.settings.adminPassword)
