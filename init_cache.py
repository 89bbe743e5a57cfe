"""
Seed the local cache with demo data (two classes, one packet, one open exam).
Run this once on a fresh install to try the portal without a spreadsheet.
Existing records are left alone.
"""

from dataclasses import replace
from datetime import datetime, timedelta

from database.db import get_store
from models import Exam, Packet, Question, QuestionType, Student

DEMO_STUDENTS = [
    Student(id='1', no='1', name='Ahmad Siswa', student_class='9A', nis='1001', nisn='0012345678'),
    Student(id='2', no='2', name='Budi Santoso', student_class='9A', nis='1002', nisn='0012345679'),
    Student(id='3', no='3', name='Citra Dewi', student_class='9B', nis='1003', nisn='0012345680'),
]

DEMO_PACKET = Packet(id='p1', name='Paket IPA 9', category='Literasi')

DEMO_QUESTIONS = [
    Question(
        id='q1', packet_id='p1', number=1,
        stimulus='Perhatikan gambar rantai makanan berikut.',
        text='Organisme yang berperan sebagai produsen adalah...',
        type=QuestionType.SINGLE_CHOICE,
        options=['Rumput', 'Belalang', 'Katak', 'Ular'],
        correct_answer_index=0,
        category='Literasi',
    ),
    Question(
        id='q2', packet_id='p1', number=2,
        stimulus='Sebuah mobil bergerak dengan kecepatan 60 km/jam.',
        text='Berapa jarak yang ditempuh dalam 2 jam?',
        type=QuestionType.SINGLE_CHOICE,
        options=['100 km', '120 km', '140 km', '60 km'],
        correct_answer_index=1,
        category='Numerasi',
    ),
]


def demo_exam(now=None):
    now = (now or datetime.now()).replace(microsecond=0)
    return Exam(
        id='e1',
        title='Ujian Tengah Semester IPA',
        packet_id='p1',
        scheduled_start=now - timedelta(hours=1),
        scheduled_end=now + timedelta(days=1),
        duration_minutes=60,
        class_target=('9A', '9B'),
        is_active=True,
    )


def seed(store, now=None):
    """Add the demo records that are missing. Returns how many were added."""
    added = 0
    for student in DEMO_STUDENTS:
        if store.students.get(student.id) is None:
            store.students.add(replace(student))
            added += 1
    if store.packets.get(DEMO_PACKET.id) is None:
        store.packets.add(replace(DEMO_PACKET))
        added += 1
    for question in DEMO_QUESTIONS:
        if store.questions.get(question.id) is None:
            store.save_question(question.copy())
            added += 1
    if store.get_exam('e1') is None:
        store.exams.add(demo_exam(now))
        added += 1
    return added


if __name__ == '__main__':
    store = get_store()
    count = seed(store)
    store.teardown()
    print(f"Demo data ready ({count} records added) in {store.cache_file}")
    print("Log in as a student of class 9A or 9B to take 'Ujian Tengah Semester IPA'.")
