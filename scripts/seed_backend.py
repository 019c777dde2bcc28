#!/usr/bin/env python3
import argparse
from pathlib import Path
import sys
import uuid

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / 'backend'))

from app.core.security import ROLE_STUDENT, ROLE_TUTOR, create_access_token  # noqa: E402
from app.db.session import SessionLocal  # noqa: E402
from app.models.catalog import Assessment, Enrollment  # noqa: E402


DEMO_COURSE_ID = uuid.UUID('11111111-1111-1111-1111-111111111111')
DEMO_TUTOR_ID = uuid.UUID('22222222-2222-2222-2222-222222222222')
DEMO_LEARNER_ID = uuid.UUID('33333333-3333-3333-3333-333333333333')


def demo_sections() -> list[dict]:
    return [
        {
            'id': 'basics',
            'title': 'Basics',
            'questions': [
                {
                    'id': 'q1',
                    'type': 'mcq',
                    'prompt': 'Which clock decides when an attempt expires?',
                    'options': [
                        {'text': 'The browser clock', 'is_correct': False},
                        {'text': 'The server clock', 'is_correct': True},
                    ],
                    'positive_marks': 5,
                    'negative_marks': 1,
                },
                {'id': 's1', 'type': 'subjective', 'prompt': 'Explain why submit must be idempotent.', 'marks': 10},
            ],
        },
        {
            'id': 'practical',
            'title': 'Practical',
            'questions': [
                {'id': 'f1', 'type': 'file_upload', 'prompt': 'Upload your design notes.', 'marks': 5, 'file_type': 'pdf'},
            ],
        },
    ]


def main() -> int:
    parser = argparse.ArgumentParser(description='Seed a demo exam and quiz with one enrolled learner.')
    parser.add_argument('--print-tokens', action='store_true', help='Print bearer tokens for the demo users.')
    args = parser.parse_args()

    db = SessionLocal()
    try:
        exam = Assessment(
            kind='exam',
            course_id=DEMO_COURSE_ID,
            owner_id=DEMO_TUTOR_ID,
            title='Demo exam',
            sections=demo_sections(),
            duration_minutes=30,
            is_published=True,
            passing_percentage=50,
            negative_marking=True,
        )
        quiz = Assessment(
            kind='quiz',
            course_id=DEMO_COURSE_ID,
            owner_id=DEMO_TUTOR_ID,
            title='Demo quiz',
            sections=demo_sections()[:1],
            is_published=True,
            max_attempts=3,
        )
        db.add_all([exam, quiz])
        if not db.query(Enrollment).filter_by(course_id=DEMO_COURSE_ID, user_id=DEMO_LEARNER_ID).first():
            db.add(Enrollment(course_id=DEMO_COURSE_ID, user_id=DEMO_LEARNER_ID, is_enrolled=True))
        db.commit()
        print(f'Seeded exam {exam.id} and quiz {quiz.id}.')
    finally:
        db.close()

    if args.print_tokens:
        print(f'learner: {create_access_token(str(DEMO_LEARNER_ID), roles=[ROLE_STUDENT])}')
        print(f'tutor:   {create_access_token(str(DEMO_TUTOR_ID), roles=[ROLE_TUTOR])}')
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
