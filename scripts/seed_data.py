#!/usr/bin/env python3
"""
Seed the messaging database with a teacher, a few students and some conversations
"""
import os
import sys
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "services", "messaging_service"))

from database import SessionLocal, init_db
from crud import upsert_profile
from models import Message, UserRole

PROFILES = [
    {"id": 1, "email": "docent@gitaarles.nl", "full_name": "Tessa Docent", "role": UserRole.TEACHER},
    {"id": 2, "email": "theo@gitaarles.nl", "full_name": "Theo Docent", "role": UserRole.TEACHER},
    {"id": 11, "email": "sam@gitaarles.nl", "full_name": "Sam Leerling", "role": UserRole.STUDENT},
    {"id": 12, "email": "sara@gitaarles.nl", "full_name": "Sara Leerling", "role": UserRole.STUDENT},
    {"id": 13, "email": "bram@gitaarles.nl", "full_name": "Bram Leerling", "role": UserRole.STUDENT},
]

# (sender, receiver, content, minutes ago, read)
MESSAGES = [
    (11, 1, "Hoi! Ik kom de F-akkoord niet goed uit.", 180, True),
    (1, 11, "Probeer eerst de kleine F met drie snaren.", 170, True),
    (11, 1, "Dat lukt al beter, dank je!", 65, False),
    (11, 1, "Zie ik je dinsdag om vier uur?", 60, False),
    (1, 12, "Vergeet je huiswerk niet: toonladder in G.", 30, False),
]


def seed():
    init_db()
    db = SessionLocal()
    try:
        for profile in PROFILES:
            upsert_profile(db, profile["id"], profile["email"], profile["full_name"], profile["role"])
        print(f"✓ {len(PROFILES)} profiles ready")

        if db.query(Message).count():
            print("• Messages already present, skipping")
            return

        now = datetime.now(timezone.utc)
        for sender_id, receiver_id, content, minutes_ago, read in MESSAGES:
            db.add(Message(
                sender_id=sender_id,
                receiver_id=receiver_id,
                content=content,
                read=read,
                created_at=now - timedelta(minutes=minutes_ago),
            ))
        db.commit()
        print(f"✓ {len(MESSAGES)} messages seeded")
    finally:
        db.close()


if __name__ == "__main__":
    seed()
