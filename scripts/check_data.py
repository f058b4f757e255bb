#!/usr/bin/env python3
"""
Print the conversation list a profile would see in the portal
"""
import argparse
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "services", "messaging_service"))

from database import SessionLocal
from crud import Actor, count_unread, get_conversation_summaries, get_profile


def check_profile(profile_id: int, query: str = None) -> int:
    db = SessionLocal()
    try:
        profile = get_profile(db, profile_id)
        if profile is None:
            print(f"✗ Profile {profile_id} not found. Run: python scripts/seed_data.py")
            return 1

        actor = Actor.from_profile(profile)
        print(f"{profile.full_name} ({actor.role.value}) - {count_unread(db, actor)} unread")
        print("-" * 60)
        for row in get_conversation_summaries(db, actor, query):
            if row.last_message is None:
                preview = "(no messages yet)"
            else:
                prefix = "You: " if row.last_message.sender_id == actor.id else ""
                stamp = row.last_message.created_at.strftime("%Y-%m-%d %H:%M")
                preview = f"{stamp}  {prefix}{row.last_message.content}"
            badge = f"[{row.unread_count}]" if row.unread_count else "   "
            print(f"{badge:>5} {row.counterpart.full_name:<20} {preview}")
        return 0
    finally:
        db.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("profile_id", type=int, help="Profile to view the conversation list as")
    parser.add_argument("-q", "--query", help="Only show contacts whose name contains this text")
    args = parser.parse_args(argv)
    return check_profile(args.profile_id, args.query)


if __name__ == "__main__":
    sys.exit(main())
