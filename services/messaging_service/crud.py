from sqlalchemy.orm import Session
from sqlalchemy import or_, and_, case, func
from models import Profile, Message, UserRole
from dataclasses import dataclass
from typing import Optional
import logging

logger = logging.getLogger("messaging.crud")


class MessagingError(Exception):
    pass


class ProfileNotFound(MessagingError):
    pass


class NotACounterpart(MessagingError):
    pass


class EmptyMessage(MessagingError):
    pass


class MessageNotFound(MessagingError):
    pass


@dataclass(frozen=True)
class Actor:
    """The signed-in profile every directory/thread operation runs on behalf of."""

    id: int
    role: UserRole

    @classmethod
    def from_profile(cls, profile: Profile) -> "Actor":
        return cls(id=profile.id, role=UserRole(profile.role))


@dataclass
class ConversationRow:
    counterpart: Profile
    last_message: Optional[Message]
    unread_count: int


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _pair_filter(first_id: int, second_id: int):
    return or_(
        and_(Message.sender_id == first_id, Message.receiver_id == second_id),
        and_(Message.sender_id == second_id, Message.receiver_id == first_id),
    )


# ----------------------------------------------------------------------
# Profiles
# ----------------------------------------------------------------------
def get_profile(db: Session, profile_id: int):
    return db.query(Profile).filter(Profile.id == profile_id).first()


def upsert_profile(db: Session, profile_id: int, email: str, full_name: str, role: UserRole,
                   avatar_url: Optional[str] = None):
    """Create or refresh the local copy of a profile. Returns (profile, created)."""
    profile = get_profile(db, profile_id)
    created = profile is None
    if created:
        profile = Profile(id=profile_id, email=email, full_name=full_name, role=role, avatar_url=avatar_url)
        db.add(profile)
    else:
        if UserRole(profile.role) != UserRole(role):
            logger.warning(
                "Ignoring role change for profile %s (%s -> %s)", profile_id, profile.role.value, UserRole(role).value
            )
        profile.email = email
        profile.full_name = full_name
        profile.avatar_url = avatar_url
    db.commit()
    db.refresh(profile)
    return profile, created


def list_counterparts(db: Session, actor: Actor, query: Optional[str] = None):
    """Role-opposite profiles visible to the actor, ordered by name."""
    q = db.query(Profile).filter(
        Profile.role == actor.role.opposite,
        Profile.id != actor.id,
    )
    if query and query.strip():
        q = q.filter(Profile.full_name.ilike(f"%{_escape_like(query.strip())}%", escape="\\"))
    return q.order_by(Profile.full_name.asc(), Profile.id.asc()).all()


def require_counterpart(db: Session, actor: Actor, counterpart_id: int) -> Profile:
    profile = get_profile(db, counterpart_id)
    if profile is None:
        raise ProfileNotFound(f"Profile {counterpart_id} does not exist")
    if profile.id == actor.id or UserRole(profile.role) != actor.role.opposite:
        raise NotACounterpart(f"Profile {counterpart_id} is not a contact of profile {actor.id}")
    return profile


# ----------------------------------------------------------------------
# Conversation directory
# ----------------------------------------------------------------------
def get_last_messages(db: Session, actor: Actor):
    """Newest message per counterpart in a single windowed query: {counterpart_id: Message}."""
    counterpart_id = case(
        (Message.sender_id == actor.id, Message.receiver_id),
        else_=Message.sender_id,
    )
    ranked = (
        db.query(
            Message.id.label("message_id"),
            counterpart_id.label("counterpart_id"),
            func.row_number().over(
                partition_by=counterpart_id,
                order_by=(Message.created_at.desc(), Message.id.desc()),
            ).label("position"),
        )
        .filter(or_(Message.sender_id == actor.id, Message.receiver_id == actor.id))
        .subquery()
    )
    rows = (
        db.query(ranked.c.counterpart_id, Message)
        .select_from(ranked)
        .join(Message, Message.id == ranked.c.message_id)
        .filter(ranked.c.position == 1)
        .all()
    )
    return {counterpart: message for counterpart, message in rows}


def get_unread_counts(db: Session, actor: Actor):
    """Unread messages received by the actor, grouped by sender: {sender_id: count}."""
    rows = (
        db.query(Message.sender_id, func.count(Message.id))
        .filter(Message.receiver_id == actor.id, Message.read.is_(False))
        .group_by(Message.sender_id)
        .all()
    )
    return {sender_id: count for sender_id, count in rows}


def get_conversation_summaries(db: Session, actor: Actor, query: Optional[str] = None):
    counterparts = list_counterparts(db, actor, query)
    last_messages = get_last_messages(db, actor)
    unread_counts = get_unread_counts(db, actor)

    rows = [
        ConversationRow(
            counterpart=profile,
            last_message=last_messages.get(profile.id),
            unread_count=unread_counts.get(profile.id, 0),
        )
        for profile in counterparts
    ]
    with_messages = [row for row in rows if row.last_message is not None]
    without_messages = [row for row in rows if row.last_message is None]
    with_messages.sort(key=lambda row: (row.last_message.created_at, row.last_message.id), reverse=True)
    # counterparts already come back ordered by name
    return with_messages + without_messages


def count_unread(db: Session, actor: Actor, sender_id: Optional[int] = None) -> int:
    q = db.query(func.count(Message.id)).filter(
        Message.receiver_id == actor.id,
        Message.read.is_(False),
    )
    if sender_id is not None:
        q = q.filter(Message.sender_id == sender_id)
    return q.scalar() or 0


# ----------------------------------------------------------------------
# Message thread
# ----------------------------------------------------------------------
def get_thread(db: Session, actor: Actor, counterpart_id: int, limit: Optional[int] = None,
               before_id: Optional[int] = None):
    pair = _pair_filter(actor.id, counterpart_id)
    query = db.query(Message).filter(pair)

    if before_id is not None:
        anchor = db.query(Message).filter(pair, Message.id == before_id).first()
        if anchor is None:
            raise MessageNotFound(f"Message {before_id} is not part of this conversation")
        query = query.filter(
            or_(
                Message.created_at < anchor.created_at,
                and_(Message.created_at == anchor.created_at, Message.id < anchor.id),
            )
        )

    if limit is None:
        return query.order_by(Message.created_at.asc(), Message.id.asc()).all()

    newest_first = query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit).all()
    return list(reversed(newest_first))


def mark_thread_read(db: Session, actor: Actor, counterpart_id: int) -> int:
    """Flip every unread message from the counterpart to the actor in one UPDATE."""
    updated = (
        db.query(Message)
        .filter(
            Message.sender_id == counterpart_id,
            Message.receiver_id == actor.id,
            Message.read.is_(False),
        )
        .update({Message.read: True}, synchronize_session="fetch")
    )
    db.commit()
    return updated


def create_message(db: Session, actor: Actor, receiver_id: int, content: str):
    text = (content or "").strip()
    if not text:
        raise EmptyMessage("Message content must not be empty")
    require_counterpart(db, actor, receiver_id)

    message = Message(
        sender_id=actor.id,
        receiver_id=receiver_id,
        content=text,
        read=False,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    return message
