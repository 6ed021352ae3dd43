"""Creating and counting user notifications."""

import logging
import re

from database import create_document
from schemas import Notification

logger = logging.getLogger(__name__)

MENTION_RE = re.compile(r"(?<![\w@])@([A-Za-z0-9_]{3,30})")


def notify(db, recipient_id, type_: str, title: str, message: str, actor_id=None, **data):
    """Store a notification for ``recipient_id``.

    Users are never notified about their own actions; returns the new id, or
    None when nothing was stored.
    """
    if recipient_id is None or (actor_id is not None and recipient_id == actor_id):
        return None
    payload = {k: v for k, v in data.items() if v is not None}
    if actor_id is not None:
        payload["user_id"] = actor_id
    note = Notification(
        recipient_id=recipient_id,
        type=type_,
        title=title[:200],
        message=message[:500],
        data=payload,
    )
    return create_document("notification", note, database=db)


def extract_mentions(text: str) -> list:
    names = []
    for name in MENTION_RE.findall(text or ""):
        if name.lower() not in [n.lower() for n in names]:
            names.append(name)
    return names


def notify_mentions(db, text: str, actor: dict, exclude=(), **data) -> list:
    """Notify every existing user mentioned as ``@username`` in ``text``."""
    names = extract_mentions(text)
    if not names:
        return []
    sent = []
    # usernames are unique case-sensitively, but @Alice still reaches alice
    patterns = [{"username": {"$regex": f"^{re.escape(n)}$", "$options": "i"}} for n in names]
    for user in db["user"].find({"$or": patterns}, {"_id": 1}):
        if user["_id"] in exclude:
            continue
        note_id = notify(
            db,
            user["_id"],
            "mention",
            f"{actor['username']} mentioned you",
            text[:500],
            actor_id=actor["_id"],
            **data,
        )
        if note_id:
            sent.append(note_id)
    if sent:
        logger.debug("Sent %d mention notifications", len(sent))
    return sent


def unread_count(db, user_id) -> int:
    return db["notification"].count_documents({"recipient_id": user_id, "is_read": False})
