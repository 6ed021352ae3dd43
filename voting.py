"""
Votes, answer acceptance and tag bookkeeping

Every state change here is a single-document conditional update: the filter
asserts the state the change was computed from, so concurrent requests
either apply cleanly or retry against fresh state. Nothing does a
read-modify-write of a whole document.
"""

import logging
from collections import namedtuple
from datetime import datetime, timezone

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import utcnow
from schemas import Tag

logger = logging.getLogger(__name__)

# Reputation earned per vote, by post kind and vote direction
REPUTATION_WEIGHTS = {
    "question": {1: 5, -1: -2},
    "answer": {1: 10, -1: -2},
    "comment": {1: 0, -1: 0},
}
ACCEPT_REPUTATION = 15
MAX_ATTEMPTS = 5

VoteResult = namedtuple("VoteResult", "document previous current delta")
AcceptResult = namedtuple("AcceptResult", "question accepted previous_answer_id bounty_awarded")


class VoteConflict(Exception):
    """Raised when a document keeps changing underneath a vote or accept."""


class TagPermissionError(Exception):
    def __init__(self, name: str):
        super().__init__(f"Tag '{name}' can only be used by moderators")
        self.name = name


def as_utc(value):
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Votes
# ---------------------------------------------------------------------------

def current_vote(doc: dict, user_id) -> int:
    if user_id is None:
        return 0
    if user_id in doc.get("upvoters", []):
        return 1
    if user_id in doc.get("downvoters", []):
        return -1
    return 0


def _state_filter(user_id, vote: int) -> dict:
    if vote == 1:
        return {"upvoters": user_id}
    if vote == -1:
        return {"downvoters": user_id}
    return {"upvoters": {"$nin": [user_id]}, "downvoters": {"$nin": [user_id]}}


def _transition(user_id, previous: int, target: int) -> dict:
    update = {"$inc": {"score": target - previous}}
    if previous:
        update["$pull"] = {"upvoters" if previous == 1 else "downvoters": user_id}
    if target:
        update["$addToSet"] = {"upvoters" if target == 1 else "downvoters": user_id}
    return update


def cast_vote(collection, doc_id, user_id, value: int):
    """Apply a vote of 1, -1 or 0 by ``user_id`` to a post.

    Repeating the vote a user already holds clears it; 0 always clears.
    Returns a VoteResult, or None when the post does not exist.
    """
    for attempt in range(MAX_ATTEMPTS):
        doc = collection.find_one({"_id": doc_id}, {"upvoters": 1, "downvoters": 1})
        if doc is None:
            return None
        previous = current_vote(doc, user_id)
        target = 0 if value == previous else value
        if target == previous:
            return VoteResult(collection.find_one({"_id": doc_id}), previous, previous, 0)
        query = {"_id": doc_id}
        query.update(_state_filter(user_id, previous))
        updated = collection.find_one_and_update(
            query, _transition(user_id, previous, target), return_document=ReturnDocument.AFTER
        )
        if updated is not None:
            return VoteResult(updated, previous, target, target - previous)
        logger.debug("Vote on %s changed concurrently, retrying (attempt %d)", doc_id, attempt + 1)
    raise VoteConflict(f"Could not apply vote to {doc_id}")


def vote_reputation(kind: str, previous: int, current: int) -> int:
    weights = REPUTATION_WEIGHTS[kind]
    return weights.get(current, 0) - weights.get(previous, 0)


def adjust_reputation(users, user_id, delta: int) -> None:
    if user_id is None or not delta:
        return
    users.update_one({"_id": user_id}, {"$inc": {"reputation": delta}})


# ---------------------------------------------------------------------------
# Answer acceptance
# ---------------------------------------------------------------------------

def _award_bounty(db, question: dict, answer: dict) -> int:
    bounty = question.get("bounty") or {}
    amount = int(bounty.get("amount") or 0)
    if amount <= 0 or bounty.get("awarded_to") is not None:
        return 0
    expires_at = as_utc(bounty.get("expires_at"))
    if expires_at is not None and expires_at <= utcnow():
        return 0
    claimed = db["question"].find_one_and_update(
        {"_id": question["_id"], "bounty.amount": {"$gt": 0}, "bounty.awarded_to": None},
        {"$set": {"bounty.awarded_to": answer["author_id"], "bounty.awarded_at": utcnow()}},
    )
    if claimed is None:
        return 0
    adjust_reputation(db["user"], answer["author_id"], amount)
    logger.info("Bounty of %d awarded on question %s to user %s", amount, question["_id"], answer["author_id"])
    return amount


def accept_answer(db, question: dict, answer: dict) -> AcceptResult:
    """Toggle acceptance of ``answer`` on ``question``.

    The accepted answer is stored only on the question, so a question can
    never have more than one. Accepting the accepted answer un-accepts it.
    """
    asker = question["author_id"]
    for attempt in range(MAX_ATTEMPTS):
        previous_id = question.get("accepted_answer_id")
        accepting = previous_id != answer["_id"]
        new_id = answer["_id"] if accepting else None
        updated = db["question"].find_one_and_update(
            {"_id": question["_id"], "accepted_answer_id": previous_id},
            {"$set": {"accepted_answer_id": new_id, "is_answered": accepting, "last_activity_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is not None:
            break
        logger.debug("Acceptance on %s changed concurrently, retrying (attempt %d)", question["_id"], attempt + 1)
        question = db["question"].find_one({"_id": question["_id"]})
        if question is None:
            raise VoteConflict("Question disappeared while accepting an answer")
    else:
        raise VoteConflict(f"Could not accept answer on {question['_id']}")

    users = db["user"]
    if previous_id is not None:
        previous_answer = answer if previous_id == answer["_id"] else db["answer"].find_one({"_id": previous_id})
        if previous_answer is not None and previous_answer["author_id"] != asker:
            adjust_reputation(users, previous_answer["author_id"], -ACCEPT_REPUTATION)
    bounty_awarded = 0
    if accepting and answer["author_id"] != asker:
        adjust_reputation(users, answer["author_id"], ACCEPT_REPUTATION)
        bounty_awarded = _award_bounty(db, updated, answer)
        if bounty_awarded:
            updated = db["question"].find_one({"_id": question["_id"]})
    return AcceptResult(updated, accepting, previous_id, bounty_awarded)


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------

def resolve_tag(tags, name: str):
    """Find a tag by name, falling back to its synonyms."""
    doc = tags.find_one({"name": name})
    if doc is None:
        doc = tags.find_one({"synonyms": name})
    return doc


def find_or_create_tag(tags, name: str, created_by=None, is_moderator: bool = False) -> dict:
    """Increment the usage of tag ``name``, creating it if it is unknown."""
    existing = resolve_tag(tags, name)
    if existing is not None:
        if existing.get("is_moderator_only") and not is_moderator:
            raise TagPermissionError(existing["name"])
        return tags.find_one_and_update(
            {"_id": existing["_id"]}, {"$inc": {"usage_count": 1}}, return_document=ReturnDocument.AFTER
        )
    doc = Tag(name=name, description=f"Tag for {name}", created_by=created_by).model_dump()
    doc.pop("name")
    doc.pop("usage_count")
    now = utcnow()
    doc["created_at"] = now
    doc["updated_at"] = now
    try:
        return tags.find_one_and_update(
            {"name": name},
            {"$setOnInsert": doc, "$inc": {"usage_count": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        # lost the insert race; the tag exists now
        return tags.find_one_and_update(
            {"name": name}, {"$inc": {"usage_count": 1}}, return_document=ReturnDocument.AFTER
        )


def attach_tags(tags, names, created_by=None, is_moderator: bool = False) -> list:
    """Resolve tag names to tag documents, bumping each distinct tag once."""
    canonical = []
    for name in names:
        existing = resolve_tag(tags, name)
        if existing is not None and existing.get("is_moderator_only") and not is_moderator:
            raise TagPermissionError(existing["name"])
        key = existing["name"] if existing is not None else name
        if key not in canonical:
            canonical.append(key)
    return [find_or_create_tag(tags, key, created_by, is_moderator) for key in canonical]


def release_tags(tags, tag_ids) -> None:
    if not tag_ids:
        return
    tags.update_many(
        {"_id": {"$in": list(tag_ids)}, "usage_count": {"$gt": 0}},
        {"$inc": {"usage_count": -1}},
    )
