import logging
import os
import re
from datetime import timedelta
from typing import Optional, List

from fastapi import FastAPI, Depends, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from bson import ObjectId
from bson.errors import InvalidId

from database import db, create_document, ensure_indexes, utcnow
from notifications import notify, notify_mentions, unread_count
from schemas import (
    Answer,
    AnswerIn,
    BanRequest,
    BountyIn,
    CloseRequest,
    Comment,
    CommentIn,
    CommentUpdate,
    EditRecord,
    LoginRequest,
    PasswordChange,
    ProfileUpdate,
    Question,
    QuestionIn,
    QuestionUpdate,
    RegisterRequest,
    RoleUpdate,
    Tag,
    TagIn,
    TagUpdate,
    User,
    VoteIn,
    normalize_tag_name,
)
from security import create_access_token, decode_access_token, hash_password, verify_password
from seed import seed_database
from voting import (
    TagPermissionError,
    VoteConflict,
    accept_answer,
    adjust_reputation,
    as_utc,
    attach_tags,
    cast_vote,
    current_vote,
    release_tags,
    resolve_tag,
    vote_reputation,
    ACCEPT_REPUTATION,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("stackit")

# App setup
app = FastAPI(title="StackIt Q&A API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Security
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login", auto_error=False)
MODERATORS = ("moderator", "admin")
MAX_PAGE_SIZE = 50
BOUNTY_DURATION = timedelta(days=7)


# Pydantic models
class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


# Error handling
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    msg = str(first.get("msg", "Invalid request"))
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    detail = f"{loc}: {msg}" if loc else msg
    return JSONResponse(status_code=400, content={"detail": detail, "errors": jsonable_encoder(errors)})


@app.exception_handler(InvalidId)
async def invalid_id_handler(request: Request, exc: InvalidId):
    return JSONResponse(status_code=400, content={"detail": "Invalid id"})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=400, content={"detail": "Duplicate value"})


@app.exception_handler(TagPermissionError)
async def tag_permission_handler(request: Request, exc: TagPermissionError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(VoteConflict)
async def vote_conflict_handler(request: Request, exc: VoteConflict):
    logger.warning("Conflicting update on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=409, content={"detail": "The post changed while updating, please retry"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Server error"})


@app.on_event("startup")
def startup_event():
    try:
        ensure_indexes(db)
    except Exception as e:
        logger.warning("Could not ensure indexes: %s", str(e)[:200])


# Dependency: get current user
def _user_from_token(token: Optional[str]) -> dict:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = decode_access_token(token)
        user_id = payload.get("sub")
        if user_id is None:
            raise credentials_exception
        user_oid = ObjectId(user_id)
    except (JWTError, InvalidId):
        raise credentials_exception

    user = db["user"].find_one({"_id": user_oid})
    if not user:
        raise credentials_exception
    user["id"] = str(user["_id"])
    return user


def get_current_user(token: Optional[str] = Depends(oauth2_scheme)):
    user = _user_from_token(token)
    if user.get("role") == "banned":
        raise HTTPException(status_code=403, detail="Account banned")
    return user


def get_optional_user(token: Optional[str] = Depends(oauth2_scheme)):
    if not token:
        return None
    try:
        user = _user_from_token(token)
    except HTTPException:
        return None
    if user.get("role") == "banned":
        return None
    return user


# Role guard
def require_role(*roles):
    def _guard(user=Depends(get_current_user)):
        if user.get("role") not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user
    return _guard


# Utilities

def is_moderator(user: Optional[dict]) -> bool:
    return bool(user) and user.get("role") in MODERATORS


def ensure_owner_or_moderator(user: dict, doc: dict):
    if doc.get("author_id") != user["_id"] and not is_moderator(user):
        raise HTTPException(403, "Forbidden")


def get_or_404(collection: str, doc_id: str, label: str) -> dict:
    doc = db[collection].find_one({"_id": ObjectId(doc_id)})
    if not doc:
        raise HTTPException(404, f"{label} not found")
    return doc


def pagination(page: int, limit: int, total: int) -> dict:
    return {"page": page, "limit": limit, "total": total, "total_pages": (total + limit - 1) // limit}


def _id_str(value):
    return str(value) if isinstance(value, ObjectId) else value


def serialize_user(doc, private: bool = False) -> dict:
    out = {
        "id": str(doc["_id"]),
        "username": doc.get("username"),
        "role": doc.get("role", "user"),
        "reputation": int(doc.get("reputation", 0)),
        "bio": doc.get("bio", ""),
        "avatar": doc.get("avatar"),
        "created_at": doc.get("created_at"),
    }
    if private:
        out["email"] = doc.get("email")
        out["last_seen"] = doc.get("last_seen")
    return out


def author_summary(doc) -> dict:
    return {
        "id": str(doc["_id"]),
        "username": doc.get("username"),
        "reputation": int(doc.get("reputation", 0)),
        "avatar": doc.get("avatar"),
    }


def load_authors(ids) -> dict:
    ids = list({i for i in ids if i is not None})
    if not ids:
        return {}
    users = db["user"].find({"_id": {"$in": ids}}, {"username": 1, "reputation": 1, "avatar": 1})
    return {u["_id"]: author_summary(u) for u in users}


def load_tags(ids) -> dict:
    ids = list({i for i in ids if i is not None})
    if not ids:
        return {}
    return {t["_id"]: {"id": str(t["_id"]), "name": t["name"], "color": t.get("color")} for t in db["tag"].find({"_id": {"$in": ids}})}


def serialize_edits(doc) -> list:
    return [
        {
            "title": e.get("title"),
            "content": e.get("content"),
            "edited_at": e.get("edited_at"),
            "edited_by": _id_str(e.get("edited_by")),
        }
        for e in doc.get("edit_history", [])
    ]


def serialize_question(doc, authors: dict, tags: dict, viewer_id=None) -> dict:
    bounty = doc.get("bounty")
    return {
        "id": str(doc["_id"]),
        "title": doc.get("title"),
        "content": doc.get("content"),
        "author": authors.get(doc.get("author_id")),
        "tags": [tags[t] for t in doc.get("tag_ids", []) if t in tags],
        "votes": int(doc.get("score", 0)),
        "upvotes": len(doc.get("upvoters", [])),
        "downvotes": len(doc.get("downvoters", [])),
        "user_vote": current_vote(doc, viewer_id),
        "views": int(doc.get("views", 0)),
        "answer_count": int(doc.get("answer_count", 0)),
        "is_answered": bool(doc.get("is_answered", False)),
        "accepted_answer_id": _id_str(doc.get("accepted_answer_id")),
        "status": doc.get("status", "open"),
        "closed_reason": doc.get("closed_reason"),
        "duplicate_of": _id_str(doc.get("duplicate_of")),
        "bounty": {
            "amount": bounty.get("amount", 0),
            "expires_at": bounty.get("expires_at"),
            "awarded_to": _id_str(bounty.get("awarded_to")),
        } if bounty else None,
        "is_edited": bool(doc.get("is_edited", False)),
        "created_at": doc.get("created_at"),
        "updated_at": doc.get("updated_at"),
        "last_activity_at": doc.get("last_activity_at"),
    }


def serialize_answer(doc, authors: dict, accepted_id=None, viewer_id=None) -> dict:
    return {
        "id": str(doc["_id"]),
        "question_id": str(doc["question_id"]),
        "content": doc.get("content"),
        "author": authors.get(doc.get("author_id")),
        "votes": int(doc.get("score", 0)),
        "user_vote": current_vote(doc, viewer_id),
        "is_accepted": accepted_id is not None and doc["_id"] == accepted_id,
        "is_edited": bool(doc.get("is_edited", False)),
        "created_at": doc.get("created_at"),
        "updated_at": doc.get("updated_at"),
    }


def serialize_comment(doc, authors: dict, viewer_id=None) -> dict:
    return {
        "id": str(doc["_id"]),
        "content": doc.get("content"),
        "author": authors.get(doc.get("author_id")),
        "question_id": _id_str(doc.get("question_id")),
        "answer_id": _id_str(doc.get("answer_id")),
        "votes": int(doc.get("score", 0)),
        "user_vote": current_vote(doc, viewer_id),
        "is_edited": bool(doc.get("is_edited", False)),
        "created_at": doc.get("created_at"),
        "updated_at": doc.get("updated_at"),
    }


def serialize_tag(doc) -> dict:
    return {
        "id": str(doc["_id"]),
        "name": doc.get("name"),
        "description": doc.get("description", ""),
        "color": doc.get("color"),
        "usage_count": int(doc.get("usage_count", 0)),
        "is_moderator_only": bool(doc.get("is_moderator_only", False)),
        "synonyms": doc.get("synonyms", []),
    }


def serialize_notification(doc) -> dict:
    data = {k: _id_str(v) for k, v in (doc.get("data") or {}).items()}
    return {
        "id": str(doc["_id"]),
        "type": doc.get("type"),
        "title": doc.get("title"),
        "message": doc.get("message"),
        "is_read": bool(doc.get("is_read", False)),
        "data": data,
        "created_at": doc.get("created_at"),
        "expires_at": doc.get("expires_at"),
    }


def sort_answers(answers: list, accepted_id) -> list:
    # accepted first, then highest score, then oldest
    answers = sorted(answers, key=lambda a: as_utc(a.get("created_at")) or utcnow())
    return sorted(answers, key=lambda a: (a["_id"] != accepted_id, -int(a.get("score", 0))))


def viewer_id_of(user: Optional[dict]):
    return user["_id"] if user else None


def issue_token(user: dict) -> TokenResponse:
    access_token = create_access_token({"sub": str(user["_id"]), "role": user.get("role", "user")})
    return TokenResponse(access_token=access_token, user=serialize_user(user, private=True))


# Routes
@app.get("/")
def root():
    return {"message": "StackIt Q&A API"}


@app.get("/api/health")
def health():
    return {"status": "ok", "timestamp": utcnow().isoformat()}


@app.get("/test")
def test_database():
    try:
        collections = db.list_collection_names()
        return {"backend": "ok", "database": "ok", "collections": collections}
    except Exception as e:
        return {"backend": "ok", "database": f"error: {str(e)[:80]}"}


@app.post("/seed")
def seed():
    if os.getenv("SEED_ENABLED") != "1":
        raise HTTPException(404, "Not found")
    return seed_database(db)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

@app.post("/api/auth/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterRequest):
    email = str(payload.email).lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(400, detail="Email already registered")
    if db["user"].find_one({"username": payload.username}):
        raise HTTPException(400, detail="Username already taken")
    user = User(username=payload.username, email=email, password_hash=hash_password(payload.password))
    user_id = create_document("user", user, database=db)
    doc = db["user"].find_one({"_id": ObjectId(user_id)})
    logger.info("Registered user %s", user_id)
    return issue_token(doc)


@app.post("/api/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest):
    user = db["user"].find_one({"email": str(payload.email).lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Invalid email or password")
    if user.get("role") == "banned":
        raise HTTPException(status_code=403, detail="Account banned")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_seen": utcnow()}})
    logger.info("User %s logged in", user["_id"])
    return issue_token(user)


@app.get("/api/auth/me")
def me(user=Depends(get_current_user)):
    return serialize_user(user, private=True)


@app.put("/api/auth/password")
def change_password(payload: PasswordChange, user=Depends(get_current_user)):
    if not verify_password(payload.current_password, user.get("password_hash", "")):
        raise HTTPException(400, "Current password is incorrect")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(payload.new_password), "updated_at": utcnow()}},
    )
    return {"updated": True}


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------

QUESTION_SORTS = {
    "newest": [("created_at", -1)],
    "oldest": [("created_at", 1)],
    "votes": [("score", -1), ("created_at", -1)],
    "views": [("views", -1), ("created_at", -1)],
    "active": [("last_activity_at", -1)],
    "unanswered": [("created_at", -1)],
}


def tag_ids_for(names: List[str]) -> list:
    ids = []
    for name in names:
        tag = resolve_tag(db["tag"], normalize_tag_name(name))
        if tag is not None and tag["_id"] not in ids:
            ids.append(tag["_id"])
    return ids


def split_tag_names(tags: str) -> List[str]:
    return [t.strip() for t in (tags or "").split(",") if t.strip()]


def build_question_query(search: str = "", tags: str = "", author: Optional[str] = None, status_filter: Optional[str] = None, sort: str = "newest") -> dict:
    query = {}
    if search:
        pattern = re.escape(search.strip())
        query["$or"] = [
            {"title": {"$regex": pattern, "$options": "i"}},
            {"content": {"$regex": pattern, "$options": "i"}},
        ]
    names = split_tag_names(tags)
    if names:
        query["tag_ids"] = {"$in": tag_ids_for(names)}
    if author:
        query["author_id"] = ObjectId(author)
    if status_filter:
        query["status"] = status_filter
    if sort == "unanswered":
        query["answer_count"] = 0
    return query


def list_questions(query: dict, sort: str, page: int, limit: int, viewer=None) -> dict:
    sort_spec = QUESTION_SORTS.get(sort, QUESTION_SORTS["newest"])
    total = db["question"].count_documents(query)
    docs = list(db["question"].find(query).sort(sort_spec).skip((page - 1) * limit).limit(limit))
    authors = load_authors(d.get("author_id") for d in docs)
    tags = load_tags(t for d in docs for t in d.get("tag_ids", []))
    viewer_id = viewer_id_of(viewer)
    return {
        "questions": [serialize_question(d, authors, tags, viewer_id) for d in docs],
        "pagination": pagination(page, limit, total),
    }


@app.get("/api/questions")
def get_questions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    sort: str = "newest",
    tags: str = "",
    search: str = "",
    author: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    viewer=Depends(get_optional_user),
):
    query = build_question_query(search, tags, author, status_filter, sort)
    return list_questions(query, sort, page, limit, viewer)


@app.get("/api/questions/{question_id}")
def get_question(question_id: str, viewer=Depends(get_optional_user)):
    question = db["question"].find_one_and_update(
        {"_id": ObjectId(question_id)}, {"$inc": {"views": 1}}, return_document=ReturnDocument.AFTER
    )
    if not question:
        raise HTTPException(404, "Question not found")
    accepted_id = question.get("accepted_answer_id")
    answers = sort_answers(list(db["answer"].find({"question_id": question["_id"]})), accepted_id)
    answer_ids = [a["_id"] for a in answers]
    comments = list(
        db["comment"].find({"$or": [{"question_id": question["_id"]}, {"answer_id": {"$in": answer_ids}}]}).sort("created_at", 1)
    )
    authors = load_authors(
        [question.get("author_id")] + [a.get("author_id") for a in answers] + [c.get("author_id") for c in comments]
    )
    tags = load_tags(question.get("tag_ids", []))
    viewer_id = viewer_id_of(viewer)

    out = serialize_question(question, authors, tags, viewer_id)
    out["edit_history"] = serialize_edits(question)
    out["comments"] = [serialize_comment(c, authors, viewer_id) for c in comments if c.get("question_id") == question["_id"]]
    out["answers"] = []
    for a in answers:
        item = serialize_answer(a, authors, accepted_id, viewer_id)
        item["comments"] = [serialize_comment(c, authors, viewer_id) for c in comments if c.get("answer_id") == a["_id"]]
        out["answers"].append(item)
    return out


@app.post("/api/questions", status_code=201)
def create_question(payload: QuestionIn, user=Depends(get_current_user)):
    tags = attach_tags(db["tag"], payload.tags, created_by=user["_id"], is_moderator=is_moderator(user))
    question = Question(
        title=payload.title,
        content=payload.content,
        author_id=user["_id"],
        tag_ids=[t["_id"] for t in tags],
    )
    question_id = create_document("question", question, database=db)
    doc = db["question"].find_one({"_id": ObjectId(question_id)})
    return serialize_question(doc, load_authors([user["_id"]]), load_tags(doc["tag_ids"]), user["_id"])


@app.put("/api/questions/{question_id}")
def update_question(question_id: str, payload: QuestionUpdate, user=Depends(get_current_user)):
    question = get_or_404("question", question_id, "Question")
    ensure_owner_or_moderator(user, question)
    now = utcnow()
    fields = {"updated_at": now, "last_activity_at": now}
    if payload.title is not None:
        fields["title"] = payload.title
    if payload.content is not None:
        fields["content"] = payload.content
    if payload.tags is not None:
        tags = attach_tags(db["tag"], payload.tags, created_by=user["_id"], is_moderator=is_moderator(user))
        release_tags(db["tag"], question.get("tag_ids", []))
        fields["tag_ids"] = [t["_id"] for t in tags]
    update = {"$set": fields}
    if payload.title is not None or payload.content is not None:
        fields["is_edited"] = True
        record = EditRecord(title=question.get("title"), content=question.get("content"), edited_by=user["_id"])
        update["$push"] = {"edit_history": record.model_dump()}
    doc = db["question"].find_one_and_update({"_id": question["_id"]}, update, return_document=ReturnDocument.AFTER)
    if question["author_id"] != user["_id"]:
        logger.info("Moderator %s edited question %s", user["_id"], question["_id"])
    return serialize_question(doc, load_authors([doc["author_id"]]), load_tags(doc.get("tag_ids", [])), user["_id"])


@app.delete("/api/questions/{question_id}")
def delete_question(question_id: str, user=Depends(get_current_user)):
    question = get_or_404("question", question_id, "Question")
    ensure_owner_or_moderator(user, question)
    accepted_id = question.get("accepted_answer_id")
    if accepted_id is not None:
        accepted = db["answer"].find_one({"_id": accepted_id}, {"author_id": 1})
        if accepted is not None and accepted["author_id"] != question["author_id"]:
            adjust_reputation(db["user"], accepted["author_id"], -ACCEPT_REPUTATION)
    answer_ids = [a["_id"] for a in db["answer"].find({"question_id": question["_id"]}, {"_id": 1})]
    db["comment"].delete_many({"$or": [{"question_id": question["_id"]}, {"answer_id": {"$in": answer_ids}}]})
    db["answer"].delete_many({"question_id": question["_id"]})
    release_tags(db["tag"], question.get("tag_ids", []))
    db["question"].delete_one({"_id": question["_id"]})
    if question["author_id"] != user["_id"]:
        logger.info("Moderator %s deleted question %s", user["_id"], question["_id"])
    return {"deleted": True}


def apply_vote(kind: str, doc_id: str, value: int, user: dict) -> dict:
    label = kind.capitalize()
    doc = get_or_404(kind, doc_id, label)
    if doc.get("author_id") == user["_id"]:
        raise HTTPException(400, "You cannot vote on your own post")
    result = cast_vote(db[kind], doc["_id"], user["_id"], value)
    if result is None:
        raise HTTPException(404, f"{label} not found")
    adjust_reputation(db["user"], doc.get("author_id"), vote_reputation(kind, result.previous, result.current))
    # only a vote cast from no vote notifies, switches stay quiet
    if result.current and not result.previous:
        vote_type = "upvote" if result.current == 1 else "downvote"
        question_id = doc["_id"] if kind == "question" else doc.get("question_id")
        # votes stay anonymous, so no actor is recorded
        notify(
            db,
            doc.get("author_id"),
            "vote",
            f"Your {kind} was {vote_type}d",
            f"Someone {vote_type}d your {kind}",
            question_id=question_id,
            answer_id=doc["_id"] if kind == "answer" else None,
            comment_id=doc["_id"] if kind == "comment" else None,
            vote_type=vote_type,
        )
    updated = result.document
    return {
        "id": str(updated["_id"]),
        "votes": int(updated.get("score", 0)),
        "upvotes": len(updated.get("upvoters", [])),
        "downvotes": len(updated.get("downvoters", [])),
        "user_vote": result.current,
    }


@app.post("/api/questions/{question_id}/vote")
def vote_question(question_id: str, payload: VoteIn, user=Depends(get_current_user)):
    return apply_vote("question", question_id, payload.vote, user)


@app.post("/api/questions/{question_id}/close")
def close_question(question_id: str, payload: CloseRequest, user=Depends(require_role(*MODERATORS))):
    question = get_or_404("question", question_id, "Question")
    fields = {"status": "closed", "closed_reason": payload.reason, "duplicate_of": None, "updated_at": utcnow()}
    if payload.duplicate_of:
        original = get_or_404("question", payload.duplicate_of, "Original question")
        if original["_id"] == question["_id"]:
            raise HTTPException(400, "A question cannot duplicate itself")
        fields["status"] = "duplicate"
        fields["duplicate_of"] = original["_id"]
    doc = db["question"].find_one_and_update({"_id": question["_id"]}, {"$set": fields}, return_document=ReturnDocument.AFTER)
    notify(
        db,
        question["author_id"],
        "moderation",
        "Your question was closed",
        f"Reason: {payload.reason}",
        actor_id=user["_id"],
        question_id=question["_id"],
    )
    logger.info("Moderator %s closed question %s (%s)", user["_id"], question["_id"], fields["status"])
    return serialize_question(doc, load_authors([doc["author_id"]]), load_tags(doc.get("tag_ids", [])), user["_id"])


@app.post("/api/questions/{question_id}/reopen")
def reopen_question(question_id: str, user=Depends(require_role(*MODERATORS))):
    question = get_or_404("question", question_id, "Question")
    if question.get("status", "open") == "open":
        raise HTTPException(400, "Question is already open")
    doc = db["question"].find_one_and_update(
        {"_id": question["_id"]},
        {"$set": {"status": "open", "closed_reason": None, "duplicate_of": None, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    notify(
        db,
        question["author_id"],
        "moderation",
        "Your question was reopened",
        question.get("title", ""),
        actor_id=user["_id"],
        question_id=question["_id"],
    )
    logger.info("Moderator %s reopened question %s", user["_id"], question["_id"])
    return serialize_question(doc, load_authors([doc["author_id"]]), load_tags(doc.get("tag_ids", [])), user["_id"])


def bounty_active(question: dict) -> bool:
    bounty = question.get("bounty") or {}
    if not bounty.get("amount") or bounty.get("awarded_to") is not None:
        return False
    expires_at = as_utc(bounty.get("expires_at"))
    return expires_at is None or expires_at > utcnow()


@app.post("/api/questions/{question_id}/bounty")
def start_bounty(question_id: str, payload: BountyIn, user=Depends(get_current_user)):
    question = get_or_404("question", question_id, "Question")
    if question["author_id"] != user["_id"]:
        raise HTTPException(403, "Only the question author can offer a bounty")
    if question.get("status", "open") != "open":
        raise HTTPException(400, "Question is closed")
    if bounty_active(question):
        raise HTTPException(400, "Question already has an active bounty")
    charged = db["user"].find_one_and_update(
        {"_id": user["_id"], "reputation": {"$gte": payload.amount}},
        {"$inc": {"reputation": -payload.amount}},
    )
    if charged is None:
        raise HTTPException(400, "Not enough reputation")
    bounty = {"amount": payload.amount, "expires_at": utcnow() + BOUNTY_DURATION, "awarded_to": None}
    doc = db["question"].find_one_and_update(
        {"_id": question["_id"], "bounty": question.get("bounty")},
        {"$set": {"bounty": bounty, "last_activity_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        adjust_reputation(db["user"], user["_id"], payload.amount)
        raise HTTPException(409, "The bounty changed while updating, please retry")
    return serialize_question(doc, load_authors([doc["author_id"]]), load_tags(doc.get("tag_ids", [])), user["_id"])


# ---------------------------------------------------------------------------
# Answers
# ---------------------------------------------------------------------------

@app.get("/api/questions/{question_id}/answers")
def get_answers(question_id: str, viewer=Depends(get_optional_user)):
    question = get_or_404("question", question_id, "Question")
    accepted_id = question.get("accepted_answer_id")
    answers = sort_answers(list(db["answer"].find({"question_id": question["_id"]})), accepted_id)
    authors = load_authors(a.get("author_id") for a in answers)
    viewer_id = viewer_id_of(viewer)
    return {"answers": [serialize_answer(a, authors, accepted_id, viewer_id) for a in answers]}


@app.post("/api/questions/{question_id}/answers", status_code=201)
def create_answer(question_id: str, payload: AnswerIn, user=Depends(get_current_user)):
    question = get_or_404("question", question_id, "Question")
    if question.get("status", "open") != "open":
        raise HTTPException(400, "Question is closed")
    answer = Answer(content=payload.content, author_id=user["_id"], question_id=question["_id"])
    answer_id = create_document("answer", answer, database=db)
    db["question"].update_one(
        {"_id": question["_id"]}, {"$inc": {"answer_count": 1}, "$set": {"last_activity_at": utcnow()}}
    )
    notify(
        db,
        question["author_id"],
        "answer",
        "New answer to your question",
        f"{user['username']} answered: {question.get('title', '')}",
        actor_id=user["_id"],
        question_id=question["_id"],
        answer_id=ObjectId(answer_id),
    )
    doc = db["answer"].find_one({"_id": ObjectId(answer_id)})
    return serialize_answer(doc, load_authors([user["_id"]]), question.get("accepted_answer_id"), user["_id"])


@app.put("/api/answers/{answer_id}")
def update_answer(answer_id: str, payload: AnswerIn, user=Depends(get_current_user)):
    answer = get_or_404("answer", answer_id, "Answer")
    ensure_owner_or_moderator(user, answer)
    now = utcnow()
    record = EditRecord(content=answer.get("content"), edited_by=user["_id"])
    doc = db["answer"].find_one_and_update(
        {"_id": answer["_id"]},
        {"$set": {"content": payload.content, "is_edited": True, "updated_at": now}, "$push": {"edit_history": record.model_dump()}},
        return_document=ReturnDocument.AFTER,
    )
    db["question"].update_one({"_id": answer["question_id"]}, {"$set": {"last_activity_at": now}})
    question = db["question"].find_one({"_id": answer["question_id"]}, {"accepted_answer_id": 1}) or {}
    return serialize_answer(doc, load_authors([doc["author_id"]]), question.get("accepted_answer_id"), user["_id"])


@app.delete("/api/answers/{answer_id}")
def delete_answer(answer_id: str, user=Depends(get_current_user)):
    answer = get_or_404("answer", answer_id, "Answer")
    ensure_owner_or_moderator(user, answer)
    unaccepted = db["question"].find_one_and_update(
        {"_id": answer["question_id"], "accepted_answer_id": answer["_id"]},
        {"$set": {"accepted_answer_id": None, "is_answered": False}},
    )
    if unaccepted is not None and unaccepted["author_id"] != answer["author_id"]:
        adjust_reputation(db["user"], answer["author_id"], -ACCEPT_REPUTATION)
    db["question"].update_one(
        {"_id": answer["question_id"], "answer_count": {"$gt": 0}}, {"$inc": {"answer_count": -1}}
    )
    db["comment"].delete_many({"answer_id": answer["_id"]})
    db["answer"].delete_one({"_id": answer["_id"]})
    if answer["author_id"] != user["_id"]:
        logger.info("Moderator %s deleted answer %s", user["_id"], answer["_id"])
    return {"deleted": True}


@app.post("/api/answers/{answer_id}/vote")
def vote_answer(answer_id: str, payload: VoteIn, user=Depends(get_current_user)):
    return apply_vote("answer", answer_id, payload.vote, user)


@app.post("/api/answers/{answer_id}/accept")
def accept(answer_id: str, user=Depends(get_current_user)):
    answer = get_or_404("answer", answer_id, "Answer")
    question = db["question"].find_one({"_id": answer["question_id"]})
    if not question:
        raise HTTPException(404, "Question not found")
    if question["author_id"] != user["_id"]:
        raise HTTPException(403, "Only the question author can accept an answer")
    result = accept_answer(db, question, answer)
    if result.accepted:
        notify(
            db,
            answer["author_id"],
            "accept",
            "Your answer was accepted",
            question.get("title", ""),
            actor_id=user["_id"],
            question_id=question["_id"],
            answer_id=answer["_id"],
        )
    if result.bounty_awarded:
        notify(
            db,
            answer["author_id"],
            "bounty",
            "You earned a bounty",
            f"+{result.bounty_awarded} reputation for your answer",
            actor_id=user["_id"],
            question_id=question["_id"],
            answer_id=answer["_id"],
            bounty_amount=result.bounty_awarded,
        )
    accepted_id = result.question.get("accepted_answer_id")
    out = serialize_answer(answer, load_authors([answer["author_id"]]), accepted_id, user["_id"])
    out["bounty_awarded"] = result.bounty_awarded
    return out


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------

@app.post("/api/comments", status_code=201)
def create_comment(payload: CommentIn, user=Depends(get_current_user)):
    if payload.question_id:
        parent = get_or_404("question", payload.question_id, "Question")
        question_id = parent["_id"]
        comment = Comment(content=payload.content, author_id=user["_id"], question_id=parent["_id"])
        target = "question"
    else:
        parent = get_or_404("answer", payload.answer_id, "Answer")
        question_id = parent["question_id"]
        comment = Comment(content=payload.content, author_id=user["_id"], answer_id=parent["_id"])
        target = "answer"
    comment_id = ObjectId(create_document("comment", comment, database=db))
    db["question"].update_one({"_id": question_id}, {"$set": {"last_activity_at": utcnow()}})
    notify(
        db,
        parent["author_id"],
        "comment",
        f"New comment on your {target}",
        f"{user['username']}: {payload.content}",
        actor_id=user["_id"],
        question_id=question_id,
        answer_id=parent["_id"] if target == "answer" else None,
        comment_id=comment_id,
    )
    notify_mentions(
        db,
        payload.content,
        user,
        exclude=(parent["author_id"],),
        question_id=question_id,
        comment_id=comment_id,
    )
    doc = db["comment"].find_one({"_id": comment_id})
    return serialize_comment(doc, load_authors([user["_id"]]), user["_id"])


@app.put("/api/comments/{comment_id}")
def update_comment(comment_id: str, payload: CommentUpdate, user=Depends(get_current_user)):
    comment = get_or_404("comment", comment_id, "Comment")
    ensure_owner_or_moderator(user, comment)
    record = EditRecord(content=comment.get("content"), edited_by=user["_id"])
    doc = db["comment"].find_one_and_update(
        {"_id": comment["_id"]},
        {"$set": {"content": payload.content, "is_edited": True, "updated_at": utcnow()}, "$push": {"edit_history": record.model_dump()}},
        return_document=ReturnDocument.AFTER,
    )
    return serialize_comment(doc, load_authors([doc["author_id"]]), user["_id"])


@app.delete("/api/comments/{comment_id}")
def delete_comment(comment_id: str, user=Depends(get_current_user)):
    comment = get_or_404("comment", comment_id, "Comment")
    ensure_owner_or_moderator(user, comment)
    db["comment"].delete_one({"_id": comment["_id"]})
    if comment["author_id"] != user["_id"]:
        logger.info("Moderator %s deleted comment %s", user["_id"], comment["_id"])
    return {"deleted": True}


@app.post("/api/comments/{comment_id}/vote")
def vote_comment(comment_id: str, payload: VoteIn, user=Depends(get_current_user)):
    return apply_vote("comment", comment_id, payload.vote, user)


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------

def get_tag_or_404(name: str) -> dict:
    tag = resolve_tag(db["tag"], normalize_tag_name(name))
    if not tag:
        raise HTTPException(404, "Tag not found")
    return tag


def ensure_synonyms_free(synonyms: List[str], own_id=None):
    for name in synonyms:
        clash = resolve_tag(db["tag"], name)
        if clash is not None and clash["_id"] != own_id:
            raise HTTPException(400, f"'{name}' is already used by tag '{clash['name']}'")


@app.get("/api/tags")
def get_tags(
    search: str = "",
    page: int = Query(1, ge=1),
    limit: int = Query(MAX_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
):
    query = {}
    if search:
        pattern = re.escape(search.strip().lower())
        query = {"$or": [{"name": {"$regex": pattern}}, {"description": {"$regex": pattern, "$options": "i"}}]}
    total = db["tag"].count_documents(query)
    docs = db["tag"].find(query).sort([("usage_count", -1), ("name", 1)]).skip((page - 1) * limit).limit(limit)
    return {"tags": [serialize_tag(t) for t in docs], "pagination": pagination(page, limit, total)}


@app.get("/api/tags/{name}")
def get_tag(name: str):
    return serialize_tag(get_tag_or_404(name))


@app.post("/api/tags", status_code=201)
def create_tag(payload: TagIn, user=Depends(require_role(*MODERATORS))):
    if resolve_tag(db["tag"], payload.name):
        raise HTTPException(400, "Tag already exists")
    ensure_synonyms_free(payload.synonyms)
    tag = Tag(
        name=payload.name,
        description=payload.description,
        color=payload.color,
        synonyms=[s for s in payload.synonyms if s != payload.name],
        is_moderator_only=payload.is_moderator_only,
        created_by=user["_id"],
    )
    tag_id = create_document("tag", tag, database=db)
    return serialize_tag(db["tag"].find_one({"_id": ObjectId(tag_id)}))


@app.put("/api/tags/{name}")
def update_tag(name: str, payload: TagUpdate, user=Depends(require_role(*MODERATORS))):
    tag = get_tag_or_404(name)
    fields = {k: v for k, v in payload.model_dump().items() if v is not None}
    if "synonyms" in fields:
        fields["synonyms"] = [s for s in fields["synonyms"] if s != tag["name"]]
        ensure_synonyms_free(fields["synonyms"], own_id=tag["_id"])
    if not fields:
        raise HTTPException(400, "No valid fields")
    fields["updated_at"] = utcnow()
    doc = db["tag"].find_one_and_update({"_id": tag["_id"]}, {"$set": fields}, return_document=ReturnDocument.AFTER)
    return serialize_tag(doc)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

def get_own_notification(notification_id: str, user: dict) -> dict:
    doc = db["notification"].find_one({"_id": ObjectId(notification_id), "recipient_id": user["_id"]})
    if not doc:
        raise HTTPException(404, "Notification not found")
    return doc


@app.get("/api/notifications")
def get_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    unread_only: bool = False,
    user=Depends(get_current_user),
):
    query = {"recipient_id": user["_id"]}
    if unread_only:
        query["is_read"] = False
    total = db["notification"].count_documents(query)
    docs = db["notification"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {
        "notifications": [serialize_notification(n) for n in docs],
        "unread_count": unread_count(db, user["_id"]),
        "pagination": pagination(page, limit, total),
    }


@app.get("/api/notifications/unread-count")
def get_unread_count(user=Depends(get_current_user)):
    return {"unread_count": unread_count(db, user["_id"])}


@app.put("/api/notifications/read-all")
def mark_all_read(user=Depends(get_current_user)):
    res = db["notification"].update_many({"recipient_id": user["_id"], "is_read": False}, {"$set": {"is_read": True}})
    return {"updated": res.modified_count}


@app.put("/api/notifications/{notification_id}/read")
def mark_read(notification_id: str, user=Depends(get_current_user)):
    doc = get_own_notification(notification_id, user)
    db["notification"].update_one({"_id": doc["_id"]}, {"$set": {"is_read": True}})
    doc["is_read"] = True
    return serialize_notification(doc)


@app.put("/api/notifications/{notification_id}/unread")
def mark_unread(notification_id: str, user=Depends(get_current_user)):
    doc = get_own_notification(notification_id, user)
    db["notification"].update_one({"_id": doc["_id"]}, {"$set": {"is_read": False}})
    doc["is_read"] = False
    return serialize_notification(doc)


@app.delete("/api/notifications/{notification_id}")
def delete_notification(notification_id: str, user=Depends(get_current_user)):
    doc = get_own_notification(notification_id, user)
    db["notification"].delete_one({"_id": doc["_id"]})
    return {"deleted": True}


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

@app.get("/api/users")
def list_users(
    role: Optional[str] = None,
    search: str = "",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    user=Depends(require_role(*MODERATORS)),
):
    query = {}
    if role:
        query["role"] = role
    if search:
        pattern = re.escape(search.strip())
        query["$or"] = [{"username": {"$regex": pattern, "$options": "i"}}, {"email": {"$regex": pattern, "$options": "i"}}]
    total = db["user"].count_documents(query)
    docs = db["user"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {"users": [serialize_user(u, private=True) for u in docs], "pagination": pagination(page, limit, total)}


@app.put("/api/users/profile")
def update_profile(payload: ProfileUpdate, user=Depends(get_current_user)):
    fields = {k: v for k, v in payload.model_dump().items() if v is not None}
    if not fields:
        raise HTTPException(400, "No valid fields")
    if "username" in fields and fields["username"] != user.get("username"):
        if db["user"].find_one({"username": fields["username"], "_id": {"$ne": user["_id"]}}):
            raise HTTPException(400, "Username already taken")
    fields["updated_at"] = utcnow()
    doc = db["user"].find_one_and_update({"_id": user["_id"]}, {"$set": fields}, return_document=ReturnDocument.AFTER)
    return serialize_user(doc, private=True)


@app.get("/api/users/{user_id}")
def get_user(user_id: str):
    doc = get_or_404("user", user_id, "User")
    out = serialize_user(doc)
    answer_ids = [a["_id"] for a in db["answer"].find({"author_id": doc["_id"]}, {"_id": 1})]
    out["stats"] = {
        "questions": db["question"].count_documents({"author_id": doc["_id"]}),
        "answers": len(answer_ids),
        "accepted_answers": db["question"].count_documents({"accepted_answer_id": {"$in": answer_ids}}) if answer_ids else 0,
    }
    return out


@app.get("/api/users/{user_id}/answers")
def get_user_answers(
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
):
    doc = get_or_404("user", user_id, "User")
    query = {"author_id": doc["_id"]}
    total = db["answer"].count_documents(query)
    answers = list(db["answer"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit))
    questions = {
        q["_id"]: q
        for q in db["question"].find({"_id": {"$in": [a["question_id"] for a in answers]}}, {"title": 1, "accepted_answer_id": 1})
    }
    authors = {doc["_id"]: author_summary(doc)}
    out = []
    for a in answers:
        q = questions.get(a["question_id"], {})
        item = serialize_answer(a, authors, q.get("accepted_answer_id"))
        item["question_title"] = q.get("title")
        out.append(item)
    return {"answers": out, "pagination": pagination(page, limit, total)}


@app.put("/api/users/{user_id}/role")
def set_user_role(user_id: str, payload: RoleUpdate, user=Depends(require_role("admin"))):
    target = get_or_404("user", user_id, "User")
    if target["_id"] == user["_id"]:
        raise HTTPException(400, "You cannot change your own role")
    if target.get("role") == "banned":
        raise HTTPException(400, "User is banned, unban first")
    doc = db["user"].find_one_and_update(
        {"_id": target["_id"]}, {"$set": {"role": payload.role, "updated_at": utcnow()}}, return_document=ReturnDocument.AFTER
    )
    logger.info("Admin %s set role of %s to %s", user["_id"], target["_id"], payload.role)
    return serialize_user(doc, private=True)


@app.post("/api/users/{user_id}/ban")
def ban_user(user_id: str, payload: Optional[BanRequest] = None, user=Depends(require_role(*MODERATORS))):
    target = get_or_404("user", user_id, "User")
    if target["_id"] == user["_id"]:
        raise HTTPException(400, "You cannot ban yourself")
    if target.get("role") == "admin":
        raise HTTPException(403, "Administrators cannot be banned")
    if target.get("role") == "moderator" and user.get("role") != "admin":
        raise HTTPException(403, "Only administrators can ban moderators")
    if target.get("role") == "banned":
        raise HTTPException(400, "User is already banned")
    reason = payload.reason if payload else None
    doc = db["user"].find_one_and_update(
        {"_id": target["_id"]},
        {"$set": {"role": "banned", "banned_at": utcnow(), "banned_by": user["_id"], "ban_reason": reason, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    notify(
        db,
        target["_id"],
        "moderation",
        "Your account has been banned",
        reason or "Your account was banned by a moderator",
        actor_id=user["_id"],
    )
    logger.info("User %s banned by %s", target["_id"], user["_id"])
    return serialize_user(doc, private=True)


@app.post("/api/users/{user_id}/unban")
def unban_user(user_id: str, user=Depends(require_role(*MODERATORS))):
    target = get_or_404("user", user_id, "User")
    if target.get("role") != "banned":
        raise HTTPException(400, "User is not banned")
    doc = db["user"].find_one_and_update(
        {"_id": target["_id"]},
        {"$set": {"role": "user", "ban_reason": None, "updated_at": utcnow()}, "$unset": {"banned_at": "", "banned_by": ""}},
        return_document=ReturnDocument.AFTER,
    )
    notify(
        db,
        target["_id"],
        "moderation",
        "Your account has been restored",
        "You can post and vote again",
        actor_id=user["_id"],
    )
    logger.info("User %s unbanned by %s", target["_id"], user["_id"])
    return serialize_user(doc, private=True)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@app.get("/api/admin/stats")
def admin_stats(user=Depends(require_role(*MODERATORS))):
    total_users = db["user"].count_documents({})
    banned = db["user"].count_documents({"role": "banned"})
    return {
        "total_users": total_users,
        "active_users": total_users - banned,
        "banned_users": banned,
        "total_questions": db["question"].count_documents({}),
        "open_questions": db["question"].count_documents({"status": "open"}),
        "unanswered_questions": db["question"].count_documents({"answer_count": 0}),
        "total_answers": db["answer"].count_documents({}),
        "total_comments": db["comment"].count_documents({}),
        "total_tags": db["tag"].count_documents({}),
    }


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

@app.get("/api/search/questions")
def search_questions(
    q: str = "",
    tags: str = "",
    sort: str = "newest",
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    viewer=Depends(get_optional_user),
):
    if not q.strip() and not split_tag_names(tags):
        return {"questions": [], "pagination": pagination(page, limit, 0)}
    query = build_question_query(search=q, tags=tags, sort=sort)
    return list_questions(query, sort, page, limit, viewer)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
