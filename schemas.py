"""
Database Schemas for StackIt

Each Pydantic model represents a MongoDB collection.
Collection name is lowercase of the class name.
- User -> "user"
- Question -> "question"
- Answer -> "answer"
- Comment -> "comment"
- Tag -> "tag"
- Notification -> "notification"

References between documents are stored as bson ObjectIds. The request
payloads accepted by the API live at the bottom of this module.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

ROLES = ("user", "moderator", "admin", "banned")
QUESTION_STATUSES = ("open", "closed", "duplicate")
NOTIFICATION_TYPES = ("answer", "comment", "vote", "accept", "mention", "bounty", "moderation", "system")
NOTIFICATION_TTL = timedelta(days=30)
MAX_TAGS_PER_QUESTION = 5

TAG_NAME_RE = re.compile(r"^[a-z0-9-]{2,35}$")
USERNAME_PATTERN = r"^[A-Za-z0-9_]{3,30}$"
COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


def normalize_tag_name(name: str) -> str:
    return "-".join(name.strip().lower().split())


def _strip(value):
    return value.strip() if isinstance(value, str) else value


def _clean_tag_names(names):
    if names is None:
        return None
    out = []
    for raw in names:
        name = normalize_tag_name(str(raw))
        if not TAG_NAME_RE.match(name):
            raise ValueError(f"Invalid tag name '{raw}': use 2-35 lowercase letters, digits or hyphens")
        if name not in out:
            out.append(name)
    if len(out) > MAX_TAGS_PER_QUESTION:
        raise ValueError(f"A question can have at most {MAX_TAGS_PER_QUESTION} tags")
    return out


def _clean_synonyms(names):
    if names is None:
        return None
    out = []
    for raw in names:
        name = normalize_tag_name(str(raw))
        if not TAG_NAME_RE.match(name):
            raise ValueError(f"Invalid synonym '{raw}'")
        if name not in out:
            out.append(name)
    return out


class Document(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)


class EditRecord(Document):
    content: str
    title: Optional[str] = None
    edited_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    edited_by: ObjectId


class User(Document):
    username: str = Field(..., pattern=USERNAME_PATTERN, description="Unique public handle")
    email: EmailStr = Field(..., description="Unique email address")
    password_hash: str = Field(..., description="Hashed password")
    role: Literal["user", "moderator", "admin", "banned"] = Field("user", description="Role: user, moderator, admin, banned")
    reputation: int = Field(1, description="Reputation points")
    bio: str = Field("", max_length=500)
    avatar: Optional[str] = Field(None, description="Avatar image URL")


class Question(Document):
    title: str = Field(..., min_length=10, max_length=300)
    content: str = Field(..., min_length=20)
    author_id: ObjectId
    tag_ids: List[ObjectId] = Field(default_factory=list)
    upvoters: List[ObjectId] = Field(default_factory=list)
    downvoters: List[ObjectId] = Field(default_factory=list)
    score: int = Field(0, description="Upvotes minus downvotes")
    views: int = Field(0, ge=0)
    answer_count: int = Field(0, ge=0)
    is_answered: bool = False
    accepted_answer_id: Optional[ObjectId] = None
    status: Literal["open", "closed", "duplicate"] = "open"
    closed_reason: Optional[str] = None
    duplicate_of: Optional[ObjectId] = None
    bounty: Optional[dict] = Field(None, description="{amount, expires_at, awarded_to}")
    is_edited: bool = False
    edit_history: List[EditRecord] = Field(default_factory=list)
    last_activity_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Answer(Document):
    content: str = Field(..., min_length=20)
    author_id: ObjectId
    question_id: ObjectId
    upvoters: List[ObjectId] = Field(default_factory=list)
    downvoters: List[ObjectId] = Field(default_factory=list)
    score: int = 0
    is_edited: bool = False
    edit_history: List[EditRecord] = Field(default_factory=list)


class Comment(Document):
    content: str = Field(..., min_length=15, max_length=500)
    author_id: ObjectId
    question_id: Optional[ObjectId] = None
    answer_id: Optional[ObjectId] = None
    upvoters: List[ObjectId] = Field(default_factory=list)
    downvoters: List[ObjectId] = Field(default_factory=list)
    score: int = 0
    is_edited: bool = False
    edit_history: List[EditRecord] = Field(default_factory=list)

    @model_validator(mode="after")
    def _one_parent(self):
        if self.question_id is None and self.answer_id is None:
            raise ValueError("Comment must be on either a question or an answer")
        if self.question_id is not None and self.answer_id is not None:
            raise ValueError("Comment cannot be on both question and answer")
        return self


class Tag(Document):
    name: str = Field(..., pattern=TAG_NAME_RE.pattern)
    description: str = Field("", max_length=500)
    color: str = Field("#007bff", pattern=COLOR_PATTERN)
    usage_count: int = Field(0, ge=0)
    is_moderator_only: bool = False
    synonyms: List[str] = Field(default_factory=list)
    created_by: Optional[ObjectId] = None


class Notification(Document):
    recipient_id: ObjectId
    type: Literal["answer", "comment", "vote", "accept", "mention", "bounty", "moderation", "system"]
    title: str = Field(..., max_length=200)
    message: str = Field(..., max_length=500)
    is_read: bool = False
    data: dict = Field(default_factory=dict)
    expires_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc) + NOTIFICATION_TTL)


# ---------------------------------------------------------------------------
# Request payloads
# ---------------------------------------------------------------------------

class RegisterRequest(BaseModel):
    username: str = Field(..., pattern=USERNAME_PATTERN)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)

    @field_validator("username", mode="before")
    @classmethod
    def _strip_username(cls, v):
        return _strip(v)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6, max_length=128)


class QuestionIn(BaseModel):
    title: str = Field(..., min_length=10, max_length=300)
    content: str = Field(..., min_length=20)
    tags: List[str] = Field(default_factory=list)

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, v):
        return _strip(v)

    @field_validator("tags")
    @classmethod
    def _tags(cls, v):
        return _clean_tag_names(v)


class QuestionUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=10, max_length=300)
    content: Optional[str] = Field(None, min_length=20)
    tags: Optional[List[str]] = None

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, v):
        return _strip(v)

    @field_validator("tags")
    @classmethod
    def _tags(cls, v):
        return _clean_tag_names(v)


class VoteIn(BaseModel):
    vote: Literal[1, -1, 0] = Field(..., description="1 upvote, -1 downvote, 0 clear")


class CloseRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=200)
    duplicate_of: Optional[str] = None


class BountyIn(BaseModel):
    amount: int = Field(..., ge=50, le=500)


class AnswerIn(BaseModel):
    content: str = Field(..., min_length=20)


class CommentIn(BaseModel):
    content: str = Field(..., min_length=15, max_length=500)
    question_id: Optional[str] = None
    answer_id: Optional[str] = None

    @field_validator("content", mode="before")
    @classmethod
    def _strip_content(cls, v):
        return _strip(v)

    @model_validator(mode="after")
    def _one_parent(self):
        if not self.question_id and not self.answer_id:
            raise ValueError("Comment must be on either a question or an answer")
        if self.question_id and self.answer_id:
            raise ValueError("Comment cannot be on both question and answer")
        return self


class CommentUpdate(BaseModel):
    content: str = Field(..., min_length=15, max_length=500)

    @field_validator("content", mode="before")
    @classmethod
    def _strip_content(cls, v):
        return _strip(v)


class TagIn(BaseModel):
    name: str
    description: str = Field("", max_length=500)
    color: str = Field("#007bff", pattern=COLOR_PATTERN)
    synonyms: List[str] = Field(default_factory=list)
    is_moderator_only: bool = False

    @field_validator("name")
    @classmethod
    def _name(cls, v):
        name = normalize_tag_name(v)
        if not TAG_NAME_RE.match(name):
            raise ValueError("Tag name must be 2-35 lowercase letters, digits or hyphens")
        return name

    @field_validator("synonyms")
    @classmethod
    def _synonyms(cls, v):
        return _clean_synonyms(v)


class TagUpdate(BaseModel):
    description: Optional[str] = Field(None, max_length=500)
    color: Optional[str] = Field(None, pattern=COLOR_PATTERN)
    synonyms: Optional[List[str]] = None
    is_moderator_only: Optional[bool] = None

    @field_validator("synonyms")
    @classmethod
    def _synonyms(cls, v):
        return _clean_synonyms(v)


class ProfileUpdate(BaseModel):
    username: Optional[str] = Field(None, pattern=USERNAME_PATTERN)
    bio: Optional[str] = Field(None, max_length=500)
    avatar: Optional[str] = Field(None, max_length=500)

    @field_validator("username", mode="before")
    @classmethod
    def _strip_username(cls, v):
        return _strip(v)


class RoleUpdate(BaseModel):
    role: Literal["user", "moderator", "admin"]


class BanRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
