"""
Python client for the StackIt REST API.

Mirrors the browser app's API service: every call carries the stored bearer
token, and the session (token plus user) is kept in a local JSON file the
way the web client keeps it in local storage. A 401 from the server clears
the stored session.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://localhost:8000/api"


class ApiError(Exception):
    def __init__(self, status_code: int, detail: str):
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class SessionStore:
    """JSON-file persistence for the auth token and current user."""

    def __init__(self, path: Optional[str] = None):
        default = os.getenv("STACKIT_SESSION_FILE", str(Path.home() / ".stackit" / "session.json"))
        self.path = Path(path or default)

    def load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
            return data if isinstance(data, dict) else {}
        except (json.JSONDecodeError, OSError):
            return {}

    def save(self, token: str, user: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({"token": token, "user": user}, indent=2))

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


class StackItClient:
    def __init__(self, base_url: Optional[str] = None, session_path: Optional[str] = None, http: Optional[httpx.Client] = None):
        self.base_url = (base_url or os.getenv("STACKIT_API_URL", DEFAULT_API_URL)).rstrip("/")
        self.session = SessionStore(session_path)
        self._http = http or httpx.Client(timeout=15.0)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @property
    def token(self) -> Optional[str]:
        return self.session.load().get("token")

    @property
    def current_user(self) -> Optional[dict]:
        return self.session.load().get("user")

    @property
    def is_authenticated(self) -> bool:
        return self.token is not None

    def _request(self, method: str, path: str, **kwargs):
        headers = kwargs.pop("headers", {})
        token = self.token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        params = kwargs.get("params")
        if params:
            kwargs["params"] = {k: v for k, v in params.items() if v is not None}
        response = self._http.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        if response.status_code == 401:
            logger.info("Session rejected by server, clearing stored token")
            self.session.clear()
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise ApiError(response.status_code, str(detail))
        return response.json()

    def _remember(self, data: dict) -> dict:
        self.session.save(data["access_token"], data["user"])
        return data["user"]

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def register(self, username: str, email: str, password: str) -> dict:
        return self._remember(self._request("POST", "/auth/register", json={"username": username, "email": email, "password": password}))

    def login(self, email: str, password: str) -> dict:
        return self._remember(self._request("POST", "/auth/login", json={"email": email, "password": password}))

    def logout(self) -> None:
        self.session.clear()

    def me(self) -> dict:
        return self._request("GET", "/auth/me")

    def change_password(self, current_password: str, new_password: str) -> dict:
        return self._request("PUT", "/auth/password", json={"current_password": current_password, "new_password": new_password})

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    def get_questions(self, page: int = 1, limit: int = 10, sort: str = "newest", tags=None, search: Optional[str] = None, author: Optional[str] = None) -> dict:
        params = {"page": page, "limit": limit, "sort": sort, "search": search, "author": author}
        if tags:
            params["tags"] = ",".join(tags)
        return self._request("GET", "/questions", params=params)

    def get_question(self, question_id: str) -> dict:
        return self._request("GET", f"/questions/{question_id}")

    def create_question(self, title: str, content: str, tags=None) -> dict:
        return self._request("POST", "/questions", json={"title": title, "content": content, "tags": list(tags or [])})

    def update_question(self, question_id: str, title: Optional[str] = None, content: Optional[str] = None, tags=None) -> dict:
        body = {"title": title, "content": content, "tags": list(tags) if tags is not None else None}
        return self._request("PUT", f"/questions/{question_id}", json={k: v for k, v in body.items() if v is not None})

    def delete_question(self, question_id: str) -> dict:
        return self._request("DELETE", f"/questions/{question_id}")

    def vote_question(self, question_id: str, vote: int) -> dict:
        return self._request("POST", f"/questions/{question_id}/vote", json={"vote": vote})

    def close_question(self, question_id: str, reason: str, duplicate_of: Optional[str] = None) -> dict:
        return self._request("POST", f"/questions/{question_id}/close", json={"reason": reason, "duplicate_of": duplicate_of})

    def reopen_question(self, question_id: str) -> dict:
        return self._request("POST", f"/questions/{question_id}/reopen")

    def offer_bounty(self, question_id: str, amount: int) -> dict:
        return self._request("POST", f"/questions/{question_id}/bounty", json={"amount": amount})

    # ------------------------------------------------------------------
    # Answers
    # ------------------------------------------------------------------

    def get_answers(self, question_id: str) -> dict:
        return self._request("GET", f"/questions/{question_id}/answers")

    def create_answer(self, question_id: str, content: str) -> dict:
        return self._request("POST", f"/questions/{question_id}/answers", json={"content": content})

    def update_answer(self, answer_id: str, content: str) -> dict:
        return self._request("PUT", f"/answers/{answer_id}", json={"content": content})

    def delete_answer(self, answer_id: str) -> dict:
        return self._request("DELETE", f"/answers/{answer_id}")

    def vote_answer(self, answer_id: str, vote: int) -> dict:
        return self._request("POST", f"/answers/{answer_id}/vote", json={"vote": vote})

    def accept_answer(self, answer_id: str) -> dict:
        return self._request("POST", f"/answers/{answer_id}/accept")

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    def create_comment(self, content: str, question_id: Optional[str] = None, answer_id: Optional[str] = None) -> dict:
        return self._request("POST", "/comments", json={"content": content, "question_id": question_id, "answer_id": answer_id})

    def update_comment(self, comment_id: str, content: str) -> dict:
        return self._request("PUT", f"/comments/{comment_id}", json={"content": content})

    def delete_comment(self, comment_id: str) -> dict:
        return self._request("DELETE", f"/comments/{comment_id}")

    def vote_comment(self, comment_id: str, vote: int) -> dict:
        return self._request("POST", f"/comments/{comment_id}/vote", json={"vote": vote})

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def get_tags(self, search: Optional[str] = None, page: int = 1, limit: int = 50) -> dict:
        return self._request("GET", "/tags", params={"search": search, "page": page, "limit": limit})

    def get_tag(self, name: str) -> dict:
        return self._request("GET", f"/tags/{name}")

    def create_tag(self, name: str, description: str = "", color: Optional[str] = None, synonyms=None, is_moderator_only: bool = False) -> dict:
        body = {"name": name, "description": description, "synonyms": list(synonyms or []), "is_moderator_only": is_moderator_only}
        if color:
            body["color"] = color
        return self._request("POST", "/tags", json=body)

    def update_tag(self, name: str, **fields) -> dict:
        return self._request("PUT", f"/tags/{name}", json=fields)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def get_notifications(self, page: int = 1, limit: int = 20, unread_only: bool = False) -> dict:
        return self._request("GET", "/notifications", params={"page": page, "limit": limit, "unread_only": str(unread_only).lower()})

    def get_unread_count(self) -> int:
        return self._request("GET", "/notifications/unread-count")["unread_count"]

    def mark_notification_read(self, notification_id: str) -> dict:
        return self._request("PUT", f"/notifications/{notification_id}/read")

    def mark_notification_unread(self, notification_id: str) -> dict:
        return self._request("PUT", f"/notifications/{notification_id}/unread")

    def mark_all_notifications_read(self) -> dict:
        return self._request("PUT", "/notifications/read-all")

    def delete_notification(self, notification_id: str) -> dict:
        return self._request("DELETE", f"/notifications/{notification_id}")

    # ------------------------------------------------------------------
    # Users and moderation
    # ------------------------------------------------------------------

    def get_user(self, user_id: str) -> dict:
        return self._request("GET", f"/users/{user_id}")

    def get_user_answers(self, user_id: str, page: int = 1, limit: int = 10) -> dict:
        return self._request("GET", f"/users/{user_id}/answers", params={"page": page, "limit": limit})

    def update_profile(self, username: Optional[str] = None, bio: Optional[str] = None, avatar: Optional[str] = None) -> dict:
        body = {k: v for k, v in {"username": username, "bio": bio, "avatar": avatar}.items() if v is not None}
        user = self._request("PUT", "/users/profile", json=body)
        token = self.token
        if token:
            self.session.save(token, user)
        return user

    def get_users(self, role: Optional[str] = None, search: Optional[str] = None, page: int = 1, limit: int = 20) -> dict:
        return self._request("GET", "/users", params={"role": role, "search": search, "page": page, "limit": limit})

    def set_role(self, user_id: str, role: str) -> dict:
        return self._request("PUT", f"/users/{user_id}/role", json={"role": role})

    def ban_user(self, user_id: str, reason: Optional[str] = None) -> dict:
        return self._request("POST", f"/users/{user_id}/ban", json={"reason": reason})

    def unban_user(self, user_id: str) -> dict:
        return self._request("POST", f"/users/{user_id}/unban")

    def admin_stats(self) -> dict:
        return self._request("GET", "/admin/stats")

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search_questions(self, query: str, tags=None, sort: str = "newest", page: int = 1, limit: int = 10) -> dict:
        params = {"q": query, "sort": sort, "page": page, "limit": limit}
        if tags:
            params["tags"] = ",".join(tags)
        return self._request("GET", "/search/questions", params=params)
