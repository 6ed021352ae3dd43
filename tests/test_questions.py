"""Tests for the question endpoints: listing, editing, votes, closing and bounties."""

from datetime import datetime, timedelta, timezone

from bson import ObjectId

import main
from voting import VoteConflict


def _reputation(mock_db, user):
    return mock_db["user"].find_one({"_id": ObjectId(user["id"])})["reputation"]


def test_create_question_creates_tags(client, make_user, ask, mock_db):
    alice = make_user("alice")
    q = ask(alice, tags=("Python", "List Methods"))
    assert q["author"]["username"] == "alice"
    assert [t["name"] for t in q["tags"]] == ["python", "list-methods"]
    assert q["votes"] == 0
    assert q["status"] == "open"
    assert mock_db["tag"].find_one({"name": "python"})["usage_count"] == 1


def test_create_question_requires_auth(client):
    res = client.post("/api/questions", json={"title": "Anonymous question title", "content": "Nobody is logged in right now."})
    assert res.status_code == 401


def test_create_question_validation(client, make_user):
    alice = make_user("alice")
    res = client.post("/api/questions", json={"title": "Too short", "content": "x" * 30}, headers=alice["headers"])
    assert res.status_code == 400
    assert res.json()["detail"].startswith("title:")


def test_list_filters_and_pagination(client, make_user, ask):
    alice = make_user("alice")
    ask(alice, title="How do generators work in Python?", tags=("python",))
    ask(alice, title="What is a closure in JavaScript?", tags=("javascript",))
    ask(alice, title="Python decorators with arguments?", tags=("python", "decorators"))

    res = client.get("/api/questions", params={"limit": 2})
    body = res.json()
    assert len(body["questions"]) == 2
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "total_pages": 2}

    res = client.get("/api/questions", params={"tags": "python"})
    assert {q["title"] for q in res.json()["questions"]} == {
        "How do generators work in Python?",
        "Python decorators with arguments?",
    }

    res = client.get("/api/questions", params={"search": "closure"})
    assert [q["title"] for q in res.json()["questions"]] == ["What is a closure in JavaScript?"]

    res = client.get("/api/questions", params={"tags": "no-such-tag"})
    assert res.json()["questions"] == []


def test_search_treats_query_literally(client, make_user, ask):
    alice = make_user("alice")
    ask(alice, title="Why does (a+b) overflow here?")
    res = client.get("/api/search/questions", params={"q": "(a+b)"})
    assert res.json()["pagination"]["total"] == 1
    assert client.get("/api/search/questions").json()["questions"] == []


def test_sort_by_votes_and_unanswered(client, make_user, ask):
    alice = make_user("alice")
    bob = make_user("bob")
    low = ask(alice, title="First question, nobody likes it")
    high = ask(alice, title="Second question, everyone likes it")
    client.post(f"/api/questions/{high['id']}/vote", json={"vote": 1}, headers=bob["headers"])
    client.post(
        f"/api/questions/{high['id']}/answers",
        json={"content": "Here is a detailed answer for you."},
        headers=bob["headers"],
    )

    res = client.get("/api/questions", params={"sort": "votes"})
    assert [q["id"] for q in res.json()["questions"]] == [high["id"], low["id"]]

    res = client.get("/api/questions", params={"sort": "unanswered"})
    assert [q["id"] for q in res.json()["questions"]] == [low["id"]]


def test_detail_increments_views(client, make_user, ask):
    alice = make_user("alice")
    q = ask(alice)
    assert client.get(f"/api/questions/{q['id']}").json()["views"] == 1
    detail = client.get(f"/api/questions/{q['id']}").json()
    assert detail["views"] == 2
    assert detail["answers"] == []
    assert detail["comments"] == []


def test_detail_missing_and_malformed_ids(client):
    assert client.get(f"/api/questions/{ObjectId()}").status_code == 404
    res = client.get("/api/questions/not-an-id")
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid id"


def test_edit_keeps_history_and_retags(client, make_user, ask, mock_db):
    alice = make_user("alice")
    q = ask(alice, tags=("python",))
    res = client.put(
        f"/api/questions/{q['id']}",
        json={"title": "How do I reverse a list in place?", "tags": ["lists"]},
        headers=alice["headers"],
    )
    assert res.status_code == 200
    body = res.json()
    assert body["is_edited"] is True
    assert [t["name"] for t in body["tags"]] == ["lists"]
    assert mock_db["tag"].find_one({"name": "python"})["usage_count"] == 0

    detail = client.get(f"/api/questions/{q['id']}").json()
    assert len(detail["edit_history"]) == 1
    assert detail["edit_history"][0]["title"] == "How do I reverse a list in Python?"
    assert detail["edit_history"][0]["edited_by"] == alice["id"]


def test_only_owner_or_moderator_can_edit(client, make_user, ask):
    alice = make_user("alice")
    bob = make_user("bob")
    mod = make_user("mod", role="moderator")
    q = ask(alice)

    res = client.put(f"/api/questions/{q['id']}", json={"content": "Bob tries to rewrite this question."}, headers=bob["headers"])
    assert res.status_code == 403

    res = client.put(f"/api/questions/{q['id']}", json={"content": "A moderator tidied up this question."}, headers=mod["headers"])
    assert res.status_code == 200
    assert res.json()["content"] == "A moderator tidied up this question."


def test_moderator_only_tag_via_api(client, make_user, mock_db):
    alice = make_user("alice")
    mock_db["tag"].insert_one({"name": "announcements", "synonyms": [], "usage_count": 0, "is_moderator_only": True})
    res = client.post(
        "/api/questions",
        json={"title": "Can I post an announcement?", "content": "Trying to use a restricted tag.", "tags": ["announcements"]},
        headers=alice["headers"],
    )
    assert res.status_code == 403
    assert "moderators" in res.json()["detail"]


def test_delete_cascades(client, make_user, ask, mock_db):
    alice = make_user("alice")
    bob = make_user("bob")
    q = ask(alice)
    answer = client.post(
        f"/api/questions/{q['id']}/answers",
        json={"content": "Use slicing with a negative step."},
        headers=bob["headers"],
    ).json()
    client.post("/api/comments", json={"content": "Nice question, thanks!", "question_id": q["id"]}, headers=bob["headers"])
    client.post("/api/comments", json={"content": "This worked for me too.", "answer_id": answer["id"]}, headers=alice["headers"])

    assert client.delete(f"/api/questions/{q['id']}", headers=bob["headers"]).status_code == 403
    res = client.delete(f"/api/questions/{q['id']}", headers=alice["headers"])
    assert res.json() == {"deleted": True}
    assert mock_db["answer"].count_documents({}) == 0
    assert mock_db["comment"].count_documents({}) == 0
    assert mock_db["tag"].find_one({"name": "python"})["usage_count"] == 0
    assert client.get(f"/api/questions/{q['id']}").status_code == 404


def test_cannot_vote_on_own_question(client, make_user, ask):
    alice = make_user("alice")
    q = ask(alice)
    res = client.post(f"/api/questions/{q['id']}/vote", json={"vote": 1}, headers=alice["headers"])
    assert res.status_code == 400
    assert res.json()["detail"] == "You cannot vote on your own post"


def test_question_votes_move_reputation(client, make_user, ask, mock_db):
    alice = make_user("alice")
    bob = make_user("bob")
    q = ask(alice)
    url = f"/api/questions/{q['id']}/vote"

    res = client.post(url, json={"vote": 1}, headers=bob["headers"])
    assert res.json() == {"id": q["id"], "votes": 1, "upvotes": 1, "downvotes": 0, "user_vote": 1}
    assert _reputation(mock_db, alice) == 6

    res = client.post(url, json={"vote": -1}, headers=bob["headers"])
    assert res.json()["votes"] == -1
    assert _reputation(mock_db, alice) == -1

    res = client.post(url, json={"vote": -1}, headers=bob["headers"])
    assert res.json()["user_vote"] == 0
    assert res.json()["votes"] == 0
    assert _reputation(mock_db, alice) == 1

    detail = client.get(f"/api/questions/{q['id']}", headers=bob["headers"]).json()
    assert detail["user_vote"] == 0


def test_invalid_vote_value(client, make_user, ask):
    alice = make_user("alice")
    bob = make_user("bob")
    q = ask(alice)
    res = client.post(f"/api/questions/{q['id']}/vote", json={"vote": 2}, headers=bob["headers"])
    assert res.status_code == 400


def test_vote_notification_is_anonymous(client, make_user, ask, mock_db):
    alice = make_user("alice")
    bob = make_user("bob")
    q = ask(alice)
    client.post(f"/api/questions/{q['id']}/vote", json={"vote": 1}, headers=bob["headers"])

    notes = client.get("/api/notifications", headers=alice["headers"]).json()["notifications"]
    assert len(notes) == 1
    assert notes[0]["type"] == "vote"
    assert notes[0]["title"] == "Your question was upvoted"
    assert "user_id" not in notes[0]["data"]
    assert notes[0]["data"]["question_id"] == q["id"]


def test_close_and_reopen(client, make_user, ask):
    alice = make_user("alice")
    bob = make_user("bob")
    mod = make_user("mod", role="moderator")
    q = ask(alice)

    res = client.post(f"/api/questions/{q['id']}/close", json={"reason": "Off topic"}, headers=bob["headers"])
    assert res.status_code == 403

    res = client.post(f"/api/questions/{q['id']}/close", json={"reason": "Off topic"}, headers=mod["headers"])
    assert res.json()["status"] == "closed"
    assert res.json()["closed_reason"] == "Off topic"

    res = client.post(
        f"/api/questions/{q['id']}/answers",
        json={"content": "Answering a closed question should fail."},
        headers=bob["headers"],
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Question is closed"

    notes = client.get("/api/notifications", headers=alice["headers"]).json()["notifications"]
    assert notes[0]["type"] == "moderation"

    res = client.post(f"/api/questions/{q['id']}/reopen", headers=mod["headers"])
    assert res.json()["status"] == "open"
    assert res.json()["closed_reason"] is None
    assert client.post(f"/api/questions/{q['id']}/reopen", headers=mod["headers"]).status_code == 400


def test_close_as_duplicate(client, make_user, ask):
    alice = make_user("alice")
    mod = make_user("mod", role="moderator")
    original = ask(alice, title="The original question about lists")
    copy = ask(alice, title="The same question about lists again")

    res = client.post(
        f"/api/questions/{copy['id']}/close",
        json={"reason": "Duplicate", "duplicate_of": original["id"]},
        headers=mod["headers"],
    )
    assert res.json()["status"] == "duplicate"
    assert res.json()["duplicate_of"] == original["id"]

    res = client.post(
        f"/api/questions/{copy['id']}/close",
        json={"reason": "Duplicate", "duplicate_of": copy["id"]},
        headers=mod["headers"],
    )
    assert res.status_code == 400


def test_bounty_escrows_reputation(client, make_user, ask, mock_db):
    alice = make_user("alice", reputation=200)
    bob = make_user("bob")
    q = ask(alice)
    url = f"/api/questions/{q['id']}/bounty"

    assert client.post(url, json={"amount": 10}, headers=alice["headers"]).status_code == 400
    assert client.post(url, json={"amount": 100}, headers=bob["headers"]).status_code == 403

    res = client.post(url, json={"amount": 150}, headers=alice["headers"])
    assert res.status_code == 200
    assert res.json()["bounty"]["amount"] == 150
    assert res.json()["bounty"]["awarded_to"] is None
    assert _reputation(mock_db, alice) == 50

    res = client.post(url, json={"amount": 50}, headers=alice["headers"])
    assert res.status_code == 400
    assert res.json()["detail"] == "Question already has an active bounty"


def test_bounty_needs_reputation(client, make_user, ask, mock_db):
    alice = make_user("alice")
    q = ask(alice)
    res = client.post(f"/api/questions/{q['id']}/bounty", json={"amount": 50}, headers=alice["headers"])
    assert res.status_code == 400
    assert res.json()["detail"] == "Not enough reputation"
    assert _reputation(mock_db, alice) == 1


def test_sort_oldest_views_and_active(client, make_user, ask, mock_db):
    alice = make_user("alice")
    first = ask(alice, title="Question number one, the oldest")
    second = ask(alice, title="Question number two, in the middle")
    third = ask(alice, title="Question number three, the newest")
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for day, (q, views, active) in enumerate([(first, 5, 1), (second, 9, 0), (third, 1, 2)]):
        mock_db["question"].update_one(
            {"_id": ObjectId(q["id"])},
            {"$set": {"created_at": base + timedelta(days=day), "views": views, "last_activity_at": base + timedelta(days=10 + active)}},
        )

    def order(sort):
        return [q["id"] for q in client.get("/api/questions", params={"sort": sort}).json()["questions"]]

    assert order("oldest") == [first["id"], second["id"], third["id"]]
    assert order("views") == [second["id"], first["id"], third["id"]]
    assert order("active") == [third["id"], first["id"], second["id"]]


def test_search_with_only_blank_tags_is_empty(client, make_user, ask):
    alice = make_user("alice")
    ask(alice)
    for tags in (",", " , "):
        res = client.get("/api/search/questions", params={"tags": tags})
        assert res.json()["pagination"]["total"] == 0
        assert res.json()["questions"] == []
    assert client.get("/api/search/questions", params={"tags": "python,"}).json()["pagination"]["total"] == 1


def test_deleting_question_takes_back_accept_reputation(client, make_user, ask, mock_db):
    alice = make_user("alice")
    bob = make_user("bob")
    q = ask(alice)
    answer = client.post(
        f"/api/questions/{q['id']}/answers",
        json={"content": "Use reversed() to get an iterator."},
        headers=bob["headers"],
    ).json()
    client.post(f"/api/answers/{answer['id']}/accept", headers=alice["headers"])
    assert _reputation(mock_db, bob) == 16

    client.delete(f"/api/questions/{q['id']}", headers=alice["headers"])
    assert _reputation(mock_db, bob) == 1


def test_vote_conflict_returns_409(client, make_user, ask, monkeypatch):
    alice = make_user("alice")
    bob = make_user("bob")
    q = ask(alice)

    def always_conflicts(*args, **kwargs):
        raise VoteConflict("busy")

    monkeypatch.setattr(main, "cast_vote", always_conflicts)
    res = client.post(f"/api/questions/{q['id']}/vote", json={"vote": 1}, headers=bob["headers"])
    assert res.status_code == 409


def test_only_fresh_votes_notify(client, make_user, ask):
    alice = make_user("alice")
    bob = make_user("bob")
    q = ask(alice)
    url = f"/api/questions/{q['id']}/vote"
    for vote in (1, 1, 1, -1, 1):
        client.post(url, json={"vote": vote}, headers=bob["headers"])

    notes = client.get("/api/notifications", headers=alice["headers"]).json()["notifications"]
    assert [n["type"] for n in notes] == ["vote", "vote"]
