"""
Seed data for StackIt

Loads the default tag set and the demo accounts. Safe to run repeatedly:
existing tags and users are left as they are.

    python seed.py
"""

import logging

from database import create_document, utcnow
from schemas import Tag, User
from security import hash_password

logger = logging.getLogger(__name__)

DEFAULT_TAGS = [
    ("javascript", "JavaScript is a high-level, interpreted programming language that conforms to the ECMAScript specification.", "#f7df1e"),
    ("react", "React is a JavaScript library for building user interfaces, particularly single-page applications.", "#61dafb"),
    ("nodejs", "Node.js is an open-source, cross-platform JavaScript runtime environment.", "#339933"),
    ("python", "Python is a high-level, interpreted programming language known for its simplicity and readability.", "#3776ab"),
    ("java", "Java is a class-based, object-oriented programming language.", "#ed8b00"),
    ("html", "HTML is the standard markup language for documents designed to be displayed in a web browser.", "#e34f26"),
    ("css", "CSS is a style sheet language used for describing the presentation of a document written in HTML.", "#1572b6"),
    ("mongodb", "MongoDB is a source-available cross-platform document-oriented database program.", "#47a248"),
    ("express", "Express.js is a web application framework for Node.js.", "#000000"),
    ("typescript", "TypeScript is a programming language developed and maintained by Microsoft.", "#3178c6"),
    ("vuejs", "Vue.js is a progressive JavaScript framework for building user interfaces.", "#4fc08d"),
    ("angular", "Angular is a platform for building mobile and desktop web applications.", "#dd0031"),
    ("docker", "Docker is a set of platform as a service products that use OS-level virtualization.", "#2496ed"),
    ("git", "Git is a distributed version control system for tracking changes in source code.", "#f05032"),
    ("aws", "Amazon Web Services is a subsidiary of Amazon providing on-demand cloud computing platforms.", "#ff9900"),
]

DEMO_ACCOUNTS = {
    "admin": {"username": "admin", "email": "admin@stackit.com", "password": "admin123", "bio": "System Administrator"},
    "moderator": {"username": "moderator", "email": "moderator@stackit.com", "password": "moderator123", "bio": "Community Moderator"},
    "user": {"username": "demo_user", "email": "user@stackit.com", "password": "user123", "bio": ""},
}


def seed_database(db) -> dict:
    created_tags = 0
    for name, description, color in DEFAULT_TAGS:
        doc = Tag(name=name, description=description, color=color).model_dump()
        doc.pop("name")
        now = utcnow()
        doc["created_at"] = now
        doc["updated_at"] = now
        res = db["tag"].update_one({"name": name}, {"$setOnInsert": doc}, upsert=True)
        if res.upserted_id is not None:
            created_tags += 1

    for role, account in DEMO_ACCOUNTS.items():
        if db["user"].find_one({"email": account["email"]}):
            continue
        user = User(
            username=account["username"],
            email=account["email"],
            password_hash=hash_password(account["password"]),
            role=role,
            reputation=100 if role != "user" else 1,
            bio=account["bio"],
        )
        create_document("user", user, database=db)
        logger.info("Created demo %s account %s", role, account["email"])

    logger.info("Seed complete: %d new tags", created_tags)
    return {
        "created_tags": created_tags,
        "demo_accounts": {
            role: {"email": a["email"], "password": a["password"]} for role, a in DEMO_ACCOUNTS.items()
        },
    }


if __name__ == "__main__":
    from database import db, ensure_indexes

    logging.basicConfig(level=logging.INFO)
    ensure_indexes(db)
    result = seed_database(db)
    for role, creds in result["demo_accounts"].items():
        print(f"{role}: {creds['email']} / {creds['password']}")
