import sqlite3
from pathlib import Path

import fakeredis
import pytest
from fastapi.testclient import TestClient

from backend.app.cache import set_redis_client
from backend.app.config import settings
from backend.app.db import connect, init_db

NOW = 1_700_000_000
HOUR = 3600
DAY = 24 * HOUR

# (id, title, author_id, tags, hot_score, status)
ITEMS = [
    (1, "Lisbon street food", 5, "travel,food", 900.0, "public"),
    (2, "Night train to Vienna", 5, "travel", 800.0, "public"),
    (3, "Five minute ramen", 5, "food,cooking", 700.0, "public"),
    (4, "Mechanical keyboards", 4, "tech", 600.0, "public"),
    (5, "Retro handhelds", 2, "tech,gaming", 500.0, "public"),
    (6, "Lo-fi playlist", 8, "music", 400.0, "public"),
    (7, "Golden hour in Porto", 8, "travel,photography", 300.0, "public"),
    (8, "Street tacos", 8, "food", 200.0, "public"),
    (9, "Speedrun notes", 8, "gaming", 100.0, "public"),
    (10, "Gig posters", 8, "music,art", 50.0, "public"),
    (11, "Ink sketches", 8, "art", 10.0, "public"),
    (12, "Unpublished draft", 5, "travel", 1000.0, "draft"),
]

# 1<->2 mutual, 1->3, 2->3, 3->4, 4->5, 6->1, 6->3; 7 and 8 have no edges
FOLLOWS = [(1, 2), (2, 1), (1, 3), (2, 3), (3, 4), (4, 5), (6, 1), (6, 3)]

INTERACTIONS = [
    (1, 1, "like"),
    (1, 2, "share"),
    (1, 2, "collect"),
    (1, 3, "comment"),
    (1, 7, "view"),
    (2, 1, "like"),
    (2, 2, "like"),
    (2, 8, "like"),
    (2, 4, "share"),
    (3, 2, "like"),
    (3, 7, "like"),
    (3, 5, "view"),
    (8, 9, "like"),
    (8, 5, "like"),
    (8, 4, "view"),
    (8, 6, "like"),
    (8, 10, "view"),
]


def seed_social_world(conn: sqlite3.Connection) -> None:
    conn.executemany(
        "INSERT INTO users(id, username, created_at) VALUES(?,?,?)",
        [(uid, f"user{uid}", NOW - 90 * DAY) for uid in range(1, 9)],
    )
    conn.executemany(
        "INSERT INTO items(id, title, author_id, tags, hot_score, status, created_at) VALUES(?,?,?,?,?,?,?)",
        [(i, t, a, tags, hot, st, NOW - i * HOUR) for i, t, a, tags, hot, st in ITEMS],
    )
    conn.executemany(
        "INSERT INTO follows(follower_id, following_id, created_at) VALUES(?,?,?)",
        [(a, b, NOW - 10 * DAY) for a, b in FOLLOWS],
    )
    publish = [(a, i, "publish", NOW - i * HOUR) for i, _, a, _, _, _ in ITEMS]
    consumed = [(u, i, e, NOW - HOUR) for u, i, e in INTERACTIONS]
    conn.executemany(
        "INSERT INTO interactions(user_id, item_id, event_type, ts) VALUES(?,?,?,?)",
        publish + consumed,
    )
    conn.commit()


@pytest.fixture(autouse=True)
def fake_redis():
    client = fakeredis.FakeRedis(decode_responses=True)
    set_redis_client(client)
    try:
        yield client
    finally:
        set_redis_client(None)


@pytest.fixture
def db_path(tmp_path: Path, monkeypatch) -> str:
    path = str(tmp_path / "ranker.db")
    # absolute path -> sqlite:////...
    monkeypatch.setattr(settings, "database_url", f"sqlite:///{path}")
    monkeypatch.setattr(settings, "monitor_enabled", False)
    conn = connect(path)
    init_db(conn)
    conn.close()
    return path


@pytest.fixture
def conn(db_path):
    c = connect(db_path)
    try:
        yield c
    finally:
        c.close()


@pytest.fixture
def seeded(conn):
    seed_social_world(conn)
    return conn


@pytest.fixture
def client(seeded):
    from backend.app.main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture
def now() -> int:
    return NOW
