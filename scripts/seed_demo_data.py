#!/usr/bin/env python3
import argparse
import random
import sqlite3
import time
from backend.app.db import connect, init_db

TAGS = [
    "travel", "food", "fitness", "music", "tech", "art", "books", "gaming",
    "fashion", "photography", "movies", "pets", "diy", "science", "sports",
]

# publish is written once per item by its author, not sampled
EVENT_MIX = [("view", 0.45), ("like", 0.25), ("collect", 0.1), ("comment", 0.1), ("share", 0.1)]


def seed_users(conn: sqlite3.Connection, n_users: int, now: int) -> None:
    rows = [(uid, f"user{uid}", "active", now - 90 * 86400) for uid in range(1, n_users + 1)]
    conn.executemany(
        "INSERT OR REPLACE INTO users(id, username, status, created_at) VALUES(?,?,?,?)",
        rows,
    )


def seed_follows(conn: sqlite3.Connection, rng: random.Random, n_users: int, avg_following: int, now: int) -> int:
    rows = set()
    for follower in range(1, n_users + 1):
        k = max(0, int(rng.gauss(avg_following, avg_following / 2)))
        for _ in range(k):
            # a few accounts attract most follows
            target = min(n_users, int(rng.paretovariate(1.2)))
            if rng.random() < 0.5:
                target = rng.randint(1, n_users)
            if target != follower:
                rows.add((follower, target))

    conn.executemany(
        "INSERT OR IGNORE INTO follows(follower_id, following_id, created_at) VALUES(?,?,?)",
        [(a, b, now - rng.randint(0, 60 * 86400)) for a, b in sorted(rows)],
    )
    return len(rows)


def seed_items(conn: sqlite3.Connection, rng: random.Random, n_items: int, n_users: int, now: int) -> list[tuple[int, int, int]]:
    rows = []
    for item_id in range(1, n_items + 1):
        author = rng.randint(1, n_users)
        tags = rng.sample(TAGS, rng.randint(1, 4))
        created_at = now - rng.randint(0, 30 * 86400)
        hot_score = round(rng.expovariate(1 / 150.0), 2)
        status = "public" if rng.random() > 0.03 else "draft"
        rows.append((item_id, f"{tags[0].title()} post #{item_id}", author, ",".join(tags), hot_score, status, created_at))

    conn.executemany(
        """
        INSERT OR REPLACE INTO items(id, title, author_id, tags, hot_score, status, created_at)
        VALUES(?,?,?,?,?,?,?)
        """,
        rows,
    )
    return [(r[0], r[2], r[6]) for r in rows]


def seed_interactions(
    conn: sqlite3.Connection,
    rng: random.Random,
    items: list[tuple[int, int, int]],
    n_users: int,
    avg_interactions: int,
    now: int,
) -> int:
    rows = [(author, item_id, "publish", created_at) for item_id, author, created_at in items]

    item_ids = [i for i, _, _ in items]
    types, probs = zip(*EVENT_MIX)
    for user_id in range(1, n_users + 1):
        n = max(0, int(rng.gauss(avg_interactions, avg_interactions / 2)))
        for item_id in rng.sample(item_ids, min(n, len(item_ids))):
            event = rng.choices(types, weights=probs, k=1)[0]
            ts = now - rng.randint(0, 30 * 86400)
            rows.append((user_id, item_id, event, ts))

    conn.executemany(
        "INSERT INTO interactions(user_id, item_id, event_type, ts) VALUES(?,?,?,?)",
        rows,
    )
    return len(rows)


def clear_tables(conn: sqlite3.Connection) -> None:
    # delete child tables first (due to foreign keys)
    conn.execute("DELETE FROM impressions;")
    conn.execute("DELETE FROM interactions;")
    conn.execute("DELETE FROM follows;")
    conn.execute("DELETE FROM items;")
    conn.execute("DELETE FROM users;")


def main():
    ap = argparse.ArgumentParser(description="Seed a synthetic social feed into the app database")
    ap.add_argument("--users", type=int, default=200)
    ap.add_argument("--items", type=int, default=1000)
    ap.add_argument("--avg-following", type=int, default=15)
    ap.add_argument("--avg-interactions", type=int, default=25)
    ap.add_argument("--seed", type=int, default=42)
    ap.add_argument("--reset", action="store_true", help="Clear tables before seeding")
    args = ap.parse_args()

    if args.users < 1 or args.items < 1:
        raise SystemExit("--users and --items must be >= 1")

    rng = random.Random(args.seed)
    now = int(time.time())

    conn = connect()
    init_db(conn)

    if args.reset:
        clear_tables(conn)

    seed_users(conn, args.users, now)
    n_follows = seed_follows(conn, rng, args.users, args.avg_following, now)
    items = seed_items(conn, rng, args.items, args.users, now)
    n_interactions = seed_interactions(conn, rng, items, args.users, args.avg_interactions, now)

    conn.commit()
    conn.close()
    print(f"Seeding complete: users={args.users} items={len(items)} follows={n_follows} interactions={n_interactions}")


if __name__ == "__main__":
    main()
