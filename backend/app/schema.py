SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS users (
  id         INTEGER PRIMARY KEY,
  username   TEXT NOT NULL,
  status     TEXT NOT NULL DEFAULT 'active',
  created_at INTEGER NOT NULL DEFAULT (CAST(strftime('%s','now') AS INTEGER))
);

CREATE TABLE IF NOT EXISTS items (
  id         INTEGER PRIMARY KEY,
  title      TEXT NOT NULL,
  author_id  INTEGER,
  tags       TEXT,                             -- comma-separated tag names
  hot_score  REAL NOT NULL DEFAULT 0,
  status     TEXT NOT NULL DEFAULT 'public',    -- only 'public' items are ranked
  created_at INTEGER NOT NULL,                  -- unix timestamp
  FOREIGN KEY (author_id) REFERENCES users(id)
);

CREATE INDEX IF NOT EXISTS idx_items_hot ON items(hot_score);
CREATE INDEX IF NOT EXISTS idx_items_created ON items(created_at);

CREATE TABLE IF NOT EXISTS follows (
  follower_id  INTEGER NOT NULL,
  following_id INTEGER NOT NULL,
  created_at   INTEGER NOT NULL DEFAULT (CAST(strftime('%s','now') AS INTEGER)),
  PRIMARY KEY (follower_id, following_id),
  FOREIGN KEY (follower_id) REFERENCES users(id),
  FOREIGN KEY (following_id) REFERENCES users(id)
);

CREATE INDEX IF NOT EXISTS idx_follows_following ON follows(following_id);

-- append-only interaction log
CREATE TABLE IF NOT EXISTS interactions (
  id         INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id    INTEGER NOT NULL,
  item_id    INTEGER NOT NULL,
  event_type TEXT NOT NULL,  -- publish | like | comment | share | collect | view
  ts         INTEGER NOT NULL,
  FOREIGN KEY (user_id) REFERENCES users(id),
  FOREIGN KEY (item_id) REFERENCES items(id)
);

CREATE INDEX IF NOT EXISTS idx_interactions_user_id ON interactions(user_id);
CREATE INDEX IF NOT EXISTS idx_interactions_item_id ON interactions(item_id);
CREATE INDEX IF NOT EXISTS idx_interactions_ts ON interactions(ts);

-- one row per served item, outcome flags filled in later

CREATE TABLE IF NOT EXISTS impressions (
  id                   TEXT PRIMARY KEY,        -- UUID string
  user_id              INTEGER NOT NULL,
  item_id              INTEGER NOT NULL,
  algorithm            TEXT NOT NULL,
  score                REAL NOT NULL,
  rank                 INTEGER NOT NULL,
  experiment_id        TEXT,
  experiment_variant   TEXT,
  context_page         TEXT NOT NULL DEFAULT 'home',
  context_position     INTEGER NOT NULL,
  context_session      TEXT,
  user_features_json   TEXT NOT NULL,           -- frozen at serve time
  item_features_json   TEXT NOT NULL,           -- frozen at serve time
  is_clicked           INTEGER NOT NULL DEFAULT 0,
  is_liked             INTEGER NOT NULL DEFAULT 0,
  is_shared            INTEGER NOT NULL DEFAULT 0,
  is_commented         INTEGER NOT NULL DEFAULT 0,
  is_collected         INTEGER NOT NULL DEFAULT 0,
  is_disliked          INTEGER NOT NULL DEFAULT 0,
  view_duration        REAL NOT NULL DEFAULT 0,
  user_rating          REAL,
  time_to_interact     INTEGER,
  ctr                  REAL,
  engagement_rate      REAL,
  satisfaction_score   REAL,
  recommended_at       INTEGER NOT NULL,
  interacted_at        INTEGER
);

CREATE INDEX IF NOT EXISTS idx_impressions_user_ts ON impressions(user_id, recommended_at);
CREATE INDEX IF NOT EXISTS idx_impressions_algo_ts ON impressions(algorithm, recommended_at);
CREATE INDEX IF NOT EXISTS idx_impressions_experiment ON impressions(experiment_id, experiment_variant);

CREATE TABLE IF NOT EXISTS experiments (
  id                        TEXT PRIMARY KEY,
  name                      TEXT NOT NULL,
  description               TEXT NOT NULL DEFAULT '',
  experiment_type           TEXT NOT NULL,
  primary_metric            TEXT NOT NULL,
  secondary_metrics_json    TEXT NOT NULL DEFAULT '[]',
  variants_json             TEXT NOT NULL,
  target_audience_json      TEXT NOT NULL DEFAULT '{}',
  start_ts                  INTEGER NOT NULL,
  end_ts                    INTEGER NOT NULL,
  status                    TEXT NOT NULL DEFAULT 'draft',
  statistical_settings_json TEXT NOT NULL DEFAULT '{}',
  automation_json           TEXT NOT NULL DEFAULT '{}',
  notifications_json        TEXT NOT NULL DEFAULT '{}',
  results_json              TEXT NOT NULL DEFAULT '{}',
  created_by                INTEGER,
  created_at                INTEGER NOT NULL,
  updated_at                INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_experiments_status ON experiments(status, start_ts);

-- outbound notifications, delivery happens elsewhere
CREATE TABLE IF NOT EXISTS notification_outbox (
  id           INTEGER PRIMARY KEY AUTOINCREMENT,
  dedupe_key   TEXT NOT NULL UNIQUE,
  kind         TEXT NOT NULL,
  payload_json TEXT NOT NULL,
  created_at   INTEGER NOT NULL,
  delivered_at INTEGER
);
"""
