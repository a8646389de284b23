import sqlite3
from typing import Optional

from .config import DB_FILE, DEFAULT_CONFIG

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    campaign_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    unit_key TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL,
    retry_after TEXT,
    claimed_by TEXT,
    claimed_at TEXT,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_status_retry ON jobs(status, retry_after);
CREATE INDEX IF NOT EXISTS idx_jobs_campaign_kind ON jobs(campaign_id, kind, status);

CREATE TABLE IF NOT EXISTS campaigns (
    id TEXT PRIMARY KEY,
    launch_name TEXT NOT NULL,
    client_email TEXT,
    status TEXT NOT NULL,
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    importance_threshold REAL NOT NULL DEFAULT 0,
    channels TEXT NOT NULL DEFAULT '[]',
    frequency_window_minutes INTEGER NOT NULL DEFAULT 30,
    alert_spacing_minutes INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_campaigns_status_end ON campaigns(status, end_date);

CREATE TABLE IF NOT EXISTS campaign_tweets (
    campaign_id TEXT NOT NULL,
    tweet_id TEXT NOT NULL,
    category TEXT NOT NULL DEFAULT 'main_twt',
    like_count INTEGER NOT NULL DEFAULT 0,
    retweet_count INTEGER NOT NULL DEFAULT 0,
    quote_count INTEGER NOT NULL DEFAULT 0,
    reply_count INTEGER NOT NULL DEFAULT 0,
    view_count INTEGER NOT NULL DEFAULT 0,
    bookmark_count INTEGER NOT NULL DEFAULT 0,
    metrics_updated_at TEXT,
    PRIMARY KEY (campaign_id, tweet_id)
);

CREATE TABLE IF NOT EXISTS engagements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    campaign_id TEXT NOT NULL,
    tweet_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    username TEXT,
    name TEXT,
    followers INTEGER NOT NULL DEFAULT 0,
    action_type TEXT NOT NULL,
    text TEXT,
    importance_score REAL,
    timestamp TEXT NOT NULL,
    UNIQUE (campaign_id, tweet_id, user_id, action_type)
);
CREATE INDEX IF NOT EXISTS idx_engagements_campaign_score ON engagements(campaign_id, importance_score);

CREATE TABLE IF NOT EXISTS alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    campaign_id TEXT NOT NULL,
    engagement_id INTEGER NOT NULL,
    user_id TEXT,
    action_type TEXT,
    importance_score REAL NOT NULL,
    llm_copy TEXT,
    status TEXT NOT NULL,
    skip_reason TEXT,
    scheduled_send_time TEXT,
    created_at TEXT NOT NULL,
    sent_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_alerts_status_due ON alerts(status, scheduled_send_time);
CREATE INDEX IF NOT EXISTS idx_alerts_campaign_engagement ON alerts(campaign_id, engagement_id);

CREATE TABLE IF NOT EXISTS alert_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    campaign_id TEXT NOT NULL,
    user_id TEXT,
    action_type TEXT,
    timestamp_hour TEXT NOT NULL,
    sent_at TEXT NOT NULL,
    channel TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_alert_history_lookup ON alert_history(campaign_id, user_id, action_type, sent_at);

CREATE TABLE IF NOT EXISTS metric_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    campaign_id TEXT NOT NULL,
    snapshot_hour TEXT NOT NULL,
    tweet_count INTEGER NOT NULL,
    total_likes INTEGER NOT NULL,
    total_retweets INTEGER NOT NULL,
    total_quotes INTEGER NOT NULL,
    total_replies INTEGER NOT NULL,
    total_views INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (campaign_id, snapshot_hour)
);

CREATE TABLE IF NOT EXISTS unit_state (
    campaign_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    unit_key TEXT NOT NULL,
    last_success TEXT,
    blocked_until TEXT,
    last_error TEXT,
    failure_count INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (campaign_id, kind, unit_key)
);

CREATE TABLE IF NOT EXISTS oauth_states (
    token TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def connect_db(path: Optional[str] = None) -> sqlite3.Connection:
    conn = sqlite3.connect(path or DB_FILE, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA)
    return conn


def init_db(path: Optional[str] = None):
    conn = connect_db(path)
    with conn:
        # seed defaults
        for k, v in DEFAULT_CONFIG.items():
            conn.execute(
                "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
            )
    conn.close()
