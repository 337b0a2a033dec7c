"""
SQLite 数据库连接管理和初始化。
使用同步 sqlite3，提供 get_db() 获取连接。
"""

import os
import sqlite3
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/ppp.db")


def get_db() -> sqlite3.Connection:
    """获取 SQLite 数据库连接，启用 WAL 模式。"""
    conn = sqlite3.connect(DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


# ── 建表 SQL ──────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS trades (
    id              VARCHAR(32)  PRIMARY KEY,
    out_trade_id    VARCHAR(64)  NOT NULL,
    trade_id        VARCHAR(64)  DEFAULT '',
    amount          INTEGER      NOT NULL,
    status          INTEGER      DEFAULT 0,
    type            VARCHAR(16)  DEFAULT '',
    channel         VARCHAR(16)  NOT NULL DEFAULT 'alipay',
    mch_id          VARCHAR(64)  DEFAULT '',
    user_id         VARCHAR(64)  DEFAULT '',
    ex              TEXT         DEFAULT '',
    created_at      INTEGER      NOT NULL,
    updated_at      INTEGER      NOT NULL,
    paid_at         INTEGER      DEFAULT 0
);

CREATE TABLE IF NOT EXISTS refunds (
    id              VARCHAR(32)  PRIMARY KEY,
    out_refund_id   VARCHAR(64)  NOT NULL,
    refund_id       VARCHAR(64)  DEFAULT '',
    source_id       VARCHAR(64)  NOT NULL,
    amount          INTEGER      NOT NULL,
    status          INTEGER      DEFAULT 0,
    channel         VARCHAR(16)  NOT NULL DEFAULT 'alipay',
    mch_id          VARCHAR(64)  DEFAULT '',
    user_id         VARCHAR(64)  DEFAULT '',
    memo            TEXT         DEFAULT '',
    created_at      INTEGER      NOT NULL,
    updated_at      INTEGER      NOT NULL,
    refunded_at     INTEGER      DEFAULT 0
);

CREATE TABLE IF NOT EXISTS auths (
    id              VARCHAR(32)  PRIMARY KEY,
    mch_id          VARCHAR(64)  NOT NULL,
    account         VARCHAR(128) DEFAULT '',
    token           TEXT         DEFAULT '',
    status          INTEGER      DEFAULT 0,
    channel         VARCHAR(16)  NOT NULL DEFAULT 'alipay',
    created_at      INTEGER      NOT NULL,
    updated_at      INTEGER      NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    id              VARCHAR(32)  PRIMARY KEY,
    user_id         VARCHAR(64)  NOT NULL,
    mch_id          VARCHAR(64)  DEFAULT '',
    status          INTEGER      DEFAULT 0,
    channel         VARCHAR(16)  NOT NULL DEFAULT 'alipay'
);
"""

# ── 索引 SQL ──────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_trades_out_trade_id
    ON trades(out_trade_id, channel);
CREATE INDEX IF NOT EXISTS idx_trades_trade_id
    ON trades(trade_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_refunds_out_refund_id
    ON refunds(out_refund_id, channel);
CREATE INDEX IF NOT EXISTS idx_refunds_source_id
    ON refunds(source_id, channel);
CREATE UNIQUE INDEX IF NOT EXISTS idx_auths_mch_id
    ON auths(mch_id, channel);
CREATE UNIQUE INDEX IF NOT EXISTS idx_users_user_id
    ON users(user_id, channel);
CREATE INDEX IF NOT EXISTS idx_users_mch_id
    ON users(mch_id, channel);
"""


# ── 初始化 ────────────────────────────────────────────────

def init_db() -> None:
    """创建数据库目录、表和索引（幂等）。"""
    db_dir = Path(DB_PATH).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = get_db()
    try:
        conn.executescript(_CREATE_TABLES)
        conn.executescript(_CREATE_INDEXES)
        conn.commit()
    finally:
        conn.close()
