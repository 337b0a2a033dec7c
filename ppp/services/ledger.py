"""
本地账本：Trade / Refund / Auth / User 的持久化读写。

查询未命中返回 None，不抛异常；数据库异常统一转换为 PersistenceError，
唯一约束冲突转换为 DuplicateKeyError，供对账逻辑在并发插入时改走更新。
"""

import logging
import random
import sqlite3
from dataclasses import asdict, fields
from datetime import datetime

from ppp.database import get_db
from ppp.models.schemas import (
    ALIPAY,
    Auth,
    AuthStatus,
    Refund,
    RefundStatus,
    Trade,
    TradeStatus,
    User,
)
from ppp.services.errors import PersistenceError

logger = logging.getLogger(__name__)


class DuplicateKeyError(PersistenceError):
    """唯一键冲突。"""
    pass


def generate_id() -> str:
    """
    生成内部 ID：时间戳 + 随机数。
    格式：YYYYMMDDHHMMSSffffff + 6位随机数字。
    """
    ts = datetime.now().strftime("%Y%m%d%H%M%S%f")
    return ts + f"{random.randint(0, 999999):06d}"


def _columns(model) -> list[str]:
    return [f.name for f in fields(model)]


def _db_value(value):
    # 枚举状态按整数落库
    return int(value) if isinstance(value, (TradeStatus, RefundStatus, AuthStatus)) else value


class Ledger:
    """sqlite 账本实现。每次操作独立连接，调用方无需管理事务。"""

    # ── 通用 ──────────────────────────────────────────────

    def _select_one(self, table: str, model, filters: dict):
        allowed = set(_columns(model))
        filters = {k: v for k, v in filters.items() if v not in (None, "")}
        unknown = set(filters) - allowed
        if unknown:
            raise ValueError(f"不支持的查询字段: {', '.join(sorted(unknown))}")
        # 只剩 channel 时不构成有效查询
        if not set(filters) - {"channel"}:
            return None
        where = " AND ".join(f"{k} = ?" for k in filters)
        db = get_db()
        try:
            row = db.execute(
                f"SELECT * FROM {table} WHERE {where} LIMIT 1",
                tuple(filters.values()),
            ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"查询 {table} 失败: {e}")
        finally:
            db.close()
        return dict(row) if row else None

    def _insert(self, table: str, record) -> None:
        data = asdict(record)
        cols = ", ".join(data)
        marks = ", ".join("?" for _ in data)
        db = get_db()
        try:
            db.execute(
                f"INSERT INTO {table} ({cols}) VALUES ({marks})",
                tuple(_db_value(v) for v in data.values()),
            )
            db.commit()
        except sqlite3.IntegrityError as e:
            db.rollback()
            raise DuplicateKeyError(f"写入 {table} 唯一键冲突: {e}")
        except sqlite3.Error as e:
            db.rollback()
            raise PersistenceError(f"写入 {table} 失败: {e}")
        finally:
            db.close()

    def _update(self, table: str, where: dict, values: dict) -> int:
        sets = ", ".join(f"{k} = ?" for k in values)
        cond = " AND ".join(f"{k} = ?" for k in where)
        params = tuple(_db_value(v) for v in values.values())
        db = get_db()
        try:
            cursor = db.execute(
                f"UPDATE {table} SET {sets} WHERE {cond}",
                params + tuple(where.values()),
            )
            db.commit()
            return cursor.rowcount
        except sqlite3.Error as e:
            db.rollback()
            raise PersistenceError(f"更新 {table} 失败: {e}")
        finally:
            db.close()

    # ── Trade ─────────────────────────────────────────────

    def get_trade(self, **filters) -> Trade | None:
        filters.setdefault("channel", ALIPAY)
        row = self._select_one("trades", Trade, filters)
        if not row:
            return None
        row["status"] = TradeStatus(row["status"])
        return Trade(**row)

    def save_trade(self, trade: Trade) -> None:
        self._insert("trades", trade)

    def update_trade(self, trade: Trade) -> None:
        """按内部 ID 整行更新，ID 本身不变。"""
        values = asdict(trade)
        values.pop("id")
        self._update("trades", {"id": trade.id}, values)

    # ── Refund ────────────────────────────────────────────

    def get_refund(self, **filters) -> Refund | None:
        filters.setdefault("channel", ALIPAY)
        row = self._select_one("refunds", Refund, filters)
        if not row:
            return None
        row["status"] = RefundStatus(row["status"])
        return Refund(**row)

    def save_refund(self, refund: Refund) -> None:
        self._insert("refunds", refund)

    def sum_refunded(self, source_id: str, channel: str = ALIPAY) -> int:
        """原订单已成功退款的累计金额（分）。"""
        db = get_db()
        try:
            row = db.execute(
                """SELECT COALESCE(SUM(amount), 0) AS total FROM refunds
                   WHERE source_id = ? AND channel = ? AND status = ?""",
                (source_id, channel, int(RefundStatus.SUCCESS)),
            ).fetchone()
            return row["total"]
        except sqlite3.Error as e:
            raise PersistenceError(f"统计退款金额失败: {e}")
        finally:
            db.close()

    # ── Auth ──────────────────────────────────────────────

    def get_auth(self, mch_id: str, channel: str = ALIPAY) -> Auth | None:
        row = self._select_one("auths", Auth, {"mch_id": mch_id, "channel": channel})
        if not row:
            return None
        row["status"] = AuthStatus(row["status"])
        return Auth(**row)

    def save_auth(self, auth: Auth) -> None:
        self._insert("auths", auth)

    def update_auth(self, auth: Auth) -> None:
        values = asdict(auth)
        for key in ("id", "mch_id", "channel", "created_at"):
            values.pop(key)
        self._update("auths", {"mch_id": auth.mch_id, "channel": auth.channel}, values)

    # ── User ──────────────────────────────────────────────

    def get_user(self, user_id: str, channel: str = ALIPAY) -> User | None:
        row = self._select_one("users", User, {"user_id": user_id, "channel": channel})
        if not row:
            return None
        row["status"] = AuthStatus(row["status"])
        return User(**row)

    def save_user(self, user: User) -> None:
        self._insert("users", user)

    def update_user(self, user: User) -> None:
        self._update(
            "users",
            {"user_id": user.user_id, "channel": user.channel},
            {"mch_id": user.mch_id, "status": user.status},
        )

    def update_users(self, mch_id: str, status: AuthStatus, channel: str = ALIPAY) -> int:
        """批量更新绑定到某个 Auth 的所有用户状态，返回影响行数。"""
        return self._update(
            "users",
            {"mch_id": mch_id, "channel": channel},
            {"status": status},
        )
