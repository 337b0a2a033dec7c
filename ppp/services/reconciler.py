"""
订单对账：把网关调用结果合并进本地 Trade / Refund 记录。

- 同一 out_trade_id 的"查询 → 插入或更新"在进程内按键串行，
  数据库唯一索引兜底，插入冲突时改为更新，保证只有一条 Trade。
- 同步查询时以支付宝数据为准，本地内部 ID 和创建时间保留不变。
- 退款只追加不修改，同一 out_refund_id 重放返回已有记录。
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable

from ppp.models.responses import TradeCancelResponse, TradePayResponse, TradeQueryResponse, to_fen
from ppp.models.schemas import (
    BARPAY,
    BarPayParams,
    Refund,
    RefundParams,
    RefundStatus,
    Trade,
    TradeParams,
    TradeStatus,
)
from ppp.services.dispatcher import RequestContext
from ppp.services.errors import PPPError, RefundAmountError, TradeStatusConflict, build_error
from ppp.services import errors
from ppp.services.ledger import DuplicateKeyError, Ledger, generate_id

logger = logging.getLogger(__name__)

ALI_TRADE_STATUS = {
    "WAIT_BUYER_PAY": TradeStatus.WAIT_PAY,
    "TRADE_CLOSED": TradeStatus.CLOSED,
    "TRADE_SUCCESS": TradeStatus.SUCCESS,
    "TRADE_FINISHED": TradeStatus.SUCCESS,
}

_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class KeyedLock:
    """按键加锁，键上无人持有时释放锁对象。"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


# 进程内共享，多个 AliPay 实例操作同一订单时也串行
_TRADE_LOCKS = KeyedLock()


def _parse_time(value: str, default: int) -> int:
    if not value:
        return default
    try:
        return int(datetime.strptime(value, _TIME_FORMAT).timestamp())
    except ValueError:
        logger.warning("支付宝时间格式无法解析: %s", value)
        return default


class TradeReconciler:

    def __init__(self, ledger: Ledger, locks: KeyedLock | None = None):
        self.ledger = ledger
        self.locks = locks or _TRADE_LOCKS

    def _upsert(self, trade: Trade) -> Trade:
        """已持有键锁时调用：无 ID 则插入，唯一键冲突时改为更新已有行。"""
        if not trade.id:
            trade.id = generate_id()
            try:
                self.ledger.save_trade(trade)
                return trade
            except DuplicateKeyError:
                existing = self.ledger.get_trade(out_trade_id=trade.out_trade_id, channel=trade.channel)
                if existing is None:
                    raise
                trade.id = existing.id
                trade.created_at = existing.created_at
                logger.info("订单已被并发写入, 改为更新: out_trade_id=%s", trade.out_trade_id)
        self.ledger.update_trade(trade)
        return trade

    def record_pending(self, ctx: RequestContext, params: TradeParams, mch_id: str) -> Trade:
        """前端支付下单：写入或刷新一条待支付订单。"""
        now = int(ctx.now())
        with self.locks.hold(params.out_trade_id):
            trade = self.ledger.get_trade(out_trade_id=params.out_trade_id)
            if trade is None:
                trade = Trade(out_trade_id=params.out_trade_id, amount=params.amount, created_at=now)
            elif trade.status == TradeStatus.SUCCESS:
                # 锁内复查，支付成功后不再回退为待支付
                raise TradeStatusConflict("订单已支付")
            trade.amount = params.amount
            trade.type = params.type
            trade.status = TradeStatus.WAIT_PAY
            trade.mch_id = mch_id
            trade.ex = params.ex
            trade.updated_at = now
            return self._upsert(trade)

    def record_payment(self, ctx: RequestContext, params: BarPayParams, payload: dict) -> Trade:
        """
        支付成功落库。

        payload 可能来自 alipay.trade.pay，也可能来自轮询时的 alipay.trade.query。

        Raises:
            PersistenceError: 支付已成功，只是本地记账失败。
        """
        pay = TradePayResponse.model_validate(payload)
        now = int(ctx.now())
        paid_at = _parse_time(pay.gmt_payment or payload.get("send_pay_date", ""), now)

        with self.locks.hold(params.out_trade_id):
            trade = self.ledger.get_trade(out_trade_id=params.out_trade_id)
            if trade is None:
                trade = Trade(out_trade_id=params.out_trade_id, amount=params.amount, created_at=now)
            trade.trade_id = pay.trade_no or trade.trade_id
            trade.amount = params.amount
            trade.status = TradeStatus.SUCCESS
            trade.type = BARPAY
            trade.mch_id = ctx.auth.mch_id if ctx.auth else trade.mch_id
            trade.user_id = params.user_id
            trade.updated_at = now
            trade.paid_at = paid_at
            trade = self._upsert(trade)

        logger.info(
            "付款码支付成功落库: out_trade_id=%s, trade_id=%s, id=%s",
            trade.out_trade_id, trade.trade_id, trade.id,
        )
        return trade

    def sync_trade(self, ctx: RequestContext, out_trade_id: str, payload: dict,
                   user_id: str = "") -> Trade:
        """
        以支付宝查询结果为准刷新本地订单。

        本地不存在时不新建，只返回远端视图（id 为空）。
        """
        remote = TradeQueryResponse.model_validate(payload)
        try:
            amount = to_fen(remote.total_amount)
        except ValueError:
            raise build_error(errors.TRADE_ERR, f"支付宝返回金额格式无效: {remote.total_amount}")
        key = remote.out_trade_no or out_trade_id
        now = int(ctx.now())

        with self.locks.hold(key or remote.trade_no):
            local = self.ledger.get_trade(out_trade_id=key) if key else None
            if local is None and remote.trade_no:
                local = self.ledger.get_trade(trade_id=remote.trade_no)
            trade = Trade(
                out_trade_id=key,
                amount=amount,
                trade_id=remote.trade_no,
                status=ALI_TRADE_STATUS.get(remote.trade_status, TradeStatus.WAIT_PAY),
                mch_id=ctx.auth.mch_id if ctx.auth else "",
                user_id=user_id,
                updated_at=now,
            )
            if local is None:
                trade.paid_at = _parse_time(remote.send_pay_date, 0)
                return trade

            trade.out_trade_id = local.out_trade_id
            trade.id = local.id
            trade.created_at = local.created_at
            trade.type = local.type
            trade.ex = local.ex
            trade.user_id = user_id or local.user_id
            trade.paid_at = _parse_time(remote.send_pay_date, local.paid_at)
            self.ledger.update_trade(trade)
            return trade

    def record_cancel(self, ctx: RequestContext, out_trade_id: str, payload: dict) -> Trade | None:
        """撤销成功后关闭本地订单；已支付订单仅在支付宝实际退款时关闭。"""
        cancel = TradeCancelResponse.model_validate(payload)
        with self.locks.hold(out_trade_id):
            trade = self.ledger.get_trade(out_trade_id=out_trade_id)
            if trade is None:
                return None
            if trade.status == TradeStatus.SUCCESS and cancel.action != "refund":
                return trade
            trade.status = TradeStatus.CLOSED
            trade.updated_at = int(ctx.now())
            self.ledger.update_trade(trade)
            return trade

    # ── 退款 ──────────────────────────────────────────────

    @contextmanager
    def refund_lock(self, source_id: str):
        """同一原订单的退款串行执行：额度校验、远程退款、落库在同一把锁内完成。"""
        with self.locks.hold("refund:" + source_id):
            yield

    def check_refundable(self, trade: Trade, amount: int) -> None:
        refunded = self.ledger.sum_refunded(trade.out_trade_id, trade.channel)
        if refunded + amount > trade.amount:
            raise RefundAmountError(
                f"退款金额超出可退金额: 订单金额={trade.amount}, 已退={refunded}, 本次={amount}"
            )

    def record_refund(self, ctx: RequestContext, params: RefundParams, payload: dict) -> Refund:
        existing = self.ledger.get_refund(out_refund_id=params.out_refund_id)
        if existing is not None:
            return existing

        now = int(ctx.now())
        refund = Refund(
            out_refund_id=params.out_refund_id,
            source_id=params.source_id,
            amount=params.amount,
            id=generate_id(),
            refund_id=payload.get("trade_no", ""),
            status=RefundStatus.SUCCESS,
            mch_id=ctx.auth.mch_id if ctx.auth else "",
            user_id=params.user_id,
            memo=params.memo,
            created_at=now,
            updated_at=now,
            refunded_at=_parse_time(payload.get("gmt_refund_pay", ""), now),
        )
        try:
            self.ledger.save_refund(refund)
        except DuplicateKeyError:
            return self.ledger.get_refund(out_refund_id=params.out_refund_id)
        logger.info(
            "退款成功落库: out_refund_id=%s, source_id=%s, amount=%d",
            refund.out_refund_id, refund.source_id, refund.amount,
        )
        return refund

    # ── 补偿 ──────────────────────────────────────────────

    def compensate(self, cancel: Callable[[], object], out_trade_id: str) -> bool:
        """尽力撤销订单，失败只记录日志，不改变原操作结果。"""
        try:
            cancel()
        except PPPError as e:
            logger.warning(
                "补偿撤销失败: out_trade_id=%s, code=%s, msg=%s",
                out_trade_id, e.code, e.msg,
            )
            return False
        logger.info("补偿撤销成功: out_trade_id=%s", out_trade_id)
        return True
