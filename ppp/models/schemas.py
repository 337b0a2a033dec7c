"""
数据模型 / 类型定义，供各模块引用。
使用 dataclass 保持轻量，不引入 ORM。金额一律为整数分。
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

ALIPAY = "alipay"

# 支付方式
WEBPAY = "web"
APPPAY = "app"
BARPAY = "bar"


class TradeStatus(IntEnum):
    WAIT_PAY = 0
    SUCCESS = 1
    CLOSED = 2


class RefundStatus(IntEnum):
    WAIT = 0
    SUCCESS = 1
    FAIL = 2


class AuthStatus(IntEnum):
    WAIT_VERIFY = 0
    SUCCESS = 1
    FAIL = 2


@dataclass
class Trade:
    out_trade_id: str
    amount: int
    id: str = ""
    trade_id: str = ""
    status: TradeStatus = TradeStatus.WAIT_PAY
    type: str = ""
    channel: str = ALIPAY
    mch_id: str = ""
    user_id: str = ""
    ex: str = ""
    created_at: int = 0
    updated_at: int = 0
    paid_at: int = 0


@dataclass
class Refund:
    out_refund_id: str
    source_id: str  # 原订单的 out_trade_id
    amount: int
    id: str = ""
    refund_id: str = ""
    status: RefundStatus = RefundStatus.WAIT
    channel: str = ALIPAY
    mch_id: str = ""
    user_id: str = ""
    memo: str = ""
    created_at: int = 0
    updated_at: int = 0
    refunded_at: int = 0


@dataclass
class Auth:
    mch_id: str
    id: str = ""
    account: str = ""
    token: str = ""
    status: AuthStatus = AuthStatus.WAIT_VERIFY
    channel: str = ALIPAY
    created_at: int = 0
    updated_at: int = 0


@dataclass
class User:
    user_id: str
    id: str = ""
    mch_id: str = ""
    status: AuthStatus = AuthStatus.WAIT_VERIFY  # 与绑定的 Auth 状态保持一致
    channel: str = ALIPAY


# ── 请求参数 ──────────────────────────────────────────────


@dataclass
class TradeParams:
    """前端发起支付（网页 / APP）所需参数。"""
    out_trade_id: str
    amount: int
    trade_name: str
    type: str = WEBPAY
    item_des: str = ""
    shop_id: str = ""
    return_url: str = ""
    ex: str = ""


@dataclass
class BarPayParams:
    """商户扫用户付款码。"""
    out_trade_id: str
    auth_code: str
    amount: int
    trade_name: str
    item_des: str = ""
    shop_id: str = ""
    user_id: str = ""
    mch_id: str = ""


@dataclass
class RefundParams:
    out_refund_id: str
    source_id: str
    amount: int
    memo: str = ""
    user_id: str = ""
    mch_id: str = ""


@dataclass
class PayParams:
    """交给前端直接请求网关的已签名参数。"""
    params: str       # url 编码后的查询串
    source_data: str  # 原始参数 JSON


@dataclass(frozen=True)
class SignedRequest:
    """已签名的网关请求，重试时原样重发，不重新签名。"""
    method: str
    params: tuple  # ((key, value), ...)，冻结后不可修改

    def as_dict(self) -> dict:
        return dict(self.params)

    @property
    def sign(self) -> Optional[str]:
        return self.as_dict().get("sign")
