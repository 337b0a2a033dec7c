"""
支付宝网关各接口的响应结构。

网关响应形如 {"<method>_response": {...}, "sign": "..."}，
由 transport.unwrap_envelope 取出节点后按接口解析为以下模型。
"""

from decimal import Decimal, InvalidOperation

from pydantic import BaseModel, ConfigDict


def to_fen(amount: str | None) -> int:
    """支付宝金额字符串（元）转整数分。"""
    if not amount:
        return 0
    try:
        return int((Decimal(amount) * 100).quantize(Decimal("1")))
    except (InvalidOperation, TypeError):
        raise ValueError(f"金额格式无效: {amount}")


def to_yuan(fen: int) -> str:
    """整数分转支付宝金额字符串，保留两位小数。"""
    return str((Decimal(fen) / 100).quantize(Decimal("0.01")))


class GatewayResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: str = ""
    msg: str = ""
    sub_code: str = ""
    sub_msg: str = ""


class TradePayResponse(GatewayResponse):
    trade_no: str = ""
    out_trade_no: str = ""
    buyer_logon_id: str = ""
    total_amount: str = ""
    gmt_payment: str = ""


class TradeQueryResponse(GatewayResponse):
    trade_no: str = ""
    out_trade_no: str = ""
    trade_status: str = ""
    total_amount: str = ""
    send_pay_date: str = ""


class TradeRefundResponse(GatewayResponse):
    trade_no: str = ""
    out_trade_no: str = ""
    refund_fee: str = ""
    gmt_refund_pay: str = ""


class TradeCancelResponse(GatewayResponse):
    trade_no: str = ""
    out_trade_no: str = ""
    retry_flag: str = ""
    action: str = ""


class AuthTokenResponse(GatewayResponse):
    user_id: str = ""
    auth_app_id: str = ""
    app_auth_token: str = ""
    app_refresh_token: str = ""
    expires_in: int = 0
    re_expires_in: int = 0
