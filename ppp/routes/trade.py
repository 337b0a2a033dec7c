"""
交易接口路由：前端支付参数、付款码支付、退款、撤销、订单查询。

处理函数为同步函数，由 FastAPI 放入线程池执行；
付款码支付在等待用户输密码时可能阻塞到总时限。
"""

import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ppp.models.schemas import WEBPAY, BarPayParams, RefundParams, TradeParams
from ppp.routes.common import error_response, get_alipay, ok_response
from ppp.services.errors import PPPError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/trade")


class PayParamsRequest(BaseModel):
    out_trade_id: str
    amount: int
    trade_name: str
    type: str = WEBPAY
    item_des: str = ""
    shop_id: str = ""
    return_url: str = ""
    ex: str = ""


class BarPayRequest(BaseModel):
    out_trade_id: str
    auth_code: str
    amount: int
    trade_name: str
    item_des: str = ""
    shop_id: str = ""
    user_id: str = ""
    mch_id: str = ""


class RefundRequest(BaseModel):
    out_refund_id: str
    source_id: str
    amount: int
    memo: str = ""
    user_id: str = ""
    mch_id: str = ""


class CancelRequest(BaseModel):
    out_trade_id: str = ""
    trade_id: str = ""
    user_id: str = ""
    mch_id: str = ""


@router.post("/pay-params")
def pay_params(body: PayParamsRequest, alipay=Depends(get_alipay)):
    """组装网页 / APP 支付的已签名参数。"""
    try:
        result = alipay.pay_params(TradeParams(**body.model_dump()))
    except PPPError as e:
        return error_response(e)
    return ok_response(params=result.params, source_data=result.source_data)


@router.post("/barpay")
def bar_pay(body: BarPayRequest, alipay=Depends(get_alipay)):
    """付款码支付。"""
    logger.info("收到付款码支付请求: out_trade_id=%s, amount=%d", body.out_trade_id, body.amount)
    try:
        trade = alipay.bar_pay(BarPayParams(**body.model_dump()))
    except PPPError as e:
        return error_response(e)
    return ok_response(trade=trade)


@router.post("/refund")
def refund(body: RefundRequest, alipay=Depends(get_alipay)):
    try:
        result = alipay.refund(RefundParams(**body.model_dump()))
    except PPPError as e:
        return error_response(e)
    return ok_response(refund=result)


@router.post("/cancel")
def cancel(body: CancelRequest, alipay=Depends(get_alipay)):
    try:
        trade = alipay.cancel(**body.model_dump())
    except PPPError as e:
        return error_response(e)
    return ok_response(trade=trade)


@router.get("/{out_trade_id}")
def trade_info(
    out_trade_id: str,
    sync: bool = Query(False),
    user_id: str = Query(""),
    mch_id: str = Query(""),
    alipay=Depends(get_alipay),
):
    """订单查询，sync=true 时先向支付宝同步。"""
    try:
        trade = alipay.trade_info(
            out_trade_id=out_trade_id, user_id=user_id, mch_id=mch_id, sync=sync,
        )
    except PPPError as e:
        return error_response(e)
    return ok_response(trade=trade)
