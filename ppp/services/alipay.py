"""
支付宝支付主体：组装业务参数 → 解析授权 → 签名 → 调度 → 对账。

支持单商户模式和服务商模式（代子商户调用，携带 app_auth_token）。
每个公开方法都新建一个 RequestContext，内部调用共享同一个总时限和授权。
"""

import json
import logging
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlencode

from ppp.config import AlipayConfig
from ppp.models.responses import AuthTokenResponse, to_yuan
from ppp.models.schemas import (
    APPPAY,
    Auth,
    AuthStatus,
    BarPayParams,
    PayParams,
    Refund,
    RefundParams,
    SignedRequest,
    Trade,
    TradeParams,
    TradeStatus,
    User,
)
from ppp.services import errors
from ppp.services.auth_registry import AuthRegistry
from ppp.services.classifier import (
    AUTH_CLASSIFIER,
    CANCEL_CLASSIFIER,
    PAY_CLASSIFIER,
    QUERY_CLASSIFIER,
    REFUND_CLASSIFIER,
)
from ppp.services.dispatcher import DispatchResult, Dispatcher, RequestContext
from ppp.services.errors import (
    AuthorizationError,
    ParameterValidationError,
    PaymentError,
    PPPError,
    TradeNotFound,
    TradeStatusConflict,
    TransportTimeout,
)
from ppp.services.ledger import Ledger
from ppp.services.reconciler import ALI_TRADE_STATUS, TradeReconciler
from ppp.services.signer import Signer
from ppp.services.transport import HttpTransport

logger = logging.getLogger(__name__)

DEFAULT_FORMAT = "JSON"
DEFAULT_CHARSET = "utf-8"
DEFAULT_SIGN_TYPE = "RSA2"

# 签约确认时用于探测授权是否真实生效的订单号
AUTH_CHECK_TRADE_ID = "tradeforAuthSignedCheck"

# 前端支付方式 → (product_code, method)
_PAY_METHODS = {
    APPPAY: ("QUICK_MSECURITY_PAY", "alipay.trade.app.pay"),
}
_DEFAULT_PAY_METHOD = ("FAST_INSTANT_TRADE_PAY", "alipay.trade.page.pay")


def _biz_content(params: dict) -> str:
    data = {k: v for k, v in params.items() if v not in (None, "")}
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def _require(**fields) -> None:
    missing = [k for k, v in fields.items() if v in (None, "")]
    if missing:
        raise ParameterValidationError(f"缺少必填参数: {', '.join(missing)}")


def _require_amount(amount: int) -> None:
    if not isinstance(amount, int) or amount <= 0:
        raise ParameterValidationError(f"金额必须为正整数（分）: {amount}")


class AliPay:
    """支付宝支付客户端。实例无请求级可变状态，可被多个线程并发使用。"""

    def __init__(self, config: AlipayConfig, signer: Signer, ledger: Optional[Ledger] = None,
                 transport=None, clock: Callable[[], float] = time.time,
                 sleeper: Callable[[float], None] = time.sleep):
        self.config = config
        self.signer = signer
        self.ledger = ledger or Ledger()
        self.transport = transport or HttpTransport(config.gateway_url, config.http_timeout)
        self.clock = clock
        self.dispatcher = Dispatcher(
            self.transport,
            verifier=signer,
            retry_interval=config.retry_interval,
            poll_interval=config.poll_interval,
            sleeper=sleeper,
        )
        self.registry = AuthRegistry(self.ledger, config.service_id)
        self.reconciler = TradeReconciler(self.ledger)

    @classmethod
    def from_config(cls, config: AlipayConfig) -> "AliPay":
        """按配置加载证书并创建实例，证书缺失时抛出 ConfigError。"""
        return cls(config, Signer.from_cert_path(config.cert_path))

    # ── 请求组装 ──────────────────────────────────────────

    def _context(self) -> RequestContext:
        return RequestContext(self.config.max_timeout, self.clock)

    def _sys_params(self, ctx: RequestContext, method: str) -> dict:
        return {
            "app_id": self.config.app_id,
            "method": method,
            "format": DEFAULT_FORMAT,
            "charset": DEFAULT_CHARSET,
            "sign_type": DEFAULT_SIGN_TYPE,
            "version": "1.0",
            "timestamp": datetime.fromtimestamp(ctx.now()).strftime("%Y-%m-%d %H:%M:%S"),
        }

    def _build_request(self, ctx: RequestContext, method: str, biz: dict,
                       extra: Optional[dict] = None) -> SignedRequest:
        params = self._sys_params(ctx, method)
        params["biz_content"] = _biz_content(biz)
        params.update(extra or {})
        params.update(self.registry.delegation_params(ctx))
        params = {k: v for k, v in params.items() if v not in (None, "")}
        params["sign"] = self.signer.sign_b64(params)
        return SignedRequest(method=method, params=tuple(params.items()))

    # ── 前端支付 ──────────────────────────────────────────

    def pay_params(self, req: TradeParams) -> PayParams:
        """
        组装网页 / APP 支付参数交给前端请求，不发起远程调用。

        仅支持单商户模式。订单已支付时拒绝；否则写入或刷新待支付订单。
        """
        _require(out_trade_id=req.out_trade_id, trade_name=req.trade_name)
        _require_amount(req.amount)

        ctx = self._context()
        auth = self.registry.resolve(ctx)
        trade = self.ledger.get_trade(out_trade_id=req.out_trade_id)
        if trade is not None and trade.status == TradeStatus.SUCCESS:
            raise TradeStatusConflict("订单已支付")

        product_code, method = _PAY_METHODS.get(req.type, _DEFAULT_PAY_METHOD)
        biz = {
            "body": req.item_des,
            "subject": req.trade_name,
            "out_trade_no": req.out_trade_id,
            "total_amount": to_yuan(req.amount),
            "product_code": product_code,
            "store_id": req.shop_id,
            "passback_params": req.ex,
        }
        request = self._build_request(
            ctx, method, biz,
            extra={"return_url": req.return_url, "notify_url": self.config.notify_url},
        )
        params = request.as_dict()
        self.reconciler.record_pending(ctx, req, auth.mch_id)
        return PayParams(
            params=urlencode(params),
            source_data=json.dumps(params, ensure_ascii=False),
        )

    # ── 付款码支付 ────────────────────────────────────────

    def bar_pay(self, req: BarPayParams) -> Trade:
        """
        商户扫用户付款码收款。

        - 服务不可用：原样重发
        - 等待用户输入密码：按轮询间隔查询订单，直到支付成功或超时
        - 未成功（超时、失败）：尽力撤销订单后抛出领域错误

        Raises:
            AuthorizationError, TradeStatusConflict, PaymentError, TransportTimeout,
            PersistenceError（支付已成功但本地记账失败）
        """
        _require(out_trade_id=req.out_trade_id, auth_code=req.auth_code, trade_name=req.trade_name)
        _require_amount(req.amount)

        ctx = self._context()
        self.registry.authorize(ctx, req.user_id, req.mch_id)

        trade = self.ledger.get_trade(out_trade_id=req.out_trade_id)
        if trade is not None and trade.status == TradeStatus.SUCCESS:
            raise TradeStatusConflict("订单已支付", code=errors.PAY_ERR_PAYED)

        biz = {
            "out_trade_no": req.out_trade_id,
            "scene": "bar_code",
            "auth_code": req.auth_code,
            "subject": req.trade_name,
            "total_amount": to_yuan(req.amount),
            "body": req.item_des,
            "store_id": req.shop_id,
        }
        # 设置返佣系统商编号
        if self.config.service_id:
            biz["extend_params"] = {"sys_service_provider_id": self.config.service_id}

        request = self._build_request(ctx, "alipay.trade.pay", biz)
        logger.info("发起付款码支付: out_trade_id=%s, amount=%d", req.out_trade_id, req.amount)
        result = self.dispatcher.dispatch(
            request, ctx, PAY_CLASSIFIER,
            poll=lambda c: self._poll_payment(c, req.out_trade_id),
        )
        if result.ok:
            return self.reconciler.record_payment(ctx, req, result.payload)

        error = result.error
        logger.warning(
            "付款码支付未成功: out_trade_id=%s, code=%s, sub_code=%s, timed_out=%s",
            req.out_trade_id, error.code, error.sub_code, result.timed_out,
        )
        # 已支付的订单不能撤销，授权失效时撤销也无法执行
        if error.code != errors.PAY_ERR_PAYED and not isinstance(error, AuthorizationError):
            self.reconciler.compensate(
                lambda: self._cancel(ctx.child(self.config.cancel_timeout), req.out_trade_id),
                req.out_trade_id,
            )
        raise error

    def _poll_payment(self, ctx: RequestContext, out_trade_id: str) -> Optional[DispatchResult]:
        """查询一次订单状态：成功或关闭返回终态结果，仍在等待返回 None。"""
        result = self._query(ctx, out_trade_id=out_trade_id)
        if not result.ok:
            logger.info(
                "轮询查询订单未成功, 继续等待: out_trade_id=%s, code=%s",
                out_trade_id, result.error.code,
            )
            return None
        status = ALI_TRADE_STATUS.get(result.payload.get("trade_status", ""))
        if status == TradeStatus.SUCCESS:
            logger.info("轮询检测到支付成功: out_trade_id=%s", out_trade_id)
            return DispatchResult.success(result.payload)
        if status == TradeStatus.CLOSED:
            return DispatchResult.failure(PaymentError("订单已关闭", sub_code="TRADE_CLOSED"))
        return None

    # ── 退款 ──────────────────────────────────────────────

    def refund(self, req: RefundParams) -> Refund:
        """
        退款。source_id 为原订单的 out_trade_id，只支持本地存在且已支付的订单。

        校验不通过时不发起远程调用；同一原订单的退款串行执行。
        """
        _require(out_refund_id=req.out_refund_id, source_id=req.source_id)
        _require_amount(req.amount)

        ctx = self._context()
        self.registry.authorize(ctx, req.user_id, req.mch_id)

        trade = self.ledger.get_trade(out_trade_id=req.source_id)
        if trade is None:
            raise TradeNotFound(f"原订单不存在: {req.source_id}")
        if trade.status != TradeStatus.SUCCESS:
            raise TradeStatusConflict(f"原订单未支付成功: {req.source_id}")

        with self.reconciler.refund_lock(req.source_id):
            existing = self.ledger.get_refund(out_refund_id=req.out_refund_id)
            if existing is not None:
                return existing
            self.reconciler.check_refundable(trade, req.amount)

            biz = {
                "out_trade_no": req.source_id,
                "out_request_no": req.out_refund_id,
                "refund_reason": req.memo,
                "refund_amount": to_yuan(req.amount),
            }
            request = self._build_request(ctx, "alipay.trade.refund", biz)
            result = self.dispatcher.dispatch(request, ctx, REFUND_CLASSIFIER)
            if not result.ok:
                raise result.error
            return self.reconciler.record_refund(ctx, req, result.payload)

    # ── 撤销 ──────────────────────────────────────────────

    def cancel(self, out_trade_id: str = "", trade_id: str = "",
               user_id: str = "", mch_id: str = "") -> Optional[Trade]:
        """撤销订单，失败时抛出领域错误。已支付的订单支付宝会做退款处理。"""
        ctx = self._context()
        self.registry.authorize(ctx, user_id, mch_id)
        return self._cancel(ctx, out_trade_id, trade_id)

    def _cancel(self, ctx: RequestContext, out_trade_id: str, trade_id: str = "") -> Optional[Trade]:
        if not out_trade_id and not trade_id:
            raise ParameterValidationError("out_trade_id 和 trade_id 不能同时为空")
        biz = {"out_trade_no": out_trade_id, "trade_no": trade_id}
        request = self._build_request(ctx, "alipay.trade.cancel", biz)
        result = self.dispatcher.dispatch(request, ctx, CANCEL_CLASSIFIER)
        if not result.ok:
            raise result.error
        out_trade_id = out_trade_id or result.payload.get("out_trade_no", "")
        logger.info("订单已撤销: out_trade_id=%s, action=%s", out_trade_id, result.payload.get("action", ""))
        return self.reconciler.record_cancel(ctx, out_trade_id, result.payload)

    # ── 查询 ──────────────────────────────────────────────

    def trade_info(self, out_trade_id: str = "", trade_id: str = "", user_id: str = "",
                   mch_id: str = "", sync: bool = False) -> Trade:
        """
        获取订单详情。

        sync=False 只返回本地数据；sync=True 查询支付宝并以其数据刷新本地记录。
        """
        ctx = self._context()
        self.registry.authorize(ctx, user_id, mch_id)
        return self._trade_info(ctx, out_trade_id, trade_id, user_id, sync)

    def _trade_info(self, ctx: RequestContext, out_trade_id: str = "", trade_id: str = "",
                    user_id: str = "", sync: bool = False) -> Trade:
        if not out_trade_id and not trade_id:
            raise ParameterValidationError("out_trade_id 和 trade_id 不能同时为空")
        if not sync:
            trade = self.ledger.get_trade(out_trade_id=out_trade_id, trade_id=trade_id)
            if trade is None:
                raise TradeNotFound("订单不存在")
            return trade

        result = self._query(ctx, out_trade_id, trade_id)
        if not result.ok:
            raise result.error
        return self.reconciler.sync_trade(ctx, out_trade_id, result.payload, user_id)

    def _query(self, ctx: RequestContext, out_trade_id: str = "", trade_id: str = "") -> DispatchResult:
        biz = {"out_trade_no": out_trade_id, "trade_no": trade_id}
        request = self._build_request(ctx, "alipay.trade.query", biz)
        return self.dispatcher.dispatch(request, ctx, QUERY_CLASSIFIER)

    # ── 授权 ──────────────────────────────────────────────

    def auth(self, code: str) -> Auth:
        """
        用一次性授权码换取 app_auth_token，按支付宝返回的商户 ID 新增或刷新 Auth。

        换取后只具备接口调用权限，还需签约完成后调用 auth_signed 确认。
        """
        _require(code=code)
        ctx = self._context()
        self.registry.resolve(ctx)

        biz = {"grant_type": "authorization_code", "code": code}
        request = self._build_request(ctx, "alipay.open.auth.token.app", biz)
        result = self.dispatcher.dispatch(request, ctx, AUTH_CLASSIFIER)
        if not result.ok:
            raise result.error

        data = result.payload
        # 新版接口将 token 放在 tokens 列表中
        if not data.get("app_auth_token") and data.get("tokens"):
            data = data["tokens"][0]
        token = AuthTokenResponse.model_validate(data)
        if not token.user_id or not token.app_auth_token:
            raise AuthorizationError("支付宝授权返回缺少 user_id 或 app_auth_token")
        return self.registry.store_token(token.user_id, token.app_auth_token, int(ctx.now()))

    def auth_signed(self, mch_id: str, status: AuthStatus, account: str = "") -> Auth:
        """
        签约完成后确认授权状态。

        状态变为成功前，以该授权真实调用一次订单查询：
        返回授权错误说明授权未生效；订单不存在等其他错误说明授权可用。
        """
        _require(mch_id=mch_id)
        auth = self.registry.get(mch_id)
        if auth is None:
            raise AuthorizationError(f"授权不存在: mch_id={mch_id}")

        if status != auth.status and status == AuthStatus.SUCCESS:
            check = RequestContext(
                self.config.max_timeout, self.clock,
                auth=replace(auth, status=AuthStatus.SUCCESS),
            )
            try:
                self._trade_info(check, trade_id=AUTH_CHECK_TRADE_ID, sync=True)
            except AuthorizationError:
                logger.warning("授权探测失败, 授权未生效: mch_id=%s", mch_id)
                raise
            except TransportTimeout:
                raise
            except PPPError as e:
                logger.info("授权探测通过: mch_id=%s, code=%s", mch_id, e.code)

        return self.registry.mark_signed(auth, status, account, int(self.clock()))

    def bind_user(self, user_id: str, mch_id: str) -> User:
        return self.registry.bind_user(user_id, mch_id)

    def unbind_user(self, user_id: str) -> User:
        return self.registry.unbind_user(user_id)
