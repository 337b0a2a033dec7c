"""
网关响应分类：把支付宝返回的 code / sub_code 映射为调度动作和领域错误码。

公共错误码说明 https://opendocs.alipay.com/common/02km9f
- 10000 成功
- 10003 业务处理中（如等待用户输入密码），应轮询订单状态
- 20000 服务不可用，可原样立即重试
- 20001 授权权限不足，需重新授权
- 其他  终止
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional

from ppp.services import errors
from ppp.services.errors import PPPError, build_error


class Outcome(str, Enum):
    SUCCESS = "success"
    RETRY_IMMEDIATE = "retry_immediate"
    RETRY_POLL = "retry_poll"
    REAUTH_REQUIRED = "reauth_required"
    STOP = "stop"


SUCCESS_CODE = "10000"

OUTCOMES: Mapping[str, Outcome] = MappingProxyType({
    SUCCESS_CODE: Outcome.SUCCESS,
    "10003": Outcome.RETRY_POLL,
    "20000": Outcome.RETRY_IMMEDIATE,
    "20001": Outcome.REAUTH_REQUIRED,
})

# code+sub_code 优先，其次仅 code
ERROR_CODES: Mapping[str, str] = MappingProxyType({
    "40004ACQ.PAYMENT_AUTH_CODE_INVALID": errors.PAY_ERR_CODE,
    "40004ACQ.TRADE_HAS_SUCCESS": errors.PAY_ERR_PAYED,
    "40004ACQ.TRADE_NOT_EXIST": errors.TRADE_ERR_NOT_FOUND,
    "40004ACQ.TRADE_STATUS_ERROR": errors.TRADE_ERR_STATUS,
    "40004ACQ.SELLER_BALANCE_NOT_ENOUGH": errors.USER_ERR_BALANCE,
    "40004ACQ.REFUND_AMT_NOT_EQUAL_TOTAL": errors.REFUND_ERR_AMOUNT,
    "40004ACQ.ACCESS_FORBIDDEN": errors.AUTH_ERR,
    "20001": errors.AUTH_ERR,
    "40006": errors.AUTH_ERR,
})


@dataclass(frozen=True)
class Classification:
    outcome: Outcome
    error: Optional[PPPError] = None


class ResponseClassifier:
    """
    按静态表对单次响应分类。

    各接口共用同一套表，只在默认错误码和少量动作覆盖上不同，
    例如退款、撤销、查询不存在"等待用户付款"的语义，10003 直接终止。
    """

    def __init__(self, default_error: str,
                 overrides: Optional[Mapping[str, Outcome]] = None):
        self.default_error = default_error
        outcomes = dict(OUTCOMES)
        outcomes.update(overrides or {})
        self._outcomes = MappingProxyType(outcomes)

    def outcome_for(self, code: str) -> Outcome:
        return self._outcomes.get(code, Outcome.STOP)

    def error_for(self, code: str, sub_code: str = "", msg: str = "") -> PPPError:
        provider_code = code + sub_code
        domain_code = ERROR_CODES.get(provider_code) or ERROR_CODES.get(code) or self.default_error
        return build_error(domain_code, msg, sub_code=provider_code)

    def classify(self, payload: Mapping) -> Classification:
        code = str(payload.get("code", ""))
        sub_code = str(payload.get("sub_code") or "")
        outcome = self.outcome_for(code)
        if outcome is Outcome.SUCCESS:
            return Classification(outcome)
        msg = payload.get("sub_msg") or payload.get("msg") or ""
        if outcome is Outcome.REAUTH_REQUIRED:
            error = build_error(errors.AUTH_ERR, msg, sub_code=code + sub_code)
        else:
            error = self.error_for(code, sub_code, msg)
        return Classification(outcome, error)


PAY_CLASSIFIER = ResponseClassifier(errors.PAY_ERR)
REFUND_CLASSIFIER = ResponseClassifier(errors.REFUND_ERR, {"10003": Outcome.STOP})
CANCEL_CLASSIFIER = ResponseClassifier(errors.TRADE_ERR, {"10003": Outcome.STOP})
QUERY_CLASSIFIER = ResponseClassifier(errors.TRADE_ERR, {"10003": Outcome.STOP})
AUTH_CLASSIFIER = ResponseClassifier(errors.AUTH_ERR, {"10003": Outcome.STOP})
