"""
领域错误定义。

所有对调用方可见的失败都以 PPPError 子类抛出，code 为稳定的错误码字符串，
sub_code 保留支付宝原始的 code+sub_code（可映射时），便于排查。
"""

# ── 错误码 ────────────────────────────────────────────────

AUTH_ERR = "AUTH_ERR"
TRADE_ERR = "TRADE_ERR"
TRADE_ERR_NOT_FOUND = "TRADE_ERR_NOT_FOUND"
TRADE_ERR_STATUS = "TRADE_ERR_STATUS"
PAY_ERR = "PAY_ERR"
PAY_ERR_PAYED = "PAY_ERR_PAYED"
PAY_ERR_CODE = "PAY_ERR_CODE"
REFUND_ERR = "REFUND_ERR"
REFUND_ERR_AMOUNT = "REFUND_ERR_AMOUNT"
USER_ERR_BALANCE = "USER_ERR_BALANCE"
USER_ERR_NOT_FOUND = "USER_ERR_NOT_FOUND"
SYS_ERR_TIMEOUT = "SYS_ERR_TIMEOUT"
SYS_ERR_DB = "SYS_ERR_DB"
SYS_ERR_PARAMS = "SYS_ERR_PARAMS"
SYS_ERR_SIGN = "SYS_ERR_SIGN"


class PPPError(Exception):
    """支付接入领域错误基类。"""

    default_code = TRADE_ERR

    def __init__(self, msg: str = "", code: str | None = None, sub_code: str = ""):
        super().__init__(msg or code or self.default_code)
        self.code = code or self.default_code
        self.msg = msg
        self.sub_code = sub_code


class AuthorizationError(PPPError):
    """授权不存在、未生效或已失效。"""
    default_code = AUTH_ERR


class TradeNotFound(PPPError):
    default_code = TRADE_ERR_NOT_FOUND


class TradeStatusConflict(PPPError):
    """订单状态不允许当前操作（如已支付）。"""
    default_code = TRADE_ERR_STATUS


class PaymentError(PPPError):
    default_code = PAY_ERR


class RefundError(PPPError):
    default_code = REFUND_ERR


class RefundAmountError(RefundError):
    """退款金额超出订单可退金额。"""
    default_code = REFUND_ERR_AMOUNT


class TransportTimeout(PPPError):
    """超过单次操作总时限仍未得到确定结果。"""
    default_code = SYS_ERR_TIMEOUT


class PersistenceError(PPPError):
    """本地记账失败。支付结果本身可能已经成功。"""
    default_code = SYS_ERR_DB


class ParameterValidationError(PPPError):
    default_code = SYS_ERR_PARAMS


class UserNotFound(PPPError):
    default_code = USER_ERR_NOT_FOUND


class SignerError(PPPError):
    """签名失败，不重试。"""
    default_code = SYS_ERR_SIGN


_ERROR_CLASSES = {
    AUTH_ERR: AuthorizationError,
    TRADE_ERR_NOT_FOUND: TradeNotFound,
    TRADE_ERR_STATUS: TradeStatusConflict,
    PAY_ERR: PaymentError,
    PAY_ERR_PAYED: TradeStatusConflict,
    PAY_ERR_CODE: PaymentError,
    USER_ERR_BALANCE: PaymentError,
    REFUND_ERR: RefundError,
    REFUND_ERR_AMOUNT: RefundAmountError,
    USER_ERR_NOT_FOUND: UserNotFound,
    SYS_ERR_TIMEOUT: TransportTimeout,
    SYS_ERR_DB: PersistenceError,
    SYS_ERR_PARAMS: ParameterValidationError,
    SYS_ERR_SIGN: SignerError,
}


def build_error(code: str, msg: str = "", sub_code: str = "") -> PPPError:
    """按错误码构造对应的异常实例，未知错误码落到 PPPError。"""
    cls = _ERROR_CLASSES.get(code, PPPError)
    return cls(msg, code=code, sub_code=sub_code)
