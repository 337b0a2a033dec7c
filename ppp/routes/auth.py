"""
授权接口路由：授权码换 token、签约确认、用户绑定 / 解绑。
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ppp.models.schemas import AuthStatus
from ppp.routes.common import error_response, get_alipay, ok_response
from ppp.services.errors import PPPError

router = APIRouter(prefix="/v1/auth")


class TokenRequest(BaseModel):
    code: str


class SignedRequest(BaseModel):
    mch_id: str
    status: AuthStatus
    account: str = ""


class BindRequest(BaseModel):
    user_id: str
    mch_id: str = ""


@router.post("/token")
def exchange_token(body: TokenRequest, alipay=Depends(get_alipay)):
    """商户授权回调拿到 app_auth_code 后换取 token。"""
    try:
        auth = alipay.auth(body.code)
    except PPPError as e:
        return error_response(e)
    # token 不回传给调用方
    return ok_response(mch_id=auth.mch_id, status=int(auth.status))


@router.post("/signed")
def auth_signed(body: SignedRequest, alipay=Depends(get_alipay)):
    try:
        auth = alipay.auth_signed(body.mch_id, body.status, body.account)
    except PPPError as e:
        return error_response(e)
    return ok_response(mch_id=auth.mch_id, status=int(auth.status), account=auth.account)


@router.post("/users/bind")
def bind_user(body: BindRequest, alipay=Depends(get_alipay)):
    try:
        user = alipay.bind_user(body.user_id, body.mch_id)
    except PPPError as e:
        return error_response(e)
    return ok_response(user=user)


@router.post("/users/unbind")
def unbind_user(body: BindRequest, alipay=Depends(get_alipay)):
    try:
        user = alipay.unbind_user(body.user_id)
    except PPPError as e:
        return error_response(e)
    return ok_response(user=user)
