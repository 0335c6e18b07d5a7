"""
認証済みプリンシパル (Identity)

認証そのものは外部の ID プロバイダが行う。このコアは渡された
(user_id, role) をそのまま信頼し、ロールの確認だけを行う。
"""

from enum import Enum

from pydantic import BaseModel

from .errors import NotAuthorized


class Role(str, Enum):
    BUYER = "buyer"
    FARMER = "farmer"
    DRIVER = "driver"
    OPERATOR = "operator"
    SYSTEM = "system"


class Principal(BaseModel):
    user_id: str
    role: Role


SYSTEM = Principal(user_id="system", role=Role.SYSTEM)


def authorize(
    principal: Principal,
    *roles: Role,
    owner_id: str | None = None,
) -> NotAuthorized | None:
    """
    権限を確認し、拒否なら NotAuthorized を返す (送出はしない)。

    owner_id を渡した場合、OPERATOR / SYSTEM 以外は本人であることも要求する。
    """
    if principal.role in (Role.OPERATOR, Role.SYSTEM):
        return None
    if principal.role not in roles:
        return NotAuthorized(f"{principal.role.value} {principal.user_id} may not perform this operation")
    if owner_id is not None and principal.user_id != owner_id:
        return NotAuthorized(f"{principal.user_id} does not own this resource")
    return None
