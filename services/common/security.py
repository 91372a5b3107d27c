"""
Common - 呼び出し元の識別

認証（JWT 検証）はゲートウェイの責務で、各サービスはゲートウェイが付与した
X-User-Id / X-User-Roles ヘッダーを信頼する。
ロールは "ADMIN,USER" のようなカンマ区切りで、"ROLE_" 接頭辞は取り除く。
"""

from dataclasses import dataclass, field

from fastapi import Depends, Header

from .errors import Forbidden, Unauthorized

ROLE_PREFIX = "ROLE_"

# Order Service が内部呼び出しに付けるヘッダー
INTERNAL_HEADERS = {
    "X-Internal-Call": "ORDER_SERVICE",
    "X-User-Id": "SYSTEM",
    "X-User-Roles": "INTERNAL",
}


@dataclass(frozen=True)
class Principal:
    user_id: str | None
    roles: frozenset[str] = field(default_factory=frozenset)

    def has_any_role(self, *roles: str) -> bool:
        return bool(self.roles.intersection(roles))

    def numeric_user_id(self) -> int:
        """注文の所有者として使うユーザー ID。数値でなければ 401。"""
        try:
            return int(self.user_id)
        except (TypeError, ValueError):
            raise Unauthorized("Missing or non-numeric user id") from None


def extract_roles(roles_header: str | None) -> frozenset[str]:
    if not roles_header or not roles_header.strip():
        return frozenset()
    roles = set()
    for role in roles_header.split(","):
        role = role.strip()
        if not role:
            continue
        if role.startswith(ROLE_PREFIX):
            role = role[len(ROLE_PREFIX):]
        roles.add(role.upper())
    return frozenset(roles)


async def current_principal(
    x_user_id: str | None = Header(default=None),
    x_user_roles: str | None = Header(default=None),
) -> Principal:
    return Principal(user_id=x_user_id, roles=extract_roles(x_user_roles))


def require_roles(*roles: str):
    """指定ロールのいずれかを持つ呼び出し元だけを通す依存関係を返す。"""

    async def dependency(
        principal: Principal = Depends(current_principal),
    ) -> Principal:
        if principal.user_id is None or not principal.roles:
            raise Unauthorized("Missing identity headers")
        if not principal.has_any_role(*roles):
            raise Forbidden(f"Requires one of roles: {', '.join(roles)}")
        return principal

    return dependency
