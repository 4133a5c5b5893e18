# storefront/auth.py
"""Who is calling.

Tokens are issued and verified upstream; the service only consumes the
resulting identity through an ``AuthProvider``.
"""

from dataclasses import dataclass

from .errors import AuthError, ForbiddenError

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Principal:
    user_id: int
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


class AuthProvider:
    def authenticate(self, headers) -> Principal:
        raise NotImplementedError


class GatewayAuthProvider(AuthProvider):
    """Trusts the identity headers forwarded by the API gateway.

    Any caller that can reach the service directly can claim any user or the
    admin role. Deploy it only behind a gateway that strips ``X-User-Id`` and
    ``X-User-Role`` from client requests and sets them from a verified token.
    """

    user_header = "x-user-id"
    role_header = "x-user-role"

    def authenticate(self, headers) -> Principal:
        raw = headers.get(self.user_header)
        if not raw:
            raise AuthError()
        try:
            user_id = int(raw)
        except ValueError:
            raise AuthError("Invalid or expired token") from None
        role = (headers.get(self.role_header) or "customer").strip().lower()
        return Principal(user_id=user_id, role=role)


def require_admin(principal: Principal) -> Principal:
    if not principal.is_admin:
        raise ForbiddenError()
    return principal
