import base64
import hashlib
import hmac
import json
import time
from typing import Optional

from fastapi import Header, Request

from .access import Credentials
from .errors import Unauthorized


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


class SessionSigner:
    """Issues and verifies HS256 JWT session tokens carrying the user id in ``sub``."""

    _header = _b64encode(json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode())

    def __init__(self, secret: str, ttl_seconds: int = 86400) -> None:
        self._secret = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode("ascii"), hashlib.sha256).digest()
        return _b64encode(digest)

    def issue(self, user_id: str, now: Optional[float] = None) -> str:
        issued = int(now if now is not None else time.time())
        claims = {"sub": user_id, "iat": issued, "exp": issued + self.ttl_seconds}
        payload = _b64encode(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{self._header}.{payload}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str, now: Optional[float] = None) -> str:
        if not token.isascii():
            raise Unauthorized("invalid_token")
        parts = token.split(".")
        if len(parts) != 3:
            raise Unauthorized("invalid_token")
        signing_input = f"{parts[0]}.{parts[1]}"
        if not hmac.compare_digest(self._sign(signing_input), parts[2]):
            raise Unauthorized("invalid_token")
        try:
            claims = json.loads(_b64decode(parts[1]))
        except ValueError:
            raise Unauthorized("invalid_token")
        if not isinstance(claims, dict):
            raise Unauthorized("invalid_token")
        exp = claims.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise Unauthorized("invalid_token")
        current = now if now is not None else time.time()
        if exp < current:
            raise Unauthorized("token_expired")
        sub = claims.get("sub")
        if not isinstance(sub, str) or not sub:
            raise Unauthorized("invalid_token")
        return sub


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    prefix = "Bearer "
    if not authorization or not authorization.startswith(prefix):
        return None
    return authorization[len(prefix) :].strip() or None


def get_credentials(
    authorization: Optional[str] = Header(default=None),
    x_share_token: Optional[str] = Header(default=None),
) -> Credentials:
    return Credentials(session_token=bearer_token(authorization), share_token=x_share_token or None)


def get_current_user(request: Request, authorization: Optional[str] = Header(default=None)) -> str:
    token = bearer_token(authorization)
    if token is None:
        raise Unauthorized("invalid_token")
    return request.app.state.signer.verify(token)


def get_connection_id(x_socket_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Connection that issued the request, excluded from the resulting broadcast."""
    return x_socket_id or None
