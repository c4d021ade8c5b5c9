from fastapi import Request
from typing import Optional
import os
import logging
from auth import admin_key_matches, decode_access_token
from models import AccountRecord
from services.account_store import account_store
from utils.errors import UnauthorizedError

logger = logging.getLogger(__name__)


class AdminKeyPolicy:
    """Admin-key authorization, checked once per request as a route dependency.

    The key is read from the `key` query parameter or the `x-admin-key` header and
    compared in constant time against ADMIN_KEY (read per request so rotation needs no restart).
    """

    def __init__(self, env_var: str = "ADMIN_KEY"):
        self.env_var = env_var

    def expected_key(self) -> str:
        return (os.getenv(self.env_var) or "").strip()

    async def __call__(self, request: Request) -> None:
        provided = request.headers.get("x-admin-key") or request.query_params.get("key")
        expected = self.expected_key()
        if not expected:
            logger.error(f"{self.env_var} not configured; rejecting admin request to {request.url.path}")
            raise UnauthorizedError("Unauthorized")
        if not admin_key_matches(provided, expected):
            logger.warning(f"Admin key rejected for {request.url.path}")
            raise UnauthorizedError("Unauthorized")


require_admin_key = AdminKeyPolicy()


async def get_current_session(request: Request) -> Optional[dict]:
    """Extract and validate the session payload from the Bearer token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload or not payload.get("sub"):
        return None

    return payload


async def require_session(request: Request) -> AccountRecord:
    """Require a valid session and resolve its account server-side.

    The account id comes only from the verified token subject.
    """
    session = await get_current_session(request)
    if not session:
        raise UnauthorizedError("Not authenticated")

    account = await account_store.get_by_id(session["sub"])
    if account is None:
        raise UnauthorizedError("User not found")
    return account
