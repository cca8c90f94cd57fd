"""
Caller identity.

Login and sessions live outside the board; by the time a request
arrives, a fronting proxy or the client has put the user id in the
X-User-Id header. The board only needs {id, is_admin, is_approved}.
"""
import hmac
from dataclasses import dataclass
from typing import Mapping

from .errors import Forbidden, Unauthorized

USER_HEADER = "X-User-Id"
API_KEY_HEADER = "X-API-Key"


@dataclass(frozen=True)
class Identity:
    id: str
    is_admin: bool = False
    is_approved: bool = False


def authenticate(store, headers: Mapping[str, str], api_secret: str = "") -> Identity:
    """
    Resolve the caller from request headers.

    Raises:
        Unauthorized: missing or unknown user, or wrong API key
        Forbidden: user exists but is still pending approval
    """
    if api_secret:
        provided = (headers.get(API_KEY_HEADER) or "").strip()
        if not hmac.compare_digest(provided, api_secret):
            raise Unauthorized("Unauthorized")

    user_id = (headers.get(USER_HEADER) or "").strip()
    if not user_id:
        raise Unauthorized("Unauthorized")

    user = store.get_user(user_id)
    if user is None:
        raise Unauthorized("Unauthorized")
    if not user.is_approved:
        raise Forbidden("Account pending approval")

    return Identity(id=user.id, is_admin=user.is_admin, is_approved=user.is_approved)
