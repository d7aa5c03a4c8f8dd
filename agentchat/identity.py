from dataclasses import dataclass
from typing import Optional, Union
import logging
import requests

logger = logging.getLogger(__name__)

PRIVY_USER_URL = "https://auth.privy.io/api/v1/users/me"
FREE_TIER = "FREE"

@dataclass(frozen=True)
class AuthenticatedIdentity:
    user_id: str
    subscription_tier: str = FREE_TIER

@dataclass(frozen=True)
class AnonymousIdentity:
    session_id: str

Identity = Union[AuthenticatedIdentity, AnonymousIdentity]

@dataclass(frozen=True)
class AuthInfo:
    is_authenticated: bool
    user: Optional[dict] = None

UNAUTHENTICATED = AuthInfo(is_authenticated=False)


def verify_token(authorization: Optional[str], app_id: str, timeout: float = 10.0) -> AuthInfo:
    """
    Resolve a bearer token against the identity provider.

    Any failure (missing header, rejected token, provider unreachable, bad
    payload) resolves to an unauthenticated caller rather than an exception.
    """
    if not authorization or not authorization.startswith("Bearer "):
        return UNAUTHENTICATED

    token = authorization[len("Bearer "):]
    try:
        response = requests.get(
            PRIVY_USER_URL,
            headers={"Authorization": f"Bearer {token}", "privy-app-id": app_id},
            timeout=timeout,
        )
    except requests.exceptions.RequestException as e:
        logger.warning("identity provider unreachable: %s", e)
        return UNAUTHENTICATED

    if not response.ok:
        return UNAUTHENTICATED

    try:
        user = response.json()
    except ValueError:
        logger.warning("identity provider returned an invalid payload")
        return UNAUTHENTICATED

    if not isinstance(user, dict) or not user.get("id"):
        return UNAUTHENTICATED
    return AuthInfo(is_authenticated=True, user=user)


def identity_from(auth_info: AuthInfo, anonymous_session=None) -> Optional[Identity]:
    # authenticated callers never also act as their anonymous session
    if auth_info.is_authenticated and auth_info.user:
        return AuthenticatedIdentity(
            user_id=str(auth_info.user["id"]),
            subscription_tier=auth_info.user.get("subscriptionTier") or FREE_TIER,
        )
    if anonymous_session is not None:
        return AnonymousIdentity(session_id=anonymous_session.id)
    return None
