from typing import Optional

from fastapi import Request

from .db import User
from .errors import NotFound, Unauthorized

SESSION_USER_KEY = "userId"
SESSION_CHAT_KEY = "lineUserId"


def get_store(request: Request):
    return request.app.state.store


def create_session(request: Request, user: User) -> None:
    request.session.clear()
    request.session[SESSION_USER_KEY] = user.id
    request.session[SESSION_CHAT_KEY] = user.external_chat_id


def destroy_session(request: Request) -> None:
    request.session.clear()


def get_current_user(request: Request) -> Optional[User]:
    """Resolve the signed session cookie to a user, or ``None``.

    A session pointing at a user that no longer exists counts as logged out.
    """
    user_id = request.session.get(SESSION_USER_KEY)
    if not user_id:
        return None
    try:
        return get_store(request).get_user(user_id)
    except NotFound:
        return None


def require_current_user(request: Request) -> User:
    user = get_current_user(request)
    if user is None:
        raise Unauthorized("login required")
    return user
