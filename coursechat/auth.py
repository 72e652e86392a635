"""
Login, sessions and acting-identity resolution.

The logged-in user lives in the signed session cookie managed by
Starlette's SessionMiddleware. Which identity a request acts as depends on
the configured IdentityMode.
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

from fastapi import Depends, Request

from coursechat.config import settings
from coursechat.errors import UnauthorizedError, ValidationError
from coursechat.gateway import ANONYMOUS, Author, GatewayOptions, IdentityMode
from coursechat.utils import verify_password

logger = logging.getLogger(__name__)

SESSION_USER_KEY = "user"

DEFAULT_USERS = [
    {"username": "user1", "password": "password1", "displayName": "User One"},
    {"username": "user2", "password": "password2", "displayName": "User Two"},
    {"username": "user3", "password": "password3", "displayName": "User Three"},
]


class UserDirectory:
    """Known users and their (demo, plaintext) passwords."""

    def __init__(self, users: list[dict]):
        self._users = {user["username"]: user for user in users}

    @classmethod
    def from_file(cls, path: Optional[str]) -> "UserDirectory":
        """
        Load users from a JSON list of {username, password, displayName}.

        Falls back to the built-in demo users when the file is missing or
        unreadable.
        """
        if not path:
            logger.info("No USERS_FILE configured, using default users")
            return cls(DEFAULT_USERS)
        try:
            users = json.loads(Path(path).read_text(encoding="utf-8"))
            logger.info(f"Loaded {len(users)} users from {path}")
            return cls(users)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Error loading users from {path}: {e}; using default users")
            return cls(DEFAULT_USERS)

    def authenticate(self, username: Optional[str], password: Optional[str]) -> Author:
        """
        Check credentials.

        Raises:
            ValidationError: username or password missing
            UnauthorizedError: unknown user or wrong password
        """
        if not username or not password:
            raise ValidationError("Username and password are required")
        user = self._users.get(username)
        if user is None or not verify_password(password, user["password"]):
            logger.warning(f"Failed login for {username}")
            raise UnauthorizedError("Invalid username or password")
        return Author(user_id=user["username"], display_name=user.get("displayName") or user["username"])


@lru_cache()
def get_user_directory() -> UserDirectory:
    return UserDirectory.from_file(settings.USERS_FILE)


def get_options() -> GatewayOptions:
    """Deployment variant of the running service."""
    return GatewayOptions.from_settings(settings)


# =============================================================================
# Session helpers
# =============================================================================

def login_session(request: Request, author: Author) -> None:
    request.session[SESSION_USER_KEY] = {
        "username": author.user_id,
        "displayName": author.display_name,
    }


def logout_session(request: Request) -> None:
    request.session.clear()


def session_author(request: Request) -> Optional[Author]:
    """The logged-in user, if the session holds one."""
    user = request.session.get(SESSION_USER_KEY)
    if not user:
        return None
    return Author(user_id=user["username"], display_name=user.get("displayName") or user["username"])


def claimed_author(user_id: Optional[str], display_name: Optional[str] = None) -> Author:
    """Client-asserted identity; anonymous when no user id is given."""
    if not user_id:
        return ANONYMOUS
    return Author(user_id=user_id, display_name=display_name or user_id)


# =============================================================================
# Dependencies
# =============================================================================

def current_author(request: Request, options: GatewayOptions = Depends(get_options)) -> Author:
    """
    Acting identity of the request.

    Raises:
        UnauthorizedError: authentication is required and no session exists
    """
    if options.identity_mode == IdentityMode.ANONYMOUS:
        return ANONYMOUS

    if options.identity_mode == IdentityMode.SHARED:
        return claimed_author(
            request.headers.get("X-User-Id"),
            request.headers.get("X-User-Name"),
        )

    author = session_author(request)
    if author is not None:
        return author
    if options.require_auth:
        raise UnauthorizedError("Not authenticated")
    return ANONYMOUS
