"""Session context - bearer token storage and login/logout lifecycle.

The REST client and chat gateway receive a Session at construction time and
read the token from it on every request, instead of reaching into ambient
storage.
"""

import time

import redis as redis_lib
import structlog
from jose import jwt, JWTError

from marketdesk.config import Settings, settings as default_settings

logger = structlog.get_logger()


class MemoryTokenStore:
    """Process-local token storage."""

    def __init__(self):
        self._values: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)


class RedisTokenStore:
    """Token storage shared between worker processes."""

    def __init__(self, client: redis_lib.Redis):
        self.r = client

    @classmethod
    def from_url(cls, url: str) -> "RedisTokenStore":
        return cls(redis_lib.from_url(url, decode_responses=True))

    def get(self, key: str) -> str | None:
        return self.r.get(key)

    def set(self, key: str, value: str) -> None:
        self.r.set(key, value)

    def delete(self, key: str) -> None:
        self.r.delete(key)


class Session:
    def __init__(self, store=None, storage_key: str = "jwtToken"):
        self.store = store if store is not None else MemoryTokenStore()
        self.storage_key = storage_key

    @property
    def token(self) -> str | None:
        return self.store.get(self.storage_key) or None

    def login(self, token: str) -> None:
        if not token:
            raise ValueError("Cannot log in with an empty token")
        self.store.set(self.storage_key, token)
        logger.info("session_login", user_id=self.user_id)

    def logout(self) -> None:
        self.store.delete(self.storage_key)
        logger.info("session_logout")

    def handle_unauthorized(self) -> None:
        """Called by adapters when the backend answers 401."""
        if self.token:
            logger.warning("session_token_rejected", user_id=self.user_id)
        self.logout()

    def claims(self) -> dict:
        """Unverified JWT claims; the backend is the one that verifies."""
        token = self.token
        if not token:
            return {}
        try:
            return jwt.get_unverified_claims(token)
        except JWTError:
            return {}

    @property
    def user_id(self) -> str | None:
        claims = self.claims()
        for key in ("id", "userId", "sub"):
            if claims.get(key) is not None:
                return str(claims[key])
        return None

    @property
    def is_authenticated(self) -> bool:
        if not self.token:
            return False
        exp = self.claims().get("exp")
        return exp is None or float(exp) > time.time()

    def auth_headers(self) -> dict:
        token = self.token
        return {"Authorization": f"Bearer {token}"} if token else {}


def create_session(config: Settings | None = None) -> Session:
    """Build a session backed by the configured token store."""
    config = config or default_settings
    if config.token_store == "redis":
        store = RedisTokenStore.from_url(config.redis_url)
    else:
        store = MemoryTokenStore()
    return Session(store, storage_key=config.token_storage_key)
