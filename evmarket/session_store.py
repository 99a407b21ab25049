"""
Payment session storage: one short-lived record per user in Redis.
"""
from typing import Any, Optional

from evmarket.config import Config
from evmarket.models import PaymentSession
from evmarket.redis_client import RedisClient, get_redis_client


class PaymentSessionStore:
    """Keyed store for pinned (cart_id, checksum) pairs with a TTL"""

    def __init__(self, redis_client: Optional[RedisClient] = None, ttl_seconds: Optional[int] = None):
        self.redis = redis_client or get_redis_client()
        if ttl_seconds is None:
            ttl_seconds = Config.PAYMENT_SESSION_TTL_SECONDS
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def session_key(user_id: str) -> str:
        return f"payment_session:{user_id}"

    def get(self, user_id: str, conn: Any = None) -> Optional[PaymentSession]:
        raw = (conn or self.redis).get(self.session_key(user_id))
        if raw is None:
            return None
        return PaymentSession.model_validate_json(raw)

    def put(self, user_id: str, session: PaymentSession, conn: Any = None) -> None:
        """Store the session, replacing any earlier one for the user. A TTL of 0 never expires."""
        (conn or self.redis).set(
            self.session_key(user_id), session.model_dump_json(), ex=self.ttl_seconds or None
        )

    def delete(self, user_id: str, conn: Any = None) -> None:
        (conn or self.redis).delete(self.session_key(user_id))
