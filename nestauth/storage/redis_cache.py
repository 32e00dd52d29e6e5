from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from redis import Redis
from redis.exceptions import RedisError

from nestauth.logging import get_logger
from nestauth.storage.errors import StoreUnavailable
from nestauth.storage.models import OneTimeToken

_RESET = "password_reset"
_VERIFY = "email_verification"


class RedisTokenStore:
    """Redis backend for password-reset and email-verification tokens.

    Records live in a hash per token fingerprint and expire with the token, so
    no sweep is needed. Redemption runs as one Lua script.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic check-and-flip of the ``used`` flag; returns the record or nil
    _CONSUME_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local data = redis.call('HMGET', key, 'used', 'expires_at')
if data[1] == false or data[1] == nil then
  return nil
end
if data[1] ~= '0' then
  return nil
end
if tonumber(data[2]) <= now then
  return nil
end
redis.call('HSET', key, 'used', '1')
return redis.call('HGETALL', key)
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.logger = get_logger(__name__)
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume = self.client.register_script(self._CONSUME_SCRIPT)

    @contextmanager
    def _guard(self, op: str):
        try:
            yield
        except RedisError as exc:
            self.logger.error("redis_call_failed", op=op, error=str(exc))
            raise StoreUnavailable(str(exc)) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before routing tokens to it."""
        with self._guard("ping"):
            self.client.ping()

    def close(self) -> None:
        self.client.close()

    @staticmethod
    def _key(purpose: str, token_hash: str) -> str:
        return f"auth:ott:{purpose}:{token_hash}"

    @staticmethod
    def _ttl_seconds(expires_at: datetime, now: datetime) -> int:
        return max(1, int((expires_at - now).total_seconds()))

    def _create_token(self, purpose: str, token: OneTimeToken) -> OneTimeToken:
        key = self._key(purpose, token.token_hash)
        with self._guard("create_token"):
            pipe = self.client.pipeline()
            pipe.hset(
                key,
                mapping={
                    "id": token.id,
                    "user_id": token.user_id,
                    "token_hash": token.token_hash,
                    "expires_at": str(token.expires_at.timestamp()),
                    "created_at": str(token.created_at.timestamp()),
                    "used": "1" if token.used else "0",
                },
            )
            pipe.expire(key, self._ttl_seconds(token.expires_at, token.created_at))
            pipe.execute()
        return token

    def _consume_token(
        self, purpose: str, token_hash: str, now: datetime
    ) -> Optional[OneTimeToken]:
        with self._guard("consume_token"):
            raw = self._consume(
                keys=[self._key(purpose, token_hash)], args=[now.timestamp()]
            )
        if not raw:
            return None
        fields = dict(zip(raw[0::2], raw[1::2]))
        return OneTimeToken(
            id=fields["id"],
            user_id=fields["user_id"],
            token_hash=fields["token_hash"],
            expires_at=datetime.fromtimestamp(float(fields["expires_at"]), tz=timezone.utc),
            used=True,
            created_at=datetime.fromtimestamp(float(fields["created_at"]), tz=timezone.utc),
        )

    def create_reset_token(self, token: OneTimeToken) -> OneTimeToken:
        return self._create_token(_RESET, token)

    def consume_reset_token(self, token_hash: str, now: datetime) -> Optional[OneTimeToken]:
        return self._consume_token(_RESET, token_hash, now)

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        # keys carry a TTL
        return 0

    def create_verification_token(self, token: OneTimeToken) -> OneTimeToken:
        return self._create_token(_VERIFY, token)

    def consume_verification_token(
        self, token_hash: str, now: datetime
    ) -> Optional[OneTimeToken]:
        return self._consume_token(_VERIFY, token_hash, now)

    def delete_expired_verification_tokens(self, now: datetime) -> int:
        return 0
