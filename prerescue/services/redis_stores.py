"""Redis-backed implementations of the engine's store protocols.

Layout (all keys share the configured namespace prefix)::

    emergencies                 hash   emergency_id -> Emergency JSON
    locations                   hash   location_id  -> Location JSON
    owner_locations:<owner_id>  set    location ids owned by a user
    status:<emergency_id>       hash   user_id      -> UserEmergencyStatus JSON
    user_status:<user_id>       set    emergency ids the user has a row for

Row-level atomicity comes from Redis itself: ``HSETNX`` gives
create-only inserts and field merges run as ``WATCH``/``MULTI``
optimistic transactions, retried when another writer touches the same
emergency hash in between.  Conditional merges (``only_if``) compare the
existing row inside the same transaction.
"""

from __future__ import annotations

from typing import Any

import orjson
import structlog
from redis.exceptions import WatchError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from prerescue.models.emergency import Emergency, Location, UserEmergencyStatus
from prerescue.services.stores import matches

logger = structlog.get_logger(__name__)


def _dumps(model: Emergency | Location | UserEmergencyStatus) -> bytes:
    return orjson.dumps(model.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Connection handling
# ---------------------------------------------------------------------------


class RedisConnection:
    """Shared ``redis.asyncio`` client with connection pooling.

    Pass ``client`` to reuse an existing client (tests inject a mock).
    """

    __slots__ = ("_pool", "_redis", "namespace")

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        namespace: str = "prerescue:",
        max_connections: int = 20,
        client: Any = None,
    ) -> None:
        self.namespace = namespace
        self._pool = None
        if client is not None:
            self._redis = client
            return

        import redis.asyncio as aioredis

        self._pool = aioredis.ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            decode_responses=False,
        )
        self._redis = aioredis.Redis(connection_pool=self._pool)

    @property
    def client(self) -> Any:
        return self._redis

    def key(self, *parts: str) -> str:
        return self.namespace + ":".join(parts)

    async def ping(self) -> bool:
        """Return *True* if the Redis server is reachable."""
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False

    async def close(self) -> None:
        await self._redis.aclose()
        if self._pool is not None:
            await self._pool.aclose()


# ---------------------------------------------------------------------------
# Emergency / location stores
# ---------------------------------------------------------------------------


class RedisEmergencyStore:
    __slots__ = ("_conn",)

    def __init__(self, conn: RedisConnection) -> None:
        self._conn = conn

    async def get(self, emergency_id: str) -> Emergency | None:
        raw = await self._conn.client.hget(self._conn.key("emergencies"), emergency_id)
        if raw is None:
            return None
        return Emergency.model_validate(orjson.loads(raw))

    async def save(self, emergency: Emergency) -> None:
        await self._conn.client.hset(self._conn.key("emergencies"), emergency.id, _dumps(emergency))

    async def list_all(self) -> list[Emergency]:
        raws = await self._conn.client.hvals(self._conn.key("emergencies"))
        emergencies = [Emergency.model_validate(orjson.loads(raw)) for raw in raws]
        emergencies.sort(key=lambda e: e.created_at, reverse=True)
        return emergencies

    async def list_active(self) -> list[Emergency]:
        return [e for e in await self.list_all() if e.is_active]


class RedisLocationStore:
    __slots__ = ("_conn",)

    def __init__(self, conn: RedisConnection) -> None:
        self._conn = conn

    async def get(self, location_id: str) -> Location | None:
        raw = await self._conn.client.hget(self._conn.key("locations"), location_id)
        if raw is None:
            return None
        return Location.model_validate(orjson.loads(raw))

    async def save(self, location: Location) -> None:
        previous = await self.get(location.id)
        async with self._conn.client.pipeline(transaction=True) as pipe:
            if previous is not None and previous.owner_id != location.owner_id:
                pipe.srem(self._conn.key("owner_locations", previous.owner_id), location.id)
            pipe.hset(self._conn.key("locations"), location.id, _dumps(location))
            pipe.sadd(self._conn.key("owner_locations", location.owner_id), location.id)
            await pipe.execute()

    async def list_locations(self, owner_id: str | None = None) -> list[Location]:
        client = self._conn.client
        if owner_id is None:
            raws = await client.hvals(self._conn.key("locations"))
        else:
            ids = await client.smembers(self._conn.key("owner_locations", owner_id))
            if not ids:
                return []
            raws = await client.hmget(self._conn.key("locations"), sorted(ids))
        return [Location.model_validate(orjson.loads(raw)) for raw in raws if raw is not None]


# ---------------------------------------------------------------------------
# Status store
# ---------------------------------------------------------------------------


class RedisStatusStore:
    """``UserEmergencyStatus`` rows, one hash per emergency."""

    __slots__ = ("_conn",)

    def __init__(self, conn: RedisConnection) -> None:
        self._conn = conn

    def _emergency_key(self, emergency_id: str) -> str:
        return self._conn.key("status", emergency_id)

    def _user_key(self, user_id: str) -> str:
        return self._conn.key("user_status", user_id)

    async def get(self, user_id: str, emergency_id: str) -> UserEmergencyStatus | None:
        raw = await self._conn.client.hget(self._emergency_key(emergency_id), user_id)
        if raw is None:
            return None
        return UserEmergencyStatus.model_validate(orjson.loads(raw))

    async def insert_if_absent(self, row: UserEmergencyStatus) -> bool:
        created = await self._conn.client.hsetnx(
            self._emergency_key(row.emergency_id), row.user_id, _dumps(row)
        )
        if created:
            await self._conn.client.sadd(self._user_key(row.user_id), row.emergency_id)
        return bool(created)

    async def upsert(self, row: UserEmergencyStatus) -> UserEmergencyStatus:
        async with self._conn.client.pipeline(transaction=True) as pipe:
            pipe.hset(self._emergency_key(row.emergency_id), row.user_id, _dumps(row))
            pipe.sadd(self._user_key(row.user_id), row.emergency_id)
            await pipe.execute()
        return row

    @retry(
        retry=retry_if_exception_type(WatchError),
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        reraise=True,
    )
    async def update(
        self,
        user_id: str,
        emergency_id: str,
        fields: dict[str, Any],
        *,
        only_if: dict[str, Any] | None = None,
    ) -> UserEmergencyStatus | None:
        key = self._emergency_key(emergency_id)
        async with self._conn.client.pipeline(transaction=True) as pipe:
            await pipe.watch(key)
            raw = await pipe.hget(key, user_id)
            if raw is None:
                await pipe.unwatch()
                return None
            existing = UserEmergencyStatus.model_validate(orjson.loads(raw))
            if not matches(existing, only_if):
                await pipe.unwatch()
                return None
            merged = existing.model_copy(update=fields)
            pipe.multi()
            pipe.hset(key, user_id, _dumps(merged))
            await pipe.execute()
        return merged

    async def list_by_user(self, user_id: str) -> list[UserEmergencyStatus]:
        client = self._conn.client
        emergency_ids = await client.smembers(self._user_key(user_id))
        rows: list[UserEmergencyStatus] = []
        for emergency_id in sorted(emergency_ids):
            eid = emergency_id.decode() if isinstance(emergency_id, bytes) else emergency_id
            row = await self.get(user_id, eid)
            if row is not None:
                rows.append(row)
        return rows

    async def list_by_emergency(self, emergency_id: str) -> list[UserEmergencyStatus]:
        raws = await self._conn.client.hvals(self._emergency_key(emergency_id))
        return [UserEmergencyStatus.model_validate(orjson.loads(raw)) for raw in raws]
