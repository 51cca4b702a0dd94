from __future__ import annotations

import json
import math
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from taskgate.config import DEFAULT_SESSION_TTL_SECONDS
from taskgate.logging import get_logger
from taskgate.storage.kv import KeyValueStore
from taskgate.storage.models import SessionRecord

logger = get_logger(__name__)

# Bulk reads are issued in batches of this many keys
LIST_BATCH_SIZE = 100

# Fields update_session may change; identity and creation time are fixed
_UPDATABLE_FIELDS = {"user_agent", "ip_address", "country", "expires_at"}


@dataclass
class SessionMetadata:
    """Best-effort client details recorded with a session; never authoritative."""

    user_agent: str = "Unknown"
    ip_address: str = "127.0.0.1"
    country: str = "Unknown"

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "SessionMetadata":
        return cls(
            user_agent=headers.get("user-agent") or "Unknown",
            ip_address=headers.get("cf-connecting-ip") or "127.0.0.1",
            country=headers.get("cf-ipcountry") or "Unknown",
        )


def session_key(user_id: str, session_id: str) -> str:
    return f"session:{user_id}:{session_id}"


def _user_prefix(user_id: str) -> str:
    return f"session:{user_id}:"


class SessionStore:
    """Session records in a key-value store, keyed by user then session.

    Expiry is fixed at creation; the store TTL evicts records eventually,
    but ``expires_at`` is what decides validity.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.kv = kv
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def _parse(raw: Optional[str]) -> Optional[SessionRecord]:
        if raw is None:
            return None
        try:
            return SessionRecord.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("session_record_corrupt")
            return None

    async def _write(self, record: SessionRecord, ttl_seconds: int) -> None:
        await self.kv.set(
            session_key(record.user_id, record.session_id),
            json.dumps(record.to_dict()),
            ttl_seconds,
        )

    async def create_session(
        self, user_id: str, metadata: Optional[SessionMetadata] = None
    ) -> str:
        metadata = metadata or SessionMetadata()
        session_id = str(uuid.uuid4())
        now = self._now_ms()
        record = SessionRecord(
            user_id=user_id,
            session_id=session_id,
            created_at=now,
            expires_at=now + self.ttl_seconds * 1000,
            user_agent=metadata.user_agent,
            ip_address=metadata.ip_address,
            country=metadata.country,
        )
        await self._write(record, self.ttl_seconds)
        logger.info("session_created", user_id=user_id, session_id=session_id)
        return session_id

    async def get_session(self, user_id: str, session_id: str) -> Optional[SessionRecord]:
        return self._parse(await self.kv.get(session_key(user_id, session_id)))

    async def delete_session(self, user_id: str, session_id: str) -> None:
        await self.kv.delete(session_key(user_id, session_id))

    async def list_sessions(self, user_id: str) -> List[SessionRecord]:
        keys = await self.kv.keys(_user_prefix(user_id))
        sessions: List[SessionRecord] = []
        for start in range(0, len(keys), LIST_BATCH_SIZE):
            batch = keys[start : start + LIST_BATCH_SIZE]
            for raw in await self.kv.mget(batch):
                record = self._parse(raw)
                if record is not None:
                    sessions.append(record)
        sessions.sort(key=lambda record: record.created_at, reverse=True)
        return sessions

    async def _delete_keys(self, keys: List[str]) -> int:
        removed = 0
        for start in range(0, len(keys), LIST_BATCH_SIZE):
            batch = keys[start : start + LIST_BATCH_SIZE]
            if batch:
                removed += await self.kv.delete(*batch)
        return removed

    async def delete_all_sessions(self, user_id: str) -> int:
        # No lock: a login racing this may or may not survive
        keys = await self.kv.keys(_user_prefix(user_id))
        removed = await self._delete_keys(keys)
        logger.info("sessions_revoked_all", user_id=user_id, count=removed)
        return removed

    async def delete_other_sessions(self, user_id: str, keep_session_id: str) -> int:
        keys = await self.kv.keys(_user_prefix(user_id))
        doomed = [key for key in keys if key.split(":", 2)[2] != keep_session_id]
        removed = await self._delete_keys(doomed)
        logger.info(
            "sessions_revoked_others",
            user_id=user_id,
            kept_session_id=keep_session_id,
            count=removed,
        )
        return removed

    async def update_session(
        self, user_id: str, session_id: str, fields: Dict[str, Any]
    ) -> bool:
        """Merge ``fields`` into an existing record and re-persist it.

        Returns False when the session is absent. The TTL is recomputed from
        ``expires_at`` and floored at one second; an already-expired record is
        still rejected on read.
        """
        record = await self.get_session(user_id, session_id)
        if record is None:
            return False
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"session fields cannot be updated: {', '.join(sorted(unknown))}")
        for name, value in fields.items():
            setattr(record, name, int(value) if name == "expires_at" else value)
        remaining_ms = record.expires_at - self._now_ms()
        ttl_seconds = max(1, math.ceil(remaining_ms / 1000))
        await self._write(record, ttl_seconds)
        return True

    async def count_sessions(self, user_id: str) -> int:
        return len(await self.kv.keys(_user_prefix(user_id)))
