"""Keyed storage for issued OTP digests.

One live record per ``(app_id, identity)``. Mutations are atomic per key in
every backend so concurrent verifications cannot lose attempt updates:

* ``InMemoryOtpStore``: a lock per key, no lock shared across keys;
* ``RedisOtpStore``: Lua scripts executed atomically by the server;
* ``SqlOtpStore``: single-statement conditional ``UPDATE``/``DELETE``.

A record whose ``code_digest`` is empty is a lock marker: the code was
destroyed after too many failed attempts and the record only remains so
verification keeps reporting ``locked`` until it expires or is reissued.
"""
from __future__ import annotations

import logging
import weakref
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Protocol

import redis
from sqlalchemy import case, delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from hub_auth.core.config import settings
from hub_auth.core.errors import StorageError
from hub_auth.db.session import SessionLocal
from hub_auth.models.otp_challenge import OtpChallenge
from hub_auth.services.rate_limit import build_redis_client

_LOG = logging.getLogger("hub_auth.store")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class OtpRecord:
    app_id: str
    identity: str
    code_digest: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0

    @property
    def locked(self) -> bool:
        return not self.code_digest


def is_expired(record: OtpRecord, now: datetime | None = None) -> bool:
    return _as_utc(now or _utcnow()) >= _as_utc(record.expires_at)


class OtpStore(Protocol):
    def put(self, app_id: str, identity: str, digest: str, ttl_seconds: int) -> OtpRecord:
        ...

    def get(self, app_id: str, identity: str) -> OtpRecord | None:
        ...

    def increment_attempts(self, app_id: str, identity: str, *, max_attempts: int | None = None) -> int | None:
        ...

    def delete(
        self,
        app_id: str,
        identity: str,
        *,
        expected_digest: str | None = None,
        expected_expires_at: datetime | None = None,
    ) -> bool:
        ...

    def is_expired(self, record: OtpRecord, now: datetime | None = None) -> bool:
        ...

    def purge_expired(self, now: datetime | None = None) -> int:
        ...


class _KeyLock:
    __slots__ = ("lock", "__weakref__")

    def __init__(self):
        self.lock = Lock()


class InMemoryOtpStore:
    def __init__(self, clock: Clock | None = None):
        self._clock = clock or _utcnow
        self._records: dict[tuple[str, str], OtpRecord] = {}
        # Entries vanish once no caller holds the key lock.
        self._locks: "weakref.WeakValueDictionary[tuple[str, str], _KeyLock]" = weakref.WeakValueDictionary()
        self._registry_lock = Lock()

    def _key_lock(self, key: tuple[str, str]) -> _KeyLock:
        with self._registry_lock:
            holder = self._locks.get(key)
            if holder is None:
                holder = _KeyLock()
                self._locks[key] = holder
            return holder

    def put(self, app_id: str, identity: str, digest: str, ttl_seconds: int) -> OtpRecord:
        key = (app_id, identity)
        now = self._clock()
        record = OtpRecord(
            app_id=app_id,
            identity=identity,
            code_digest=digest,
            created_at=now,
            expires_at=now + timedelta(seconds=int(ttl_seconds)),
            attempts=0,
        )
        holder = self._key_lock(key)
        with holder.lock:
            self._records[key] = record
        return record

    def get(self, app_id: str, identity: str) -> OtpRecord | None:
        return self._records.get((app_id, identity))

    def increment_attempts(self, app_id: str, identity: str, *, max_attempts: int | None = None) -> int | None:
        key = (app_id, identity)
        holder = self._key_lock(key)
        with holder.lock:
            record = self._records.get(key)
            if record is None or record.locked:
                return None
            if max_attempts is not None and record.attempts >= max_attempts:
                return None
            attempts = record.attempts + 1
            digest = record.code_digest
            if max_attempts is not None and attempts >= max_attempts:
                digest = ""
            self._records[key] = replace(record, attempts=attempts, code_digest=digest)
            return attempts

    def delete(
        self,
        app_id: str,
        identity: str,
        *,
        expected_digest: str | None = None,
        expected_expires_at: datetime | None = None,
    ) -> bool:
        key = (app_id, identity)
        holder = self._key_lock(key)
        with holder.lock:
            record = self._records.get(key)
            if record is None:
                return False
            if expected_digest is not None and (record.locked or record.code_digest != expected_digest):
                return False
            if expected_expires_at is not None and _as_utc(record.expires_at) != _as_utc(expected_expires_at):
                return False
            del self._records[key]
            return True

    def is_expired(self, record: OtpRecord, now: datetime | None = None) -> bool:
        return is_expired(record, now or self._clock())

    def purge_expired(self, now: datetime | None = None) -> int:
        moment = now or self._clock()
        removed = 0
        for key, record in list(self._records.items()):
            if not is_expired(record, moment):
                continue
            holder = self._key_lock(key)
            with holder.lock:
                current = self._records.get(key)
                if current is not None and is_expired(current, moment):
                    del self._records[key]
                    removed += 1
        return removed


_REDIS_INCREMENT = """
local attempts = redis.call('HGET', KEYS[1], 'attempts')
if not attempts then return -1 end
if redis.call('HGET', KEYS[1], 'digest') == '' then return -1 end
attempts = tonumber(attempts)
local limit = tonumber(ARGV[1])
if limit > 0 and attempts >= limit then return -1 end
attempts = attempts + 1
redis.call('HSET', KEYS[1], 'attempts', attempts)
if limit > 0 and attempts >= limit then redis.call('HSET', KEYS[1], 'digest', '') end
return attempts
"""

_REDIS_DELETE = """
local stored = redis.call('HGET', KEYS[1], 'digest')
if not stored then return 0 end
if ARGV[1] ~= '' and (stored == '' or stored ~= ARGV[1]) then return 0 end
if ARGV[2] ~= '' then
  local expires_at = tonumber(redis.call('HGET', KEYS[1], 'expires_at'))
  if not expires_at or math.abs(expires_at - tonumber(ARGV[2])) > 0.001 then return 0 end
end
return redis.call('DEL', KEYS[1])
"""


class RedisOtpStore:
    """Hash per key. Keys outlive ``expires_at`` by a grace period so a late
    verification still reads the record and reports ``expired``."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        prefix: str = "hub:otp:",
        grace_seconds: int | None = None,
        clock: Clock | None = None,
    ):
        self.client = client
        self._clock = clock or _utcnow
        self.prefix = prefix
        self.grace_seconds = int(settings.OTP_RECORD_GRACE_SECONDS if grace_seconds is None else grace_seconds)
        self._increment = client.register_script(_REDIS_INCREMENT)
        self._delete = client.register_script(_REDIS_DELETE)

    def _key(self, app_id: str, identity: str) -> str:
        return f"{self.prefix}{app_id}:{identity}"

    def put(self, app_id: str, identity: str, digest: str, ttl_seconds: int) -> OtpRecord:
        now = self._clock()
        record = OtpRecord(
            app_id=app_id,
            identity=identity,
            code_digest=digest,
            created_at=now,
            expires_at=now + timedelta(seconds=int(ttl_seconds)),
            attempts=0,
        )
        key = self._key(app_id, identity)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(key)
            pipe.hset(
                key,
                mapping={
                    "app_id": app_id,
                    "identity": identity,
                    "digest": digest,
                    "created_at": record.created_at.timestamp(),
                    "expires_at": record.expires_at.timestamp(),
                    "attempts": 0,
                },
            )
            pipe.expire(key, int(ttl_seconds) + self.grace_seconds)
            pipe.execute()
        except redis.RedisError as exc:
            raise StorageError(f"OTP store unavailable: {exc}") from exc
        return record

    def get(self, app_id: str, identity: str) -> OtpRecord | None:
        try:
            data = self.client.hgetall(self._key(app_id, identity))
        except redis.RedisError as exc:
            raise StorageError(f"OTP store unavailable: {exc}") from exc
        if not data:
            return None
        return OtpRecord(
            app_id=app_id,
            identity=identity,
            code_digest=str(data.get("digest") or ""),
            created_at=datetime.fromtimestamp(float(data["created_at"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(float(data["expires_at"]), tz=timezone.utc),
            attempts=int(data.get("attempts") or 0),
        )

    def increment_attempts(self, app_id: str, identity: str, *, max_attempts: int | None = None) -> int | None:
        try:
            result = int(self._increment(keys=[self._key(app_id, identity)], args=[int(max_attempts or 0)]))
        except redis.RedisError as exc:
            raise StorageError(f"OTP store unavailable: {exc}") from exc
        return None if result < 0 else result

    def delete(
        self,
        app_id: str,
        identity: str,
        *,
        expected_digest: str | None = None,
        expected_expires_at: datetime | None = None,
    ) -> bool:
        try:
            expires_arg = "" if expected_expires_at is None else repr(_as_utc(expected_expires_at).timestamp())
            result = self._delete(keys=[self._key(app_id, identity)], args=[expected_digest or "", expires_arg])
        except redis.RedisError as exc:
            raise StorageError(f"OTP store unavailable: {exc}") from exc
        return int(result) > 0

    def is_expired(self, record: OtpRecord, now: datetime | None = None) -> bool:
        return is_expired(record, now or self._clock())

    def purge_expired(self, now: datetime | None = None) -> int:
        moment = (now or self._clock()).timestamp()
        removed = 0
        try:
            for key in self.client.scan_iter(match=f"{self.prefix}*", count=500):
                expires_at = self.client.hget(key, "expires_at")
                if expires_at is not None and float(expires_at) <= moment:
                    removed += int(self.client.delete(key))
        except redis.RedisError as exc:
            raise StorageError(f"OTP store unavailable: {exc}") from exc
        return removed


class SqlOtpStore:
    def __init__(
        self,
        session_factory: sessionmaker | Callable[[], Session] | None = None,
        *,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory or SessionLocal
        self._clock = clock or _utcnow

    @staticmethod
    def _to_record(row: OtpChallenge) -> OtpRecord:
        return OtpRecord(
            app_id=row.app_id,
            identity=row.identity,
            code_digest=row.code_digest or "",
            created_at=_as_utc(row.created_at),
            expires_at=_as_utc(row.expires_at),
            attempts=int(row.attempts or 0),
        )

    def put(self, app_id: str, identity: str, digest: str, ttl_seconds: int) -> OtpRecord:
        now = self._clock()
        db = self._session_factory()
        try:
            db.execute(
                delete(OtpChallenge)
                .where(OtpChallenge.app_id == app_id, OtpChallenge.identity == identity)
                .execution_options(synchronize_session=False)
            )
            row = OtpChallenge(
                app_id=app_id,
                identity=identity,
                code_digest=digest,
                attempts=0,
                created_at=now,
                expires_at=now + timedelta(seconds=int(ttl_seconds)),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return self._to_record(row)
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError(f"OTP store unavailable: {exc}") from exc
        finally:
            db.close()

    def get(self, app_id: str, identity: str) -> OtpRecord | None:
        db = self._session_factory()
        try:
            row = db.execute(
                select(OtpChallenge).where(OtpChallenge.app_id == app_id, OtpChallenge.identity == identity)
            ).scalar_one_or_none()
            return self._to_record(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise StorageError(f"OTP store unavailable: {exc}") from exc
        finally:
            db.close()

    def increment_attempts(self, app_id: str, identity: str, *, max_attempts: int | None = None) -> int | None:
        conditions = [
            OtpChallenge.app_id == app_id,
            OtpChallenge.identity == identity,
            OtpChallenge.code_digest != "",
        ]
        values: dict = {"attempts": OtpChallenge.attempts + 1}
        if max_attempts is not None:
            conditions.append(OtpChallenge.attempts < max_attempts)
            values["code_digest"] = case(
                (OtpChallenge.attempts + 1 >= max_attempts, ""),
                else_=OtpChallenge.code_digest,
            )
        db = self._session_factory()
        try:
            result = db.execute(
                update(OtpChallenge)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                db.rollback()
                return None
            attempts = db.execute(
                select(OtpChallenge.attempts).where(OtpChallenge.app_id == app_id, OtpChallenge.identity == identity)
            ).scalar_one()
            db.commit()
            return int(attempts)
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError(f"OTP store unavailable: {exc}") from exc
        finally:
            db.close()

    def delete(
        self,
        app_id: str,
        identity: str,
        *,
        expected_digest: str | None = None,
        expected_expires_at: datetime | None = None,
    ) -> bool:
        stmt = delete(OtpChallenge).where(OtpChallenge.app_id == app_id, OtpChallenge.identity == identity)
        if expected_digest is not None:
            stmt = stmt.where(OtpChallenge.code_digest == expected_digest, OtpChallenge.code_digest != "")
        if expected_expires_at is not None:
            stmt = stmt.where(OtpChallenge.expires_at == _as_utc(expected_expires_at))
        stmt = stmt.execution_options(synchronize_session=False)
        db = self._session_factory()
        try:
            result = db.execute(stmt)
            db.commit()
            return bool(result.rowcount)
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError(f"OTP store unavailable: {exc}") from exc
        finally:
            db.close()

    def is_expired(self, record: OtpRecord, now: datetime | None = None) -> bool:
        return is_expired(record, now or self._clock())

    def purge_expired(self, now: datetime | None = None) -> int:
        moment = now or self._clock()
        db = self._session_factory()
        try:
            result = db.execute(
                delete(OtpChallenge)
                .where(OtpChallenge.expires_at <= moment)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return int(result.rowcount or 0)
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError(f"OTP store unavailable: {exc}") from exc
        finally:
            db.close()


_cached_store: OtpStore | None = None


def _build_store() -> OtpStore:
    backend = str(settings.OTP_STORE_BACKEND or "memory").strip().lower()
    if backend == "database":
        return SqlOtpStore()
    if backend == "redis":
        try:
            return RedisOtpStore(build_redis_client())
        except redis.RedisError:
            _LOG.warning("Redis OTP store unavailable; fallback to in-memory store")
            return InMemoryOtpStore()
    if backend != "memory":
        _LOG.warning("Unknown OTP_STORE_BACKEND=%s; using in-memory store", backend)
    return InMemoryOtpStore()


def get_otp_store() -> OtpStore:
    global _cached_store
    if _cached_store is None:
        _cached_store = _build_store()
    return _cached_store


def reset_otp_store_for_tests() -> None:
    global _cached_store
    _cached_store = None
