"""Time-bucketed read-through cache for profiles, connection lists and analyses.

Validity is checked on every read: an entry is fresh while
``now - last_updated < ttl(bucket)``. ``expires_at`` is only used by the
periodic sweep that physically removes stale rows.
"""
import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .bsky_client import Account, BlueskyClient, format_handle
from .config import Settings, settings as default_settings
from .errors import ValidationError
from .models import CacheEntry, NetworkAnalysis, ensure_utc, utc_now
from .mutuals import resolve_mutuals


logger = logging.getLogger(__name__)

SHORT = "short"
MEDIUM = "medium"
LONG = "long"

CONNECTION_KINDS = ("followers", "following")


def glob_to_like(pattern: str) -> str:
    """Translate a ``*`` glob into a SQL LIKE pattern escaped with backslash."""
    escaped = (
        pattern.replace("\\", "\\\\")
        .replace("%", "\\%")
        .replace("_", "\\_")
    )
    return escaped.replace("*", "%")


def _require_id(account: Account) -> Account:
    if not account.did:
        raise ValidationError(f"Connection record without an id: {account.handle!r}")
    return account


class CacheService:
    """Read-through cache backed by the cache_entries and network_analyses tables.

    Concurrent misses for the same key share a single upstream fetch.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        client: BlueskyClient = None,
        config: Settings = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.client = client
        self.config = config or default_settings
        self.ttls = self.config.cache_ttls
        self._now = now
        self._inflight: dict[str, asyncio.Future] = {}

    # ------------------------------------------------------------------
    # Generic key/value contract
    # ------------------------------------------------------------------

    def is_fresh(self, last_updated: datetime, bucket: str) -> bool:
        return self._now() - ensure_utc(last_updated) < self.ttls[bucket]

    def get(self, key: str, bucket: str, force: bool = False) -> Optional[Any]:
        """Return the cached value, or None on a miss or stale entry."""
        if force:
            return None
        try:
            with self.session_factory() as db:
                entry = db.get(CacheEntry, key)
                if entry is None or not self.is_fresh(entry.last_updated, bucket):
                    return None
                return entry.payload
        except (SQLAlchemyError, ValueError) as e:
            logger.warning(f"Cache read failed for {key}, treating as miss: {e}")
            return None

    def set(self, key: str, value: Any, bucket: str) -> None:
        """Upsert by key; the previous value is replaced, never merged."""
        now = self._now()
        try:
            with self.session_factory() as db:
                db.merge(CacheEntry(
                    key=key,
                    bucket=bucket,
                    payload_json=json.dumps(value),
                    last_updated=now,
                    expires_at=now + self.ttls[bucket],
                ))
                db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    def invalidate(self, pattern: str) -> int:
        """Delete every entry whose key matches the ``*`` glob pattern."""
        try:
            with self.session_factory() as db:
                deleted = db.query(CacheEntry).filter(
                    CacheEntry.key.like(glob_to_like(pattern), escape="\\")
                ).delete(synchronize_session=False)
                db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Cache invalidation failed for {pattern}: {e}")
            return 0
        logger.info(f"Invalidated {deleted} cache entries matching {pattern}")
        return deleted

    async def read_through(
        self,
        key: str,
        bucket: str,
        fetch: Callable[[], Awaitable[Any]],
        force: bool = False,
    ) -> Any:
        """Return the cached value or fetch, store and return a fresh one."""
        cached = self.get(key, bucket, force=force)
        if cached is not None:
            return cached

        pending = self._inflight.get(key)
        if pending is not None:
            logger.debug(f"Joining in-flight fetch for {key}")
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(self._fetch_and_store(key, bucket, fetch))
        self._inflight[key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._inflight.get(key) is task:
                del self._inflight[key]

    async def _fetch_and_store(self, key, bucket, fetch):
        value = await fetch()
        self.set(key, value, bucket)
        return value

    # ------------------------------------------------------------------
    # Provider-backed reads
    # ------------------------------------------------------------------

    async def get_profile(self, handle: str, force: bool = False) -> Account:
        handle = format_handle(handle)

        async def fetch():
            profile = await self.client.get_profile(handle)
            return profile.to_dict()

        data = await self.read_through(f"profile:{handle}", SHORT, fetch, force)
        return Account.from_dict(data)

    async def get_connections(self, handle: str, kind: str, force: bool = False) -> list[Account]:
        """Followers or following of handle; records without an id are skipped."""
        if kind not in CONNECTION_KINDS:
            raise ValueError(f"Unknown connection kind: {kind}")
        handle = format_handle(handle)

        async def fetch():
            if kind == "followers":
                accounts = await self.client.get_followers(handle)
            else:
                accounts = await self.client.get_following(handle)
            return [account.to_dict() for account in accounts]

        data = await self.read_through(f"{kind}:{handle}", SHORT, fetch, force)

        connections = []
        for record in data:
            try:
                connections.append(_require_id(Account.from_dict(record)))
            except ValidationError as e:
                logger.warning(f"Skipping {kind} record for {handle}: {e}")
        return connections

    async def get_mutuals(self, handle: str, force: bool = False) -> list[Account]:
        handle = format_handle(handle)

        async def fetch():
            followers = await self.get_connections(handle, "followers", force)
            following = await self.get_connections(handle, "following", force)
            return [account.to_dict() for account in resolve_mutuals(followers, following)]

        data = await self.read_through(f"mutuals:{handle}", MEDIUM, fetch, force)
        return [Account.from_dict(record) for record in data]

    async def resolve_subject_id(self, handle: str) -> str:
        """Handle -> DID, preferring a cached profile over a provider lookup."""
        handle = format_handle(handle)
        if handle.startswith("did:"):
            return handle

        profile = self.get(f"profile:{handle}", SHORT)
        if profile and profile.get("did"):
            return profile["did"]

        async def fetch():
            return await self.client.resolve_did(handle)

        return await self.read_through(f"did:{handle}", LONG, fetch)

    # ------------------------------------------------------------------
    # Analyses
    # ------------------------------------------------------------------

    def store_analysis(self, analysis: dict) -> None:
        """Upsert the analysis for its subject, superseding any earlier one."""
        now = self._now()
        try:
            with self.session_factory() as db:
                db.merge(NetworkAnalysis(
                    subject_id=analysis["subjectId"],
                    handle=format_handle(analysis["handle"]),
                    stats_json=json.dumps(analysis["stats"]),
                    communities_json=json.dumps(analysis["communities"]),
                    last_updated=now,
                    expires_at=now + self.ttls[LONG],
                ))
                db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Failed to store analysis for {analysis['handle']}: {e}")

    def get_analysis(self, handle: str, force: bool = False) -> Optional[dict]:
        """Latest fresh analysis for handle (or DID), None when absent or stale."""
        if force:
            return None
        key = format_handle(handle)
        try:
            with self.session_factory() as db:
                row = db.query(NetworkAnalysis).filter(
                    (NetworkAnalysis.handle == key) | (NetworkAnalysis.subject_id == key)
                ).order_by(NetworkAnalysis.last_updated.desc()).first()
        except SQLAlchemyError as e:
            logger.warning(f"Analysis read failed for {key}, treating as miss: {e}")
            return None

        if row is None or not self.is_fresh(row.last_updated, LONG):
            return None
        return {
            "subjectId": row.subject_id,
            "handle": row.handle,
            "stats": json.loads(row.stats_json),
            "communities": json.loads(row.communities_json),
            "lastUpdated": ensure_utc(row.last_updated).isoformat(),
        }

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep_expired(self) -> int:
        """Delete records whose expires_at has passed."""
        now = self._now()
        try:
            with self.session_factory() as db:
                entries = db.query(CacheEntry).filter(
                    CacheEntry.expires_at < now
                ).delete(synchronize_session=False)
                analyses = db.query(NetworkAnalysis).filter(
                    NetworkAnalysis.expires_at < now
                ).delete(synchronize_session=False)
                db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Cache sweep failed: {e}")
            return 0
        if entries or analyses:
            logger.info(f"Swept {entries} cache entries and {analyses} analyses")
        return entries + analyses

    def clear_handle(self, handle: str) -> int:
        """Remove every cached record for handle."""
        handle = format_handle(handle)
        removed = self.invalidate(f"*:{handle}")
        try:
            with self.session_factory() as db:
                removed += db.query(NetworkAnalysis).filter(
                    NetworkAnalysis.handle == handle
                ).delete(synchronize_session=False)
                db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Failed to clear analyses for {handle}: {e}")
        return removed
