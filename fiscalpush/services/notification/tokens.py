"""Push token validation and the per-user token store.

Every mutation runs in one transaction holding a row lock on the user's token
row, so concurrent logins/sends for the same user serialize instead of
overwriting each other. Reads go through a Redis cache that every mutation
invalidates.
"""

import json
import re
from datetime import datetime, timezone
from typing import Any

import redis
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from fiscalpush.common.config import settings
from fiscalpush.common.db import utcnow
from fiscalpush.common.logging import logger, mask_token
from fiscalpush.services.notification.models import UserPushTokens


TEST_TOKEN_PREFIXES = ("test_fcm_token_", "test_")
TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_:\-]+$")
EXTENDED_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_:\-.~%]+$")
CACHE_PREFIX = "push_tokens:"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def is_test_token(token: str) -> bool:
    return token.startswith(TEST_TOKEN_PREFIXES)


def classify_token(
    token: Any,
    environment: str | None = None,
    allow_test_tokens: bool | None = None,
    min_length: int | None = None,
    max_length: int | None = None,
    extended_charset: bool | None = None,
) -> str:
    """Return `valid`, `test` (accepted test token) or `invalid`.

    Test tokens never pass in production, whatever `allow_test_tokens` says.
    """

    if not isinstance(token, str) or not token:
        return "invalid"
    environment = environment if environment is not None else settings.environment
    if is_test_token(token):
        if environment == "production":
            return "invalid"
        allowed = allow_test_tokens if allow_test_tokens is not None else settings.test_tokens_allowed
        return "test" if allowed else "invalid"

    min_length = min_length if min_length is not None else settings.push_token_min_length
    max_length = max_length if max_length is not None else settings.push_token_max_length
    if not min_length <= len(token) <= max_length:
        return "invalid"
    extended = extended_charset if extended_charset is not None else settings.push_token_extended_charset
    pattern = EXTENDED_TOKEN_PATTERN if extended else TOKEN_PATTERN
    return "valid" if pattern.match(token) else "invalid"


def is_valid_token(token: Any, **policy) -> bool:
    return classify_token(token, **policy) != "invalid"


def detect_platform(token: str) -> str:
    if "APA91" in token:
        return "android"
    if "APns_" in token or "apns-" in token:
        return "ios"
    return "web"


class TokenRecord(BaseModel):
    """One registered push endpoint with its bookkeeping timestamps."""

    token: str
    platform: str
    device_id: str | None = None
    created_at: str
    last_used_at: str


class TokenCleanupReport(BaseModel):
    users_scanned: int = 0
    users_changed: int = 0
    tokens_removed: int = 0
    tokens_kept: int = 0
    dry_run: bool = False


def _raw_entries(raw: Any) -> list[Any]:
    """Decode any stored shape into a flat list of entries."""

    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        stripped = raw.strip()
        if stripped[:1] in ("[", "{", '"'):
            try:
                return _raw_entries(json.loads(stripped))
            except ValueError:
                return []
        return [stripped]
    if isinstance(raw, dict):
        return [raw]
    if isinstance(raw, list):
        return list(raw)
    return []


def normalize_token_entries(raw: Any, validator=is_valid_token, now: datetime | None = None) -> list[TokenRecord]:
    """Normalize stored token data into metadata records, dropping bad entries."""

    stamp = (now or utcnow()).isoformat()
    records: list[TokenRecord] = []
    seen: set[str] = set()
    for entry in _raw_entries(raw):
        if isinstance(entry, str):
            token, meta = entry, {}
        elif isinstance(entry, dict) and isinstance(entry.get("token"), str):
            token, meta = entry["token"], entry
        else:
            continue
        if token in seen or not validator(token):
            continue
        seen.add(token)
        records.append(
            TokenRecord(
                token=token,
                platform=meta.get("platform") or detect_platform(token),
                device_id=meta.get("device_id"),
                created_at=str(meta.get("created_at") or stamp),
                last_used_at=str(meta.get("last_used_at") or meta.get("created_at") or _EPOCH.isoformat()),
            )
        )
    return records


def _parse_ts(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _dump(records: list[TokenRecord]) -> list[dict]:
    return [record.model_dump() for record in records]


class TokenStore:
    """Durable per-user push token collection with a bounded size."""

    def __init__(
        self,
        session_factory,
        cache=None,
        now=utcnow,
        max_tokens: int | None = None,
        cache_ttl_seconds: int | None = None,
        validator=is_valid_token,
    ) -> None:
        self.session_factory = session_factory
        self.cache = cache
        self.now = now
        self.max_tokens = max_tokens or settings.push_max_tokens_per_user
        self.cache_ttl_seconds = cache_ttl_seconds or settings.push_token_cache_ttl_seconds
        self.validator = validator

    def _cache_key(self, user_id: str) -> str:
        return f"{CACHE_PREFIX}{user_id}"

    def _cache_get(self, user_id: str) -> list[TokenRecord] | None:
        if self.cache is None:
            return None
        try:
            cached = self.cache.get(self._cache_key(user_id))
        except redis.RedisError as exc:
            logger.warning("token_cache_read_failed user_id=%s: %s", user_id, exc)
            return None
        if not cached:
            return None
        return [TokenRecord(**item) for item in json.loads(cached)]

    def _cache_set(self, user_id: str, records: list[TokenRecord]) -> None:
        if self.cache is None:
            return
        try:
            self.cache.setex(self._cache_key(user_id), self.cache_ttl_seconds, json.dumps(_dump(records)))
        except redis.RedisError as exc:
            logger.warning("token_cache_write_failed user_id=%s: %s", user_id, exc)

    def _invalidate(self, user_id: str) -> None:
        if self.cache is None:
            return
        try:
            self.cache.delete(self._cache_key(user_id))
        except redis.RedisError as exc:
            logger.warning("token_cache_invalidate_failed user_id=%s: %s", user_id, exc)

    def _select_locked(self, db, user_id: str) -> UserPushTokens | None:
        return db.execute(
            select(UserPushTokens).where(UserPushTokens.user_id == user_id).with_for_update()
        ).scalar_one_or_none()

    def _lock_row(self, db, user_id: str) -> UserPushTokens:
        """Lock the user's token row, creating it on first registration."""

        row = self._select_locked(db, user_id)
        if row is not None:
            return row
        try:
            with db.begin_nested():
                db.add(UserPushTokens(user_id=user_id, tokens=[]))
        except IntegrityError:
            pass
        return self._select_locked(db, user_id)

    def _entries(self, row: UserPushTokens | None) -> list[TokenRecord]:
        return normalize_token_entries(row.tokens if row else None, self.validator, self.now())

    def add_token(self, user_id, token: str, device_id: str | None = None) -> bool:
        """Register `token` for the user; `False` when rejected or not stored."""

        user_id = str(user_id)
        if not self.validator(token):
            logger.warning(
                "push token rejected user_id=%s token=%s",
                user_id,
                mask_token(token) if isinstance(token, str) else "<invalid>",
            )
            return False

        evicted = None
        try:
            with self.session_factory() as db:
                row = self._lock_row(db, user_id)
                records = self._entries(row)
                stamp = self.now().isoformat()
                existing = next((record for record in records if record.token == token), None)
                if existing is not None:
                    existing.last_used_at = stamp
                    if device_id:
                        existing.device_id = device_id
                else:
                    while len(records) >= self.max_tokens:
                        evicted = min(records, key=lambda record: _parse_ts(record.last_used_at))
                        records = [record for record in records if record.token != evicted.token]
                    records.append(
                        TokenRecord(
                            token=token,
                            platform=detect_platform(token),
                            device_id=device_id,
                            created_at=stamp,
                            last_used_at=stamp,
                        )
                    )
                row.tokens = _dump(records)
                db.commit()
        except SQLAlchemyError as exc:
            logger.error("push token add failed user_id=%s token=%s error=%s", user_id, mask_token(token), exc)
            return False

        self._invalidate(user_id)
        if evicted is not None:
            logger.info(
                "push token evicted user_id=%s token=%s last_used_at=%s",
                user_id,
                mask_token(evicted.token),
                evicted.last_used_at,
            )
        logger.info(
            "push token stored user_id=%s token=%s refreshed=%s count=%s",
            user_id,
            mask_token(token),
            existing is not None,
            len(records),
        )
        return True

    def remove_token(self, user_id, token: str) -> bool:
        """Remove one token; `False` when the user never held it."""

        return self.remove_tokens([user_id], [token]) > 0

    def remove_tokens(self, user_ids, tokens) -> int:
        """Remove these specific token values from each user's current set."""

        targets = set(tokens)
        if not targets:
            return 0
        removed = 0
        for user_id in {str(user_id) for user_id in user_ids}:
            with self.session_factory() as db:
                row = self._select_locked(db, user_id)
                if row is None:
                    continue
                records = self._entries(row)
                kept = [record for record in records if record.token not in targets]
                if len(kept) == len(records):
                    continue
                row.tokens = _dump(kept)
                db.commit()
            removed += len(records) - len(kept)
            self._invalidate(user_id)
            logger.info("push tokens removed user_id=%s removed=%s remaining=%s", user_id, len(records) - len(kept), len(kept))
        return removed

    def touch_tokens(self, user_ids, tokens) -> None:
        """Refresh `last_used_at` for tokens that just received a message."""

        targets = set(tokens)
        if not targets:
            return
        for user_id in {str(user_id) for user_id in user_ids}:
            with self.session_factory() as db:
                row = self._select_locked(db, user_id)
                if row is None:
                    continue
                records = self._entries(row)
                stamp = self.now().isoformat()
                touched = False
                for record in records:
                    if record.token in targets:
                        record.last_used_at = stamp
                        touched = True
                if not touched:
                    continue
                row.tokens = _dump(records)
                db.commit()
            self._invalidate(user_id)

    def clear_tokens(self, user_id) -> bool:
        """Drop every token of the user (logout)."""

        user_id = str(user_id)
        try:
            with self.session_factory() as db:
                row = self._select_locked(db, user_id)
                if row is not None:
                    row.tokens = []
                    db.commit()
        except SQLAlchemyError as exc:
            logger.error("push token clear failed user_id=%s error=%s", user_id, exc)
            return False
        self._invalidate(user_id)
        logger.info("push tokens cleared user_id=%s", user_id)
        return True

    def get_tokens_with_metadata(self, user_id) -> list[TokenRecord]:
        user_id = str(user_id)
        cached = self._cache_get(user_id)
        if cached is not None:
            return cached
        with self.session_factory() as db:
            row = db.get(UserPushTokens, user_id)
            records = self._entries(row)
        self._cache_set(user_id, records)
        return records

    def get_tokens(self, user_id) -> list[str]:
        return [record.token for record in self.get_tokens_with_metadata(user_id)]

    def has_token_row(self, user_id) -> bool:
        with self.session_factory() as db:
            return db.get(UserPushTokens, str(user_id)) is not None

    def _user_ids(self, user_id=None) -> list[str]:
        with self.session_factory() as db:
            query = select(UserPushTokens.user_id).order_by(UserPushTokens.user_id)
            if user_id is not None:
                query = query.where(UserPushTokens.user_id == str(user_id))
            return list(db.execute(query).scalars().all())

    def list_token_owners(self, user_id=None, platform: str | None = None, min_tokens: int = 0) -> list[dict]:
        """Users with their token counts and platforms, for operator export."""

        rows = []
        for owner_id in self._user_ids(user_id):
            records = self.get_tokens_with_metadata(owner_id)
            platforms = sorted({record.platform for record in records})
            if platform and platform not in platforms:
                continue
            if len(records) < min_tokens:
                continue
            rows.append({"user_id": owner_id, "token_count": len(records), "platforms": platforms})
        return rows

    def cleanup_invalid_tokens(self, dry_run: bool = False) -> TokenCleanupReport:
        """Drop malformed entries and rewrite every row in canonical shape."""

        report = TokenCleanupReport(dry_run=dry_run)
        for user_id in self._user_ids():
            with self.session_factory() as db:
                row = self._select_locked(db, user_id)
                if row is None:
                    continue
                raw_count = len(_raw_entries(row.tokens))
                records = self._entries(row)
                canonical = _dump(records)
                report.users_scanned += 1
                report.tokens_removed += raw_count - len(records)
                report.tokens_kept += len(records)
                if row.tokens == canonical:
                    continue
                report.users_changed += 1
                if dry_run:
                    continue
                row.tokens = canonical
                db.commit()
            self._invalidate(user_id)
        logger.info(
            "push token cleanup scanned=%s changed=%s removed=%s kept=%s dry_run=%s",
            report.users_scanned,
            report.users_changed,
            report.tokens_removed,
            report.tokens_kept,
            dry_run,
        )
        return report
