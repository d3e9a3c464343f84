"""
Database-backed API key pool for the LLM provider.

Keys live encrypted in the api_keys table with status ACTIVE, RATE_LIMITED
or DISABLED. The manager hands out ACTIVE keys round-robin, records
success/failure counters, and parks keys that hit a rate limit until the
cron job re-enables them.
"""

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from hiro.config import API_KEY_COOLDOWN_HOURS
from hiro.crypto.encryption import EncryptionError, decrypt_key, encrypt_key, mask_key
from hiro.db import models
from hiro.db.connection import utcnow

logger = logging.getLogger("hiro.ai.api_key_manager")

KEY_STATUSES = ("ACTIVE", "RATE_LIMITED", "DISABLED")
CACHE_TTL_SECONDS = 60
FAILURE_WARNING_THRESHOLD = 10


class ApiKeyManager:
    """Round-robin selector over ACTIVE keys with a short-lived id cache."""

    def __init__(self, cache_ttl: float = CACHE_TTL_SECONDS):
        self.cache_ttl = cache_ttl
        self._active_ids = []
        self._index = 0
        self._last_refresh = 0.0
        self._lock = threading.Lock()

    # ─── selection ────────────────────────────────────────────

    def refresh(self):
        """Reload the ordered list of ACTIVE key ids."""
        try:
            ids = [k["id"] for k in models.list_api_keys(status="ACTIVE")]
        except Exception as e:
            logger.error("Error refreshing active keys: %s", e)
            ids = []
        with self._lock:
            self._active_ids = ids
            self._last_refresh = time.monotonic()
            if ids:
                self._index = self._index % len(ids)
                logger.debug("Active key cache refreshed: %d keys", len(ids))

    def _pick(self) -> Optional[str]:
        with self._lock:
            if not self._active_ids:
                return None
            key_id = self._active_ids[self._index]
            self._index = (self._index + 1) % len(self._active_ids)
            return key_id

    def get_next_key(self) -> Optional[tuple]:
        """Return (key_id, plaintext) for the next ACTIVE key, or None.

        A key that went inactive since the last refresh triggers a refresh and
        another pick. Errors are logged and yield None.
        """
        try:
            stale = time.monotonic() - self._last_refresh > self.cache_ttl
            if stale or not self._active_ids:
                self.refresh()

            # Bounded by the pool size so a churning table can't loop forever
            for _ in range(len(self._active_ids) + 1):
                key_id = self._pick()
                if key_id is None:
                    logger.warning("No active API keys available")
                    return None

                record = models.get_api_key(key_id)
                if not record or record["status"] != "ACTIVE":
                    self.refresh()
                    continue

                models.update_api_key(key_id, {"last_used_at": utcnow()})
                plaintext = decrypt_key(record["encrypted_key"])
                logger.info("Using key %s (%s)", key_id, record.get("name") or "unnamed")
                return key_id, plaintext

            return None
        except Exception as e:
            logger.error("Error getting next key: %s", e)
            return None

    # ─── bookkeeping ──────────────────────────────────────────

    def _find_key(self, key_id_or_value: str) -> Optional[dict]:
        """Look a key up by id first, then by comparing decrypted values."""
        record = models.get_api_key(key_id_or_value)
        if record:
            return record
        for candidate in models.list_api_keys():
            try:
                if decrypt_key(candidate["encrypted_key"]) == key_id_or_value:
                    return candidate
            except EncryptionError:
                continue
        return None

    def mark_rate_limited(self, key_id_or_value: str):
        try:
            record = self._find_key(key_id_or_value)
            if not record:
                logger.warning("Key not found for rate limit marking")
                return
            models.bump_api_key_counters(
                record["id"], total=1, failed=1,
                extra={"status": "RATE_LIMITED", "rate_limited_at": utcnow()},
            )
            self.refresh()
            logger.info("Marked key %s (%s) as rate-limited",
                        record["id"], record.get("name") or "unnamed")
        except Exception as e:
            logger.error("Error marking key as rate-limited: %s", e)

    def record_success(self, key_id_or_value: str):
        try:
            record = self._find_key(key_id_or_value)
            if not record:
                return
            now = utcnow()
            models.bump_api_key_counters(
                record["id"], total=1, consecutive=0,
                extra={"last_success_at": now, "last_used_at": now},
            )
        except Exception as e:
            logger.warning("Error recording success: %s", e)

    def record_failure(self, key_id_or_value: str):
        try:
            record = self._find_key(key_id_or_value)
            if not record:
                return
            updated = models.bump_api_key_counters(
                record["id"], total=1, failed=1, extra={"last_used_at": utcnow()},
            )
            if (updated and updated["consecutive_failures"] >= FAILURE_WARNING_THRESHOLD
                    and updated["status"] == "ACTIVE"):
                logger.warning("Key %s has %d consecutive failures, consider disabling",
                               record["id"], updated["consecutive_failures"])
        except Exception as e:
            logger.warning("Error recording failure: %s", e)

    # ─── admin ────────────────────────────────────────────────

    def get_key_count(self) -> int:
        return len(models.list_api_keys(status="ACTIVE"))

    def get_all_keys(self) -> list:
        """All keys, newest first, with the secret replaced by a masked preview."""
        keys = []
        for record in reversed(models.list_api_keys()):
            entry = {k: v for k, v in record.items() if k != "encrypted_key"}
            try:
                entry["masked_key"] = mask_key(decrypt_key(record["encrypted_key"]))
            except EncryptionError:
                entry["masked_key"] = None
            keys.append(entry)
        return keys

    def add_key(self, name: str, plaintext: str) -> dict:
        record = models.create_api_key(name, encrypt_key(plaintext.strip()))
        self.refresh()
        logger.info("Added API key %s (%s)", record["id"], name or "unnamed")
        return {k: v for k, v in record.items() if k != "encrypted_key"}

    def set_status(self, key_id: str, status: str) -> Optional[dict]:
        if status not in KEY_STATUSES:
            raise ValueError(f"Invalid status '{status}'. Must be one of {KEY_STATUSES}")
        data = {"status": status}
        if status == "ACTIVE":
            data.update({"rate_limited_at": None, "consecutive_failures": 0})
        record = models.update_api_key(key_id, data)
        self.refresh()
        if record:
            record.pop("encrypted_key", None)
        return record

    def delete_key(self, key_id: str) -> bool:
        deleted = models.delete_api_key(key_id)
        self.refresh()
        return deleted


def reenable_rate_limited_keys(cooldown_hours: int = None, now: datetime = None) -> dict:
    """Move RATE_LIMITED keys whose cooldown elapsed back to ACTIVE.

    Returns:
        {"keysChecked": int, "keysReEnabled": int, "reEnabledKeyIds": [...]}
    """
    cooldown_hours = API_KEY_COOLDOWN_HOURS if cooldown_hours is None else cooldown_hours
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    cutoff = now - timedelta(hours=cooldown_hours)

    candidates = models.list_api_keys(status="RATE_LIMITED")
    re_enabled = []
    for record in candidates:
        limited_at = record.get("rate_limited_at")
        if limited_at and datetime.fromisoformat(limited_at) <= cutoff:
            models.update_api_key(record["id"], {
                "status": "ACTIVE",
                "rate_limited_at": None,
                "consecutive_failures": 0,
            })
            re_enabled.append(record["id"])

    if re_enabled:
        get_key_manager().refresh()
    logger.info("Re-enabled %d of %d rate-limited keys", len(re_enabled), len(candidates))
    return {
        "keysChecked": len(candidates),
        "keysReEnabled": len(re_enabled),
        "reEnabledKeyIds": re_enabled,
    }


# ─── MODULE-LEVEL SINGLETON ───────────────────────────────────

_manager_instance = None


def get_key_manager() -> ApiKeyManager:
    """Get or create the module-level key manager singleton."""
    global _manager_instance
    if _manager_instance is None:
        _manager_instance = ApiKeyManager()
    return _manager_instance
