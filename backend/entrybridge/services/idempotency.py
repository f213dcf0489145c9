import hashlib
import json
import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Optional, Tuple

from ..errors import ConflictError
from ..schemas.entries import CreateEntryRequest, EntryItem

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.monotonic() * 1000


@dataclass
class IdempotencyRecord:
    fingerprint: str
    response: EntryItem
    created_at: float  # ms


class IdempotencyCache:
    """
    Bounded, TTL'd memory of completed writes keyed by (budget id, Idempotency-Key).

    A key is bound to the fingerprint of the first payload written with it; a
    replay with the same payload returns the stored response, a replay with a
    different payload is a conflict. Expired records are pruned on every
    access and the oldest records are evicted so the total never exceeds
    ``max_records``.
    """

    def __init__(self, ttl_ms: int = 86400000, max_records: int = 10000):
        self.ttl_ms = ttl_ms
        self.max_records = max(1, int(max_records))
        self._records: Dict[str, Dict[str, IdempotencyRecord]] = {}
        self._count = 0
        self._lock = Lock()

    def __len__(self) -> int:
        return self._count

    @staticmethod
    def fingerprint(entry: CreateEntryRequest) -> str:
        """Hash of the write's business fields; the key and any generated id are excluded."""
        payload = {
            "amount": float(entry.amount),
            "flow": entry.flow,
            "date": entry.date,
            "payee": entry.payee,
            "category": entry.category,
            "account": entry.account,
            "notes": entry.notes or "",
        }
        hash_input = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(hash_input.encode()).hexdigest()

    def get(
        self,
        budget_id: str,
        key: str,
        fingerprint: str,
        now: Optional[float] = None,
    ) -> Optional[EntryItem]:
        """
        Look up a previous write.

        Returns:
            The stored response, or None when the key has not been used.

        Raises:
            ConflictError: the key was used with a different payload.
        """
        now = _now_ms() if now is None else now
        with self._lock:
            self._prune_expired(now)
            record = self._records.get(budget_id, {}).get(key)

        if record is None:
            return None
        if record.fingerprint != fingerprint:
            raise ConflictError("Idempotency-Key was already used with a different request payload")
        return record.response

    def put(
        self,
        budget_id: str,
        key: str,
        fingerprint: str,
        response: EntryItem,
        now: Optional[float] = None,
    ) -> None:
        now = _now_ms() if now is None else now
        with self._lock:
            budget_records = self._records.get(budget_id)
            is_new = budget_records is None or key not in budget_records

            if is_new:
                self._prune_expired(now)
                while self._count >= self.max_records:
                    if not self._evict_oldest():
                        break

            budget_records = self._records.setdefault(budget_id, {})
            budget_records[key] = IdempotencyRecord(
                fingerprint=fingerprint,
                response=response,
                created_at=now,
            )
            if is_new:
                self._count += 1

    def _delete(self, budget_id: str, key: str) -> None:
        budget_records = self._records.get(budget_id)
        if not budget_records:
            return
        if budget_records.pop(key, None) is not None:
            self._count = max(0, self._count - 1)
        if not budget_records:
            del self._records[budget_id]

    def _prune_expired(self, now: float) -> None:
        expired = [
            (budget_id, key)
            for budget_id, budget_records in self._records.items()
            for key, record in budget_records.items()
            if now - record.created_at > self.ttl_ms
        ]
        for budget_id, key in expired:
            self._delete(budget_id, key)

    def _evict_oldest(self) -> bool:
        oldest: Optional[Tuple[str, str]] = None
        oldest_created_at = float("inf")
        for budget_id, budget_records in self._records.items():
            for key, record in budget_records.items():
                if record.created_at < oldest_created_at:
                    oldest_created_at = record.created_at
                    oldest = (budget_id, key)

        if oldest is None:
            return False

        logger.debug(f"Evicting idempotency record {oldest[1]} of budget {oldest[0]} (cap {self.max_records})")
        self._delete(*oldest)
        return True
