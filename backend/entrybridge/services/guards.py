import hmac
import logging
import re
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional, TypeVar

from ..errors import TooManyRequestsError, UnauthorizedError

logger = logging.getLogger(__name__)

BEARER_HEADER_PATTERN = re.compile(r"^\s*Bearer\s+(\S+)\s*$", re.IGNORECASE)

S = TypeVar("S")


def _now_ms() -> float:
    return time.monotonic() * 1000


def extract_bearer_token(authorization: str) -> Optional[str]:
    match = BEARER_HEADER_PATTERN.match(authorization)
    return match.group(1) if match else None


def _evict_oldest(states: Dict[str, S], keep: int, last_seen: Callable[[S], float]) -> None:
    """Drop the least recently seen clients until at most ``keep`` remain."""
    overflow = len(states) - keep
    if overflow <= 0:
        return
    by_age = sorted(states.items(), key=lambda item: last_seen(item[1]))
    for client_id, _ in by_age[:overflow]:
        del states[client_id]


@dataclass
class AuthFailureState:
    attempts: int
    window_started_at: float
    blocked_until: float
    last_seen_at: float


@dataclass
class RateLimitState:
    count: int
    window_started_at: float
    last_seen_at: float


class ApiKeyGuard:
    """
    Bearer API key check with per-client failure tracking.

    Reaching ``max_attempts`` failures inside ``failure_window_ms`` blocks the
    client for ``block_ms``; while blocked every request from it is refused
    with 429, whether or not its key is valid. A successful check clears the
    client's record.
    """

    def __init__(
        self,
        api_key: str,
        failure_window_ms: int = 60000,
        max_attempts: int = 10,
        block_ms: int = 300000,
        max_tracked_clients: int = 10000,
        state_ttl_ms: Optional[int] = None,
    ):
        self._expected = api_key.encode("utf-8")
        self.failure_window_ms = failure_window_ms
        self.max_attempts = max(1, int(max_attempts))
        self.block_ms = block_ms
        self.max_tracked_clients = max(1, int(max_tracked_clients))
        self.state_ttl_ms = state_ttl_ms or max(failure_window_ms, block_ms)
        self._failures: Dict[str, AuthFailureState] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        return len(self._failures)

    def _key_matches(self, token: str) -> bool:
        return hmac.compare_digest(self._expected, token.encode("utf-8"))

    def authenticate(self, client_id: str, authorization: Optional[str], now: Optional[float] = None) -> None:
        """
        Raises:
            TooManyRequestsError: the client is blocked, or this failure blocked it.
            UnauthorizedError: the header is missing, malformed or carries a wrong key.
        """
        now = _now_ms() if now is None else now
        with self._lock:
            self._prune(now)

            state = self._failures.get(client_id)
            if state is not None and state.blocked_until > now:
                state.last_seen_at = now
                raise TooManyRequestsError(
                    "Too many invalid API key attempts",
                    retry_after_ms=int(state.blocked_until - now),
                )

            token = extract_bearer_token(authorization) if authorization is not None else None
            if token is not None and self._key_matches(token):
                self._failures.pop(client_id, None)
                return

            self._count_failure(client_id, state, now)
        raise UnauthorizedError()

    def _count_failure(self, client_id: str, state: Optional[AuthFailureState], now: float) -> None:
        if state is None:
            _evict_oldest(self._failures, self.max_tracked_clients - 1, lambda s: s.last_seen_at)
            state = AuthFailureState(attempts=0, window_started_at=now, blocked_until=0, last_seen_at=now)
            self._failures[client_id] = state

        if 0 < state.blocked_until <= now:
            state.attempts = 0
            state.blocked_until = 0
            state.window_started_at = now

        if now - state.window_started_at >= self.failure_window_ms:
            state.attempts = 0
            state.window_started_at = now

        state.attempts += 1
        state.last_seen_at = now

        if state.attempts >= self.max_attempts:
            state.attempts = 0
            state.blocked_until = now + self.block_ms
            logger.warning(f"Blocking client {client_id} for {self.block_ms}ms after repeated invalid API keys")
            raise TooManyRequestsError("Too many invalid API key attempts", retry_after_ms=self.block_ms)

    def _prune(self, now: float) -> None:
        stale = [
            client_id
            for client_id, state in self._failures.items()
            if state.blocked_until <= now and now - state.last_seen_at > self.state_ttl_ms
        ]
        for client_id in stale:
            del self._failures[client_id]
        _evict_oldest(self._failures, self.max_tracked_clients, lambda s: s.last_seen_at)


class RequestRateLimiter:
    """Fixed-window request counter per client identity."""

    def __init__(
        self,
        window_ms: int = 60000,
        max_requests: int = 120,
        state_ttl_ms: int = 300000,
        max_tracked_clients: int = 10000,
    ):
        self.window_ms = window_ms
        self.max_requests = max(1, int(max_requests))
        self.state_ttl_ms = state_ttl_ms
        self.max_tracked_clients = max(1, int(max_tracked_clients))
        self._clients: Dict[str, RateLimitState] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        return len(self._clients)

    def hit(self, client_id: str, now: Optional[float] = None) -> None:
        """
        Count one request for ``client_id``.

        Raises:
            TooManyRequestsError: the client used up its window.
        """
        now = _now_ms() if now is None else now
        with self._lock:
            self._prune(now)

            state = self._clients.get(client_id)
            if state is None:
                _evict_oldest(self._clients, self.max_tracked_clients - 1, lambda s: s.last_seen_at)
                state = RateLimitState(count=0, window_started_at=now, last_seen_at=now)
                self._clients[client_id] = state

            if now - state.window_started_at >= self.window_ms:
                state.count = 0
                state.window_started_at = now

            if state.count >= self.max_requests:
                retry_after_ms = max(0, int(self.window_ms - (now - state.window_started_at)))
                raise TooManyRequestsError("Rate limit exceeded", retry_after_ms=retry_after_ms)

            state.count += 1
            state.last_seen_at = now

    def _prune(self, now: float) -> None:
        stale = [
            client_id
            for client_id, state in self._clients.items()
            if now - state.last_seen_at > self.state_ttl_ms
        ]
        for client_id in stale:
            del self._clients[client_id]
        _evict_oldest(self._clients, self.max_tracked_clients, lambda s: s.last_seen_at)
