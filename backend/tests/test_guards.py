import pytest

from entrybridge.errors import TooManyRequestsError, UnauthorizedError
from entrybridge.services.guards import ApiKeyGuard, RequestRateLimiter, extract_bearer_token

KEY = "s3cret"
VALID = f"Bearer {KEY}"


def make_guard(**overrides):
    options = {"failure_window_ms": 1000, "max_attempts": 3, "block_ms": 5000, "max_tracked_clients": 100}
    options.update(overrides)
    return ApiKeyGuard(KEY, **options)


def test_bearer_parsing():
    assert extract_bearer_token("Bearer abc") == "abc"
    assert extract_bearer_token("  bearer   abc  ") == "abc"
    assert extract_bearer_token("Basic abc") is None
    assert extract_bearer_token("Bearer abc def") is None
    assert extract_bearer_token("Bearer") is None


def test_valid_key_passes():
    guard = make_guard()
    guard.authenticate("10.0.0.1", VALID, now=0)
    assert len(guard) == 0


@pytest.mark.parametrize("header", [None, "", "Bearer wrong", "Token s3cret"])
def test_invalid_key_is_unauthorized(header):
    guard = make_guard()
    with pytest.raises(UnauthorizedError):
        guard.authenticate("10.0.0.1", header, now=0)


def test_repeated_failures_block_client():
    guard = make_guard()
    for t in (0, 10):
        with pytest.raises(UnauthorizedError):
            guard.authenticate("10.0.0.1", "Bearer wrong", now=t)

    with pytest.raises(TooManyRequestsError) as excinfo:
        guard.authenticate("10.0.0.1", "Bearer wrong", now=20)
    assert excinfo.value.retry_after_ms == 5000

    # Blocked even with the right key
    with pytest.raises(TooManyRequestsError) as excinfo:
        guard.authenticate("10.0.0.1", VALID, now=1020)
    assert excinfo.value.details == {"retryAfterMs": 4000}

    # Other clients are unaffected
    guard.authenticate("10.0.0.2", VALID, now=1020)

    # Block expires
    guard.authenticate("10.0.0.1", VALID, now=5021)


def test_failure_window_resets_count():
    guard = make_guard()
    for t in (0, 10):
        with pytest.raises(UnauthorizedError):
            guard.authenticate("10.0.0.1", "Bearer wrong", now=t)

    # Window elapsed, so this is the first failure of a new window
    with pytest.raises(UnauthorizedError):
        guard.authenticate("10.0.0.1", "Bearer wrong", now=1000)


def test_success_clears_failures():
    guard = make_guard()
    for t in (0, 10):
        with pytest.raises(UnauthorizedError):
            guard.authenticate("10.0.0.1", "Bearer wrong", now=t)
    guard.authenticate("10.0.0.1", VALID, now=20)

    for t in (30, 40):
        with pytest.raises(UnauthorizedError):
            guard.authenticate("10.0.0.1", "Bearer wrong", now=t)


def test_failure_map_is_capped():
    guard = make_guard(max_tracked_clients=3)
    for i in range(20):
        with pytest.raises(UnauthorizedError):
            guard.authenticate(f"client-{i}", "Bearer wrong", now=i)
        assert len(guard) <= 3


def test_idle_failures_are_pruned():
    guard = make_guard()
    with pytest.raises(UnauthorizedError):
        guard.authenticate("10.0.0.1", "Bearer wrong", now=0)
    assert len(guard) == 1

    guard.authenticate("10.0.0.2", VALID, now=6000)
    assert len(guard) == 0


def test_rate_limit_window():
    limiter = RequestRateLimiter(window_ms=1000, max_requests=2, state_ttl_ms=5000)
    limiter.hit("client", now=0)
    limiter.hit("client", now=100)

    with pytest.raises(TooManyRequestsError) as excinfo:
        limiter.hit("client", now=400)
    assert excinfo.value.retry_after_ms == 600

    limiter.hit("other", now=400)
    limiter.hit("client", now=1000)


def test_rate_limit_state_is_pruned_and_capped():
    limiter = RequestRateLimiter(window_ms=1000, max_requests=5, state_ttl_ms=500, max_tracked_clients=4)
    for i in range(30):
        limiter.hit(f"client-{i}", now=i)
        assert len(limiter) <= 4

    limiter.hit("late", now=10000)
    assert len(limiter) == 1
