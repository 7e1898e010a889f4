from src.infrastructure.rate_limit import RateLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_window_allows_points_then_denies():
    clock = FakeClock()
    limiter = RateLimiter(points=3, window_seconds=60, clock=clock)

    assert all(limiter.hit("user-1").allowed for _ in range(3))
    denied = limiter.hit("user-1")

    assert not denied.allowed
    assert denied.retry_after_seconds == 60
    assert limiter.hit("user-2").allowed


def test_window_slides():
    clock = FakeClock()
    limiter = RateLimiter(points=2, window_seconds=10, clock=clock)
    limiter.hit("k")
    clock.now += 4
    limiter.hit("k")

    clock.now += 3
    assert limiter.hit("k").retry_after_seconds == 3

    clock.now += 3
    assert limiter.hit("k").allowed


def test_idle_keys_are_evicted_once_their_window_passes():
    clock = FakeClock()
    limiter = RateLimiter(points=5, window_seconds=60, clock=clock)
    for index in range(10_000):
        limiter.hit(f"/schedules/{index}/holds:user-{index}")
    assert limiter.tracked_keys == 10_000

    clock.now += 61
    assert limiter.hit("/bookings:user-1").allowed

    assert limiter.tracked_keys == 1


def test_active_keys_survive_eviction():
    clock = FakeClock()
    limiter = RateLimiter(points=2, window_seconds=10, clock=clock)
    limiter.hit("old")
    clock.now += 5
    limiter.hit("busy")
    limiter.hit("busy")

    clock.now += 6
    assert not limiter.hit("busy").allowed
    assert limiter.tracked_keys == 1
