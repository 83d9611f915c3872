from certledger.rate_limit import RateLimiter


class FakeTimer:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_limit_per_key_within_window():
    timer = FakeTimer()
    limiter = RateLimiter(2, window_seconds=60, timer=timer)

    assert limiter.allow("E1")
    assert limiter.allow("E1")
    result = limiter.check("E1")
    assert not result.allowed
    assert result.retry_after == 60.0
    # Other keys have their own window.
    assert limiter.allow("E2")


def test_window_slides():
    timer = FakeTimer()
    limiter = RateLimiter(1, window_seconds=60, timer=timer)
    assert limiter.allow("E1")
    timer.now += 30
    assert not limiter.allow("E1")
    timer.now += 31
    assert limiter.allow("E1")


def test_reset_clears_history():
    limiter = RateLimiter(1, timer=FakeTimer())
    assert limiter.allow("E1")
    limiter.reset("E1")
    assert limiter.allow("E1")


def test_cleanup_drops_drained_keys():
    timer = FakeTimer()
    limiter = RateLimiter(5, window_seconds=60, timer=timer)
    for key in ("E1", "E2", "E3"):
        limiter.allow(key)
    timer.now += 30
    limiter.allow("E3")
    assert limiter.tracked_keys() == 3

    timer.now += 31
    assert limiter.cleanup_expired() == 3
    assert limiter.tracked_keys() == 1


def test_scans_sweep_idle_keys():
    timer = FakeTimer()
    limiter = RateLimiter(5, window_seconds=60, timer=timer)
    for i in range(100):
        limiter.allow(f"E{i}")
    assert limiter.tracked_keys() == 100

    timer.now += 61
    assert limiter.allow("E-new")
    assert limiter.tracked_keys() == 1
