# shopedge/tests/test_ratelimit.py
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from shopedge.ratelimit import RateLimiter, Tier, TierLimit


class _Clock:
    def __init__(self):
        self.t = 100.0

    def __call__(self):
        return self.t


def test_auth_tier_allows_ten_then_rejects():
    clock = _Clock()
    rl = RateLimiter(clock=clock)
    for i in range(10):
        r = rl.check("203.0.113.7", Tier.AUTH)
        assert r.allowed
        assert r.remaining == 9 - i
    r = rl.check("203.0.113.7", Tier.AUTH)
    assert not r.allowed
    assert r.remaining == 0
    assert rl.retry_after_seconds(r) == 900


def test_retry_after_tracks_remaining_window():
    clock = _Clock()
    rl = RateLimiter({Tier.GENERAL: TierLimit(1, 60.0)}, clock=clock)
    rl.check("a")
    clock.t += 45.5
    r = rl.check("a")
    assert not r.allowed
    assert rl.retry_after_seconds(r) == 15


def test_window_resets_after_reset_time():
    clock = _Clock()
    rl = RateLimiter({Tier.GENERAL: TierLimit(2, 60.0)}, clock=clock)
    assert rl.check("a").allowed
    assert rl.check("a").allowed
    assert not rl.check("a").allowed

    clock.t += 60.0
    # still inside the window at exactly reset_time
    assert not rl.check("a").allowed

    clock.t += 0.001
    r = rl.check("a")
    assert r.allowed
    assert rl.status("a").count == 1


def test_tiers_and_identities_are_independent():
    rl = RateLimiter({Tier.AUTH: TierLimit(1, 900.0), Tier.API: TierLimit(5, 60.0), Tier.GENERAL: TierLimit(5, 60.0)})
    assert rl.check("a", Tier.AUTH).allowed
    assert not rl.check("a", Tier.AUTH).allowed
    assert rl.check("a", Tier.API).allowed
    assert rl.check("b", Tier.AUTH).allowed


def test_status_does_not_count():
    rl = RateLimiter()
    rl.check("a", Tier.API)
    assert rl.status("a", Tier.API).count == 1
    assert rl.status("a", Tier.API).count == 1
    assert rl.status("missing", Tier.API).count == 0


def test_concurrent_increments_are_not_lost():
    rl = RateLimiter({Tier.GENERAL: TierLimit(100_000, 3600.0)})
    start = threading.Barrier(8)

    def worker():
        start.wait()
        for _ in range(250):
            rl.check("198.51.100.1", Tier.GENERAL)

    with ThreadPoolExecutor(max_workers=8) as pool:
        for f in [pool.submit(worker) for _ in range(8)]:
            f.result()

    assert rl.status("198.51.100.1", Tier.GENERAL).count == 2000


def test_key_cap_fails_closed_for_new_identities():
    clock = _Clock()
    rl = RateLimiter(max_tracked_keys=3, clock=clock)
    for ip in ("a", "b", "c"):
        assert rl.check(ip).allowed

    r = rl.check("d")
    assert not r.allowed
    assert r.capacity_exhausted
    assert r.remaining == 0
    assert rl.tracked_keys() == 3

    # existing identities keep being served
    assert rl.check("a").allowed


def test_key_cap_partial_sweep_makes_room():
    clock = _Clock()
    rl = RateLimiter(max_tracked_keys=3, evict_batch=1, clock=clock)
    for ip in ("a", "b", "c"):
        rl.check(ip)
    clock.t += 61.0

    r = rl.check("d")
    assert r.allowed
    assert not r.capacity_exhausted
    # only one stale window was reclaimed
    assert rl.tracked_keys() == 3


def test_sweep_removes_only_expired_windows():
    clock = _Clock()
    rl = RateLimiter(clock=clock)
    rl.check("a", Tier.GENERAL)
    rl.check("b", Tier.AUTH)
    clock.t += 61.0
    assert rl.sweep() == 1
    assert rl.tracked_keys() == 1


def test_background_sweeper_reclaims_memory():
    clock = _Clock()
    rl = RateLimiter(sweep_interval_s=0.01, clock=clock)
    rl.check("a")
    clock.t += 120.0
    rl.start()
    try:
        deadline = time.monotonic() + 2.0
        while rl.tracked_keys() and time.monotonic() < deadline:
            time.sleep(0.01)
        assert rl.tracked_keys() == 0
    finally:
        rl.stop()
