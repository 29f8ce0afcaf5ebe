import httpx
import pytest

import database
import usage_tracker
from localization import get_localized_content, locale_from_accept_language
from rate_limiter import RateLimiter
from retry import is_retryable_error, retry
from uploads import build_object_key, safe_filename, validate_upload


class Flaky:
    def __init__(self, failures, exc):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return "ok"


def status_error(code):
    request = httpx.Request("GET", "https://carrier.test")
    return httpx.HTTPStatusError("boom", request=request, response=httpx.Response(code, request=request))


def test_retry_until_success():
    fn = Flaky(2, ConnectionError("down"))
    assert retry(fn, delay=0) == "ok"
    assert fn.calls == 3


def test_retry_gives_up():
    fn = Flaky(10, status_error(500))
    with pytest.raises(httpx.HTTPStatusError):
        retry(fn, max_retries=2, delay=0)
    assert fn.calls == 3


def test_client_errors_are_not_retried():
    fn = Flaky(1, status_error(400))
    with pytest.raises(httpx.HTTPStatusError):
        retry(fn, delay=0)
    assert fn.calls == 1

    too_many = Flaky(1, status_error(429))
    assert retry(too_many, delay=0) == "ok"


def test_is_retryable_error():
    assert is_retryable_error(status_error(503))
    assert is_retryable_error(httpx.ConnectTimeout("slow"))
    assert not is_retryable_error(status_error(404))
    assert not is_retryable_error(ValueError("bad"))


def test_rate_limiter_per_key():
    limiter = RateLimiter(default_limit=2, window=60, limits={"fedex": 3})
    assert limiter.try_acquire("dhl")
    assert limiter.try_acquire("dhl")
    assert not limiter.try_acquire("dhl")
    assert limiter.remaining_calls("dhl") == 0
    assert limiter.remaining_calls("fedex") == 3
    assert limiter.time_to_reset("dhl") > 0
    assert not limiter.wait_for_availability("dhl", max_wait=1)

    limiter.reset("dhl")
    assert limiter.remaining_calls("dhl") == 2


def test_rate_limiter_window_expires():
    limiter = RateLimiter(default_limit=1, window=0)
    assert limiter.try_acquire("ip")
    assert limiter.wait_for_availability("ip", max_wait=1)


def test_rate_limiter_forgets_expired_windows():
    now = [1000.0]
    limiter = RateLimiter(default_limit=1, window=60, clock=lambda: now[0])
    for n in range(50):
        limiter.try_acquire(f"10.0.0.{n}")
    assert len(limiter._buckets) == 50

    now[0] += 61
    assert limiter.try_acquire("10.0.1.1")
    assert list(limiter._buckets) == ["10.0.1.1"]


def test_rate_limiter_caps_tracked_keys():
    limiter = RateLimiter(default_limit=1, window=60, max_keys=3)
    for key in ("a", "b", "c", "d"):
        assert limiter.try_acquire(key)
    assert list(limiter._buckets) == ["b", "c", "d"]
    assert not limiter.try_acquire("d")


def test_usage_tracker_flushes_at_buffer_limit(mongo):
    tracker = usage_tracker.ApiUsageTracker(buffer_limit=2)
    tracker.track_usage("DHL", "/rates", usage_tracker.RATE_QUOTE, True, 120)
    assert mongo["apiusage"].count_documents({}) == 0
    tracker.track_usage("DHL", "/rates", usage_tracker.RATE_QUOTE, False, 80)
    assert mongo["apiusage"].count_documents({}) == 2
    assert tracker.buffer == []


def test_usage_tracker_keeps_records_when_flush_fails(monkeypatch):
    tracker = usage_tracker.ApiUsageTracker(buffer_limit=10)
    tracker.track_usage("GLS", "/tracking", usage_tracker.TRACK_SHIPMENT, True, 5)
    monkeypatch.setattr(database, "db", None)
    assert tracker.flush() == 0
    assert len(tracker.buffer) == 1


def test_track_timing_records_failures():
    tracker = usage_tracker.ApiUsageTracker()

    def fail():
        raise RuntimeError("carrier down")

    with pytest.raises(RuntimeError):
        tracker.track_timing("FedEx", "/ship", usage_tracker.CREATE_LABEL, fail)
    assert tracker.buffer[0]["success"] is False
    assert tracker.track_timing("FedEx", "/ship", usage_tracker.CREATE_LABEL, lambda: 7) == 7
    assert tracker.buffer[1]["success"] is True


def test_validate_upload():
    assert validate_upload("image/png", 1024) is None
    assert validate_upload("application/pdf", 1024).startswith("Invalid file type")
    assert validate_upload("image/jpeg", 6 * 1024 * 1024) == "File too large. Maximum size is 5MB"


def test_object_keys():
    assert safe_filename(" My Tire Photo.JPG ") == "my-tire-photo.jpg"
    assert safe_filename("///") == "file"
    assert build_object_key("a.png", "products").startswith("products/")
    assert build_object_key("a.png", "products").endswith("-a.png")


def test_upload_endpoint(client, user_headers):
    r = client.post(
        "/api/uploads",
        json={"filename": "tread.png", "content_type": "image/png", "size": 100, "folder": "reviews"},
        headers=user_headers,
    )
    assert r.status_code == 201
    assert r.json()["key"].startswith("reviews/")
    assert r.json()["file_url"].endswith(r.json()["key"])

    bad = client.post(
        "/api/uploads",
        json={"filename": "doc.pdf", "content_type": "application/pdf", "size": 100},
        headers=user_headers,
    )
    assert bad.status_code == 400


def test_localization():
    names = {"en": "Summer tire", "nl": "Zomerband"}
    assert get_localized_content(names, "Summer", "nl") == "Zomerband"
    assert get_localized_content(names, "Summer", "de") == "Summer"
    assert get_localized_content(None, "Summer", "nl") == "Summer"
    assert get_localized_content(names, "Summer") == "Summer"

    assert locale_from_accept_language("nl-NL,nl;q=0.9,en;q=0.8") == "nl"
    assert locale_from_accept_language("de-DE,fr;q=0.5") == "en"
    assert locale_from_accept_language(None) == "en"
