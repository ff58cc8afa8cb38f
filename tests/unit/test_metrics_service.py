import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from calendar_metrics.models.domain.calendar_domain import CalendarEvent, EventFetchResult
from calendar_metrics.services.calendar.google_client import (
    CalendarAuthError,
    UpstreamThrottledError,
    UpstreamUnavailableError,
)
from calendar_metrics.services.metrics.metrics_service import (
    MetricsService,
    MetricsTimeoutError,
    MetricsValidationError,
)
from calendar_metrics.services.metrics.window_cache import WindowCache

NOW = datetime(2024, 1, 8, 12, 0, 30, tzinfo=UTC)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeEventSource:
    """Replays queued outcomes; an exception instance is raised instead of returned."""

    def __init__(self, *outcomes, gate: asyncio.Event | None = None):
        self.outcomes = list(outcomes)
        self.gate = gate
        self.calls = []

    async def fetch_events(self, access_token, window):
        self.calls.append((access_token, window))
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def meeting(event_id: str, hour: int) -> CalendarEvent:
    start = datetime(2024, 1, 8, hour, tzinfo=UTC)
    return CalendarEvent(id=event_id, start=start, end=start + timedelta(minutes=30))


FULL = EventFetchResult(events=[meeting("a", 9), meeting("b", 10)], pages_fetched=1)


def make_service(source, clock=None, **kwargs) -> MetricsService:
    cache = WindowCache(clock=clock) if clock is not None else WindowCache()
    return MetricsService(event_source=source, cache=cache, now=lambda: NOW, **kwargs)


class TestWindowResolution:
    def test_defaults_to_last_seven_days(self):
        window = make_service(FakeEventSource(FULL)).resolve_window(None, None)

        assert window.end == NOW
        assert window.start == NOW - timedelta(days=7)

    def test_missing_start_is_relative_to_given_end(self):
        end = datetime(2024, 1, 5, tzinfo=UTC)

        window = make_service(FakeEventSource(FULL)).resolve_window(None, end)

        assert window.start == datetime(2023, 12, 29, tzinfo=UTC)

    def test_rejects_window_longer_than_seven_days(self):
        service = make_service(FakeEventSource(FULL))

        with pytest.raises(MetricsValidationError) as exc_info:
            service.resolve_window(NOW - timedelta(days=7, seconds=1), NOW)

        assert exc_info.value.field == "end"

    def test_rejects_start_not_before_end(self):
        service = make_service(FakeEventSource(FULL))

        with pytest.raises(MetricsValidationError):
            service.resolve_window(NOW, NOW)
        with pytest.raises(MetricsValidationError):
            service.resolve_window(NOW, NOW - timedelta(hours=1))

    def test_rejects_window_starting_in_the_future(self):
        service = make_service(FakeEventSource(FULL))

        with pytest.raises(MetricsValidationError) as exc_info:
            service.resolve_window(NOW + timedelta(hours=1), NOW + timedelta(hours=2))

        assert exc_info.value.field == "start"

    def test_tolerates_small_clock_skew(self):
        service = make_service(FakeEventSource(FULL))

        window = service.resolve_window(NOW + timedelta(minutes=4), NOW + timedelta(hours=1))

        assert window.start == NOW + timedelta(minutes=4)

    def test_naive_datetimes_are_treated_as_utc(self):
        service = make_service(FakeEventSource(FULL))

        window = service.resolve_window(datetime(2024, 1, 7), datetime(2024, 1, 8))

        assert window.start == datetime(2024, 1, 7, tzinfo=UTC)


@pytest.mark.asyncio
async def test_computes_metrics_over_normalized_window():
    source = FakeEventSource(FULL)
    service = make_service(source)

    outcome = await service.get_metrics("user-1", "token-1")

    assert outcome.source == "miss"
    assert outcome.cached is False
    assert outcome.result.total_meetings == 2
    assert outcome.window.end == datetime(2024, 1, 8, 12, 0, tzinfo=UTC)
    assert source.calls == [("token-1", outcome.window)]


@pytest.mark.asyncio
async def test_near_identical_windows_share_one_computation():
    source = FakeEventSource(FULL)
    service = make_service(source)
    start = datetime(2024, 1, 8, 8, 0, 5, tzinfo=UTC)
    end = datetime(2024, 1, 8, 11, 0, 5, tzinfo=UTC)

    first = await service.get_metrics("user-1", "token", start, end)
    second = await service.get_metrics(
        "user-1", "token", start + timedelta(seconds=40), end + timedelta(seconds=50)
    )

    assert len(source.calls) == 1
    assert second.source == "hit"
    assert second.cached is True
    assert second.result is first.result


@pytest.mark.asyncio
async def test_different_users_do_not_share_results():
    source = FakeEventSource(FULL)
    service = make_service(source)

    await service.get_metrics("user-1", "token-1")
    await service.get_metrics("user-2", "token-2")

    assert [call[0] for call in source.calls] == ["token-1", "token-2"]


@pytest.mark.asyncio
async def test_concurrent_requests_fetch_once():
    gate = asyncio.Event()
    source = FakeEventSource(FULL, gate=gate)
    service = make_service(source)

    tasks = [asyncio.create_task(service.get_metrics("user-1", "token")) for _ in range(5)]
    await asyncio.sleep(0)
    gate.set()
    outcomes = await asyncio.gather(*tasks)

    assert len(source.calls) == 1
    assert {o.source for o in outcomes} == {"miss", "coalesced"}
    assert all(o.result == outcomes[0].result for o in outcomes)


@pytest.mark.asyncio
async def test_window_inside_one_minute_widens_to_that_minute():
    source = FakeEventSource(FULL)
    service = make_service(source)
    start = datetime(2024, 1, 8, 11, 0, 10, tzinfo=UTC)

    outcome = await service.get_metrics("user-1", "token", start, start + timedelta(seconds=40))

    assert outcome.window.start == datetime(2024, 1, 8, 11, 0, tzinfo=UTC)
    assert outcome.window.end == datetime(2024, 1, 8, 11, 1, tzinfo=UTC)
    assert source.calls == [("token", outcome.window)]


@pytest.mark.asyncio
async def test_partial_results_propagate_and_expire_sooner():
    clock = FakeClock()
    partial = EventFetchResult(
        events=[meeting("a", 9)],
        partial=True,
        warnings=["Stopped after 3 page(s): retries exhausted due to rate limiting"],
        pages_fetched=3,
        retries=5,
    )
    source = FakeEventSource(partial, FULL)
    service = make_service(source, clock=clock, ttl_seconds=300, partial_ttl_seconds=60)

    first = await service.get_metrics("user-1", "token")
    assert first.result.partial is True
    assert first.result.warnings == tuple(partial.warnings)

    clock.now += 61
    second = await service.get_metrics("user-1", "token")
    assert second.source == "miss"
    assert second.result.partial is False

    clock.now += 61
    third = await service.get_metrics("user-1", "token")
    assert third.source == "hit"
    assert len(source.calls) == 2


@pytest.mark.asyncio
async def test_serves_stale_result_when_upstream_throttles():
    clock = FakeClock()
    source = FakeEventSource(FULL, UpstreamThrottledError("Rate limited", status_code=429))
    service = make_service(source, clock=clock, ttl_seconds=300, stale_grace_seconds=1800)

    fresh = await service.get_metrics("user-1", "token")
    clock.now += 400
    degraded = await service.get_metrics("user-1", "token")

    assert degraded.source == "stale"
    assert degraded.cached is True
    assert degraded.result.partial is True
    assert degraded.result.total_meetings == fresh.result.total_meetings
    assert "throttled" in degraded.result.warnings[-1]


@pytest.mark.asyncio
async def test_stale_result_past_grace_is_not_served():
    clock = FakeClock()
    source = FakeEventSource(FULL, UpstreamUnavailableError("Service down", status_code=503))
    service = make_service(source, clock=clock, ttl_seconds=300, stale_grace_seconds=60)

    await service.get_metrics("user-1", "token")
    clock.now += 400

    with pytest.raises(UpstreamUnavailableError):
        await service.get_metrics("user-1", "token")


@pytest.mark.asyncio
async def test_throttled_failure_without_cached_value_propagates():
    service = make_service(FakeEventSource(UpstreamThrottledError("Rate limited", retry_after=7)))

    with pytest.raises(UpstreamThrottledError) as exc_info:
        await service.get_metrics("user-1", "token")

    assert exc_info.value.retry_after == 7


@pytest.mark.asyncio
async def test_auth_failure_never_falls_back_to_stale():
    clock = FakeClock()
    source = FakeEventSource(FULL, CalendarAuthError("Token revoked", status_code=401))
    service = make_service(source, clock=clock, ttl_seconds=300)

    await service.get_metrics("user-1", "token")
    clock.now += 400

    with pytest.raises(CalendarAuthError):
        await service.get_metrics("user-1", "token")


@pytest.mark.asyncio
async def test_failures_are_not_cached():
    source = FakeEventSource(UpstreamUnavailableError("Service down", status_code=500), FULL)
    service = make_service(source)

    with pytest.raises(UpstreamUnavailableError):
        await service.get_metrics("user-1", "token")
    outcome = await service.get_metrics("user-1", "token")

    assert outcome.source == "miss"
    assert len(source.calls) == 2


@pytest.mark.asyncio
async def test_deadline_elapsing_raises_timeout_but_keeps_computation():
    gate = asyncio.Event()
    source = FakeEventSource(FULL, gate=gate)
    service = make_service(source)

    with pytest.raises(MetricsTimeoutError) as exc_info:
        await service.get_metrics("user-1", "token", timeout=0.01)
    assert exc_info.value.timeout_seconds == 0.01

    gate.set()
    outcome = await service.get_metrics("user-1", "token")

    assert outcome.source == "coalesced"
    assert len(source.calls) == 1
