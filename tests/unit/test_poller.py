"""StatusPoller: normalization, outage handling, backoff and cancellation."""

import asyncio

import pytest

from padctrl.client import DeviceClient
from padctrl.core import Settings
from padctrl.errors import (
    DeviceApiError,
    MalformedResponseError,
    SustainedUnreachableError,
    TransientRequestError,
)
from padctrl.poller import (
    PollerState,
    StatusPoller,
    backoff_delay,
    format_duration,
    normalize_status,
    parse_duration,
)
from padctrl.store import BeltState, DeviceMode, SessionStats

RUNNING_STATUS = {
    "mode": "manual",
    "belt_state": "running",
    "speed": 25,
    "distance": 1.2,
    "steps": 1500,
    "calories": 80,
    "duration": "12:30",
}


def unreachable():
    return TransientRequestError("Failed to communicate with pad API: refused")


# ========== Normalization ==========


def test_normalize_reference_status():
    status = normalize_status(RUNNING_STATUS)

    assert status.stats == SessionStats(
        distance=1.2, steps=1500, calories=80, duration="12:30", current_speed=2.5
    )
    assert status.mode == DeviceMode.MANUAL
    assert status.belt_state == BeltState.RUNNING
    assert status.is_running


def test_normalize_defaults_missing_fields():
    status = normalize_status({})

    assert status.stats == SessionStats()
    assert status.stats.duration == "00:00"
    assert status.mode == DeviceMode.STANDBY
    assert not status.is_running


def test_normalize_clamps_values():
    status = normalize_status(
        {"speed": 95, "distance": -1, "steps": -3, "calories": 12.6}, speed_max=6.0
    )

    assert status.stats.current_speed == 6.0
    assert status.stats.distance == 0.0
    assert status.stats.steps == 0
    assert status.stats.calories == 13


def test_normalize_duration_forms():
    assert normalize_status({"duration": 750}).stats.duration == "12:30"
    assert normalize_status({"time": 3723}).stats.duration == "1:02:03"
    assert normalize_status({"duration": "5:07"}).stats.duration == "05:07"
    assert normalize_status({"duration": None}).stats.duration == "00:00"


@pytest.mark.parametrize(
    "payload",
    [
        [],
        "running",
        {"mode": "turbo"},
        {"steps": "many"},
        {"duration": "ten minutes"},
    ],
)
def test_normalize_rejects_malformed(payload):
    with pytest.raises(MalformedResponseError):
        normalize_status(payload)


def test_duration_helpers():
    assert format_duration(0) == "00:00"
    assert format_duration(59) == "00:59"
    assert format_duration(3600) == "1:00:00"
    assert parse_duration("1:00:00") == 3600
    assert parse_duration("12:30") == 750
    assert parse_duration("125") == 125
    assert parse_duration(None) == 0
    with pytest.raises(ValueError):
        parse_duration("1:2:3:4")


# ========== Backoff ==========


def test_backoff_reference_values():
    assert [backoff_delay(n) for n in range(5)] == [5.0, 10.0, 20.0, 30.0, 30.0]


def test_backoff_is_monotonic_and_capped():
    delays = [backoff_delay(n, base=0.5, cap=12.0) for n in range(200)]

    assert all(a <= b for a, b in zip(delays, delays[1:]))
    assert max(delays) == 12.0
    assert backoff_delay(-1, base=0.5, cap=12.0) == 0.5


@pytest.mark.asyncio
async def test_next_delay_follows_connection_state(poller, fake_client, store):
    assert poller.next_delay() == poller.settings.poll_interval

    fake_client.script(unreachable(), unreachable())
    await poller.poll_once()
    assert poller.next_delay() == backoff_delay(
        1, poller.settings.reconnect_base_delay, poller.settings.reconnect_max_delay
    )

    await poller.poll_once()
    assert poller.next_delay() == poller.settings.reconnect_max_delay

    await poller.poll_once()
    assert poller.next_delay() == poller.settings.poll_interval


# ========== Store updates ==========


@pytest.mark.asyncio
async def test_successful_poll_updates_store(poller, store):
    store.set_error(DeviceApiError("old"))

    assert await poller.refresh()

    snapshot = store.snapshot()
    assert snapshot.stats.current_speed == 2.5
    assert snapshot.stats.distance == 1.2
    assert snapshot.mode == DeviceMode.MANUAL
    assert snapshot.is_running
    assert snapshot.is_connected
    assert not snapshot.is_reconnecting
    assert snapshot.error is None
    assert snapshot.last_update is not None


@pytest.mark.asyncio
async def test_successful_poll_is_one_commit(poller, store):
    seen = []
    store.subscribe(seen.append)

    await poller.refresh()

    assert len(seen) == 1


@pytest.mark.asyncio
async def test_three_failures_keep_stale_stats(poller, fake_client, store):
    notifications = []
    poller.set_on_connection_lost(notifications.append)

    await poller.refresh()
    before = store.stats

    fake_client.script(unreachable(), unreachable(), unreachable())
    for _ in range(3):
        assert not await poller.refresh()

    snapshot = store.snapshot()
    assert snapshot.is_reconnecting
    assert not snapshot.is_connected
    assert snapshot.consecutive_failures == 3
    assert snapshot.stats == before
    assert isinstance(snapshot.error, SustainedUnreachableError)
    assert isinstance(snapshot.error.cause, TransientRequestError)
    assert len(notifications) == 1


@pytest.mark.asyncio
async def test_first_failures_store_the_classified_error(poller, fake_client, store):
    error = unreachable()
    fake_client.script(error)

    await poller.refresh()

    assert store.error is error
    assert store.is_reconnecting
    assert store.consecutive_failures == 1


@pytest.mark.asyncio
async def test_notification_once_per_outage_episode(poller, fake_client, store):
    lost = []
    restored = []
    poller.set_on_connection_lost(lost.append)
    poller.set_on_connection_restored(lambda: restored.append(True))

    fake_client.script(
        unreachable(), unreachable(), unreachable(), unreachable(),
        dict(RUNNING_STATUS),
        unreachable(),
    )
    results = [await poller.refresh() for _ in range(6)]

    assert results == [False, False, False, False, True, False]
    assert len(lost) == 2
    assert len(restored) == 1
    assert store.consecutive_failures == 1


@pytest.mark.asyncio
async def test_success_resets_failures_and_clears_error(poller, fake_client, store):
    fake_client.script(unreachable(), unreachable())
    await poller.refresh()
    await poller.refresh()

    await poller.refresh()

    assert store.consecutive_failures == 0
    assert not store.is_reconnecting
    assert store.error is None


@pytest.mark.asyncio
async def test_disconnected_pad_counts_as_failure(poller, fake_client, store):
    fake_client.script(dict(RUNNING_STATUS, connected=False))

    assert not await poller.refresh()
    assert store.is_reconnecting
    assert "not connected" in store.error.message


@pytest.mark.asyncio
async def test_malformed_status_counts_as_failure(poller, fake_client, store):
    fake_client.script({"mode": "warp"})

    assert not await poller.refresh()
    assert isinstance(store.error, MalformedResponseError)
    assert store.stats == SessionStats()


@pytest.mark.asyncio
async def test_duration_never_decreases_while_running(poller, fake_client, store):
    fake_client.script(
        dict(RUNNING_STATUS, duration="12:30"),
        dict(RUNNING_STATUS, duration="12:29"),
        dict(RUNNING_STATUS, duration="12:31"),
    )

    durations = []
    for _ in range(3):
        await poller.refresh()
        durations.append(parse_duration(store.stats.duration))

    assert durations == sorted(durations)
    assert store.stats.duration == "12:31"


@pytest.mark.asyncio
async def test_duration_may_restart_with_a_new_session(poller, fake_client, store):
    fake_client.script(
        dict(RUNNING_STATUS, duration="12:30"),
        dict(RUNNING_STATUS, belt_state="idle", duration="00:00"),
    )

    await poller.refresh()
    await poller.refresh()

    assert store.stats.duration == "00:00"


@pytest.mark.asyncio
async def test_callback_errors_are_contained(poller, fake_client, store):
    def broken(error):
        raise RuntimeError("toast failed")

    poller.set_on_connection_lost(broken)
    fake_client.script(unreachable())

    assert not await poller.refresh()
    assert store.is_reconnecting


# ========== Scheduling ==========


@pytest.mark.asyncio
async def test_loop_polls_until_stopped(poller, fake_client, store):
    handle = poller.start()
    assert poller.state == PollerState.POLLING
    assert poller.start() is handle

    await asyncio.sleep(0.1)
    poller.stop()
    await handle.wait()

    polls = len(fake_client.calls)
    assert polls >= 2
    assert poller.state == PollerState.IDLE
    assert handle.cancelled

    await asyncio.sleep(0.05)
    assert len(fake_client.calls) == polls
    assert store.is_connected


@pytest.mark.asyncio
async def test_loop_enters_reconnecting_and_recovers(poller, fake_client, store):
    fake_client.script(unreachable())
    handle = poller.start()

    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert poller.state == PollerState.RECONNECTING

    await asyncio.sleep(0.1)
    assert poller.state == PollerState.POLLING
    assert store.consecutive_failures == 0

    handle.cancel()
    await handle.wait()


class SlowClient:
    """Client whose status fetch blocks until released."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls = 0

    async def get_status(self):
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.started.set()
        try:
            await self.release.wait()
        finally:
            self.in_flight -= 1
        return dict(RUNNING_STATUS)


@pytest.mark.asyncio
async def test_cancel_drops_in_flight_poll(store, fast_settings):
    client = SlowClient()
    poller = StatusPoller(client, store, fast_settings)
    seen = []
    store.subscribe(seen.append)

    handle = poller.start()
    await client.started.wait()
    handle.cancel()
    client.release.set()
    await handle.wait()
    await asyncio.sleep(0.03)

    assert seen == []
    assert store.snapshot().last_update is None
    assert poller.state == PollerState.IDLE


@pytest.mark.asyncio
async def test_cycles_never_overlap(store, fast_settings):
    client = SlowClient()
    client.release.set()
    poller = StatusPoller(client, store, fast_settings)

    handle = poller.start()
    await asyncio.sleep(0.08)
    await poller.shutdown()

    assert client.calls >= 2
    assert client.max_in_flight == 1
    assert handle.cancelled


@pytest.mark.asyncio
async def test_poller_can_be_reactivated(poller, fake_client):
    first = poller.start()
    await poller.shutdown()

    second = poller.start()
    assert second is not first
    assert poller.is_active
    await poller.shutdown()
    assert not poller.is_active


@pytest.mark.asyncio
async def test_start_without_immediate_poll_waits_one_interval(store):
    client = SlowClient()
    client.release.set()
    poller = StatusPoller(client, store, Settings(poll_interval=10.0))
    poller.start(immediate=False)
    await asyncio.sleep(0.02)

    assert client.calls == 0
    await poller.shutdown()


# ========== Unusable payloads ==========


@pytest.mark.parametrize("key", ["steps", "distance", "calories", "speed", "duration"])
def test_normalize_rejects_out_of_range_integers(key):
    with pytest.raises(MalformedResponseError):
        normalize_status({key: 10**400})


@pytest.mark.asyncio
async def test_oversized_number_enters_outage(poller, fake_client, store):
    lost = []
    poller.set_on_connection_lost(lost.append)
    fake_client.script(dict(RUNNING_STATUS, steps=10**400))

    assert not await poller.refresh()

    assert store.is_reconnecting
    assert store.consecutive_failures == 1
    assert isinstance(store.error, MalformedResponseError)
    assert len(lost) == 1
    assert poller.next_delay() == backoff_delay(
        1, poller.settings.reconnect_base_delay, poller.settings.reconnect_max_delay
    )


@pytest.mark.asyncio
async def test_undecodable_status_body_enters_outage(pad_api, store, fast_settings):
    pad_api.queue("/device/status", 200, b'{"mode": "manual\xff"}')

    async with DeviceClient(pad_api.url, retry_delay=0.0) as client:
        poller = StatusPoller(client, store, fast_settings)
        assert not await poller.refresh()

    assert store.is_reconnecting
    assert store.consecutive_failures == 1
    assert isinstance(store.error, MalformedResponseError)


@pytest.mark.asyncio
async def test_reset_during_outage_starts_a_new_episode(poller, fake_client, store):
    lost = []
    poller.set_on_connection_lost(lost.append)
    fake_client.script(unreachable(), unreachable(), unreachable())

    await poller.refresh()
    await poller.refresh()
    store.reset()

    assert poller.next_delay() == poller.settings.poll_interval
    assert not await poller.refresh()

    assert len(lost) == 2
    assert store.consecutive_failures == 1
    assert isinstance(store.error, TransientRequestError)
