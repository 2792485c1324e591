import asyncio

import pytest

from conftest import CHAT, OTHER_CHAT, FakeTransit, make_config
from models.transit import Stop, VehiclePosition
from services.monitor_scheduler import MonitorScheduler, format_proximity_alert


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_proximity_scenario_with_cooldown(config_store, alert_store, transit, notifier, clock):
    """300 m alerts, 280 m two minutes later is suppressed, eleven minutes later alerts again."""
    scheduler = MonitorScheduler(config_store, alert_store, transit, notifier, interval_seconds=60)
    config = config_store.save(CHAT, "709", make_config())

    transit.put_vehicle("V1", 300)
    assert await scheduler.tick(config) == 1
    assert len(notifier.messages) == 1
    assert len(alert_store.history(CHAT, "R709")) == 1
    assert "300m" in notifier.messages[0][1]

    clock.advance(minutes=2)
    transit.put_vehicle("V1", 280)
    assert await scheduler.tick(config) == 0
    assert len(notifier.messages) == 1

    clock.advance(minutes=9)
    assert await scheduler.tick(config) == 1
    assert len(notifier.messages) == 2
    assert len(alert_store.history(CHAT, "R709")) == 2


@pytest.mark.asyncio
async def test_vehicles_beyond_threshold_are_ignored(scheduler, transit, notifier):
    transit.put_vehicle("V1", 501)
    transit.put_vehicle("V2", 2000)
    assert await scheduler.tick(make_config()) == 0
    assert notifier.messages == []


@pytest.mark.asyncio
async def test_undelivered_alert_is_not_recorded(scheduler, alert_store, transit, notifier):
    notifier.deliver = False
    transit.put_vehicle("V1", 100)

    assert await scheduler.tick(make_config()) == 0
    assert alert_store.history(CHAT) == []
    assert alert_store.should_alert(CHAT, "R709", "V1")


@pytest.mark.asyncio
async def test_transit_failure_skips_tick(scheduler, transit, notifier):
    transit.fail_positions = True
    assert await scheduler.tick(make_config()) == 0
    assert notifier.messages == []


@pytest.mark.asyncio
async def test_stop_without_coordinates_is_resolved_through_transit(scheduler, transit, notifier):
    transit.put_vehicle("V1", 100)
    config = make_config(stop=Stop(id="S1", name="Av. Paulista, 1000"))
    assert await scheduler.tick(config) == 1


@pytest.mark.asyncio
async def test_stop_without_any_location_skips_tick(scheduler, transit, notifier):
    transit.put_vehicle("V1", 100)
    config = make_config(stop=Stop(id="S2", name="Rua Augusta"))
    assert await scheduler.tick(config) == 0
    assert notifier.messages == []


@pytest.mark.asyncio
async def test_start_persists_and_ticks_immediately(scheduler, config_store, transit):
    scheduler.start(make_config())

    assert config_store.get(CHAT, "709").is_active
    assert scheduler.is_running(CHAT, "709")
    assert scheduler.monitored_keys() == [f"{CHAT}_709"]
    await wait_until(lambda: transit.position_calls >= 1)


@pytest.mark.asyncio
async def test_ticks_repeat_at_interval(scheduler, transit):
    scheduler.start(make_config())
    await wait_until(lambda: transit.position_calls >= 3)
    assert scheduler.tick_count(CHAT, "709") >= 3


@pytest.mark.asyncio
async def test_start_on_existing_key_replaces_task(scheduler, transit, notifier):
    scheduler.start(make_config())
    first = scheduler._handles[(CHAT, "709")]

    scheduler.start(make_config(proximity_threshold_meters=200))
    second = scheduler._handles[(CHAT, "709")]

    assert first is not second
    assert first.stopped.is_set()
    assert scheduler.active_count() == 1

    await wait_until(lambda: first.task.done())
    transit.put_vehicle("V1", 100)
    await wait_until(lambda: len(notifier.messages) >= 1)
    await asyncio.sleep(0.15)
    # the replaced task never ticks again: one vehicle, one alert
    assert len(notifier.messages) == 1


@pytest.mark.asyncio
async def test_stop_prevents_further_ticks(scheduler, config_store, transit):
    scheduler.start(make_config())
    await wait_until(lambda: transit.position_calls >= 2)

    assert scheduler.stop(CHAT, "709")
    calls = transit.position_calls
    await asyncio.sleep(0.2)

    assert transit.position_calls == calls
    assert not scheduler.is_running(CHAT, "709")
    assert not config_store.get(CHAT, "709").is_active
    assert not scheduler.stop(CHAT, "709")


@pytest.mark.asyncio
async def test_stop_all_stops_only_that_chat(scheduler, config_store):
    for number in ("701", "702", "703"):
        scheduler.start(make_config(route_number=number))
    scheduler.start(make_config(chat_id=OTHER_CHAT, route_number="701"))

    assert scheduler.stop_all(CHAT) == 3
    assert config_store.get_active(CHAT) == []
    assert scheduler.active_count() == 1
    assert scheduler.is_running(OTHER_CHAT, "701")
    assert scheduler.stop_all(CHAT) == 0


@pytest.mark.asyncio
async def test_failing_tick_does_not_kill_task(scheduler, transit, monkeypatch):
    calls = []

    async def broken_tick(config):
        calls.append(config.key)
        raise RuntimeError("boom")

    monkeypatch.setattr(scheduler, "tick", broken_tick)
    scheduler.start(make_config())
    await wait_until(lambda: len(calls) >= 3)
    assert scheduler.is_running(CHAT, "709")


@pytest.mark.asyncio
async def test_task_ends_when_config_deactivated_elsewhere(scheduler, config_store):
    scheduler.start(make_config())
    config_store.deactivate(CHAT, "709")
    await wait_until(lambda: not scheduler.is_running(CHAT, "709"))
    assert scheduler.active_count() == 0


@pytest.mark.asyncio
async def test_restore_starts_only_active_configs(scheduler, config_store, transit):
    config_store.save(CHAT, "701", make_config(route_number="701"))
    config_store.save(CHAT, "702", make_config(route_number="702", is_active=False))
    config_store.save(OTHER_CHAT, "701", make_config(chat_id=OTHER_CHAT, route_number="701"))

    assert scheduler.restore() == 2
    assert sorted(scheduler.monitored_keys()) == sorted([f"{CHAT}_701", f"{OTHER_CHAT}_701"])
    await wait_until(lambda: transit.position_calls >= 2)


@pytest.mark.asyncio
async def test_shutdown_stops_everything(config_store, alert_store, transit, notifier):
    scheduler = MonitorScheduler(config_store, alert_store, transit, notifier, interval_seconds=0.05)
    scheduler.start(make_config(route_number="701"))
    scheduler.start(make_config(route_number="702"))
    tasks = [h.task for h in scheduler._handles.values()]

    await scheduler.shutdown(timeout=1.0)

    assert scheduler.active_count() == 0
    assert all(t.done() for t in tasks)
    # shutdown does not deactivate: monitors come back on restart
    assert len(config_store.get_active(CHAT)) == 2


def test_format_proximity_alert(clock):
    config = make_config()
    vehicle = VehiclePosition(vehicle_id="V1", latitude=0, longitude=0, prefix="1234")
    text = format_proximity_alert(config, vehicle, 312.6, eta_seconds=90, now=clock.now)

    assert "709 - Terminal Centro" in text
    assert "Av. Paulista, 1000" in text
    assert "313m" in text
    assert "1234" in text
    assert "About 2 min" in text
    assert "08:00:00" in text


class SlowTransit(FakeTransit):
    """Position lookups for one route take longer than the polling period."""

    def __init__(self, slow_route: str, delay: float):
        super().__init__()
        self.slow_route = slow_route
        self.delay = delay
        self.in_flight: dict[str, int] = {}
        self.max_in_flight: dict[str, int] = {}

    async def get_vehicle_positions(self, route_id, route_number=None):
        self.in_flight[route_id] = self.in_flight.get(route_id, 0) + 1
        self.max_in_flight[route_id] = max(self.max_in_flight.get(route_id, 0), self.in_flight[route_id])
        try:
            if route_id == self.slow_route:
                await asyncio.sleep(self.delay)
            return await super().get_vehicle_positions(route_id, route_number)
        finally:
            self.in_flight[route_id] -= 1


@pytest.mark.asyncio
async def test_slow_route_does_not_delay_other_routes(config_store, alert_store, notifier):
    transit = SlowTransit("R701", delay=0.5)
    scheduler = MonitorScheduler(config_store, alert_store, transit, notifier, interval_seconds=0.05)
    try:
        scheduler.start(make_config(route_number="701"))
        scheduler.start(make_config(route_number="702"))
        await asyncio.sleep(0.4)

        assert scheduler.tick_count(CHAT, "701") == 1
        assert scheduler.tick_count(CHAT, "702") >= 4
    finally:
        await scheduler.shutdown(timeout=1.0)


@pytest.mark.asyncio
async def test_overrunning_ticks_never_overlap(config_store, alert_store, notifier):
    transit = SlowTransit("R701", delay=0.12)
    scheduler = MonitorScheduler(config_store, alert_store, transit, notifier, interval_seconds=0.05)
    try:
        scheduler.start(make_config(route_number="701"))
        await wait_until(lambda: scheduler.tick_count(CHAT, "701") >= 3)
        assert transit.max_in_flight["R701"] == 1
    finally:
        await scheduler.shutdown(timeout=1.0)


@pytest.mark.asyncio
async def test_replacement_waits_for_in_flight_tick(config_store, alert_store, notifier):
    transit = SlowTransit("R701", delay=0.2)
    scheduler = MonitorScheduler(config_store, alert_store, transit, notifier, interval_seconds=0.05)
    try:
        scheduler.start(make_config(route_number="701"))
        await wait_until(lambda: transit.in_flight.get("R701") == 1)
        scheduler.start(make_config(route_number="701", proximity_threshold_meters=200))
        await wait_until(lambda: scheduler.tick_count(CHAT, "701") >= 2)
        assert transit.max_in_flight["R701"] == 1
    finally:
        await scheduler.shutdown(timeout=1.0)


@pytest.mark.asyncio
async def test_tick_lock_released_after_stop(scheduler, transit):
    scheduler.start(make_config())
    task = scheduler._handles[(CHAT, "709")].task
    await wait_until(lambda: transit.position_calls >= 1)

    scheduler.stop(CHAT, "709")
    await wait_until(task.done)
    assert (CHAT, "709") not in scheduler._tick_locks


@pytest.mark.asyncio
async def test_tick_lock_kept_for_replacement(scheduler, transit):
    scheduler.start(make_config())
    first = scheduler._handles[(CHAT, "709")].task
    await wait_until(lambda: transit.position_calls >= 1)

    scheduler.start(make_config(proximity_threshold_meters=200))
    await wait_until(first.done)
    await wait_until(lambda: scheduler.tick_count(CHAT, "709") >= 2)
    assert (CHAT, "709") in scheduler._tick_locks


@pytest.mark.asyncio
async def test_eta_uses_configured_route_speed(scheduler, transit, notifier):
    transit.put_vehicle("V1", 300)
    # 3.6 km/h is 1 m/s
    assert await scheduler.tick(make_config(average_speed_kmph=3.6)) == 1
    assert "About 5 min" in notifier.messages[0][1]
