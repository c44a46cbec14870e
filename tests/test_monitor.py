import asyncio
from dataclasses import replace

import pytest

from grbl_link.config import HealthConfig
from grbl_link.core import EventType
from grbl_link.dispatcher import Dispatcher
from grbl_link.monitor import HealthMonitor, HealthStatus, LatencyWindow


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


BASE_CONFIG = HealthConfig(
    health_check_interval=60.0,
    ping_timeout=0.05,
    max_consecutive_failures=3,
    recovery_attempts=3,
    recovery_delay=0.01,
    enable_auto_recovery=False,
    soft_reset_settle_seconds=0.0,
)


class Harness:
    def __init__(self, transport, **overrides) -> None:
        self.transport = transport
        self.dispatcher = Dispatcher(transport)
        self.monitor = HealthMonitor(
            self.dispatcher, transport, replace(BASE_CONFIG, **overrides)
        )

    async def __aenter__(self) -> "Harness":
        self.dispatcher.start()
        self.monitor.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.monitor.stop()
        await self.dispatcher.stop()


def types_of(events):
    return [event.type for event in events]


@pytest.mark.asyncio
async def test_consecutive_failures_degrade_then_success_restores(silent_transport) -> None:
    async with Harness(silent_transport) as harness:
        monitor = harness.monitor
        events = monitor.events.subscribe()

        assert await monitor.perform_health_check() is False
        assert await monitor.perform_health_check() is False
        assert monitor.state.is_healthy is True
        assert monitor.state.consecutive_failures == 2

        assert await monitor.perform_health_check() is False
        assert monitor.state.is_healthy is False
        assert monitor.state.status == HealthStatus.UNHEALTHY

        received = types_of(events.drain())
        assert received.count(EventType.PING_FAILED) == 3
        assert received.count(EventType.HEALTH_DEGRADED) == 1

        # let the abandoned probes expire out of the tracker
        await wait_until(lambda: harness.dispatcher.pending_count == 0)
        silent_transport.reply = lambda line: ["ok"]

        assert await monitor.perform_health_check() is True
        assert monitor.state.is_healthy is True
        assert monitor.state.consecutive_failures == 0
        assert types_of(events.drain()) == [EventType.HEALTH_RESTORED]


@pytest.mark.asyncio
async def test_recovery_gives_up_after_configured_attempts(silent_transport) -> None:
    async with Harness(
        silent_transport,
        max_consecutive_failures=1,
        recovery_attempts=2,
        enable_auto_recovery=True,
    ) as harness:
        monitor = harness.monitor
        events = monitor.events.subscribe()

        assert await monitor.perform_health_check() is False

        received = events.drain()
        kinds = types_of(received)
        assert EventType.RECOVERY_STARTED in kinds
        failed = [event for event in received if event.type == EventType.RECOVERY_FAILED]
        assert len(failed) == 1
        assert failed[0].data == {"attempts": 2}
        assert EventType.RECOVERY_SUCCESSFUL not in kinds

        assert monitor.state.is_healthy is False
        assert monitor.state.status == HealthStatus.UNHEALTHY
        assert monitor.recovery_in_progress is False
        assert silent_transport.writes.count(b"\x18") == 2


@pytest.mark.asyncio
async def test_recovery_reconnects_a_closed_port(transport) -> None:
    async with Harness(
        transport, max_consecutive_failures=1, enable_auto_recovery=True
    ) as harness:
        monitor = harness.monitor
        events = monitor.events.subscribe()
        transport.connected = False

        assert await monitor.perform_health_check() is False

        assert types_of(events.drain()) == [
            EventType.PING_FAILED,
            EventType.HEALTH_DEGRADED,
            EventType.RECOVERY_STARTED,
            EventType.CONNECTION_RESTORED,
            EventType.RECOVERY_SUCCESSFUL,
            EventType.HEALTH_RESTORED,
        ]
        assert transport.reconnect_calls == 1
        assert monitor.state.is_healthy is True
        assert monitor.state.status == HealthStatus.HEALTHY
        assert monitor.state.reconnection_count == 1
        assert monitor.metrics.reconnections == 1


@pytest.mark.asyncio
async def test_manual_recover_is_exclusive(silent_transport) -> None:
    async with Harness(silent_transport, recovery_attempts=1) as harness:
        monitor = harness.monitor
        running = asyncio.create_task(monitor.recover())
        await wait_until(lambda: monitor.recovery_in_progress)

        assert await monitor.recover() is False
        assert await monitor.perform_health_check() is None
        assert monitor.state.status == HealthStatus.RECOVERING

        assert await running is False
        assert monitor.state.status == HealthStatus.HEALTHY
        assert monitor.metrics.checks_total == 0


@pytest.mark.asyncio
async def test_slow_probe_emits_latency_warning(make_transport) -> None:
    transport = make_transport(reply_delay=0.03)
    async with Harness(
        transport,
        ping_timeout=1.0,
        warning_latency_threshold=0.01,
        critical_latency_threshold=1.0,
    ) as harness:
        events = harness.monitor.events.subscribe([EventType.LATENCY_WARNING])

        assert await harness.monitor.perform_health_check() is True

        [event] = events.drain()
        assert event.data["latency"] >= 0.01
        assert event.data["threshold"] == 0.01
        assert harness.monitor.latency.current == event.data["latency"]


@pytest.mark.asyncio
async def test_very_slow_probe_emits_latency_critical(make_transport) -> None:
    transport = make_transport(reply_delay=0.03)
    async with Harness(
        transport,
        ping_timeout=1.0,
        warning_latency_threshold=0.005,
        critical_latency_threshold=0.01,
    ) as harness:
        events = harness.monitor.events.subscribe(
            [EventType.LATENCY_WARNING, EventType.LATENCY_CRITICAL]
        )

        await harness.monitor.perform_health_check()

        assert types_of(events.drain()) == [EventType.LATENCY_CRITICAL]


@pytest.mark.asyncio
async def test_silence_from_controller_is_reported_stale(transport) -> None:
    async with Harness(transport, data_stale_threshold=0.01) as harness:
        events = harness.monitor.events.subscribe([EventType.DATA_STALE])
        await asyncio.sleep(0.03)

        await harness.monitor.perform_health_check()

        [event] = events.drain()
        assert event.data["timeSinceLastData"] > 0.01
        assert event.data["threshold"] == 0.01


@pytest.mark.asyncio
async def test_transport_errors_count_as_failures(transport) -> None:
    async with Harness(transport, max_consecutive_failures=2) as harness:
        monitor = harness.monitor
        events = monitor.events.subscribe()

        transport.fail(OSError("framing error"))
        assert monitor.state.is_healthy is True
        transport.fail(OSError("framing error"))

        assert monitor.state.is_healthy is False
        assert types_of(events.drain()) == [
            EventType.CONNECTION_ERROR,
            EventType.CONNECTION_ERROR,
            EventType.HEALTH_DEGRADED,
        ]


@pytest.mark.asyncio
async def test_disconnect_is_recorded_without_flipping_health(transport) -> None:
    async with Harness(transport) as harness:
        monitor = harness.monitor
        events = monitor.events.subscribe([EventType.CONNECTION_LOST])

        transport.drop()

        assert len(events.drain()) == 1
        assert monitor.state.is_healthy is True
        assert monitor.metrics.disconnections == 1
        assert monitor.stability_score == 90.0


@pytest.mark.asyncio
async def test_stability_score_tracks_failure_rate(make_transport) -> None:
    transport = make_transport(reply=None)
    async with Harness(transport) as harness:
        monitor = harness.monitor
        assert await monitor.perform_health_check() is False

        await wait_until(lambda: harness.dispatcher.pending_count == 0)
        transport.reply = lambda line: ["ok"]
        assert await monitor.perform_health_check() is True

        status = monitor.health_status()
        assert status["successRate"] == 50.0
        assert status["stabilityScore"] == 50.0
        assert status["isHealthy"] is True
        assert status["status"] == "healthy"


@pytest.mark.asyncio
async def test_reset_metrics_starts_fresh(transport) -> None:
    async with Harness(transport) as harness:
        monitor = harness.monitor
        await monitor.perform_health_check()
        events = monitor.events.subscribe([EventType.METRICS_RESET])

        monitor.reset_metrics()

        assert len(events.drain()) == 1
        assert monitor.metrics.checks_total == 0
        assert len(monitor.latency) == 0
        assert monitor.state.consecutive_failures == 0
        assert monitor.state.stability_score == 100.0


@pytest.mark.asyncio
async def test_check_now_and_report(transport) -> None:
    async with Harness(transport) as harness:
        monitor = harness.monitor
        status = await monitor.check_now()
        assert status["isHealthy"] is True
        assert status["lastCheck"] is not None

        report = monitor.report()
        assert report["metrics"]["healthChecks"]["passed"] == 1
        assert report["metrics"]["throughput"]["messagesReceived"] == 1
        assert report["thresholds"]["maxConsecutiveFailures"] == 3
        assert report["status"]["isMonitoring"] is True


@pytest.mark.asyncio
async def test_stop_publishes_report_and_deactivates(transport) -> None:
    harness = Harness(transport)
    await harness.__aenter__()
    events = harness.monitor.events.subscribe([EventType.MONITORING_STOPPED])

    await harness.__aexit__(None, None, None)

    [event] = events.drain()
    assert "metrics" in event.data["report"]
    assert harness.monitor.is_monitoring is False
    with pytest.raises(RuntimeError):
        await harness.monitor.check_now()


@pytest.mark.asyncio
async def test_check_loop_runs_on_interval(transport) -> None:
    async with Harness(transport, health_check_interval=0.02) as harness:
        await wait_until(lambda: harness.monitor.metrics.checks_total >= 2)
        assert harness.monitor.metrics.checks_passed >= 1


def test_latency_window_keeps_most_recent_samples() -> None:
    window = LatencyWindow(3)
    for sample in (0.1, 0.2, 0.3, 0.7):
        window.add(sample)

    assert window.samples() == [0.2, 0.3, 0.7]
    assert window.current == 0.7
    assert window.average == pytest.approx(0.4)
    assert window.minimum == 0.1
    assert window.maximum == 0.7


@pytest.mark.asyncio
async def test_reset_during_recovery_keeps_live_state(make_transport) -> None:
    transport = make_transport(reply_delay=0.05)
    async with Harness(transport, ping_timeout=1.0) as harness:
        monitor = harness.monitor
        running = asyncio.create_task(monitor.recover())
        await wait_until(lambda: monitor.recovery_in_progress)

        monitor.reset_metrics()
        assert monitor.state.status == HealthStatus.RECOVERING

        assert await running is True
        assert monitor.state.status == HealthStatus.HEALTHY
        assert monitor.state.last_success_at is not None
        assert monitor.metrics.reconnections == 1


@pytest.mark.asyncio
async def test_event_buffer_size_bounds_subscribers(transport) -> None:
    async with Harness(transport, event_buffer_size=2) as harness:
        monitor = harness.monitor
        events = monitor.events.subscribe([EventType.METRICS_RESET])

        for _ in range(3):
            monitor.reset_metrics()

        assert len(events) == 2
        assert events.dropped == 1
