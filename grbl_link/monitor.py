"""Connection health monitoring and bounded automatic recovery.

The monitor probes the controller through the dispatcher like any other
caller, so a probe waits behind queued traffic and its latency includes
queueing delay. Failed probes and transport errors accumulate in a
consecutive-failure counter; crossing ``max_consecutive_failures`` marks the
link unhealthy and, when enabled, starts one recovery run of at most
``recovery_attempts`` attempts separated by a fixed ``recovery_delay``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

from .config import HealthConfig
from .core.errors import DispatchError, ProbeError, TransportError
from .core.events import EventBus, EventType
from .core.protocols import Transport
from .dispatcher import Dispatcher

LOGGER = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    RECOVERING = "recovering"


@dataclass(slots=True)
class HealthState:
    is_healthy: bool = True
    status: HealthStatus = HealthStatus.HEALTHY
    consecutive_failures: int = 0
    last_success_at: Optional[float] = None
    last_data_at: Optional[float] = None
    stability_score: float = 100.0
    connection_started_at: Optional[float] = None
    reconnection_count: int = 0


@dataclass(slots=True)
class HealthMetrics:
    checks_total: int = 0
    checks_passed: int = 0
    checks_failed: int = 0
    last_check_at: Optional[float] = None
    disconnections: int = 0
    reconnections: int = 0
    bytes_received: int = 0
    messages_received: int = 0

    @property
    def success_rate(self) -> float:
        if self.checks_total == 0:
            return 100.0
        return (self.checks_passed / self.checks_total) * 100

    @property
    def failure_rate(self) -> float:
        if self.checks_total == 0:
            return 0.0
        return (self.checks_failed / self.checks_total) * 100


class LatencyWindow:
    """Ring of the most recent probe round-trip times (seconds)."""

    def __init__(self, size: int = 100) -> None:
        if size < 1:
            raise ValueError("size must be at least 1")
        self._samples: Deque[float] = deque(maxlen=size)
        self.size = size
        self.current = 0.0
        self.average = 0.0
        self.minimum: Optional[float] = None
        self.maximum = 0.0

    def add(self, sample: float) -> float:
        self._samples.append(sample)
        self.current = sample
        self.minimum = sample if self.minimum is None else min(self.minimum, sample)
        self.maximum = max(self.maximum, sample)
        self.average = sum(self._samples) / len(self._samples)
        return self.average

    def __len__(self) -> int:
        return len(self._samples)

    def samples(self) -> list[float]:
        return list(self._samples)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "current": self.current,
            "average": self.average,
            "min": self.minimum,
            "max": self.maximum,
            "samples": len(self._samples),
            "sampleSize": self.size,
        }


class HealthMonitor:
    """Tracks link health and drives recovery for one serial connection."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        transport: Transport,
        config: Optional[HealthConfig] = None,
        *,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._dispatcher = dispatcher
        self._transport = transport
        self._config = config or HealthConfig()
        self._logger = logger or LOGGER
        self._clock = clock

        self.events = EventBus(
            "health", default_buffer_size=self._config.event_buffer_size
        )
        self._state: Optional[HealthState] = None
        self._metrics = HealthMetrics()
        self._latency = LatencyWindow(self._config.latency_window_size)

        self._stop_event = asyncio.Event()
        self._check_task: Optional[asyncio.Task[None]] = None
        self._recovery_task: Optional[asyncio.Task[bool]] = None
        self._recovery_in_progress = False

        transport.register_data_handler(self._on_data)
        transport.register_connect_handler(self._on_connect)
        transport.register_disconnect_handler(self._on_disconnect)
        transport.register_error_handler(self._on_error)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def is_monitoring(self) -> bool:
        return self._state is not None

    @property
    def state(self) -> Optional[HealthState]:
        return self._state

    @property
    def recovery_in_progress(self) -> bool:
        return self._recovery_in_progress

    @property
    def latency(self) -> LatencyWindow:
        return self._latency

    @property
    def metrics(self) -> HealthMetrics:
        return self._metrics

    def start(self) -> None:
        if self._state is not None:
            self._logger.warning("Connection health monitoring already started")
            return

        now = self._clock()
        self._state = HealthState(connection_started_at=now, last_data_at=now)
        self._stop_event.clear()
        self._check_task = asyncio.create_task(
            self._check_loop(), name="grbl-health-monitor"
        )
        self._logger.debug("Connection health monitoring started")
        self.events.publish(
            EventType.MONITORING_STARTED,
            healthCheckInterval=self._config.health_check_interval,
            autoRecovery=self._config.enable_auto_recovery,
        )

    async def stop(self) -> None:
        if self._state is None:
            return

        self._stop_event.set()
        for task in (self._check_task, self._recovery_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._check_task = None
        self._recovery_task = None

        report = self.report()
        self._state = None
        self._logger.debug("Connection health monitoring stopped")
        self.events.publish(EventType.MONITORING_STOPPED, report=report)

    async def _check_loop(self) -> None:
        interval = self._config.health_check_interval
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.perform_health_check()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.exception("Health check raised unexpectedly")

    def _require_state(self) -> HealthState:
        if self._state is None:
            raise RuntimeError("Health monitoring is not active")
        return self._state

    # ------------------------------------------------------------------
    # Health checks
    # ------------------------------------------------------------------
    async def check_now(self) -> Dict[str, Any]:
        """Run one health check immediately and return the resulting status."""

        self._require_state()
        await self.perform_health_check()
        return self.health_status()

    async def perform_health_check(self) -> Optional[bool]:
        """Probe the controller once.

        Returns ``True``/``False`` for a passed/failed probe, or ``None`` when
        the check was skipped because recovery is running.
        """

        state = self._require_state()
        if self._recovery_in_progress:
            self._logger.debug("Skipping health check; recovery in progress")
            return None

        self._metrics.checks_total += 1
        self._check_data_staleness(state)

        try:
            latency = await self._probe()
        except ProbeError as exc:
            self._record_failure(state, str(exc))
            degraded = self._update_health(state, success=False)
            self._logger.warning("Health check failed: %s", exc)
            if degraded and self._config.enable_auto_recovery:
                await self._run_recovery()
            return False

        self._record_success(state, latency)
        self._check_latency_thresholds(latency)
        self._update_health(state, success=True)
        self._logger.debug("Health check passed (latency=%.3fs)", latency)
        return True

    async def _probe(self) -> float:
        if not self._transport.connection_status().connected:
            raise ProbeError("Serial transport not connected")

        timeout = self._config.ping_timeout
        started = self._clock()
        future = self._dispatcher.submit(self._config.ping_command, timeout=timeout)
        try:
            response = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ProbeError(f"Ping timeout after {timeout:.3f}s") from exc
        except DispatchError as exc:
            raise ProbeError(f"Ping failed ({exc.code.value}): {exc}") from exc

        if not response.ok:
            raise ProbeError(f"Ping answered with {response.raw!r}")
        return self._clock() - started

    def _record_success(self, state: HealthState, latency: float) -> None:
        state.last_success_at = self._clock()
        state.consecutive_failures = 0
        self._metrics.checks_passed += 1
        self._latency.add(latency)
        self._update_stability_score()

    def _record_failure(self, state: HealthState, reason: str) -> None:
        state.consecutive_failures += 1
        self._metrics.checks_failed += 1
        self._update_stability_score()
        self.events.publish(
            EventType.PING_FAILED,
            error=reason,
            consecutiveFailures=state.consecutive_failures,
        )

    def _update_health(self, state: HealthState, *, success: bool) -> bool:
        """Apply a check outcome; returns ``True`` on a healthy->unhealthy flip."""

        was_healthy = state.is_healthy
        if success:
            state.is_healthy = True
            state.status = HealthStatus.HEALTHY
        elif state.consecutive_failures >= self._config.max_consecutive_failures:
            state.is_healthy = False
            if state.status == HealthStatus.HEALTHY:
                state.status = HealthStatus.UNHEALTHY

        self._metrics.last_check_at = self._clock()

        if was_healthy == state.is_healthy:
            return False

        if state.is_healthy:
            self._logger.info("Connection health restored")
            self.events.publish(
                EventType.HEALTH_RESTORED,
                isHealthy=True,
                consecutiveFailures=state.consecutive_failures,
            )
            return False

        self._logger.error(
            "Connection health degraded after %d consecutive failure(s)",
            state.consecutive_failures,
        )
        self.events.publish(
            EventType.HEALTH_DEGRADED,
            isHealthy=False,
            consecutiveFailures=state.consecutive_failures,
        )
        return True

    def _check_latency_thresholds(self, latency: float) -> None:
        critical = self._config.critical_latency_threshold
        warning = self._config.warning_latency_threshold
        if latency >= critical:
            self.events.publish(
                EventType.LATENCY_CRITICAL,
                latency=latency,
                threshold=critical,
                severity="critical",
            )
        elif latency >= warning:
            self.events.publish(
                EventType.LATENCY_WARNING,
                latency=latency,
                threshold=warning,
                severity="warning",
            )

    def _check_data_staleness(self, state: HealthState) -> None:
        threshold = self._config.data_stale_threshold
        if threshold <= 0:
            return
        now = self._clock()
        last = state.last_data_at if state.last_data_at is not None else now
        silent_for = now - last
        if silent_for > threshold:
            self._logger.warning("No data from controller for %.1fs", silent_for)
            self.events.publish(
                EventType.DATA_STALE,
                timeSinceLastData=silent_for,
                threshold=threshold,
                lastDataAt=state.last_data_at,
            )

    def _update_stability_score(self) -> float:
        score = 100.0
        score -= min(self._metrics.disconnections * 10, 50)
        score -= self._metrics.failure_rate
        average = self._latency.average
        if average > self._config.warning_latency_threshold:
            score -= 10
        if average > self._config.critical_latency_threshold:
            score -= 20
        score = max(score, 0.0)
        if self._state is not None:
            self._state.stability_score = score
        return score

    @property
    def stability_score(self) -> float:
        return self._update_stability_score()

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------
    async def recover(self) -> bool:
        """Run the recovery procedure on demand.

        Returns ``False`` without doing anything when recovery is already
        running.
        """

        self._require_state()
        return await self._run_recovery()

    def _schedule_recovery(self) -> None:
        if self._recovery_in_progress:
            return
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        self._recovery_task = asyncio.create_task(
            self._run_recovery(), name="grbl-recovery"
        )

    async def _run_recovery(self) -> bool:
        if self._recovery_in_progress:
            self._logger.debug("Recovery already in progress")
            return False

        state = self._require_state()
        attempts = self._config.recovery_attempts
        self._recovery_in_progress = True
        state.status = HealthStatus.RECOVERING

        self._logger.info("Starting connection recovery")
        self.events.publish(
            EventType.RECOVERY_STARTED,
            consecutiveFailures=state.consecutive_failures,
        )

        try:
            for attempt in range(1, attempts + 1):
                self._logger.debug("Recovery attempt %d/%d", attempt, attempts)
                try:
                    await self._recovery_step()
                    latency = await self._probe()
                except (ProbeError, DispatchError, TransportError, OSError) as exc:
                    self._logger.warning("Recovery attempt %d failed: %s", attempt, exc)
                    if attempt < attempts:
                        await asyncio.sleep(self._config.recovery_delay)
                    continue

                # reset_metrics() may have replaced the state during the awaits
                state = self._state
                if state is None:
                    return False
                self._complete_recovery(state, attempt, latency)
                return True

            state = self._state
            if state is not None:
                state.status = (
                    HealthStatus.HEALTHY if state.is_healthy else HealthStatus.UNHEALTHY
                )
            self._logger.error(
                "Connection recovery failed after %d attempt(s); manual intervention required",
                attempts,
            )
            self.events.publish(EventType.RECOVERY_FAILED, attempts=attempts)
            return False
        finally:
            self._recovery_in_progress = False

    async def _recovery_step(self) -> None:
        if not self._transport.connection_status().connected:
            self._logger.debug("Attempting serial reconnection")
            await self._transport.reconnect()
            return

        self._logger.debug("Clearing controller state with soft reset")
        await self._dispatcher.soft_reset()
        await asyncio.sleep(self._config.soft_reset_settle_seconds)

    def _complete_recovery(
        self, state: HealthState, attempt: int, latency: float
    ) -> None:
        was_healthy = state.is_healthy
        state.consecutive_failures = 0
        state.is_healthy = True
        state.status = HealthStatus.HEALTHY
        state.last_success_at = self._clock()
        self._latency.add(latency)
        self._metrics.reconnections += 1
        self._update_stability_score()

        self._logger.info("Connection recovery successful on attempt %d", attempt)
        self.events.publish(EventType.RECOVERY_SUCCESSFUL, attempt=attempt)
        if not was_healthy:
            self.events.publish(
                EventType.HEALTH_RESTORED,
                isHealthy=True,
                consecutiveFailures=0,
            )

    # ------------------------------------------------------------------
    # Transport observation
    # ------------------------------------------------------------------
    def _on_data(self, line: str) -> None:
        if self._state is None:
            return
        self._state.last_data_at = self._clock()
        self._metrics.bytes_received += len(line) + 1
        self._metrics.messages_received += 1

    def _on_connect(self) -> None:
        state = self._state
        if state is None:
            return
        now = self._clock()
        state.reconnection_count += 1
        state.connection_started_at = now
        state.last_data_at = now
        self._logger.info("Serial transport connected")
        self.events.publish(
            EventType.CONNECTION_RESTORED,
            reconnectionCount=state.reconnection_count,
        )

    def _on_disconnect(self) -> None:
        state = self._state
        if state is None:
            return
        self._metrics.disconnections += 1
        self._update_stability_score()
        self._logger.warning("Serial transport disconnected")
        self.events.publish(EventType.CONNECTION_LOST, uptime=self._uptime(state))

    def _on_error(self, exc: BaseException) -> None:
        state = self._state
        if state is None:
            return
        state.consecutive_failures += 1
        self._logger.warning("Serial transport error: %s", exc)
        self.events.publish(
            EventType.CONNECTION_ERROR,
            error=str(exc),
            consecutiveFailures=state.consecutive_failures,
        )
        if self._recovery_in_progress:
            return
        if self._update_health(state, success=False) and self._config.enable_auto_recovery:
            self._schedule_recovery()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def _uptime(self, state: HealthState) -> float:
        if state.connection_started_at is None:
            return 0.0
        return self._clock() - state.connection_started_at

    def reset_metrics(self) -> None:
        self._metrics = HealthMetrics()
        self._latency = LatencyWindow(self._config.latency_window_size)
        if self._state is not None:
            self._state = HealthState(
                status=(
                    HealthStatus.RECOVERING
                    if self._recovery_in_progress
                    else HealthStatus.HEALTHY
                ),
                connection_started_at=self._clock(),
                last_data_at=self._state.last_data_at,
                reconnection_count=self._state.reconnection_count,
            )
        self._logger.debug("Health metrics reset")
        self.events.publish(EventType.METRICS_RESET)

    def health_status(self) -> Dict[str, Any]:
        state = self._require_state()
        return {
            "isHealthy": state.is_healthy,
            "status": state.status.value,
            "consecutiveFailures": state.consecutive_failures,
            "latency": self._latency.current,
            "averageLatency": self._latency.average,
            "stabilityScore": self._update_stability_score(),
            "successRate": self._metrics.success_rate,
            "uptime": self._uptime(state),
            "lastCheck": self._metrics.last_check_at,
        }

    def report(self) -> Dict[str, Any]:
        state = self._require_state()
        now = self._clock()
        metrics = self._metrics
        return {
            "state": {
                "isHealthy": state.is_healthy,
                "status": state.status.value,
                "consecutiveFailures": state.consecutive_failures,
                "lastSuccessAt": state.last_success_at,
                "lastDataAt": state.last_data_at,
                "reconnectionCount": state.reconnection_count,
                "uptime": self._uptime(state),
            },
            "metrics": {
                "latency": self._latency.as_dict(),
                "throughput": {
                    "bytesReceived": metrics.bytes_received,
                    "messagesReceived": metrics.messages_received,
                },
                "stability": {
                    "disconnections": metrics.disconnections,
                    "reconnections": metrics.reconnections,
                    "stabilityScore": self._update_stability_score(),
                },
                "healthChecks": {
                    "total": metrics.checks_total,
                    "passed": metrics.checks_passed,
                    "failed": metrics.checks_failed,
                    "lastCheck": metrics.last_check_at,
                    "successRate": metrics.success_rate,
                },
            },
            "status": {
                "isHealthy": state.is_healthy,
                "isMonitoring": True,
                "recoveryInProgress": self._recovery_in_progress,
                "timeSinceLastSuccess": (
                    now - state.last_success_at
                    if state.last_success_at is not None
                    else None
                ),
                "timeSinceLastData": (
                    now - state.last_data_at if state.last_data_at is not None else None
                ),
            },
            "thresholds": {
                "maxConsecutiveFailures": self._config.max_consecutive_failures,
                "warningLatencyThreshold": self._config.warning_latency_threshold,
                "criticalLatencyThreshold": self._config.critical_latency_threshold,
                "dataStaleThreshold": self._config.data_stale_threshold,
            },
        }
