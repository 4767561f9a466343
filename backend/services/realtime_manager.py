"""
Woza Mali Engine - Realtime Sync Manager

Keeps dashboard change feeds alive across network interruptions.

One state machine per logical connection (not per channel):

    CONNECTED ──channel error/timeout/closed──▶ RECONNECTING
    RECONNECTING ──all specs resubscribed──▶ CONNECTED (attempt counter reset)
    RECONNECTING ──attempts exhausted──▶ DISCONNECTED
    any ──network_down()──▶ OFFLINE (no attempts while offline)
    OFFLINE / DISCONNECTED ──network_up() / became_visible()──▶ RECONNECTING

A reconnect attempt tears down every live channel, waits a short settle
delay, then recreates every registered SubscriptionSpec. Specs are never
lost; only live instances are. Between failed attempts the manager sleeps
per backend.workers.backoff (base 1s, factor 2, cap 30s, jitter x[0.5, 1.0],
8 attempts by default).

Usage:
    manager = RealtimeSyncManager.from_settings(store)
    manager.add_listener(lambda event: print(event.type, event.attempt))
    async with manager:
        await manager.subscribe("admin_collections", setup_fn)
        ...
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from ..core.config import Settings, get_settings
from ..core.error_taxonomy import ERR_REALTIME_SUBSCRIBE, CollectionEngineError
from ..core.logging import LogContext
from ..workers.backoff import backoff_delays

logger = logging.getLogger(__name__)

# Channel states reported by the realtime client that mean "this feed is dead"
FAILURE_STATES = frozenset({"CHANNEL_ERROR", "TIMED_OUT", "CLOSED"})
SUBSCRIBED_STATE = "SUBSCRIBED"

DEFAULT_JOIN_TIMEOUT_S = 10.0


# =============================================================================
# Types
# =============================================================================


class ConnectionStatus(str, Enum):
    """Externally observable connection state."""

    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    OFFLINE = "offline"


@dataclass(frozen=True)
class StatusEvent:
    """Payload delivered to status listeners."""

    type: ConnectionStatus
    attempt: int = 0


SetupFn = Callable[[Any], None]
StatusListener = Callable[[StatusEvent], None]


@dataclass(frozen=True)
class SubscriptionSpec:
    """Name plus a setup function that binds postgres-change handlers to a channel."""

    name: str
    setup: SetupFn


class ChannelFactory(Protocol):
    def channel(self, name: str) -> Any: ...

    def remove_channel(self, channel: Any) -> Awaitable[None]: ...


class SubscriptionError(CollectionEngineError):
    """A channel failed to reach SUBSCRIBED."""

    default_code = ERR_REALTIME_SUBSCRIBE


def _state_name(state: Any) -> str:
    return str(getattr(state, "value", state)).upper()


# =============================================================================
# Live channel
# =============================================================================


class ChangeFeedSubscription:
    """One live channel created from a SubscriptionSpec."""

    def __init__(
        self,
        spec: SubscriptionSpec,
        factory: ChannelFactory,
        on_state: Callable[["ChangeFeedSubscription", str, Optional[Exception]], None],
    ) -> None:
        self.spec = spec
        self._factory = factory
        self._on_state = on_state
        self._channel: Any = None
        self._joined: Optional[asyncio.Future[None]] = None
        self.closing = False

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def channel(self) -> Any:
        return self._channel

    async def open(self, timeout: float = DEFAULT_JOIN_TIMEOUT_S) -> None:
        """Create the channel, attach its bindings, and wait for SUBSCRIBED."""
        self._joined = asyncio.get_running_loop().create_future()
        self._channel = self._factory.channel(self.spec.name)
        self.spec.setup(self._channel)
        try:
            await self._channel.subscribe(self._handle_state)
        except Exception:
            self._joined = None
            raise
        try:
            await asyncio.wait_for(asyncio.shield(self._joined), timeout=timeout)
        except asyncio.TimeoutError as exc:
            self._joined = None
            raise SubscriptionError(
                f"Channel '{self.name}' did not subscribe within {timeout:.1f}s",
                context={"channel": self.name},
            ) from exc

    async def close(self) -> None:
        """Tear down the live channel; failures are logged, not raised."""
        self.closing = True
        if self._joined is not None and not self._joined.done():
            self._joined.set_exception(
                SubscriptionError(
                    f"Channel '{self.name}' closed before subscribing",
                    context={"channel": self.name},
                )
            )
        if self._channel is None:
            return
        channel, self._channel = self._channel, None
        try:
            # Removal runs to completion even if the caller is cancelled
            await asyncio.shield(self._factory.remove_channel(channel))
        except Exception as exc:  # noqa: BLE001 - channel may already be dead
            logger.warning("Error tearing down channel %s: %s", self.name, exc)

    def _handle_state(self, state: Any, error: Optional[Exception] = None) -> None:
        name = _state_name(state)
        joined = self._joined
        if joined is not None and not joined.done():
            if name == SUBSCRIBED_STATE:
                joined.set_result(None)
            elif name in FAILURE_STATES:
                joined.set_exception(
                    SubscriptionError(
                        f"Channel '{self.name}' reported {name}"
                        + (f": {error}" if error else ""),
                        context={"channel": self.name, "state": name},
                    )
                )
        self._on_state(self, name, error)


# =============================================================================
# Manager
# =============================================================================


class RealtimeSyncManager:
    """
    Owns the subscription registry and the reconnect state machine.

    Construct one per process (or per test) and pass it to whatever needs
    change feeds; there is no module-level instance.
    """

    def __init__(
        self,
        factory: ChannelFactory,
        *,
        base_ms: float = 1000,
        factor: float = 2.0,
        cap_ms: float = 30000,
        max_attempts: int = 8,
        settle_delay_ms: float = 50,
        join_timeout_s: float = DEFAULT_JOIN_TIMEOUT_S,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._factory = factory
        self._base_ms = base_ms
        self._factor = factor
        self._cap_ms = cap_ms
        self._max_attempts = max_attempts
        self._settle_delay_s = settle_delay_ms / 1000.0
        self._join_timeout_s = join_timeout_s
        self._rng = rng or random.Random()
        self._sleep = sleep

        self._specs: dict[str, SubscriptionSpec] = {}
        self._live: dict[str, ChangeFeedSubscription] = {}
        self._listeners: list[StatusListener] = []
        self._status = ConnectionStatus.CONNECTED
        self._attempt = 0
        self._online = True
        self._started = False
        self._reconnect_task: Optional[asyncio.Task[None]] = None

    @classmethod
    def from_settings(
        cls, factory: ChannelFactory, settings: Settings | None = None, **overrides: Any
    ) -> "RealtimeSyncManager":
        settings = settings or get_settings()
        kwargs: dict[str, Any] = {
            "base_ms": settings.REALTIME_BACKOFF_BASE_MS,
            "factor": settings.REALTIME_BACKOFF_FACTOR,
            "cap_ms": settings.REALTIME_BACKOFF_CAP_MS,
            "max_attempts": settings.REALTIME_MAX_ATTEMPTS,
            "settle_delay_ms": settings.REALTIME_SETTLE_DELAY_MS,
            "join_timeout_s": settings.REALTIME_JOIN_TIMEOUT_MS / 1000.0,
        }
        kwargs.update(overrides)
        return cls(factory, **kwargs)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def subscription_names(self) -> list[str]:
        return list(self._specs)

    @property
    def live_names(self) -> list[str]:
        return list(self._live)

    @property
    def reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def wait_idle(self) -> None:
        """Wait for any in-flight reconnect cycle to finish."""
        task = self._reconnect_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Attach every registered subscription; any failure starts a reconnect cycle."""
        self._started = True
        logger.info("Realtime manager starting with %d subscription(s)", len(self._specs))
        for spec in list(self._specs.values()):
            await self._attach_or_schedule(spec)

    async def shutdown(self) -> None:
        self._started = False
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._teardown_all()
        logger.info("Realtime manager stopped")

    async def __aenter__(self) -> "RealtimeSyncManager":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    async def subscribe(self, name: str, setup: SetupFn) -> None:
        """Register (or replace) a named subscription and attach it if running."""
        spec = SubscriptionSpec(name=name, setup=setup)
        self._specs[name] = spec
        previous = self._live.pop(name, None)
        if previous is not None:
            await previous.close()
        if self._started and self._online and not self.reconnecting:
            await self._attach_or_schedule(spec)

    async def unsubscribe(self, name: str) -> None:
        """Forget the spec and tear down its live channel."""
        self._specs.pop(name, None)
        live = self._live.pop(name, None)
        if live is not None:
            await live.close()

    # ------------------------------------------------------------------
    # Status listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set_status(self, status: ConnectionStatus, attempt: int = 0) -> None:
        self._status = status
        event = StatusEvent(type=status, attempt=attempt)
        logger.info("Realtime status: %s", status.value, extra={"status": status.value, "attempt": attempt})
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # noqa: BLE001 - observers must not break the state machine
                logger.warning("Realtime status listener raised", exc_info=True)

    # ------------------------------------------------------------------
    # Environment signals
    # ------------------------------------------------------------------

    def network_down(self) -> None:
        """Go OFFLINE and cancel any reconnect cycle in flight."""
        self._online = False
        task = self._reconnect_task
        if task is not None and not task.done():
            task.cancel()
        self._set_status(ConnectionStatus.OFFLINE)

    def network_up(self) -> None:
        self._online = True
        self._schedule_reconnect()

    def became_visible(self) -> None:
        self._schedule_reconnect()

    def reconnect_now(self) -> None:
        """Start a fresh reconnect cycle immediately, whatever the current state."""
        self._schedule_reconnect(force=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _schedule_reconnect(self, force: bool = False) -> None:
        if not self._started:
            return
        if not force and (not self._online or self.reconnecting):
            return
        if force and self.reconnecting:
            assert self._reconnect_task is not None
            self._reconnect_task.cancel()
        self._attempt = 0
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_cycle(force=force)
        )

    async def _reconnect_cycle(self, force: bool = False) -> None:
        delays = backoff_delays(
            base_ms=self._base_ms,
            factor=self._factor,
            cap_ms=self._cap_ms,
            max_attempts=self._max_attempts,
            rng=self._rng,
        )
        for delay in delays:
            if not self._online and not (force and self._attempt == 0):
                break
            self._attempt += 1
            with LogContext(attempt=self._attempt):
                self._set_status(ConnectionStatus.RECONNECTING, self._attempt)
                try:
                    await self._resubscribe_all()
                except Exception as exc:  # noqa: BLE001 - any failure counts as a failed attempt
                    logger.warning(
                        "Reconnect attempt %d failed: %s; retrying in %.2fs",
                        self._attempt,
                        exc,
                        delay,
                    )
                else:
                    self._attempt = 0
                    self._set_status(ConnectionStatus.CONNECTED)
                    return
            await self._sleep(delay)

        if not self._online:
            if self._status is not ConnectionStatus.OFFLINE:
                self._set_status(ConnectionStatus.OFFLINE)
            return
        logger.error("Realtime reconnect gave up after %d attempt(s)", self._attempt)
        self._set_status(ConnectionStatus.DISCONNECTED, self._attempt)

    async def _resubscribe_all(self) -> None:
        await self._teardown_all()
        await self._sleep(self._settle_delay_s)
        # Specs registered or removed while we were awaiting are picked up here
        pending = [spec for spec in self._specs.values() if spec.name not in self._live]
        while pending:
            for spec in pending:
                if self._specs.get(spec.name) is spec:
                    await self._attach(spec)
            pending = [spec for spec in self._specs.values() if spec.name not in self._live]
        for name in [name for name in self._live if name not in self._specs]:
            await self._live.pop(name).close()

    async def _teardown_all(self) -> None:
        # A subscription stays tracked until its close finishes, so a
        # cancelled teardown leaves the remainder for the next one
        for name, subscription in list(self._live.items()):
            await subscription.close()
            if self._live.get(name) is subscription:
                del self._live[name]

    async def _attach(self, spec: SubscriptionSpec) -> None:
        subscription = ChangeFeedSubscription(spec, self._factory, self._on_channel_state)
        self._live[spec.name] = subscription
        with LogContext(channel=spec.name):
            await subscription.open(timeout=self._join_timeout_s)
            logger.debug("Channel subscribed")

    async def _attach_or_schedule(self, spec: SubscriptionSpec) -> None:
        try:
            await self._attach(spec)
        except Exception as exc:  # noqa: BLE001 - the reconnect cycle takes over
            logger.warning("Initial subscribe of %s failed: %s", spec.name, exc)
            self._schedule_reconnect()

    def _on_channel_state(
        self, subscription: ChangeFeedSubscription, state: str, error: Optional[Exception]
    ) -> None:
        if subscription.closing or self._live.get(subscription.name) is not subscription:
            return
        if state in FAILURE_STATES:
            logger.warning(
                "Channel %s reported %s%s",
                subscription.name,
                state,
                f": {error}" if error else "",
                extra={"channel": subscription.name},
            )
            self._schedule_reconnect()
