"""
Session Inactivity Timeout
==========================

Activity-driven idle timeout for authenticated dashboard sessions:
- Warning issued 5 minutes before expiry
- Forced logout on expiry or when the user declines to continue
- Any activity event restarts the countdown
- Pluggable schedulers (threads or an asyncio loop)

The monitor is a small state machine. Timers feed it WARNING_DUE and
EXPIRY_DUE events; the presentation layer turns a warning into a prompt and
feeds the answer back as CONTINUE or DECLINE.

Author: jetgause
Created: 2026-10-18
"""

import time
import asyncio
import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


logger = logging.getLogger(__name__)


ACTIVITY_EVENTS = ("mousedown", "mousemove", "keypress", "scroll", "touchstart", "click")

DEFAULT_TIMEOUT_MINUTES = 30
WARNING_LEAD_MINUTES = 5


class SessionState(Enum):
    """Session timeout state enumeration."""
    IDLE_TRACKED = "idle_tracked"
    WARNING_SHOWN = "warning_shown"
    EXPIRED = "expired"
    STOPPED = "stopped"


class TimeoutEvent(Enum):
    """Inputs accepted by the timeout state machine."""
    WARNING_DUE = "warning_due"
    EXPIRY_DUE = "expiry_due"
    ACTIVITY = "activity"
    CONTINUE = "continue"
    DECLINE = "decline"


# ============================================================================
# SCHEDULERS
# ============================================================================

class ThreadingScheduler:
    """Runs deferred callbacks on daemon ``threading.Timer`` threads."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer

    def time(self) -> float:
        return time.monotonic()


class AsyncioScheduler:
    """Runs deferred callbacks on an asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.loop = loop or asyncio.get_running_loop()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self.loop.call_later(delay, callback)

    def time(self) -> float:
        return self.loop.time()


# ============================================================================
# ACTIVITY EVENTS
# ============================================================================

class ActivityEventSource:
    """Minimal listener registry standing in for document-level events."""

    def __init__(self):
        self._listeners: Dict[str, List[Callable[..., Any]]] = {}
        self._lock = threading.Lock()

    def add_listener(self, event: str, callback: Callable[..., Any]) -> None:
        with self._lock:
            self._listeners.setdefault(event, []).append(callback)

    def remove_listener(self, event: str, callback: Callable[..., Any]) -> None:
        with self._lock:
            callbacks = self._listeners.get(event, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._listeners.pop(event, None)

    def dispatch(self, event: str, *args: Any) -> int:
        """Invoke every listener of ``event``; returns how many ran."""
        with self._lock:
            callbacks = list(self._listeners.get(event, []))
        for callback in callbacks:
            callback(*args)
        return len(callbacks)

    def listener_count(self, event: Optional[str] = None) -> int:
        with self._lock:
            if event is not None:
                return len(self._listeners.get(event, []))
            return sum(len(callbacks) for callbacks in self._listeners.values())


# ============================================================================
# TIMEOUT MONITOR
# ============================================================================

class SessionTimeoutMonitor:
    """
    Idle timeout for one session.

    Lifecycle:
        start() -> IDLE_TRACKED
        warning timer -> WARNING_SHOWN (on_warning called)
        confirm_continue() or any activity -> IDLE_TRACKED (timers restarted)
        expiry timer -> EXPIRED (on_expired then on_logout)
        decline() -> EXPIRED (on_logout)
        stop() -> STOPPED (timers cancelled, listeners removed)
    """

    def __init__(
        self,
        on_logout: Callable[[], None],
        timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES,
        scheduler: Optional[Any] = None,
        event_source: Optional[ActivityEventSource] = None,
        on_warning: Optional[Callable[["SessionTimeoutMonitor"], None]] = None,
        on_expired: Optional[Callable[["SessionTimeoutMonitor"], None]] = None,
    ):
        """
        Args:
            on_logout: Called exactly once when the session expires
            timeout_minutes: Total inactivity allowed before logout
            scheduler: Object with call_later(delay, cb) and time()
            event_source: Where activity listeners are attached
            on_warning: Presentation hook for the continue/cancel prompt
            on_expired: Presentation hook for the session-expired notice
        """
        self.on_logout = on_logout
        self.timeout_minutes = timeout_minutes
        self.scheduler = scheduler or ThreadingScheduler()
        self.event_source = event_source or ActivityEventSource()
        self.on_warning = on_warning
        self.on_expired = on_expired

        self.state = SessionState.STOPPED
        self._warning_handle = None
        self._expiry_handle = None
        self._deadline: Optional[float] = None
        self._generation = 0
        self._listening = False
        self._lock = threading.RLock()

    @property
    def warning_delay(self) -> float:
        """Seconds from a reset until the warning fires (<= 0 means no warning)."""
        return (self.timeout_minutes - WARNING_LEAD_MINUTES) * 60

    @property
    def expiry_delay(self) -> float:
        return self.timeout_minutes * 60

    @property
    def is_active(self) -> bool:
        return self.state in (SessionState.IDLE_TRACKED, SessionState.WARNING_SHOWN)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Attach activity listeners and begin the countdown."""
        with self._lock:
            if self.state == SessionState.EXPIRED:
                logger.warning("Cannot restart an expired session monitor")
                return
            if not self._listening:
                for event in ACTIVITY_EVENTS:
                    self.event_source.add_listener(event, self._handle_activity)
                self._listening = True
            self.state = SessionState.IDLE_TRACKED
            self._restart_timers()

    def reset(self) -> None:
        """Cancel both timers and schedule them again from zero."""
        with self._lock:
            if not self.is_active:
                return
            self.state = SessionState.IDLE_TRACKED
            self._restart_timers()

    def stop(self) -> None:
        """Cancel both timers and remove every activity listener."""
        with self._lock:
            self._teardown()
            if self.state != SessionState.EXPIRED:
                self.state = SessionState.STOPPED

    def confirm_continue(self) -> None:
        """User chose to keep the session after the warning."""
        self.handle_event(TimeoutEvent.CONTINUE)

    def decline(self) -> None:
        """User chose not to continue after the warning."""
        self.handle_event(TimeoutEvent.DECLINE)

    def remaining_seconds(self) -> float:
        """Seconds until expiry, 0 once the session is no longer active."""
        with self._lock:
            if not self.is_active or self._deadline is None:
                return 0.0
            return max(0.0, self._deadline - self.scheduler.time())

    # ------------------------------------------------------------------
    # state machine
    # ------------------------------------------------------------------

    def handle_event(self, event: TimeoutEvent) -> SessionState:
        """Feed one input to the state machine and return the new state."""
        return self._handle_event(event)

    def _handle_event(self, event: TimeoutEvent, generation: Optional[int] = None) -> SessionState:
        notify_warning = False
        expire_notice = False
        logout = False

        with self._lock:
            if not self.is_active:
                return self.state
            # timer from an older cycle
            if generation is not None and generation != self._generation:
                return self.state

            if event in (TimeoutEvent.ACTIVITY, TimeoutEvent.CONTINUE):
                self.state = SessionState.IDLE_TRACKED
                self._restart_timers()

            elif event == TimeoutEvent.WARNING_DUE:
                if self.state == SessionState.IDLE_TRACKED:
                    self._warning_handle = None
                    self.state = SessionState.WARNING_SHOWN
                    notify_warning = True

            elif event in (TimeoutEvent.EXPIRY_DUE, TimeoutEvent.DECLINE):
                self.state = SessionState.EXPIRED
                self._teardown()
                expire_notice = event == TimeoutEvent.EXPIRY_DUE
                logout = True

            state = self.state

        if notify_warning:
            logger.info("Session will expire in %s minutes due to inactivity", WARNING_LEAD_MINUTES)
            if self.on_warning:
                self.on_warning(self)

        if logout:
            if expire_notice:
                logger.info("Session expired due to inactivity")
                if self.on_expired:
                    self.on_expired(self)
            else:
                logger.info("User declined to continue the session")
            self.on_logout()

        return state

    # ------------------------------------------------------------------
    # internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _handle_activity(self, *args: Any) -> None:
        self.handle_event(TimeoutEvent.ACTIVITY)

    def _cancel_timers(self) -> None:
        for handle in (self._warning_handle, self._expiry_handle):
            if handle is not None:
                handle.cancel()
        self._warning_handle = None
        self._expiry_handle = None
        self._deadline = None

    def _restart_timers(self) -> None:
        self._cancel_timers()
        self._generation += 1
        generation = self._generation

        if self.warning_delay > 0:
            self._warning_handle = self.scheduler.call_later(
                self.warning_delay,
                lambda: self._fire(generation, TimeoutEvent.WARNING_DUE)
            )

        self._expiry_handle = self.scheduler.call_later(
            self.expiry_delay,
            lambda: self._fire(generation, TimeoutEvent.EXPIRY_DUE)
        )
        self._deadline = self.scheduler.time() + self.expiry_delay

    def _fire(self, generation: int, event: TimeoutEvent) -> None:
        self._handle_event(event, generation)

    def _teardown(self) -> None:
        self._cancel_timers()
        self._generation += 1
        if self._listening:
            for event in ACTIVITY_EVENTS:
                self.event_source.remove_listener(event, self._handle_activity)
            self._listening = False


# ============================================================================
# PER-SESSION REGISTRY
# ============================================================================

class SessionTimeoutRegistry:
    """One timeout monitor per authenticated API session."""

    def __init__(self, timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES,
                 scheduler: Optional[Any] = None):
        self.timeout_minutes = timeout_minutes
        self.scheduler = scheduler or ThreadingScheduler()
        self._monitors: Dict[str, SessionTimeoutMonitor] = {}
        self._lock = threading.Lock()

    def open(self, session_id: str, on_logout: Optional[Callable[[], None]] = None,
             on_warning: Optional[Callable[[SessionTimeoutMonitor], None]] = None) -> SessionTimeoutMonitor:
        """Create and start the monitor of a new session."""

        def _logout():
            with self._lock:
                self._monitors.pop(session_id, None)
            logger.info("Session %s logged out by inactivity monitor", session_id[:8])
            if on_logout:
                on_logout()

        monitor = SessionTimeoutMonitor(
            on_logout=_logout,
            timeout_minutes=self.timeout_minutes,
            scheduler=self.scheduler,
            on_warning=on_warning,
        )

        with self._lock:
            previous = self._monitors.pop(session_id, None)
            self._monitors[session_id] = monitor
        if previous:
            previous.stop()

        monitor.start()
        return monitor

    def get(self, session_id: str) -> Optional[SessionTimeoutMonitor]:
        return self._monitors.get(session_id)

    def is_active(self, session_id: str) -> bool:
        monitor = self._monitors.get(session_id)
        return monitor is not None and monitor.is_active

    def touch(self, session_id: str) -> bool:
        """Register activity for a session; False if it is no longer active."""
        monitor = self._monitors.get(session_id)
        if monitor is None:
            return False
        return monitor.handle_event(TimeoutEvent.ACTIVITY) == SessionState.IDLE_TRACKED

    def keep_alive(self, session_id: str) -> bool:
        """Answer a pending warning with 'continue'."""
        monitor = self._monitors.get(session_id)
        if monitor is None:
            return False
        return monitor.handle_event(TimeoutEvent.CONTINUE) == SessionState.IDLE_TRACKED

    def close(self, session_id: str) -> None:
        with self._lock:
            monitor = self._monitors.pop(session_id, None)
        if monitor:
            monitor.stop()

    def close_all(self) -> None:
        with self._lock:
            monitors = list(self._monitors.values())
            self._monitors.clear()
        for monitor in monitors:
            monitor.stop()

    def __len__(self) -> int:
        return len(self._monitors)


__all__ = [
    'ACTIVITY_EVENTS',
    'SessionState',
    'TimeoutEvent',
    'ThreadingScheduler',
    'AsyncioScheduler',
    'ActivityEventSource',
    'SessionTimeoutMonitor',
    'SessionTimeoutRegistry',
]
