"""
Measurement polling for perfstream.
Runs the agent's poll loop on the device and turns its output into a stream
of Sample and StreamError events.
"""

import logging
import queue
import threading
from enum import Enum
from typing import Callable, Iterator, List, Optional

from .bridge import RemoteProcess
from .errors import CommandFailed, MalformedFrame, PollingAlreadyActive
from .events import Sample, StreamError, StreamErrorKind, StreamEvent, classify_diagnostic
from .installer import AgentInstaller
from .parser import FrameBuffer, parse_frame
from .session import DeviceSession

logger = logging.getLogger(__name__)

_CLOSED = object()


class PollerState(str, Enum):
    IDLE = "idle"
    INSTALLING = "installing"
    POLLING = "polling"
    STOPPING = "stopping"


class PollingHandle:
    """
    One active polling session.

    Owns the remote poll process. Events are delivered either to the
    callbacks given at start, or through ``events()`` when no callback was
    given. After ``stop()`` returns no callback is invoked again.
    """

    def __init__(self, session: DeviceSession, pid: str, process: RemoteProcess,
                 on_sample: Optional[Callable[[Sample], None]] = None,
                 on_pid_changed: Optional[Callable[[Optional[str]], None]] = None):
        self.session = session
        self.pid = pid
        self.state = PollerState.POLLING
        self._process = process
        self._on_sample = on_sample
        self._on_pid_changed = on_pid_changed
        self._channel: queue.Queue = queue.Queue()
        self._lock = threading.RLock()
        self._stopped = False
        self._consumed = False
        self._open_streams = 2
        self._threads: List[threading.Thread] = []
        self._dispatcher: Optional[threading.Thread] = None

    @property
    def is_active(self) -> bool:
        return not self._stopped

    @property
    def is_streaming(self) -> bool:
        """True while the remote process is still producing output."""
        return not self._stopped and self._open_streams > 0

    @property
    def uses_callbacks(self) -> bool:
        return self._on_sample is not None or self._on_pid_changed is not None

    def _start(self):
        self._threads = [
            threading.Thread(target=self._read_stdout, name=f"perfstream-stdout-{self.pid}", daemon=True),
            threading.Thread(target=self._read_stderr, name=f"perfstream-stderr-{self.pid}", daemon=True),
        ]
        if self.uses_callbacks:
            self._consumed = True
            self._dispatcher = threading.Thread(
                target=self._dispatch, name=f"perfstream-dispatch-{self.pid}", daemon=True
            )
            self._threads.append(self._dispatcher)

        for thread in self._threads:
            thread.start()

    def _read_stdout(self):
        frames = FrameBuffer()
        try:
            for chunk in self._process.iter_stdout():
                if self._stopped:
                    break
                for frame in frames.feed(chunk):
                    try:
                        sample = parse_frame(frame)
                    except MalformedFrame as e:
                        logger.warning("Dropping malformed frame: %s", e)
                        logger.debug("Malformed frame content: %r", e.frame)
                        continue
                    self._channel.put(sample)
        except Exception:
            if not self._stopped:
                logger.exception("Reading poll output for pid %s failed", self.pid)
        finally:
            self._stream_closed()

    def _read_stderr(self):
        try:
            for line in self._process.iter_stderr():
                if self._stopped:
                    break
                if not line.strip():
                    continue
                error = classify_diagnostic(line)
                self._log_stream_error(error)
                self._channel.put(error)
        except Exception:
            if not self._stopped:
                logger.exception("Reading poll diagnostics for pid %s failed", self.pid)
        finally:
            self._stream_closed()

    def _log_stream_error(self, error: StreamError):
        if error.kind == StreamErrorKind.FILE_UNAVAILABLE:
            # The sampled thread may be gone; its stats just can't be read now
            logger.debug(error.raw)
        elif error.kind == StreamErrorKind.PROCESS_PID_CLOSED:
            logger.info("Process %s closed (replacement pid: %s)", self.pid, error.new_pid)
        else:
            logger.error(error.raw)

    def _stream_closed(self):
        with self._lock:
            self._open_streams -= 1
            if self._open_streams == 0 and not self._stopped:
                logger.info("Poll process for pid %s exited", self.pid)
                self._channel.put(_CLOSED)

    def _iter_events(self) -> Iterator[StreamEvent]:
        while True:
            event = self._channel.get()
            if event is _CLOSED or self._stopped:
                return
            yield event

    def events(self) -> Iterator[StreamEvent]:
        """
        Lazy sequence of Sample and StreamError events in stream order.
        Ends when the session is stopped or the remote process exits.
        Can only be consumed once, and not when callbacks were given.
        Events queue up until read.
        """
        with self._lock:
            if self.uses_callbacks:
                raise RuntimeError("Events are delivered to callbacks for this session")
            if self._consumed:
                raise RuntimeError("Polling events can only be iterated once")
            self._consumed = True
        return self._iter_events()

    def _dispatch(self):
        for event in self._iter_events():
            with self._lock:
                if self._stopped:
                    return
                self._deliver(event)

    def _deliver(self, event: StreamEvent):
        try:
            if isinstance(event, Sample):
                if self._on_sample:
                    self._on_sample(event)
            elif event.kind == StreamErrorKind.PROCESS_PID_CLOSED and self._on_pid_changed:
                self._on_pid_changed(event.new_pid or self.pid)
        except Exception:
            logger.exception("Polling callback for pid %s raised", self.pid)

    def stop(self):
        """Kill the poll process, then the tracer. Safe to call repeatedly."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            self.state = PollerState.STOPPING

        logger.debug("Stopping poll process for pid %s", self.pid)
        try:
            self._process.kill()
        finally:
            self.session.tracer.stop()
            self._channel.put(_CLOSED)
            with self.session.lock:
                if self.session.active_handle is self:
                    self.session.active_handle = None
            self.state = PollerState.IDLE

    def wait(self, timeout: Optional[float] = None):
        """Wait for the reader and dispatcher threads to finish."""
        for thread in self._threads:
            if thread is not threading.current_thread():
                thread.join(timeout)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()


class MeasurementPoller:
    """
    Starts polling sessions against one device.

    Only one session may be active per device; starting a second one while
    the first is still active raises PollingAlreadyActive.
    """

    def __init__(self, session: DeviceSession):
        self.session = session
        self._state = PollerState.IDLE
        self._handle: Optional[PollingHandle] = None

    @property
    def state(self) -> PollerState:
        if self._state == PollerState.IDLE and self._handle is not None:
            return self._handle.state
        return self._state

    def poll_command(self, pid: str, interval_ms: int) -> str:
        return f"{self.session.profile.agent.device_path} pollPerformanceMeasures {pid} {interval_ms}"

    def start(self, pid, on_sample: Optional[Callable[[Sample], None]] = None,
              on_pid_changed: Optional[Callable[[Optional[str]], None]] = None,
              interval_ms: Optional[int] = None) -> PollingHandle:
        """Install the agent if needed, start the tracer and the poll process."""
        pid = str(pid)
        session = self.session

        with session.lock:
            active = session.active_handle
            if active is not None and active.is_active:
                raise PollingAlreadyActive(
                    f"{session.profile.name} is already polling pid {active.pid}; stop it first"
                )

            self._state = PollerState.INSTALLING
            try:
                AgentInstaller(session).ensure_installed()
                session.tracer.start()
            except Exception:
                self._state = PollerState.IDLE
                raise

            interval_ms = interval_ms or session.profile.polling.interval_ms
            try:
                process = session.bridge.run_long_running(self.poll_command(pid, interval_ms))
            except CommandFailed:
                session.tracer.stop()
                self._state = PollerState.IDLE
                raise

            handle = PollingHandle(session, pid, process, on_sample, on_pid_changed)
            session.active_handle = handle
            self._handle = handle
            self._state = PollerState.IDLE
            handle._start()

        logger.info("Polling pid %s every %dms on %s", pid, interval_ms, session.profile.name)
        return handle


def start_polling(session: DeviceSession, pid,
                  on_sample: Optional[Callable[[Sample], None]] = None,
                  on_pid_changed: Optional[Callable[[Optional[str]], None]] = None,
                  interval_ms: Optional[int] = None) -> PollingHandle:
    """
    Install the agent if needed, start tracing and poll ``pid``.

    With callbacks, events are delivered on a dispatcher thread. Without them
    the caller must iterate ``handle.events()``: events are queued until read,
    and the queue is unbounded, so a handle whose events are never consumed
    keeps every sample in memory until it is stopped.
    """
    return MeasurementPoller(session).start(pid, on_sample, on_pid_changed, interval_ms)
