"""
atrace lifecycle control.
The agent reads from the system tracer on its own, so perfstream only has to
keep one tracer running for the duration of a polling session.
"""

import logging
import threading
from typing import Optional

from .bridge import DeviceBridge, RemoteProcess
from .profiles import TracerConfig, substitute_parameters

logger = logging.getLogger(__name__)


class TraceCaptureController:
    """Starts and stops the device tracer; at most one tracer is live."""

    def __init__(self, bridge: DeviceBridge, config: Optional[TracerConfig] = None):
        self.bridge = bridge
        self.config = config or TracerConfig()
        self._handle: Optional[RemoteProcess] = None
        self._lock = threading.Lock()

    @property
    def is_active(self) -> bool:
        return self._handle is not None

    def _params(self):
        return {
            'categories': " ".join(self.config.categories),
            'duration_s': self.config.duration_s,
        }

    def start(self):
        """Stop any running tracer, then start a fresh one."""
        with self._lock:
            if self._handle is not None:
                self._handle.kill()
                self._handle = None

            logger.debug("Stopping atrace and flushing output...")
            # async_stop dumps the whole trace buffer; it is never collected
            self.bridge.run_discarding_output(
                substitute_parameters(self.config.stop_command, self._params())
            )

            logger.debug("Starting atrace...")
            self._handle = self.bridge.run_long_running(
                substitute_parameters(self.config.start_command, self._params()),
                capture_output=False
            )

    def stop(self):
        """Terminate the running tracer, if any."""
        with self._lock:
            if self._handle is None:
                return
            logger.debug("Stopping atrace process...")
            self._handle.kill()
            self._handle = None
