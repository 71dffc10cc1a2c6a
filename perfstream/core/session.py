"""
Per-device session state.
"""

import logging
import threading
from typing import Dict, Optional

from .bridge import DeviceBridge
from .events import Calibration
from .profiles import DeviceProfile, ProfileManager, make_bridge
from .tracer import TraceCaptureController

logger = logging.getLogger(__name__)


class DeviceSession:
    """
    Everything perfstream knows about one device: its bridge, the agent
    installation and calibration, the tracer, and the active polling handle.
    """

    def __init__(self, bridge: DeviceBridge, profile: Optional[DeviceProfile] = None):
        self.bridge = bridge
        self.profile = profile or DeviceProfile(name='device')
        self.tracer = TraceCaptureController(bridge, self.profile.tracer)
        self.installed = False
        self.active_handle = None
        self._calibration: Optional[Calibration] = None
        self.lock = threading.RLock()

    @property
    def calibration(self) -> Optional[Calibration]:
        return self._calibration

    def set_calibration(self, calibration: Calibration):
        """Store calibration constants; they are immutable once set."""
        if self._calibration is not None:
            raise RuntimeError("Calibration is already set for this session")
        self._calibration = calibration

    def close(self):
        """Stop any active polling and release the bridge."""
        handle = self.active_handle
        if handle is not None:
            handle.stop()
        self.tracer.stop()
        self.bridge.close()


class SessionManager:
    """Keeps one DeviceSession per device profile."""

    def __init__(self, profile_manager: ProfileManager):
        self.profile_manager = profile_manager
        self._sessions: Dict[str, DeviceSession] = {}
        self._lock = threading.Lock()

    def get_session(self, profile_name: str) -> Optional[DeviceSession]:
        """Return the session for a profile, creating it on first use."""
        with self._lock:
            session = self._sessions.get(profile_name)
            if session:
                return session

            profile = self.profile_manager.load_profile(profile_name)
            if not profile:
                return None

            session = DeviceSession(make_bridge(profile), profile)
            self._sessions[profile_name] = session
            return session

    def close_all(self):
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()

        for session in sessions:
            logger.info("Closing session for %s", session.profile.name)
            session.close()
