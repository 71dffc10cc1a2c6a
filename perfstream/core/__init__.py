"""
perfstream core - agent installation, tracing and measurement polling
"""

from .errors import (
    PerfStreamError, CommandFailed, UnsupportedPlatform, InstallationFailed,
    MalformedFrame, PollingAlreadyActive
)
from .events import Calibration, Sample, StreamError, StreamErrorKind, classify_diagnostic
from .bridge import (
    CommandResult, ConnectionConfig, DeviceBridge, RemoteProcess,
    AdbBridge, SSHBridge, execute_host_command
)
from .profiles import DeviceProfile, ProfileManager, make_bridge, substitute_parameters
from .parser import FrameBuffer, parse_frame
from .tracer import TraceCaptureController
from .session import DeviceSession, SessionManager
from .installer import AgentInstaller, ensure_installed, get_calibration
from .poller import MeasurementPoller, PollerState, PollingHandle, start_polling
from .logger_config import setup_logger

__all__ = [
    'PerfStreamError', 'CommandFailed', 'UnsupportedPlatform', 'InstallationFailed',
    'MalformedFrame', 'PollingAlreadyActive',
    'Calibration', 'Sample', 'StreamError', 'StreamErrorKind', 'classify_diagnostic',
    'CommandResult', 'ConnectionConfig', 'DeviceBridge', 'RemoteProcess',
    'AdbBridge', 'SSHBridge', 'execute_host_command',
    'DeviceProfile', 'ProfileManager', 'make_bridge', 'substitute_parameters',
    'FrameBuffer', 'parse_frame',
    'TraceCaptureController',
    'DeviceSession', 'SessionManager',
    'AgentInstaller', 'ensure_installed', 'get_calibration',
    'MeasurementPoller', 'PollerState', 'PollingHandle', 'start_polling',
    'setup_logger'
]
