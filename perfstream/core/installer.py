"""
Agent installation for perfstream.

Pushes the measurement agent built for the device's ABI and reads the
calibration constants the agent needs to interpret its readings. This has
to happen before any polling and can take a few seconds.
"""

import logging
import os
import shutil
import sys
import tempfile

from .errors import CommandFailed, InstallationFailed, UnsupportedPlatform
from .events import Calibration
from .session import DeviceSession

logger = logging.getLogger(__name__)


def get_resource_path(relative_path: str) -> str:
    """Get absolute path to resource, works for dev and PyInstaller."""
    if hasattr(sys, '_MEIPASS'):
        # PyInstaller creates a temp folder and stores path in _MEIPASS
        return os.path.join(sys._MEIPASS, 'perfstream', relative_path)
    package_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    return os.path.join(package_dir, relative_path)


def _first_line(output: str) -> str:
    lines = output.strip().splitlines()
    return lines[0].strip() if lines else ""


def _parse_int(output: str, what: str) -> int:
    value = _first_line(output)
    try:
        return int(value)
    except ValueError as e:
        raise InstallationFailed(f"Unexpected {what} output: {value!r}") from e


class AgentInstaller:
    """Installs the agent on the device of a session, once."""

    def __init__(self, session: DeviceSession):
        self.session = session
        self.bridge = session.bridge
        self.agent = session.profile.agent

    def ensure_installed(self):
        """Install and calibrate the agent unless the session already did."""
        with self.session.lock:
            if self.session.installed:
                return

            api_level = self.get_api_level()
            if api_level < self.agent.min_api_level:
                raise UnsupportedPlatform(api_level, self.agent.min_api_level)

            try:
                self._install()
                calibration = Calibration(
                    clock_tick=self._query_int("printCpuClockTick"),
                    page_size=self._query_int("printRAMPageSize")
                )
            except CommandFailed as e:
                raise InstallationFailed(f"Could not install {self.agent.name}: {e}") from e
            except OSError as e:
                raise InstallationFailed(f"Could not stage {self.agent.name} binary: {e}") from e

            self.session.set_calibration(calibration)
            self.session.installed = True
            logger.info(
                "Calibration: clock tick %d, RAM page size %d",
                calibration.clock_tick, calibration.page_size
            )

    def get_api_level(self) -> int:
        try:
            output = self.bridge.run_command("getprop ro.build.version.sdk")
        except CommandFailed as e:
            raise InstallationFailed(f"Could not read device API level: {e}") from e
        return _parse_int(output, "API level")

    def get_abi(self) -> str:
        abi = _first_line(self.bridge.run_command("getprop ro.product.cpu.abi"))
        if not abi:
            raise InstallationFailed("Device reported an empty ABI")
        return abi

    def binary_path(self, abi: str) -> str:
        binary_dir = self.agent.binary_dir or get_resource_path('bin')
        return os.path.join(os.path.expanduser(binary_dir), f"{self.agent.name}-{abi}")

    def _install(self):
        abi = self.get_abi()
        logger.info("Installing %s for %s architecture", self.agent.name, abi)

        binary_path = self.binary_path(abi)
        if not os.path.isfile(binary_path):
            raise InstallationFailed(f"No {self.agent.name} binary for {abi} at {binary_path}")

        # Bundled binaries may live inside an archive, so push a real file
        staging_path = os.path.join(tempfile.gettempdir(), f"perfstream-{self.agent.name}-{abi}")
        shutil.copyfile(binary_path, staging_path)

        self.bridge.push(staging_path, self.agent.device_path)
        self.bridge.run_command(f"chmod 755 {self.agent.device_path}")

        logger.info("%s installed in %s", self.agent.name, self.agent.device_path)

    def _query_int(self, subcommand: str) -> int:
        output = self.bridge.run_command(f"{self.agent.device_path} {subcommand}")
        return _parse_int(output, subcommand)


def ensure_installed(session: DeviceSession):
    AgentInstaller(session).ensure_installed()


def get_calibration(session: DeviceSession) -> Calibration:
    """Return the session's calibration constants, installing the agent if needed."""
    ensure_installed(session)
    return session.calibration
