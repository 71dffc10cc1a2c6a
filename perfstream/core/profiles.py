"""
Device profile management for perfstream.
Handles loading, saving and parameter substitution for device profiles.
"""

import os
import re
import yaml
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field

from .bridge import AdbBridge, ConnectionConfig, DeviceBridge, SSHBridge


DEFAULT_AGENT_NAME = "BAMPerfProfiler"
DEFAULT_POLLING_INTERVAL_MS = 500
DEFAULT_MIN_API_LEVEL = 24


@dataclass
class ConnectionProfile:
    """SSH connection parameters for a device."""
    host: str = "localhost"
    port: int = 22
    user: str = "shell"
    key_file: Optional[str] = None
    password: Optional[str] = None
    timeout: int = 30


@dataclass
class AgentConfig:
    """Where the measurement agent comes from and where it goes."""
    name: str = DEFAULT_AGENT_NAME
    device_path: str = f"/data/local/tmp/{DEFAULT_AGENT_NAME}"
    binary_dir: Optional[str] = None
    min_api_level: int = DEFAULT_MIN_API_LEVEL


@dataclass
class PollingConfig:
    interval_ms: int = DEFAULT_POLLING_INTERVAL_MS


@dataclass
class TracerConfig:
    """atrace invocation settings."""
    categories: List[str] = field(default_factory=lambda: ["view"])
    duration_s: int = 999
    start_command: str = "atrace -c {categories} -t {duration_s}"
    stop_command: str = "atrace --async_stop"


@dataclass
class DeviceProfile:
    """Complete device profile."""
    name: str
    description: str = ""
    bridge: str = "adb"  # "adb" or "ssh"
    adb_path: str = "adb"
    serial: Optional[str] = None
    connection: ConnectionProfile = field(default_factory=ConnectionProfile)
    agent: AgentConfig = field(default_factory=AgentConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    tracer: TracerConfig = field(default_factory=TracerConfig)
    filepath: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], filepath: Optional[str] = None) -> 'DeviceProfile':
        conn_data = data.get('connection') or {}
        connection = ConnectionProfile(
            host=conn_data.get('host', 'localhost'),
            port=conn_data.get('port', 22),
            user=conn_data.get('user', 'shell'),
            key_file=conn_data.get('key_file'),
            password=conn_data.get('password'),
            timeout=conn_data.get('timeout', 30)
        )

        agent_data = data.get('agent') or {}
        agent_name = agent_data.get('name', DEFAULT_AGENT_NAME)
        agent = AgentConfig(
            name=agent_name,
            device_path=agent_data.get('device_path', f"/data/local/tmp/{agent_name}"),
            binary_dir=agent_data.get('binary_dir'),
            min_api_level=agent_data.get('min_api_level', DEFAULT_MIN_API_LEVEL)
        )

        polling_data = data.get('polling') or {}
        polling = PollingConfig(
            interval_ms=polling_data.get('interval_ms', DEFAULT_POLLING_INTERVAL_MS)
        )

        tracer_data = data.get('tracer') or {}
        defaults = TracerConfig()
        categories = tracer_data.get('categories', defaults.categories)
        if isinstance(categories, str):
            categories = categories.split()
        tracer = TracerConfig(
            categories=list(categories),
            duration_s=tracer_data.get('duration_s', defaults.duration_s),
            start_command=tracer_data.get('start_command', defaults.start_command),
            stop_command=tracer_data.get('stop_command', defaults.stop_command)
        )

        bridge = data.get('bridge', 'adb')
        if bridge not in ('adb', 'ssh'):
            raise ValueError(f"Unknown bridge type: {bridge}")

        name = data.get('name')
        if not name:
            name = os.path.splitext(os.path.basename(filepath))[0] if filepath else 'device'

        return cls(
            name=name,
            description=data.get('description', ''),
            bridge=bridge,
            adb_path=data.get('adb_path', 'adb'),
            serial=data.get('serial'),
            connection=connection,
            agent=agent,
            polling=polling,
            tracer=tracer,
            filepath=filepath
        )

    @classmethod
    def from_yaml(cls, filepath: str) -> 'DeviceProfile':
        """Load a profile from a YAML file."""
        with open(filepath, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data, filepath)

    def to_dict(self) -> Dict[str, Any]:
        """Convert profile to dictionary for serialization."""
        data = {
            'name': self.name,
            'description': self.description,
            'bridge': self.bridge,
            'adb_path': self.adb_path,
            'serial': self.serial,
            'agent': {
                'name': self.agent.name,
                'device_path': self.agent.device_path,
                'binary_dir': self.agent.binary_dir,
                'min_api_level': self.agent.min_api_level
            },
            'polling': {
                'interval_ms': self.polling.interval_ms
            },
            'tracer': {
                'categories': list(self.tracer.categories),
                'duration_s': self.tracer.duration_s,
                'start_command': self.tracer.start_command,
                'stop_command': self.tracer.stop_command
            }
        }
        if self.bridge == 'ssh':
            data['connection'] = {
                'host': self.connection.host,
                'port': self.connection.port,
                'user': self.connection.user,
                'key_file': self.connection.key_file,
                'timeout': self.connection.timeout
            }
        return data

    def to_yaml(self) -> str:
        """Convert profile to YAML string."""
        return yaml.dump(self.to_dict(), default_flow_style=False, sort_keys=False)


class ProfileManager:
    """Manages loading and listing device profiles."""

    def __init__(self, profiles_dir: str):
        self.profiles_dir = profiles_dir
        os.makedirs(profiles_dir, exist_ok=True)

    def list_profiles(self) -> List[str]:
        """List all available profile names."""
        profiles = []
        for filename in os.listdir(self.profiles_dir):
            if filename.endswith(('.yaml', '.yml')):
                profiles.append(filename.rsplit('.', 1)[0])
        return sorted(profiles)

    def load_profile(self, name: str) -> Optional[DeviceProfile]:
        """Load a profile by name."""
        for ext in ('.yaml', '.yml'):
            filepath = os.path.join(self.profiles_dir, name + ext)
            if os.path.exists(filepath):
                return DeviceProfile.from_yaml(filepath)
        return None

    def save_profile(self, profile: DeviceProfile) -> str:
        """Save a profile to disk."""
        filepath = os.path.join(self.profiles_dir, profile.name + '.yaml')
        with open(filepath, 'w', encoding='utf-8') as f:
            f.write(profile.to_yaml())
        profile.filepath = filepath
        return filepath

    def delete_profile(self, name: str) -> bool:
        """Delete a profile by name."""
        for ext in ('.yaml', '.yml'):
            filepath = os.path.join(self.profiles_dir, name + ext)
            if os.path.exists(filepath):
                os.remove(filepath)
                return True
        return False


def make_bridge(profile: DeviceProfile) -> DeviceBridge:
    """Build the bridge a profile asks for."""
    if profile.bridge == 'ssh':
        conn = profile.connection
        return SSHBridge(ConnectionConfig(
            host=conn.host,
            port=conn.port,
            user=conn.user,
            key_file=conn.key_file,
            password=conn.password,
            timeout=conn.timeout
        ))
    return AdbBridge(adb_path=profile.adb_path, serial=profile.serial)


def substitute_parameters(template: str, params: Dict[str, Any]) -> str:
    """
    Substitute {param_name} placeholders in a template string.
    Unknown placeholders are left as-is.
    """
    def replacer(match):
        param_name = match.group(1)
        if param_name in params:
            return str(params[param_name])
        return match.group(0)

    return re.sub(r'\{(\w+)\}', replacer, template)
