"""
Event types produced by a polling session.
A session emits a stream of Sample and StreamError events in the order the
agent wrote them.
"""

import json
import re
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional, Union


# Diagnostic tokens written by the agent on stderr
CANNOT_OPEN_FILE_TOKEN = "CPP_ERROR_CANNOT_OPEN_FILE"
MAIN_PID_CLOSED_TOKEN = "CPP_ERROR_MAIN_PID_CLOSED"

_EMBEDDED_PID_RE = re.compile(re.escape(MAIN_PID_CLOSED_TOKEN) + r"\s+(\d+)")


class StreamErrorKind(str, Enum):
    FILE_UNAVAILABLE = "file_unavailable"
    PROCESS_PID_CLOSED = "process_pid_closed"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Calibration:
    """Device constants needed to interpret raw agent readings."""
    clock_tick: int
    page_size: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class Sample:
    """One measurement interval as reported by the agent."""
    pid: str
    cpu: str
    ram: str
    atrace: str
    timestamp: int
    exec_timings: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


@dataclass(frozen=True)
class StreamError:
    """A classified diagnostic line from the agent's error channel."""
    kind: StreamErrorKind
    raw: str
    new_pid: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind.value, 'raw': self.raw, 'new_pid': self.new_pid}


StreamEvent = Union[Sample, StreamError]


def classify_diagnostic(line: str) -> StreamError:
    """
    Map one stderr line to a StreamError.
    Only the known tokens are recognized; everything else is UNKNOWN.
    """
    if CANNOT_OPEN_FILE_TOKEN in line:
        return StreamError(StreamErrorKind.FILE_UNAVAILABLE, line)

    if MAIN_PID_CLOSED_TOKEN in line:
        match = _EMBEDDED_PID_RE.search(line)
        return StreamError(
            StreamErrorKind.PROCESS_PID_CLOSED,
            line,
            new_pid=match.group(1) if match else None
        )

    return StreamError(StreamErrorKind.UNKNOWN, line)
