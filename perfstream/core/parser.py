"""
Frame parsing for agent output.
"""

import logging
import re

from .errors import MalformedFrame
from .events import Sample

logger = logging.getLogger(__name__)

START_MEASURE_DELIMITER = "=START MEASURE="
STOP_MEASURE_DELIMITER = "=STOP MEASURE="
FIELD_DELIMITER = "=SEPARATOR="

_LINE_BREAK_RE = re.compile(r"\r\n|\n|\r")


def parse_frame(raw: str) -> Sample:
    """
    Convert one raw agent frame into a Sample.

    A frame may still carry residue from an earlier, partially read frame, so
    only the content after the last start marker is used. That content holds
    five fields: pid, cpu, ram, atrace and a trailing block made of a
    ``Timestamp: <int>`` line followed by the agent's execution timings.
    """
    if START_MEASURE_DELIMITER not in raw:
        raise MalformedFrame("Missing start-of-measure marker", raw)

    content = raw.rsplit(START_MEASURE_DELIMITER, 1)[1]
    fields = content.split(FIELD_DELIMITER)
    if len(fields) < 5:
        raise MalformedFrame(f"Expected 5 fields, got {len(fields)}", raw)

    # atrace output is free text and may contain the delimiter itself
    pid, cpu, ram = (f.strip() for f in fields[:3])
    atrace = FIELD_DELIMITER.join(fields[3:-1]).strip()
    timings = fields[-1].strip()

    parts = _LINE_BREAK_RE.split(timings, maxsplit=1)
    timestamp_line = parts[0]
    exec_timings = parts[1].strip() if len(parts) > 1 else ""

    _, sep, value = timestamp_line.partition(": ")
    if not sep:
        raise MalformedFrame(f"Invalid timestamp line: {timestamp_line!r}", raw)
    try:
        timestamp = int(value.strip())
    except ValueError as e:
        raise MalformedFrame(f"Invalid timestamp value: {value!r}", raw) from e

    logger.debug("Agent exec timings: %s", exec_timings)

    return Sample(
        pid=pid,
        cpu=cpu,
        ram=ram,
        atrace=atrace,
        timestamp=timestamp,
        exec_timings=exec_timings
    )


class FrameBuffer:
    """
    Accumulates streamed stdout text and yields complete frames.
    A frame ends with the stop-of-measure marker; the marker is not included.
    """

    def __init__(self, delimiter: str = STOP_MEASURE_DELIMITER):
        self.delimiter = delimiter
        self._pending = ""

    def feed(self, chunk: str):
        """Add a chunk and return the list of frames it completed."""
        self._pending += chunk
        frames = []
        while self.delimiter in self._pending:
            frame, self._pending = self._pending.split(self.delimiter, 1)
            frames.append(frame)
        return frames

    @property
    def pending(self) -> str:
        return self._pending
