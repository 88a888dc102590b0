# BMV Monitor - Line/Frame Reader
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Reads key/value records from a noisy, checksum-terminated byte stream,
# resynchronizes after checksum boundaries and detects the end of each
# telemetry cycle from key repetition.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""bmv_monitor.reader

FrameReader pulls RawRecords out of anything with a binary `readline()`:
a pyserial port, a replay file opened in binary mode, or the read side of
a relay socket.

High-level behaviour
- Pre-roll: lines are dropped until the first non-empty line that is not
  the checksum marker. Opening the port usually lands on the checksum byte
  of the previous block.
- The checksum line is a boundary marker, never data. Its value is a raw
  byte that may itself be a newline, so one empty line directly after it
  is swallowed as part of the same boundary.
- Malformed lines (empty key, empty value, trailing text) are discarded
  until MAX_MALFORMED of them arrive in a row; the reader then raises
  FrameError because it has lost framing with the upstream transport.

CycleTracker is the I/O-free two-state machine that recognises a completed
cycle when the first key seen since the last boundary shows up again.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import BinaryIO, Iterator, Optional

from .catalog import CHECKSUM_KEY
from .parser import RawRecord, split_line

log = logging.getLogger(__name__)

# A stalled relay can leave up to this many unreadable lines behind
MAX_MALFORMED = 3


class FrameError(RuntimeError):
    """Fatal loss of framing or input failure; `raw` holds the offending bytes."""

    def __init__(self, message: str, raw: bytes = b"") -> None:
        super().__init__(message)
        self.raw = raw


def hexdump(raw: bytes, width: int = 16) -> str:
    rows = []
    for offset in range(0, len(raw), width):
        chunk = raw[offset:offset + width]
        hexpart = " ".join(f"{b:02x}" for b in chunk)
        text = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
        rows.append(f"{offset:04x}  {hexpart:<{width * 3 - 1}}  |{text}|")
    return "\n".join(rows)


class FrameReader:
    """Produce RawRecords from a binary line stream.

    `next_record()` returns a RawRecord, or None at end of stream, and
    raises FrameError when the stream fails or framing is lost.
    """

    def __init__(self, stream: BinaryIO, max_malformed: int = MAX_MALFORMED) -> None:
        self._stream = stream
        self.max_malformed = max_malformed
        self.malformed = 0
        self._synced = False
        self._after_checksum = False

    def _readline(self) -> bytes:
        try:
            return self._stream.readline()
        except OSError as exc:
            # pyserial's SerialException derives from OSError as well
            raise FrameError(f"input read failed: {exc}") from exc

    def next_record(self) -> Optional[RawRecord]:
        while True:
            raw = self._readline()
            if not raw:
                return None
            # latin-1 maps every byte, so a binary checksum never fails decoding
            record = split_line(raw.decode("latin-1"))

            if not self._synced:
                if not record.key or record.key == CHECKSUM_KEY:
                    log.debug("pre-roll: dropping %r", raw)
                    continue
                self._synced = True

            if record.key == CHECKSUM_KEY:
                self._after_checksum = True
                continue
            # only the line directly after a checksum may be an empty spacer
            after_checksum, self._after_checksum = self._after_checksum, False
            if after_checksum and not record.key and not record.value:
                continue

            if record.malformed:
                self.malformed += 1
                if self.malformed >= self.max_malformed:
                    raise FrameError(
                        f"lost framing after {self.malformed} consecutive malformed lines", raw)
                log.debug("discarding malformed line %r (%d/%d)", raw, self.malformed, self.max_malformed)
                continue

            self.malformed = 0
            return record

    def __iter__(self) -> Iterator[RawRecord]:
        while True:
            record = self.next_record()
            if record is None:
                return
            yield record


class CyclePhase(Enum):
    ACCUMULATING = "accumulating"
    BOUNDARY_CLOSED = "boundary-closed"


class CycleTracker:
    """Detect cycle completion from key repetition alone.

    The first key ever observed becomes the sentinel and cannot itself close
    a cycle. Every later sighting of the sentinel closes the running cycle;
    the record carrying it opens the next one.
    """

    def __init__(self) -> None:
        self.sentinel: Optional[str] = None
        self.phase = CyclePhase.ACCUMULATING

    def observe(self, key: str) -> bool:
        if self.sentinel is None:
            self.sentinel = key
            return False
        if key == self.sentinel:
            self.phase = CyclePhase.BOUNDARY_CLOSED
            return True
        self.phase = CyclePhase.ACCUMULATING
        return False


class BackupReplay:
    """Binary readline wrapper that replays a backup log.

    Backup rows look like `<date>-<time>\\t<key>\\t<value>`; the leading
    timestamp column is removed so the rows parse as protocol lines again.
    """

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    def readline(self) -> bytes:
        line = self._stream.readline()
        if not line:
            return line
        _, sep, rest = line.partition(b"\t")
        return rest if sep else line

    def close(self) -> None:
        self._stream.close()
