# BMV Monitor - Sink Dispatcher
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Routes decoded and synthesized measurements to the terminal panel, the
# raw debug printer, the dated CSV plot log, the per-key snapshot store,
# the raw backup log and the subscriber relay.
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

"""bmv_monitor.sinks

Every sink implements the same three hooks and ignores the ones it does
not need:

- record(RawRecord): every well-formed line, before decoding (backup log)
- dispatch(Measurement): every decoded or synthesized field as it appears
  (raw printer, snapshot store, relay; the panel and plot log buffer)
- flush_cycle(): once per completed cycle (panel redraw, CSV row)

Sinks share no state, so enabling or disabling one never changes what the
others see. A file sink that cannot write logs a warning and loses that
output; the panel, the relay and the other files carry on.
"""
from __future__ import annotations

import logging
import os
import sys
import tempfile
import time
from typing import Callable, Dict, Iterable, List, Optional, TextIO

from .catalog import FIELDS, PANEL_KEYS, PLOT_KEYS, TIMESTAMP_KEY, UnitKind
from .parser import Measurement, RawRecord, display_value, format_timestamp

log = logging.getLogger(__name__)

CLEAR_SCREEN = "\x1b[2J\x1b[H"
NODATA = "nodata"
HEADER_INTERVAL = 1800


def _description(key: str) -> str:
    spec = FIELDS.get(key)
    return spec.description if spec is not None else key


def dated_path(log_dir: str, prefix: str, ts: float, suffix: str) -> str:
    day = time.strftime("%Y-%m-%d", time.localtime(ts))
    return os.path.join(log_dir, f"{prefix}-{day}.{suffix}")


class Sink:
    def record(self, record: RawRecord) -> None:
        pass

    def dispatch(self, m: Measurement) -> None:
        pass

    def flush_cycle(self) -> None:
        pass

    def close(self) -> None:
        pass


class PanelSink(Sink):
    """Two-column terminal panel redrawn once per cycle.

    The label column only ever grows, so the value column does not jump
    left when a long-labelled field is missing from one cycle.
    """

    def __init__(self, out: Optional[TextIO] = None, fahrenheit: bool = False) -> None:
        self._out = out
        self.fahrenheit = fahrenheit
        self.width = 0
        self._lines: Dict[str, str] = {}

    def dispatch(self, m: Measurement) -> None:
        if m.key not in PANEL_KEYS:
            return
        self._lines[m.key] = display_value(m, self.fahrenheit)
        self.width = max(self.width, len(_description(m.key)))

    def flush_cycle(self) -> None:
        out = self._out or sys.stdout
        out.write(CLEAR_SCREEN)
        for key in PANEL_KEYS:
            if key in self._lines:
                out.write(f"{_description(key):<{self.width}}  {self._lines[key]}\n")
        out.flush()
        self._lines.clear()


class RawSink(Sink):
    """Print every measurement the moment it is decoded."""

    def __init__(self, out: Optional[TextIO] = None, fahrenheit: bool = False) -> None:
        self._out = out
        self.fahrenheit = fahrenheit

    def dispatch(self, m: Measurement) -> None:
        out = self._out or sys.stdout
        out.write(f"{m.key}\t{_description(m.key)}: {display_value(m, self.fahrenheit)}\n")
        out.flush()


class PlotLogSink(Sink):
    """Append one CSV row per cycle to `<log_dir>/<prefix>-<YYYY-MM-DD>.csv`.

    Columns follow PLOT_KEYS; a missing field is written as "nodata". A
    `#` comment naming the columns precedes the first row of the process
    and is repeated once `header_interval` seconds have passed since the
    previous one.
    """

    def __init__(self, log_dir: str, prefix: str, header_interval: int = HEADER_INTERVAL,
                 clock: Callable[[], float] = time.time) -> None:
        self.log_dir = log_dir
        self.prefix = prefix
        self.header_interval = header_interval
        self._clock = clock
        self._values: Dict[str, str] = {}
        self._ts: Optional[int] = None
        self._header_ts: Optional[int] = None

    def dispatch(self, m: Measurement) -> None:
        if m.key == TIMESTAMP_KEY:
            self._ts = int(m.raw)
        if m.key in PLOT_KEYS:
            self._values[m.key] = m.plot_value

    def flush_cycle(self) -> None:
        if not self._values:
            return
        ts = self._ts if self._ts is not None else int(self._clock())
        row = ",".join(self._values.get(key, NODATA) for key in PLOT_KEYS)
        self._values.clear()
        self._ts = None
        path = dated_path(self.log_dir, self.prefix, ts, "csv")
        try:
            os.makedirs(self.log_dir, exist_ok=True)
            with open(path, "a", encoding="utf-8") as fh:
                if self._header_ts is None or ts - self._header_ts >= self.header_interval:
                    fh.write(f"# {format_timestamp(ts)} columns: {','.join(PLOT_KEYS)}\n")
                    self._header_ts = ts
                fh.write(row + "\n")
        except OSError as exc:
            # the row is lost; the other sinks carry on
            log.warning("cannot append plot row to %s: %s", path, exc)


class SnapshotSink(Sink):
    """Keep one file per key holding the latest value.

    Files are replaced atomically and only when the value changed, so
    pollers can read them at any time without seeing a partial write.
    """

    def __init__(self, directory: str) -> None:
        self.directory = directory
        self.writes = 0
        self._last: Dict[str, str] = {}
        os.makedirs(directory, exist_ok=True)

    def _path(self, key: str) -> str:
        return os.path.join(self.directory, key.replace(os.sep, "_"))

    def _previous(self, key: str) -> Optional[str]:
        if key in self._last:
            return self._last[key]
        try:
            with open(self._path(key), "r", encoding="utf-8") as fh:
                value = fh.read().rstrip("\n")
        except FileNotFoundError:
            return None
        self._last[key] = value
        return value

    def dispatch(self, m: Measurement) -> None:
        value = m.scaled
        temp_path = None
        try:
            if self._previous(m.key) == value:
                return
            with tempfile.NamedTemporaryFile("w", dir=self.directory, prefix=".snap_", suffix=".tmp",
                                             delete=False, encoding="utf-8") as tmp:
                temp_path = tmp.name
                tmp.write(value + "\n")
            os.replace(temp_path, self._path(m.key))
        except OSError as exc:
            if temp_path and os.path.exists(temp_path):
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass
            log.warning("cannot update snapshot for %s: %s", m.key, exc)
            return
        self._last[m.key] = value
        self.writes += 1


class BackupSink(Sink):
    """Append every raw key/value pair to `<log_dir>/<prefix>-<YYYY-MM-DD>.log`.

    Rows are `<date>-<time>\\t<key>\\t<value>`; see reader.BackupReplay for
    feeding them back in.
    """

    def __init__(self, log_dir: str, prefix: str, clock: Callable[[], float] = time.time) -> None:
        self.log_dir = log_dir
        self.prefix = prefix
        self._clock = clock
        self._fh: Optional[TextIO] = None
        self._path: Optional[str] = None
        self.failing = False

    def record(self, record: RawRecord) -> None:
        now = self._clock()
        path = dated_path(self.log_dir, self.prefix, now, "log")
        stamp = time.strftime("%Y-%m-%d-%H:%M:%S", time.localtime(now))
        try:
            if path != self._path:
                self.close()
                os.makedirs(self.log_dir, exist_ok=True)
                # latin-1 keeps every received byte replayable
                self._fh = open(path, "a", encoding="latin-1")
                self._path = path
            self._fh.write(f"{stamp}\t{record.key}\t{record.value}\n")
            self._fh.flush()
        except OSError as exc:
            # warn once per outage; the file is reopened on the next record
            level = logging.DEBUG if self.failing else logging.WARNING
            log.log(level, "cannot append backup row to %s: %s", path, exc)
            self.failing = True
            self._discard()
            return
        self.failing = False

    def _discard(self) -> None:
        fh, self._fh, self._path = self._fh, None, None
        if fh is not None:
            try:
                fh.close()
            except OSError:
                pass

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
            self._path = None


class RelaySink(Sink):
    """Republish each measurement to subscribers as `KEY<tab>VALUE`.

    Alarm reason text is derived locally by every decoder and is not
    relayed.
    """

    def __init__(self, publisher) -> None:
        self.publisher = publisher

    def dispatch(self, m: Measurement) -> None:
        if m.kind is UnitKind.ALARM_TEXT:
            return
        self.publisher.publish(m.key, str(m.raw))

    def close(self) -> None:
        self.publisher.close()


class Dispatcher:
    def __init__(self, sinks: Iterable[Sink] = ()) -> None:
        self.sinks: List[Sink] = list(sinks)

    def add(self, sink: Sink) -> None:
        self.sinks.append(sink)

    def record(self, record: RawRecord) -> None:
        for sink in self.sinks:
            sink.record(record)

    def dispatch(self, m: Measurement) -> None:
        for sink in self.sinks:
            sink.dispatch(m)

    def flush_cycle(self) -> None:
        for sink in self.sinks:
            sink.flush_cycle()

    def close(self) -> None:
        for sink in self.sinks:
            sink.close()
