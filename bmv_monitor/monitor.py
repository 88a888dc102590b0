# BMV Monitor - Decode and Distribute Engine
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Provides the BMVMonitor class: the single-threaded pipeline that reads
# records from the device (or a replay file, or a relay), decodes them,
# synthesizes derived metrics at every cycle boundary and feeds the sinks.
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

"""bmv_monitor.monitor

BMVMonitor: one synchronous pass over the input that keeps every sink up
to date.

High-level responsibilities
- Pull RawRecords from a FrameReader until end of stream or `stop()`.
- Hand every record to the sinks' `record` hook (backup log) before
  decoding, so undecodable fields are still kept.
- Feed the record key to the CycleTracker. When it reports a completed
  cycle, run the Synthesizer over the accumulated CycleState, dispatch the
  synthesized measurements, flush all sinks and reset the state. Only then
  is the record that closed the cycle decoded; it opens the next cycle.
- Decode the record and dispatch each measurement immediately.

Role
- Role.OWNER reads the device or a replay file. It stamps each cycle with
  the capture time, tracks high-current events and is the only role that
  may publish to subscribers.
- Role.SUBSCRIBER reads a stream relayed by an owner and takes TS and EV
  from it instead of its own clock.
"""
from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import BinaryIO, Callable, Iterable, Optional, TextIO

from .config import ConfigError, MonitorConfig
from .parser import FieldDecoder, RawRecord
from .reader import CycleTracker, FrameReader
from .sinks import (
    BackupSink,
    Dispatcher,
    PanelSink,
    PlotLogSink,
    RawSink,
    RelaySink,
    SnapshotSink,
)
from .synth import CycleState, EventMarker, Synthesizer

log = logging.getLogger(__name__)


class Role(Enum):
    OWNER = "owner"
    SUBSCRIBER = "subscriber"

    @property
    def owner(self) -> bool:
        return self is Role.OWNER


def build_dispatcher(config: MonitorConfig, role: Role, publishers: Iterable = (),
                     out: Optional[TextIO] = None, clock: Callable[[], float] = time.time) -> Dispatcher:
    """Create the sinks enabled by `config` for a process in `role`."""
    publishers = list(publishers)
    if publishers and not role.owner:
        raise ConfigError("only the source owner may publish to subscribers")
    dispatcher = Dispatcher()
    if config.backup:
        dispatcher.add(BackupSink(config.log_dir, config.prefix, clock=clock))
    for publisher in publishers:
        dispatcher.add(RelaySink(publisher))
    if config.raw:
        dispatcher.add(RawSink(out, fahrenheit=config.fahrenheit))
    if config.panel:
        dispatcher.add(PanelSink(out, fahrenheit=config.fahrenheit))
    if config.plot_enabled(role.owner):
        dispatcher.add(PlotLogSink(config.log_dir, config.prefix, config.header_interval, clock=clock))
    if config.snapshot_dir:
        dispatcher.add(SnapshotSink(config.snapshot_dir))
    return dispatcher


class BMVMonitor:
    """Decode a telemetry stream and keep the sinks updated.

    - `run()` blocks until end of stream or `stop()`, and returns the number
      of cycles flushed. FrameError from the reader propagates to the
      caller, which decides how to exit.
    - `handle_record()` is the per-record step, usable without a reader.
    """

    def __init__(self, stream: Optional[BinaryIO], role: Role = Role.OWNER,
                 dispatcher: Optional[Dispatcher] = None, event_marker: Optional[EventMarker] = None,
                 threshold_ma: Optional[int] = None, clock: Callable[[], float] = time.time) -> None:
        self.role = role
        self.reader = FrameReader(stream) if stream is not None else None
        self.dispatcher = dispatcher if dispatcher is not None else Dispatcher()
        self.decoder = FieldDecoder()
        self.tracker = CycleTracker()
        self.state = CycleState()
        synth_kwargs = {}
        if threshold_ma is not None:
            synth_kwargs["threshold_ma"] = threshold_ma
        self.synthesizer = Synthesizer(self.decoder, owner=role.owner, marker=event_marker,
                                       clock=clock, **synth_kwargs)
        self.cycles = 0
        self._stop_event = threading.Event()

    @classmethod
    def from_config(cls, stream: Optional[BinaryIO], config: MonitorConfig, role: Role,
                    publishers: Iterable = (), out: Optional[TextIO] = None,
                    clock: Callable[[], float] = time.time) -> "BMVMonitor":
        dispatcher = build_dispatcher(config, role, publishers=publishers, out=out, clock=clock)
        return cls(stream, role, dispatcher=dispatcher, event_marker=EventMarker(config.event_marker),
                   threshold_ma=config.event_threshold_ma, clock=clock)

    def run(self) -> int:
        if self.reader is None:
            raise RuntimeError("monitor has no input stream")
        log.debug("monitor running as %s", self.role.value)
        while not self._stop_event.is_set():
            record = self.reader.next_record()
            if record is None:
                log.debug("end of stream")
                if len(self.state):
                    self.close_cycle()
                break
            self.handle_record(record)
        return self.cycles

    def stop(self) -> None:
        self._stop_event.set()

    def handle_record(self, record: RawRecord) -> None:
        self.dispatcher.record(record)
        if self.tracker.observe(record.key):
            self.close_cycle()
        for m in self.decoder.decode(record):
            self.state.add(m)
            self.dispatcher.dispatch(m)

    def close_cycle(self) -> None:
        for m in self.synthesizer.synthesize(self.state):
            self.dispatcher.dispatch(m)
        self.dispatcher.flush_cycle()
        self.state.reset()
        self.cycles += 1

    def close(self) -> None:
        self.dispatcher.close()
