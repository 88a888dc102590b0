# BMV Monitor - Derived Metric Synthesizer
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Computes fields that never appear on the wire (capture time,
# instantaneous power, time since the last high-current event) once per
# completed telemetry cycle.
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

"""Derived metrics computed at each cycle boundary.

- TS: capture time (epoch seconds), source owner only.
- Pc: voltage(mV) * current(mA) / 10000, in hundredths of a Watt. Needs
  both V and I in the current cycle.
- EV: minutes since the discharge current last exceeded the event
  threshold, 0 while it does, -1 when no event was ever recorded. Source
  owner only; the event start is persisted through EventMarker so it
  survives restarts.

A synthesized key already present in the cycle (relayed by a source owner)
is never computed again.
"""
from __future__ import annotations

import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .catalog import CURRENT_KEY, EVENT_KEY, POWER_KEY, TIMESTAMP_KEY, VOLTAGE_KEY
from .parser import FieldDecoder, Measurement, RawRecord

log = logging.getLogger(__name__)

EVENT_THRESHOLD_MA = 50000


@dataclass
class CycleState:
    """Measurements seen since the last boundary, keyed by field key."""

    measurements: Dict[str, Measurement] = field(default_factory=dict)

    def add(self, m: Measurement) -> None:
        self.measurements[m.key] = m

    def get(self, key: str) -> Optional[Measurement]:
        return self.measurements.get(key)

    def reset(self) -> None:
        self.measurements.clear()

    def __len__(self) -> int:
        return len(self.measurements)


class EventMarker:
    """Durable store for the last event-start time (epoch seconds).

    With no path the marker lives in memory only.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path
        self._value: Optional[int] = None
        self._loaded = False

    def load(self) -> Optional[int]:
        if self._loaded:
            return self._value
        self._loaded = True
        if not self.path:
            return None
        try:
            with open(self.path, "r", encoding="ascii") as fh:
                text = fh.read().strip()
        except FileNotFoundError:
            return None
        try:
            self._value = int(text)
        except ValueError:
            log.warning("ignoring unreadable event marker %s: %r", self.path, text)
        return self._value

    def save(self, ts: int) -> None:
        self._value = ts
        self._loaded = True
        if not self.path:
            return
        directory = os.path.dirname(self.path) or "."
        with tempfile.NamedTemporaryFile("w", dir=directory, prefix=".event_", suffix=".tmp",
                                         delete=False, encoding="ascii") as tmp:
            tmp.write(f"{ts}\n")
        os.replace(tmp.name, self.path)


def _trunc_div(numerator: int, denominator: int) -> int:
    q = abs(numerator) // denominator
    return q if numerator >= 0 else -q


class Synthesizer:
    def __init__(self, decoder: FieldDecoder, owner: bool, marker: Optional[EventMarker] = None,
                 threshold_ma: int = EVENT_THRESHOLD_MA, clock: Callable[[], float] = time.time) -> None:
        self._decoder = decoder
        self.owner = owner
        self.marker = marker if marker is not None else EventMarker()
        self.threshold_ma = threshold_ma
        self._clock = clock

    def synthesize(self, state: CycleState) -> List[Measurement]:
        now = int(self._clock())
        out: List[Measurement] = []

        def emit(key: str, raw: int) -> None:
            if key in state.measurements:
                return
            out.extend(self._decoder.decode(RawRecord(key, str(raw))))

        if self.owner:
            emit(TIMESTAMP_KEY, now)

        voltage = state.get(VOLTAGE_KEY)
        current = state.get(CURRENT_KEY)
        if voltage is not None and current is not None:
            emit(POWER_KEY, _trunc_div(voltage.raw * current.raw, 10000))

        if self.owner and EVENT_KEY not in state.measurements:
            emit(EVENT_KEY, self._event_minutes(current, now))
        return out

    def _event_minutes(self, current: Optional[Measurement], now: int) -> int:
        # discharge current is negative
        if current is not None and current.raw < -self.threshold_ma:
            try:
                self.marker.save(now)
            except OSError as exc:
                log.warning("cannot persist event start to %s: %s", self.marker.path, exc)
            return 0
        start = self.marker.load()
        if start is None:
            return -1
        return max(0, now - start) // 60
