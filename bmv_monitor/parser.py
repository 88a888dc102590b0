# BMV Monitor - Record Parser and Field Decoder
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Provides deterministic helpers for translating tab-separated key/value
# lines from the battery monitor into typed, unit-scaled measurements,
# including fixed-point formatting and duration splitting.
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

"""Parsing helpers for the battery monitor text protocol.

This module provides a small set of deterministic helpers for turning one
`KEY<tab>VALUE` line into Python values that are convenient for the sinks.

Key functions
- split_line(line: str) -> RawRecord
    Split one line into key, value and trailing text. Never raises; use
    `RawRecord.malformed` to check the result.

- format_fixed(value, scale, precision) -> str
    Integer-only fixed-point rendering. The sign sits in front of the whole
    part and the fractional part is always unsigned, so -254 mA renders as
    "-0.254" rather than "0.-254".

- split_time(value, unit) -> str
    Render a duration as "<Nd >Hh Mm[ Ss]"; negative input means
    "infinite".

- FieldDecoder.decode(record) -> list[Measurement]
    Catalog lookup plus per-kind conversion. Unknown keys log a warning and
    return an empty list; ignored kinds return an empty list silently.

Notes and conventions
- No floating point anywhere: every scaled value is produced from integer
  division and modulo so that re-parsing the text recovers the raw value.
- Temperature conversion to Fahrenheit only happens in `display_value`;
  the Measurement itself always carries the device unit.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, List, Set

from .catalog import (
    ALARM_REASONS,
    ALARM_TEXT_KEY,
    DURATION_KINDS,
    FIXED_POINT,
    FieldSpec,
    UnitKind,
    lookup,
    product_name,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawRecord:
    key: str
    value: str
    extra: str = ""

    @property
    def malformed(self) -> bool:
        return not self.key or not self.value or bool(self.extra)


@dataclass(frozen=True)
class Measurement:
    key: str
    raw: Any
    kind: UnitKind
    scaled: str
    unit: str = ""

    @property
    def plot_value(self) -> str:
        """Value written to the plot log; durations and bitmasks stay raw."""
        if self.kind in DURATION_KINDS or self.kind is UnitKind.ALARM:
            return str(self.raw)
        return self.scaled


def split_line(line: str) -> RawRecord:
    """Split a single protocol line into a RawRecord.

    Carriage returns and the line terminator are stripped; everything after
    a second tab is kept as trailing text so the caller can reject it.
    """
    line = line.rstrip("\r\n")
    parts = line.split("\t", 2)
    key = parts[0]
    value = parts[1] if len(parts) > 1 else ""
    extra = parts[2] if len(parts) > 2 else ""
    return RawRecord(key, value, extra)


def format_fixed(value: int, scale: int, precision: int) -> str:
    if scale == 1:
        return str(value)
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), scale)
    digits = frac * 10 ** precision // scale
    return f"{sign}{whole}.{digits:0{precision}d}"


def parse_fixed(text: str, scale: int) -> int:
    """Inverse of `format_fixed` for values it produced."""
    sign = -1 if text.startswith("-") else 1
    whole, _, frac = text.lstrip("-").partition(".")
    value = int(whole) * scale
    if frac:
        value += int(frac) * scale // 10 ** len(frac)
    return sign * value


def split_time(value: int, unit: str = "s") -> str:
    """Decompose a duration into days, hours, minutes and (for seconds) seconds.

    >>> split_time(90061, "s")
    '1d 1h 1m 1s'
    >>> split_time(-1, "min")
    'infinite'
    """
    if value < 0:
        return "infinite"
    seconds = None
    if unit == "s":
        value, seconds = divmod(value, 60)
    hours, minutes = divmod(value, 60)
    days, hours = divmod(hours, 24)
    text = f"{hours}h {minutes}m"
    if days:
        text = f"{days}d {text}"
    if seconds is not None:
        text = f"{text} {seconds}s"
    return text


def alarm_reasons(mask: int) -> str:
    return ",".join(name for bit, name in enumerate(ALARM_REASONS) if mask & (1 << bit))


def format_timestamp(epoch: int) -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(epoch))


def to_fahrenheit(celsius: int) -> int:
    # (C*9/5 + 32) truncated toward zero, i.e. (C*9 + 160) / 5
    n = celsius * 9 + 160
    q = abs(n) // 5
    return q if n >= 0 else -q


def display_value(m: Measurement, fahrenheit: bool = False) -> str:
    """Render a measurement for a human: scaled value plus display unit."""
    if m.kind is UnitKind.TEMPERATURE and fahrenheit:
        return f"{to_fahrenheit(int(m.raw))} °F"
    if m.unit:
        return f"{m.scaled} {m.unit}"
    return m.scaled


class FieldDecoder:
    """Convert RawRecords into Measurements using the field catalog.

    Each unknown key is reported once at WARNING level; repeats go to DEBUG
    so a firmware that emits extra fields does not flood the error channel.
    """

    def __init__(self) -> None:
        self._warned: Set[str] = set()

    def decode(self, record: RawRecord) -> List[Measurement]:
        spec = lookup(record.key)
        if spec is None:
            if record.key in self._warned:
                log.debug("unknown field %r=%r", record.key, record.value)
            else:
                self._warned.add(record.key)
                log.warning("unknown field %r (value %r) ignored", record.key, record.value)
            return []
        if spec.kind is UnitKind.IGNORE:
            return []
        try:
            return self._convert(spec, record.value)
        except ValueError as exc:
            log.warning("cannot decode %s=%r: %s", record.key, record.value, exc)
            return []

    def _convert(self, spec: FieldSpec, value: str) -> List[Measurement]:
        kind = spec.kind
        if kind in FIXED_POINT:
            scale, precision, unit = FIXED_POINT[kind]
            raw = int(value)
            return [Measurement(spec.key, raw, kind, format_fixed(raw, scale, precision), unit)]
        if kind in DURATION_KINDS:
            raw = int(value)
            return [Measurement(spec.key, raw, kind, split_time(raw, kind.value))]
        if kind is UnitKind.TEMPERATURE:
            raw = int(value)
            return [Measurement(spec.key, raw, kind, str(raw), "°C")]
        if kind is UnitKind.COUNT:
            raw = int(value)
            return [Measurement(spec.key, raw, kind, str(raw), spec.unit)]
        if kind is UnitKind.TIMESTAMP:
            raw = int(value)
            return [Measurement(spec.key, raw, kind, format_timestamp(raw))]
        if kind is UnitKind.ALARM:
            raw = int(value)
            out = [Measurement(spec.key, raw, kind, str(raw))]
            if raw:
                text = alarm_reasons(raw)
                out.append(Measurement(ALARM_TEXT_KEY, text, UnitKind.ALARM_TEXT, text))
            return out
        if kind is UnitKind.PRODUCT:
            try:
                name = product_name(int(value, 16))
            except ValueError:
                name = product_name(-1)
            return [Measurement(spec.key, value, kind, name)]
        # TEXT and ALARM_TEXT pass through verbatim
        return [Measurement(spec.key, value, kind, value, spec.unit)]
