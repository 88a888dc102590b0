# BMV Monitor - Field Catalog
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Static description of every key the battery monitor emits on its
# continuous text stream: unit kind, fixed-point scaling and the label used
# on the panel and in the plot log header.
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

"""Field catalog for the text protocol.

Key tables
- FIELDS: key -> FieldSpec. One entry per key; the table is built once at
  import time and never mutated.
- ALARM_REASONS: reason names in bit order (bit 0 first).
- PRODUCT_RANGES: inclusive product-id ranges mapped to a product name.
- PANEL_KEYS / PLOT_KEYS: fixed orders used by the panel and plot sinks.

Synthesized keys (TS, Pc, EV) never appear on the device wire but have
catalog entries so a subscriber can decode them from a relayed stream.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple


class UnitKind(Enum):
    VOLTAGE = "mV"
    CURRENT = "mA"
    CHARGE = "mAh"
    PERMILLE = "permille"
    ENERGY = "0.01kWh"
    POWER = "cW"
    MINUTES = "min"
    SECONDS = "s"
    TEMPERATURE = "degC"
    COUNT = "count"
    TEXT = "text"
    ALARM = "alarm"
    ALARM_TEXT = "alarmtext"
    PRODUCT = "product"
    TIMESTAMP = "timestamp"
    IGNORE = "ignore"


# kind -> (scale, precision, display unit) for the fixed-point kinds
FIXED_POINT: Mapping[UnitKind, Tuple[int, int, str]] = MappingProxyType({
    UnitKind.VOLTAGE: (1000, 3, "V"),
    UnitKind.CURRENT: (1000, 3, "A"),
    UnitKind.CHARGE: (1000, 3, "Ah"),
    UnitKind.PERMILLE: (10, 2, "%"),
    UnitKind.ENERGY: (100, 2, "kWh"),
    UnitKind.POWER: (100, 2, "W"),
})

DURATION_KINDS = frozenset({UnitKind.MINUTES, UnitKind.SECONDS})


@dataclass(frozen=True)
class FieldSpec:
    key: str
    kind: UnitKind
    description: str
    unit: str = ""
    synthesized: bool = False


CHECKSUM_KEY = "Checksum"
ALARM_TEXT_KEY = "ARtext"
TIMESTAMP_KEY = "TS"
POWER_KEY = "Pc"
EVENT_KEY = "EV"
VOLTAGE_KEY = "V"
CURRENT_KEY = "I"

ALARM_REASONS: Tuple[str, ...] = (
    "lowV",       # bit 0: low voltage
    "highV",      # bit 1: high voltage
    "low%",       # bit 2: low state of charge
    "lowVs",      # bit 3: low starter voltage
    "highVs",     # bit 4: high starter voltage
    "lowT",       # bit 5: low temperature
    "highT",      # bit 6: high temperature
    "midV",       # bit 7: mid-point voltage
    "overload",   # bit 8
    "ripple",     # bit 9: DC ripple
    "lowVac",     # bit 10: low AC output voltage
    "highVac",    # bit 11: high AC output voltage
)

PRODUCT_RANGES: Tuple[Tuple[int, int, str], ...] = (
    (0x0203, 0x0205, "BMV-70X"),
    (0xA381, 0xA383, "BMV-70X"),
    (0x0300, 0x0300, "BlueSolar MPPT"),
    (0xA040, 0xA0FF, "BlueSolar MPPT"),
    (0xA201, 0xA2FF, "Phoenix Inverter"),
)
UNKNOWN_PRODUCT = "Unknown product"


def _build(*specs: FieldSpec) -> Mapping[str, FieldSpec]:
    table: Dict[str, FieldSpec] = {}
    for spec in specs:
        if spec.key in table:
            raise ValueError(f"duplicate catalog key {spec.key!r}")
        table[spec.key] = spec
    return MappingProxyType(table)


K = UnitKind

FIELDS: Mapping[str, FieldSpec] = _build(
    FieldSpec("V", K.VOLTAGE, "Main battery voltage"),
    FieldSpec("VS", K.VOLTAGE, "Auxiliary (starter) voltage"),
    FieldSpec("VM", K.VOLTAGE, "Mid-point voltage"),
    FieldSpec("DM", K.PERMILLE, "Mid-point deviation"),
    FieldSpec("I", K.CURRENT, "Battery current"),
    FieldSpec("P", K.COUNT, "Instantaneous power (device)", unit="W"),
    FieldSpec("CE", K.CHARGE, "Consumed charge"),
    FieldSpec("SOC", K.PERMILLE, "State of charge"),
    FieldSpec("TTG", K.MINUTES, "Time to go"),
    FieldSpec("Alarm", K.TEXT, "Alarm condition active"),
    FieldSpec("Relay", K.TEXT, "Relay state"),
    FieldSpec("AR", K.ALARM, "Alarm reason"),
    FieldSpec("BMV", K.IGNORE, "Model description"),
    FieldSpec("FW", K.TEXT, "Firmware version"),
    FieldSpec("PID", K.PRODUCT, "Product"),
    FieldSpec("MON", K.COUNT, "DC monitor mode"),
    FieldSpec("T", K.TEMPERATURE, "Battery temperature"),
    FieldSpec("H1", K.CHARGE, "Deepest discharge"),
    FieldSpec("H2", K.CHARGE, "Last discharge"),
    FieldSpec("H3", K.CHARGE, "Average discharge"),
    FieldSpec("H4", K.COUNT, "Charge cycles"),
    FieldSpec("H5", K.COUNT, "Full discharges"),
    FieldSpec("H6", K.CHARGE, "Cumulative charge drawn"),
    FieldSpec("H7", K.VOLTAGE, "Minimum main voltage"),
    FieldSpec("H8", K.VOLTAGE, "Maximum main voltage"),
    FieldSpec("H9", K.SECONDS, "Time since last full charge"),
    FieldSpec("H10", K.COUNT, "Automatic synchronizations"),
    FieldSpec("H11", K.COUNT, "Low voltage alarms"),
    FieldSpec("H12", K.COUNT, "High voltage alarms"),
    FieldSpec("H13", K.COUNT, "Low auxiliary voltage alarms"),
    FieldSpec("H14", K.COUNT, "High auxiliary voltage alarms"),
    FieldSpec("H15", K.VOLTAGE, "Minimum auxiliary voltage"),
    FieldSpec("H16", K.VOLTAGE, "Maximum auxiliary voltage"),
    FieldSpec("H17", K.ENERGY, "Discharged energy"),
    FieldSpec("H18", K.ENERGY, "Charged energy"),
    FieldSpec(CHECKSUM_KEY, K.IGNORE, "Checksum"),
    FieldSpec(ALARM_TEXT_KEY, K.ALARM_TEXT, "Alarm reasons", synthesized=True),
    FieldSpec(TIMESTAMP_KEY, K.TIMESTAMP, "Capture time", synthesized=True),
    FieldSpec(POWER_KEY, K.POWER, "Instantaneous power", synthesized=True),
    FieldSpec(EVENT_KEY, K.MINUTES, "Time since high-current event", synthesized=True),
)

del K

PANEL_KEYS: Tuple[str, ...] = (
    TIMESTAMP_KEY, "V", "I", POWER_KEY, "CE", "SOC", "TTG", "H9", "T",
    EVENT_KEY, ALARM_TEXT_KEY,
)

PLOT_KEYS: Tuple[str, ...] = (
    TIMESTAMP_KEY, "V", "VS", "I", POWER_KEY, "CE", "SOC", "TTG", "T",
    EVENT_KEY, "AR",
)


def lookup(key: str) -> Optional[FieldSpec]:
    return FIELDS.get(key)


def product_name(code: int) -> str:
    for low, high, name in PRODUCT_RANGES:
        if low <= code <= high:
            return name
    return UNKNOWN_PRODUCT
