# BMV Monitor - Battery Monitor Telemetry Library
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# This module provides a decode-and-distribute engine for the continuous
# text telemetry of battery monitors and solar chargers: frame
# resynchronization, field decoding, derived metrics and output sinks.
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

"""BMV monitor package

This package turns the `KEY<tab>VALUE` stream a battery monitor emits on
its serial port into typed measurements and fans them out to several
consumers. It exposes:

- `BMVMonitor`: the synchronous read/decode/synthesize/dispatch pipeline,
  with `Role` deciding whether this process owns the device or
  subscribes to another instance.
- `FrameReader`, `FieldDecoder`, `Synthesizer`: the pipeline stages, usable
  on their own with injected state.
- `Dispatcher` and the sinks (panel, raw, plot log, snapshot, backup,
  relay).
- `FIELDS`: the field catalog.
"""

from .catalog import FIELDS, FieldSpec, UnitKind
from .config import MonitorConfig, load_config
from .monitor import BMVMonitor, Role
from .parser import FieldDecoder, Measurement, RawRecord
from .reader import CycleTracker, FrameError, FrameReader
from .sinks import Dispatcher
from .synth import CycleState, Synthesizer

__all__ = [
    "BMVMonitor", "Role", "FrameReader", "FrameError", "CycleTracker", "FieldDecoder",
    "Measurement", "RawRecord", "Synthesizer", "CycleState", "Dispatcher", "FIELDS",
    "FieldSpec", "UnitKind", "MonitorConfig", "load_config",
]
__version__ = "0.1.0"
