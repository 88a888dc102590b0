# BMV Monitor - Configuration
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Monitor settings with defaults, optional TOML file loading and the
# role-dependent defaults for the plot log.
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

"""Monitor configuration.

Precedence, lowest first: dataclass defaults, an optional TOML file, then
command-line flags (applied by the CLI through `MonitorConfig.update`).
TOML keys may use dashes or underscores; relay settings may sit at the top
level or in a `[relay]` table.

Example::

    log_dir = "/var/log/bmv"
    prefix = "bmv"
    fahrenheit = false
    snapshot_dir = "/run/bmv"

    [relay]
    listen = "/run/bmv/relay.sock"
    mqtt_host = "broker.local"
"""
from __future__ import annotations

import dataclasses
import tomllib
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .sinks import HEADER_INTERVAL
from .synth import EVENT_THRESHOLD_MA


class ConfigError(ValueError):
    pass


@dataclass
class MonitorConfig:
    fahrenheit: bool = False
    panel: bool = True
    raw: bool = False
    # None: on for the source owner, off for subscribers
    plot: Optional[bool] = None
    backup: bool = False
    snapshot_dir: Optional[str] = None
    log_dir: str = "."
    prefix: str = "bmv"
    event_marker: Optional[str] = None
    event_threshold_ma: int = EVENT_THRESHOLD_MA
    header_interval: int = HEADER_INTERVAL
    listen: Optional[str] = None
    stdout: bool = False
    mqtt_host: Optional[str] = None
    mqtt_port: int = 1883
    mqtt_topic: str = "bmv"
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None

    def plot_enabled(self, owner: bool) -> bool:
        return owner if self.plot is None else self.plot

    def relay_requested(self) -> bool:
        return bool(self.listen or self.stdout or self.mqtt_host)

    def update(self, values: Dict[str, Any]) -> "MonitorConfig":
        """Apply overrides; None values leave the current setting alone."""
        known = {f.name: f for f in dataclasses.fields(self)}
        for raw_key, value in values.items():
            key = raw_key.replace("-", "_")
            if key not in known:
                raise ConfigError(f"unknown setting {raw_key!r}")
            if value is None:
                continue
            setattr(self, key, _coerce(known[key], value))
        self.validate()
        return self

    def validate(self) -> None:
        if self.event_threshold_ma <= 0:
            raise ConfigError("event_threshold_ma must be > 0")
        if self.header_interval < 0:
            raise ConfigError("header_interval must be >= 0")
        if not self.prefix or "/" in self.prefix:
            raise ConfigError(f"invalid log prefix {self.prefix!r}")
        if not 0 < self.mqtt_port < 65536:
            raise ConfigError(f"invalid MQTT port {self.mqtt_port}")


def _coerce(f: dataclasses.Field, value: Any) -> Any:
    target = f.type if isinstance(f.type, str) else getattr(f.type, "__name__", "")
    if "bool" in target:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("1", "true", "yes", "on", "0", "false", "no", "off"):
            return value.lower() in ("1", "true", "yes", "on")
        raise ConfigError(f"{f.name} expects a boolean, got {value!r}")
    if target == "int":
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{f.name} expects an integer, got {value!r}") from exc
    return str(value)


def load_config(path: Optional[str] = None) -> MonitorConfig:
    config = MonitorConfig()
    if not path:
        return config
    try:
        with open(path, "rb") as fh:
            data = tomllib.load(fh)
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"invalid TOML in {path}: {exc}") from exc
    values = dict(data)
    relay = values.pop("relay", {})
    if not isinstance(relay, dict):
        raise ConfigError("[relay] must be a table")
    values.update(relay)
    return config.update(values)
