# BMV Monitor - Command Line Front End
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Parses options, selects the input source (serial device, replay file,
# backup log or relay subscription), wires up the relay publishers and runs
# the monitor until end of stream, a fatal framing error or a signal.
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
"""
BMV Monitor CLI

Usage:
    bmv-monitor --device /dev/ttyUSB0 --listen /run/bmv/relay.sock --backup
    bmv-monitor --subscribe /run/bmv/relay.sock
    bmv-monitor --device /dev/ttyUSB0 --no-panel --stdout-relay | ssh host bmv-monitor --subscribe -
    bmv-monitor --replay capture.txt --no-panel --raw

Exit status is 0 on end of stream or SIGINT/SIGTERM and 1 on a fatal
error (lost framing, read failure, relay unavailable, bad configuration).
Diagnostics and warnings go to stderr; stdout carries the panel.
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import BinaryIO, List, Optional, Tuple

import serial

from .config import ConfigError, MonitorConfig, load_config
from .monitor import BMVMonitor, Role
from .reader import BackupReplay, FrameError, hexdump
from .relay import LineRelayServer, MqttPublisher, RelayError, StreamPublisher, open_subscription

log = logging.getLogger(__name__)

DEFAULT_BAUD = 19200


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bmv-monitor", description="Decode and distribute battery monitor telemetry")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--device", help="Serial device the monitor is attached to")
    source.add_argument("--replay", help="Replay a captured raw stream file")
    source.add_argument("--replay-backup", help="Replay a backup log written by --backup")
    source.add_argument("--subscribe", metavar="ADDRESS", help="Read a relayed stream from host:port, a socket path, or '-' for stdin (a --stdout-relay pipe)")
    parser.add_argument("--baud", default=DEFAULT_BAUD, type=int, help="Serial baud rate")
    parser.add_argument("--config", help="TOML configuration file")
    bool_opt = argparse.BooleanOptionalAction
    parser.add_argument("--panel", action=bool_opt, default=None, help="Redraw the terminal panel every cycle")
    parser.add_argument("--raw", action=bool_opt, default=None, help="Print every field as it is decoded")
    parser.add_argument("--plot", action=bool_opt, default=None, help="Append a CSV row per cycle (default: on for the source owner)")
    parser.add_argument("--backup", action=bool_opt, default=None, help="Append every raw field to a backup log")
    parser.add_argument("--fahrenheit", action=bool_opt, default=None, help="Show temperatures in Fahrenheit")
    parser.add_argument("--snapshot-dir", help="Directory holding one latest-value file per field")
    parser.add_argument("--log-dir", help="Directory for plot and backup logs")
    parser.add_argument("--prefix", help="File name prefix for plot and backup logs")
    parser.add_argument("--event-marker", help="File persisting the last high-current event time")
    parser.add_argument("--listen", metavar="ADDRESS", help="Relay decoded fields to subscribers on host:port or a socket path")
    parser.add_argument("--stdout-relay", dest="stdout", action="store_true", default=None, help="Relay decoded fields on stdout")
    parser.add_argument("--mqtt-host", help="Relay decoded fields to an MQTT broker")
    parser.add_argument("--mqtt-port", type=int, help="MQTT broker port (default: 1883)")
    parser.add_argument("--mqtt-topic", help="MQTT topic prefix; each field goes to <topic>/<key>")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose (DEBUG) logging output")
    return parser


def resolve_config(args: argparse.Namespace) -> MonitorConfig:
    config = load_config(args.config)
    overrides = {key: getattr(args, key) for key in (
        "panel", "raw", "plot", "backup", "fahrenheit", "snapshot_dir", "log_dir", "prefix",
        "event_marker", "listen", "stdout", "mqtt_host", "mqtt_port", "mqtt_topic",
    )}
    config.update(overrides)
    if config.stdout and (config.panel or config.raw):
        raise ConfigError("--stdout-relay needs --no-panel and --no-raw")
    return config


def open_source(args: argparse.Namespace) -> Tuple[BinaryIO, Role]:
    if args.device:
        # raw 8N1, blocking reads: an empty readline() then really means end of stream
        port = serial.Serial(args.device, baudrate=args.baud, bytesize=serial.EIGHTBITS,
                             parity=serial.PARITY_NONE, stopbits=serial.STOPBITS_ONE, timeout=None)
        return port, Role.OWNER
    if args.replay:
        return open(args.replay, "rb"), Role.OWNER
    if args.replay_backup:
        return BackupReplay(open(args.replay_backup, "rb")), Role.OWNER
    if args.subscribe == "-":
        return sys.stdin.buffer, Role.SUBSCRIBER
    return open_subscription(args.subscribe), Role.SUBSCRIBER


def open_publishers(config: MonitorConfig) -> List:
    publishers: List = []
    try:
        if config.listen:
            server = LineRelayServer(config.listen)
            server.start()
            publishers.append(server)
        if config.mqtt_host:
            mqttp = MqttPublisher(config.mqtt_host, config.mqtt_port, config.mqtt_topic,
                                  config.mqtt_username, config.mqtt_password)
            mqttp.start()
            publishers.append(mqttp)
        if config.stdout:
            publishers.append(StreamPublisher(sys.stdout.buffer))
    except RelayError:
        for publisher in publishers:
            publisher.close()
        raise
    return publishers


def _terminate(signum, frame):
    # unwinds through the finally blocks in main() so the relay is released
    sys.exit(0)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(level=(logging.DEBUG if args.verbose else logging.INFO),
                        format="%(asctime)s %(name)s %(levelname)s: %(message)s")
    # Silence package logs by default (be chatty only with --verbose)
    pkg_log = logging.getLogger("bmv_monitor")
    pkg_log.setLevel(logging.DEBUG if args.verbose else logging.WARNING)

    try:
        config = resolve_config(args)
    except ConfigError as exc:
        log.error("configuration error: %s", exc)
        return 1

    try:
        stream, role = open_source(args)
    except (OSError, ValueError, RelayError) as exc:
        # serial.SerialException is an OSError; bad port settings raise ValueError
        log.error("cannot open input: %s", exc)
        return 1

    signal.signal(signal.SIGTERM, _terminate)
    monitor = None
    publishers: List = []
    try:
        if role.owner:
            publishers = open_publishers(config)
        elif config.relay_requested():
            raise ConfigError("a subscriber cannot relay; only the source owner publishes")
        monitor = BMVMonitor.from_config(stream, config, role, publishers=publishers)
        cycles = monitor.run()
        log.info("end of stream after %d cycles", cycles)
        return 0
    except FrameError as exc:
        log.error("fatal: %s", exc)
        if exc.raw:
            sys.stderr.write(hexdump(exc.raw) + "\n")
        return 1
    except (RelayError, ConfigError) as exc:
        log.error("fatal: %s", exc)
        return 1
    except OSError as exc:
        # an output directory that cannot be created at start-up
        log.error("fatal: %s", exc)
        return 1
    except KeyboardInterrupt:
        return 0
    finally:
        if monitor is not None:
            monitor.close()
        else:
            for publisher in publishers:
                publisher.close()
        stream.close()


if __name__ == "__main__":
    sys.exit(main())
