# BMV Monitor - Subscriber Relay
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Publishes decoded key/value pairs from the process that owns the device
# to any number of subscribers, over a pipe, a TCP/Unix socket or an MQTT
# broker, and opens the subscriber side of a socket relay.
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

"""bmv_monitor.relay

Publish capability
- Every publisher offers `publish(key, value)` and `close()`; the core
  never looks past that.
- StreamPublisher: writes `KEY<tab>VALUE\\n` to a binary stream (stdout
  into a pipe or an ssh tunnel).
- LineRelayServer: listens on `host:port` or a Unix socket path and fans
  every line out to all connected subscribers. Accepting runs on a
  background thread; publishing runs on the caller's thread and may block
  for up to `send_timeout` on a stalled subscriber, which is then dropped.
  `close()` removes the Unix socket path so a new instance can bind it.
- MqttPublisher: one retained topic per key, `<topic>/<key>`, plus an
  online/offline availability topic backed by a last-will message.

Subscribe capability
- open_subscription(address): connect to a LineRelayServer and return a
  binary stream that FrameReader can read like a serial port.
"""
from __future__ import annotations

import logging
import os
import socket
import threading
from typing import BinaryIO, List, Optional, Tuple, Union

import paho.mqtt.client as mqtt

log = logging.getLogger(__name__)

Address = Union[str, Tuple[str, int]]


class RelayError(RuntimeError):
    """The relay resource could not be acquired or the relay broke."""


def format_line(key: str, value: str) -> bytes:
    return f"{key}\t{value}\n".encode("latin-1")


def parse_address(address: str) -> Tuple[int, Address]:
    """Map `host:port` to AF_INET and anything else to a Unix socket path."""
    host, sep, port = address.rpartition(":")
    if sep and port.isdigit() and "/" not in address:
        return socket.AF_INET, (host or "127.0.0.1", int(port))
    return socket.AF_UNIX, address


class StreamPublisher:
    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    def publish(self, key: str, value: str) -> None:
        try:
            self._stream.write(format_line(key, value))
            self._stream.flush()
        except OSError as exc:
            raise RelayError(f"relay stream closed: {exc}") from exc

    def close(self) -> None:
        try:
            self._stream.flush()
        except (OSError, ValueError):
            # already closed by the reading side
            pass


class LineRelayServer:
    """Fan decoded lines out to socket subscribers."""

    def __init__(self, address: str, send_timeout: float = 10.0, backlog: int = 5) -> None:
        self.address = address
        self.send_timeout = send_timeout
        self.backlog = backlog
        self._family, self._bind_addr = parse_address(address)
        self._sock: Optional[socket.socket] = None
        self._subscribers: List[socket.socket] = []
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._bound = False

    def start(self) -> None:
        sock = socket.socket(self._family, socket.SOCK_STREAM)
        try:
            if self._family == socket.AF_INET:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(self._bind_addr)
            self._bound = True
            sock.listen(self.backlog)
        except OSError as exc:
            sock.close()
            raise RelayError(f"cannot listen on {self.address}: {exc}") from exc
        # short timeout so the accept loop notices close()
        sock.settimeout(0.5)
        self._sock = sock
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._accept_loop, daemon=True, name="relay-accept")
        self._thread.start()
        log.debug("relay listening on %s", self.address)

    def _accept_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                conn, peer = self._sock.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if not self._stop_event.is_set():
                    log.warning("relay accept failed: %s", exc)
                break
            conn.settimeout(self.send_timeout)
            with self._lock:
                self._subscribers.append(conn)
            log.info("subscriber connected: %s", peer or "local")

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, key: str, value: str) -> None:
        data = format_line(key, value)
        with self._lock:
            for conn in list(self._subscribers):
                try:
                    conn.sendall(data)
                except OSError as exc:
                    log.info("dropping subscriber: %s", exc)
                    self._subscribers.remove(conn)
                    conn.close()

    def close(self) -> None:
        self._stop_event.set()
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        with self._lock:
            for conn in self._subscribers:
                conn.close()
            self._subscribers.clear()
        # only remove a socket path this instance bound itself
        if self._bound and self._family == socket.AF_UNIX and os.path.exists(self._bind_addr):
            os.unlink(self._bind_addr)
        self._bound = False
        log.debug("relay on %s closed", self.address)


class MqttPublisher:
    """Publish every field to `<topic>/<key>` on an MQTT broker."""

    def __init__(self, host: str, port: int = 1883, topic: str = "bmv",
                 username: Optional[str] = None, password: Optional[str] = None,
                 client_id: str = "bmv_monitor") -> None:
        self.host = host
        self.port = port
        self.topic = topic.rstrip("/")
        self.username = username
        self.password = password
        self.availability_topic = f"{self.topic}/availability"
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)
        self.client.on_connect = self.on_connect
        self.client.on_disconnect = self.on_disconnect
        self.client.will_set(self.availability_topic, "offline", qos=1, retain=True)

    def on_connect(self, client, userdata, connect_flags, reason_code, properties):
        if reason_code == 0:
            log.info("Connected to MQTT broker at %s:%s", self.host, self.port)
            self.client.publish(self.availability_topic, "online", qos=1, retain=True)
        else:
            log.error("Failed to connect to MQTT broker, return code %s", reason_code)

    def on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        log.info("Disconnected from MQTT broker (code: %s)", reason_code)

    def start(self) -> None:
        if self.username and self.password:
            self.client.username_pw_set(self.username, self.password)
        try:
            self.client.connect(self.host, self.port, keepalive=60)
        except (OSError, ValueError) as exc:
            raise RelayError(f"cannot connect to MQTT broker {self.host}:{self.port}: {exc}") from exc
        self.client.loop_start()

    def publish(self, key: str, value: str) -> None:
        self.client.publish(f"{self.topic}/{key}", value, qos=0, retain=True)

    def close(self) -> None:
        self.client.publish(self.availability_topic, "offline", qos=1, retain=True)
        self.client.loop_stop()
        self.client.disconnect()


def open_subscription(address: str, timeout: float = 10.0) -> BinaryIO:
    """Connect to a LineRelayServer and return its stream for reading."""
    family, addr = parse_address(address)
    try:
        if family == socket.AF_INET:
            sock = socket.create_connection(addr, timeout=timeout)
        else:
            sock = socket.socket(family, socket.SOCK_STREAM)
            sock.settimeout(timeout)
            try:
                sock.connect(addr)
            except OSError:
                sock.close()
                raise
    except OSError as exc:
        raise RelayError(f"cannot subscribe to {address}: {exc}") from exc
    # the owner may idle between cycles; reads block indefinitely
    sock.settimeout(None)
    stream = sock.makefile("rb")
    # the file object keeps the descriptor open until it is closed itself
    sock.close()
    return stream
