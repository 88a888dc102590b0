import io
import socket
import time

import pytest

from bmv_monitor.relay import (
    LineRelayServer,
    MqttPublisher,
    RelayError,
    StreamPublisher,
    open_subscription,
    parse_address,
)


def test_parse_address_tcp_and_unix():
    assert parse_address("127.0.0.1:7070") == (socket.AF_INET, ("127.0.0.1", 7070))
    assert parse_address(":7070") == (socket.AF_INET, ("127.0.0.1", 7070))
    assert parse_address("/run/bmv/relay.sock") == (socket.AF_UNIX, "/run/bmv/relay.sock")


def test_stream_publisher_writes_protocol_lines():
    buf = io.BytesIO()
    publisher = StreamPublisher(buf)
    publisher.publish("V", "12358")
    publisher.publish("TS", "1700000000")
    assert buf.getvalue() == b"V\t12358\nTS\t1700000000\n"


class ClosedPipe:
    def write(self, data):
        raise BrokenPipeError("reader went away")

    def flush(self):
        raise BrokenPipeError("reader went away")


def test_stream_publisher_reports_broken_pipe():
    with pytest.raises(RelayError):
        StreamPublisher(ClosedPipe()).publish("V", "1")


def wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def test_relay_server_fans_out_and_releases_socket_path(tmp_path):
    path = str(tmp_path / "relay.sock")
    server = LineRelayServer(path)
    server.start()
    try:
        first = open_subscription(path)
        second = open_subscription(path)
        assert wait_for(lambda: server.subscriber_count == 2)
        server.publish("V", "12358")
        server.publish("I", "-254")
        for stream in (first, second):
            assert stream.readline() == b"V\t12358\n"
            assert stream.readline() == b"I\t-254\n"
        first.close()
        second.close()
    finally:
        server.close()
    assert not (tmp_path / "relay.sock").exists()


def test_relay_server_drops_disconnected_subscribers(tmp_path):
    path = str(tmp_path / "relay.sock")
    server = LineRelayServer(path)
    server.start()
    try:
        stream = open_subscription(path)
        assert wait_for(lambda: server.subscriber_count == 1)
        stream.close()
        assert wait_for(lambda: _publish_until_dropped(server))
    finally:
        server.close()


def _publish_until_dropped(server):
    server.publish("V", "1")
    return server.subscriber_count == 0


def test_busy_socket_path_is_fatal_and_left_alone(tmp_path):
    path = str(tmp_path / "relay.sock")
    owner = LineRelayServer(path)
    owner.start()
    try:
        intruder = LineRelayServer(path)
        with pytest.raises(RelayError):
            intruder.start()
        intruder.close()
        assert (tmp_path / "relay.sock").exists()
    finally:
        owner.close()


def test_subscribing_without_a_server_fails(tmp_path):
    with pytest.raises(RelayError):
        open_subscription(str(tmp_path / "missing.sock"))


class FakeClient:
    def __init__(self):
        self.published = []

    def publish(self, topic, payload, qos=0, retain=False):
        self.published.append((topic, payload, retain))

    def loop_stop(self):
        pass

    def disconnect(self):
        pass


def test_mqtt_publisher_uses_one_topic_per_key():
    publisher = MqttPublisher("broker.invalid", topic="home/bmv/")
    publisher.client = FakeClient()
    publisher.publish("V", "12358")
    publisher.close()
    assert publisher.client.published == [
        ("home/bmv/V", "12358", True),
        ("home/bmv/availability", "offline", True),
    ]
