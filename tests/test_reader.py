import io

import pytest

from bmv_monitor.parser import RawRecord
from bmv_monitor.reader import (
    BackupReplay,
    CyclePhase,
    CycleTracker,
    FrameError,
    FrameReader,
    hexdump,
)


def read_all(data: bytes):
    return list(FrameReader(io.BytesIO(data)))


def test_preroll_skips_checksum_and_blank_lines():
    assert read_all(b"Checksum\t\x8a\r\n\r\nV\t12358\r\n") == [RawRecord("V", "12358")]


def test_checksum_newline_value_swallows_one_empty_line():
    data = b"V\t1\r\nChecksum\t\n\r\nI\t2\r\n"
    assert [r.key for r in read_all(data)] == ["V", "I"]


def test_checksum_tab_value_is_still_a_boundary():
    data = b"V\t1\r\nChecksum\t\t\r\nI\t2\r\n"
    assert [r.key for r in read_all(data)] == ["V", "I"]


def test_checksum_binary_value_is_never_data():
    data = b"V\t1\r\nChecksum\t\xff\r\nI\t2\r\n"
    assert [r.key for r in read_all(data)] == ["V", "I"]


def test_second_blank_line_after_checksum_counts_as_malformed():
    reader = FrameReader(io.BytesIO(b"V\t1\nChecksum\t\n\n\nI\t2\n"))
    assert reader.next_record().key == "V"
    assert reader.next_record().key == "I"
    assert reader.malformed == 0


def test_blank_line_after_malformed_line_is_not_swallowed():
    reader = FrameReader(io.BytesIO(b"V\t1\nChecksum\t\nbad\n\n\nI\t2\n"))
    assert reader.next_record().key == "V"
    with pytest.raises(FrameError) as excinfo:
        reader.next_record()
    assert excinfo.value.raw == b"\n"


def test_malformed_lines_below_threshold_are_discarded():
    reader = FrameReader(io.BytesIO(b"V\t1\ngarbage\n\tx\nI\t2\n"))
    assert reader.next_record().key == "V"
    assert reader.next_record().key == "I"
    assert reader.malformed == 0


def test_trailing_text_is_malformed():
    reader = FrameReader(io.BytesIO(b"V\t1\nI\t2\textra\nSOC\t995\n"))
    assert [r.key for r in reader] == ["V", "SOC"]


def test_third_consecutive_malformed_line_is_fatal():
    reader = FrameReader(io.BytesIO(b"V\t1\nbad1\nbad2\nbad3\nI\t2\n"))
    assert reader.next_record().key == "V"
    with pytest.raises(FrameError) as excinfo:
        reader.next_record()
    assert excinfo.value.raw == b"bad3\n"
    assert reader.malformed == 3


def test_good_line_resets_the_malformed_counter():
    data = b"V\t1\nbad\nbad\nI\t2\nbad\nbad\nSOC\t3\n"
    assert [r.key for r in read_all(data)] == ["V", "I", "SOC"]


def test_end_of_stream_returns_none():
    reader = FrameReader(io.BytesIO(b""))
    assert reader.next_record() is None


class BrokenStream:
    def readline(self):
        raise OSError("device unplugged")


def test_read_failure_is_fatal():
    with pytest.raises(FrameError, match="device unplugged"):
        FrameReader(BrokenStream()).next_record()


def test_cycle_closes_when_sentinel_key_repeats():
    tracker = CycleTracker()
    results = [tracker.observe(k) for k in ["V", "I", "P", "V", "I", "V"]]
    assert results == [False, False, False, True, False, True]
    assert tracker.sentinel == "V"


def test_cycle_detection_ignores_order_and_subsets():
    tracker = CycleTracker()
    results = [tracker.observe(k) for k in ["A", "B", "C", "C", "B", "A", "C", "A"]]
    assert results == [False, False, False, False, False, True, False, True]


def test_first_key_cannot_close_a_cycle():
    tracker = CycleTracker()
    assert tracker.observe("V") is False
    assert tracker.phase is CyclePhase.ACCUMULATING
    assert tracker.observe("V") is True
    assert tracker.phase is CyclePhase.BOUNDARY_CLOSED
    assert tracker.observe("I") is False
    assert tracker.phase is CyclePhase.ACCUMULATING


def test_backup_replay_strips_timestamp_column():
    data = b"2026-10-19-12:00:00\tV\t12358\n2026-10-19-12:00:00\tI\t-254\n"
    records = list(FrameReader(BackupReplay(io.BytesIO(data))))
    assert records == [RawRecord("V", "12358"), RawRecord("I", "-254")]


def test_hexdump_shows_offsets_bytes_and_text():
    dump = hexdump(b"bad3\n")
    assert dump.startswith("0000  62 61 64 33 0a")
    assert dump.endswith("|bad3.|")
    assert len(hexdump(bytes(range(40))).splitlines()) == 3
