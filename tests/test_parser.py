import logging

import pytest

from bmv_monitor.catalog import FIELDS, UnitKind, product_name
from bmv_monitor.parser import (
    FieldDecoder,
    Measurement,
    RawRecord,
    alarm_reasons,
    display_value,
    format_fixed,
    parse_fixed,
    split_line,
    split_time,
    to_fahrenheit,
)


def test_split_line_strips_terminators_and_keeps_trailing_text():
    assert split_line("V\t12358\r\n") == RawRecord("V", "12358", "")
    record = split_line("V\t12358\tjunk\n")
    assert record.extra == "junk"
    assert record.malformed


@pytest.mark.parametrize("line", ["\n", "V\n", "\t12358\n", "V\t\n"])
def test_split_line_flags_incomplete_records(line):
    assert split_line(line).malformed


def test_format_fixed_keeps_sign_on_whole_part_only():
    assert format_fixed(12358, 1000, 3) == "12.358"
    assert format_fixed(-254, 1000, 3) == "-0.254"
    assert format_fixed(-3138, 1000, 3) == "-3.138"
    assert format_fixed(995, 10, 2) == "99.50"
    assert format_fixed(1000, 10, 2) == "100.00"
    assert format_fixed(-313, 100, 2) == "-3.13"
    assert format_fixed(7, 100, 2) == "0.07"


@pytest.mark.parametrize("kind", [UnitKind.VOLTAGE, UnitKind.PERMILLE, UnitKind.ENERGY])
@pytest.mark.parametrize("raw", [0, 5, -5, 999, -1001, 123456])
def test_scaled_text_parses_back_to_raw(kind, raw):
    key = {UnitKind.VOLTAGE: "V", UnitKind.PERMILLE: "SOC", UnitKind.ENERGY: "H17"}[kind]
    scale = {UnitKind.VOLTAGE: 1000, UnitKind.PERMILLE: 10, UnitKind.ENERGY: 100}[kind]
    (m,) = FieldDecoder().decode(RawRecord(key, str(raw)))
    assert parse_fixed(m.scaled, scale) == raw


def test_split_time_seconds_and_minutes():
    assert split_time(90061, "s") == "1d 1h 1m 1s"
    assert split_time(59, "s") == "0h 0m 59s"
    assert split_time(90, "min") == "1h 30m"
    assert split_time(1440, "min") == "1d 0h 0m"
    assert split_time(0, "min") == "0h 0m"


def test_split_time_negative_is_infinite():
    assert split_time(-1, "min") == "infinite"
    assert split_time(-1, "s") == "infinite"


def test_alarm_reasons_follow_bit_order():
    assert alarm_reasons(5) == "lowV,low%"
    assert alarm_reasons(0) == ""
    assert alarm_reasons(1 << 11) == "highVac"


def test_alarm_decodes_text_only_when_nonzero():
    decoder = FieldDecoder()
    out = decoder.decode(RawRecord("AR", "5"))
    assert [m.key for m in out] == ["AR", "ARtext"]
    assert out[1].scaled == "lowV,low%"
    assert out[0].plot_value == "5"
    assert [m.key for m in decoder.decode(RawRecord("AR", "0"))] == ["AR"]


def test_product_codes_map_to_names():
    decoder = FieldDecoder()
    (m,) = decoder.decode(RawRecord("PID", "0x203"))
    assert m.raw == "0x203"
    assert m.scaled == "BMV-70X"
    assert product_name(0xA053) == "BlueSolar MPPT"
    assert product_name(0xA2AA) == "Phoenix Inverter"
    assert product_name(0xFFFF) == "Unknown product"
    (bad,) = decoder.decode(RawRecord("PID", "zz"))
    assert bad.scaled == "Unknown product"


def test_duration_fields_render_through_split_time():
    decoder = FieldDecoder()
    (ttg,) = decoder.decode(RawRecord("TTG", "-1"))
    assert ttg.scaled == "infinite"
    assert ttg.plot_value == "-1"
    (h9,) = decoder.decode(RawRecord("H9", "90061"))
    assert h9.scaled == "1d 1h 1m 1s"


def test_ignored_fields_produce_nothing():
    decoder = FieldDecoder()
    assert decoder.decode(RawRecord("BMV", "700")) == []
    assert decoder.decode(RawRecord("Checksum", "x")) == []


def test_unknown_key_warns_once(caplog):
    decoder = FieldDecoder()
    with caplog.at_level(logging.DEBUG, logger="bmv_monitor"):
        assert decoder.decode(RawRecord("XYZ", "1")) == []
        assert decoder.decode(RawRecord("XYZ", "2")) == []
    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert "XYZ" in warnings[0].getMessage()


def test_non_numeric_value_is_skipped(caplog):
    assert FieldDecoder().decode(RawRecord("V", "abc")) == []
    assert any("cannot decode" in r.getMessage() for r in caplog.records)


def test_temperature_converts_only_for_display():
    (m,) = FieldDecoder().decode(RawRecord("T", "25"))
    assert m.scaled == "25"
    assert display_value(m) == "25 °C"
    assert display_value(m, fahrenheit=True) == "77 °F"
    assert m.raw == 25


def test_fahrenheit_truncates_after_adding_offset():
    assert to_fahrenheit(-7) == 19
    assert to_fahrenheit(-1) == 30
    assert to_fahrenheit(-3) == 26
    assert to_fahrenheit(-20) == -4
    assert to_fahrenheit(-40) == -40
    assert to_fahrenheit(37) == 98


def test_display_value_appends_unit():
    m = Measurement("V", 12358, UnitKind.VOLTAGE, "12.358", "V")
    assert display_value(m) == "12.358 V"


def test_catalog_has_one_spec_per_key():
    assert all(spec.key == key for key, spec in FIELDS.items())
    assert FIELDS["Pc"].synthesized
    assert not FIELDS["V"].synthesized
