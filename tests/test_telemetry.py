import math
import random
from datetime import datetime, timezone

import pytest

from satlink.telemetry import (
    FixedPositionSource,
    RejectReason,
    Rejected,
    TelemetryDecoder,
    TelemetryFrame,
    battery_percentage,
    format_data_line,
    parse_number,
)

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _decoder(**kwargs) -> TelemetryDecoder:
    return TelemetryDecoder(clock=lambda: FIXED_NOW, **kwargs)


def test_decodes_reference_frame():
    decoder = _decoder()

    frame = decoder.decode("$DATA,1,25.5,1013.2,1500.0,45.2,3.85,12.5,-8.3,15.7")

    assert isinstance(frame, TelemetryFrame)
    assert frame.packet_number == 1
    assert frame.wire_sequence == 1
    assert frame.timestamp == FIXED_NOW
    assert frame.temperature == pytest.approx(25.5)
    assert frame.pressure == pytest.approx(1013.2)
    assert frame.altitude == pytest.approx(1500.0)
    assert frame.speed == pytest.approx(45.2)
    assert frame.battery_voltage == pytest.approx(3.85)
    assert (frame.gyro_x, frame.gyro_y, frame.gyro_z) == pytest.approx((12.5, -8.3, 15.7))
    assert frame.battery_percentage == pytest.approx(70.83, abs=0.01)
    assert frame.bad_fields == ()


def test_missing_gps_comes_from_position_source():
    decoder = _decoder(position_source=FixedPositionSource(10.0, 20.0))

    frame = decoder.decode("$DATA,7,20,1000,100,5,4.0,0,0,0")

    assert (frame.latitude, frame.longitude) == (10.0, 20.0)


def test_default_position_is_reference_site():
    frame = _decoder().decode("$DATA,7,20,1000,100,5,4.0,0,0,0")

    assert frame.latitude == pytest.approx(39.9334)
    assert frame.longitude == pytest.approx(32.8597)


def test_position_jitter_stays_within_bounds():
    source = FixedPositionSource(0.0, 0.0, jitter=0.002, rng=random.Random(5))

    for _ in range(50):
        lat, lon = source.current_position()
        assert abs(lat) <= 0.001
        assert abs(lon) <= 0.001


def test_extended_fields_are_decoded():
    line = "$DATA,3,20.0,990.0,120.0,3.0,4.05,0.1,0.2,0.3,41.0151,28.9795,0.01,-0.02,9.81"

    frame = _decoder().decode(line)

    assert (frame.latitude, frame.longitude) == pytest.approx((41.0151, 28.9795))
    assert (frame.accel_x, frame.accel_y, frame.accel_z) == pytest.approx((0.01, -0.02, 9.81))


def test_packet_numbers_come_from_decoder_counter():
    decoder = _decoder()

    first = decoder.decode("$DATA,900,1,1,1,1,4,0,0,0")
    second = decoder.decode("$DATA,17,1,1,1,1,4,0,0,0")

    assert (first.packet_number, second.packet_number) == (1, 2)
    assert (first.wire_sequence, second.wire_sequence) == (900, 17)
    assert decoder.packets_decoded == 2

    decoder.reset_counter()
    assert decoder.decode("$DATA,1,1,1,1,1,4,0,0,0").packet_number == 1


def test_header_is_case_insensitive():
    frame = _decoder().decode("$data,1,25.5,1013.2,1500.0,45.2,3.85,12.5,-8.3,15.7")

    assert isinstance(frame, TelemetryFrame)


def test_unknown_header_is_rejected():
    result = _decoder().decode("$GPS,1,2,3")

    assert isinstance(result, Rejected)
    assert result.reason is RejectReason.UNKNOWN_HEADER
    assert not result.ignorable


def test_short_frame_reports_field_counts():
    result = _decoder().decode("$DATA,1,2,3")

    assert isinstance(result, Rejected)
    assert result.reason is RejectReason.FIELD_COUNT_MISMATCH
    assert result.expected == 9
    assert result.actual == 3


@pytest.mark.parametrize("line", ["", "   ", "# comment", "// firmware note"])
def test_comments_and_blank_lines_are_ignorable(line):
    result = _decoder().decode(line)

    assert isinstance(result, Rejected)
    assert result.ignorable


def test_rejected_lines_do_not_advance_counter():
    decoder = _decoder()
    decoder.decode("$DATA,1,2")
    decoder.decode("noise")

    assert decoder.packets_decoded == 0


def test_bad_numeric_field_becomes_zero_and_is_reported(caplog):
    frame = _decoder().decode("$DATA,1,abc,1013.2,1500.0,45.2,3.85,12.5,-8.3,15.7")

    assert isinstance(frame, TelemetryFrame)
    assert frame.temperature == 0.0
    assert frame.pressure == pytest.approx(1013.2)
    assert frame.bad_fields == ("temperature",)
    assert "temperature" in caplog.text


def test_non_finite_values_are_treated_as_bad():
    frame = _decoder().decode("$DATA,1,nan,inf,1500.0,45.2,3.85,12.5,-8.3,15.7")

    assert frame.temperature == 0.0
    assert frame.pressure == 0.0
    assert set(frame.bad_fields) == {"temperature", "pressure"}


def test_parse_number_accepts_comma_decimal():
    assert parse_number("25,5") == pytest.approx(25.5)
    assert parse_number(" 3.85 ") == pytest.approx(3.85)
    assert parse_number("") is None
    assert parse_number("x1") is None


def test_formatted_line_decodes_to_the_same_values():
    values = (21.37, 1001.26, 812.44, 12.06, 3.917, 0.44, -0.06, 1.2345678)
    line = format_data_line(42, *values)

    frame = _decoder().decode(line)

    assert frame.wire_sequence == 42
    decoded = (
        frame.temperature,
        frame.pressure,
        frame.altitude,
        frame.speed,
        frame.battery_voltage,
        frame.gyro_x,
        frame.gyro_y,
        frame.gyro_z,
    )
    assert decoded == pytest.approx(values)
    assert frame.bad_fields == ()


def test_fixed_point_line_uses_firmware_widths():
    line = format_data_line(
        7, 21.37, 1001.26, 812.44, 12.06, 3.917, 0.44, -0.06, 1.24, fixed_point=True
    )

    assert line == "$DATA,7,21.4,1001.3,812.4,12.1,3.92,0.4,-0.1,1.2"
    assert _decoder().decode(line).battery_voltage == pytest.approx(3.92)


def test_formatted_line_with_position_and_accel():
    line = format_data_line(
        1, 20, 1000, 100, 5, 4.0, 0, 0, 0,
        position=(41.5, 29.25),
        accel=(0.5, -0.25, 9.8),
    )

    frame = _decoder().decode(line)

    assert (frame.latitude, frame.longitude) == pytest.approx((41.5, 29.25))
    assert frame.accel_z == pytest.approx(9.8)


@pytest.mark.parametrize(
    ("voltage", "expected"),
    [(2.5, 0.0), (3.0, 0.0), (3.6, 50.0), (4.2, 100.0), (4.5, 100.0)],
)
def test_battery_percentage_is_clamped(voltage, expected):
    assert battery_percentage(voltage) == pytest.approx(expected)


def test_frame_as_dict_is_json_ready():
    frame = _decoder().decode("$DATA,1,25.5,1013.2,1500.0,45.2,3.85,12.5,-8.3,15.7")

    payload = frame.as_dict()

    assert payload["packetNumber"] == 1
    assert payload["batteryPercentage"] == pytest.approx(70.8)
    assert payload["gyro"] == {"x": 12.5, "y": -8.3, "z": 15.7}
    assert payload["timestamp"].startswith("2024-05-01T12:00:00")
    assert not math.isnan(payload["altitude"])
