"""Tests for the SITL mock vehicle's command handling."""

import json

from encoder import encode_calibration, encode_stop, encode_unified
from calibration import CalibrationValues
from mock_esp32 import MockESP32


class TestMockESP32:

    def test_beacon_matches_discovery_format(self):
        from discovery import parse_beacon
        esp = MockESP32("127.0.0.1", mac="AA:BB:CC:DD:EE:FF")
        assert parse_beacon(esp.beacon) == ("127.0.0.1", "AA:BB:CC:DD:EE:FF")

    def test_line_tokens_drive_motors(self):
        esp = MockESP32("127.0.0.1")
        for token in encode_unified(100):
            assert esp.handle_message(token) is None
        assert esp.motor_outputs() == {"A1": 100, "A2": -100, "B1": -100, "B2": -100}

    def test_stop_frame_zeroes_all(self):
        esp = MockESP32("127.0.0.1")
        esp.handle_message("B1_IN1:200")
        for token in encode_stop():
            esp.handle_message(token)
        assert set(esp.lines.values()) == {0}

    def test_line_value_clamped(self):
        esp = MockESP32("127.0.0.1")
        esp.handle_message("A1_IN1:999")
        assert esp.lines["A1_IN1"] == 255

    def test_bad_value_rejected(self):
        esp = MockESP32("127.0.0.1")
        assert esp.handle_message("A1_IN1:fast") == "ERR A1_IN1:fast"
        assert esp.lines["A1_IN1"] == 0

    def test_calibration_stored(self):
        esp = MockESP32("127.0.0.1")
        reply = esp.handle_message(encode_calibration(CalibrationValues()))
        assert reply == "OK calibration"
        assert esp.calibration == json.loads(json.dumps(CalibrationValues().to_dict()))

    def test_bad_calibration(self):
        esp = MockESP32("127.0.0.1")
        assert esp.handle_message("CALIB:{oops") == "ERR calibration"
        assert esp.calibration is None

    def test_greeting_answered(self):
        esp = MockESP32("10.0.0.5")
        assert esp.handle_message("hello") == "ESP32 ready (10.0.0.5)"
        assert esp.commands_received == 1
