"""Tests for the adb device adapter."""

import struct
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from device_orchestrator.core.actions import parse_action
from device_orchestrator.integrations import adb
from device_orchestrator.integrations.adb import AdbDevice, AdbError


def _png(width=1080, height=2400):
    return b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\rIHDR" + struct.pack(">II", width, height) + b"rest"


def _ok(stdout=""):
    return MagicMock(stdout=stdout, returncode=0)


def _commands(mock_run):
    return [c.args[0] for c in mock_run.call_args_list]


class TestHelpers:
    def test_png_size(self):
        assert adb.png_size(_png(720, 1600)) == (720, 1600)

    def test_png_size_rejects_other_data(self):
        with pytest.raises(AdbError):
            adb.png_size(b"not an image at all, really not")

    def test_to_pixels(self):
        assert adb.to_pixels([500, 250], 1080, 2400) == (540, 600)

    def test_parse_duration(self):
        assert adb.parse_duration("2 seconds") == 2.0
        assert adb.parse_duration("1 second") == 1.0
        assert adb.parse_duration(None) == 1.0
        assert adb.parse_duration("soon") == 1.0

    def test_escape_text(self):
        assert adb._escape_text("hi there & bye") == "hi%sthere%s\\&%sbye"


class TestRunAdb:
    @patch("device_orchestrator.integrations.adb.subprocess.run")
    def test_serial_is_passed(self, mock_run):
        mock_run.return_value = _ok(" output \n")
        assert adb.run_adb(["devices"], serial="emulator-5554") == "output"
        assert mock_run.call_args.args[0] == ["adb", "-s", "emulator-5554", "devices"]

    @patch("device_orchestrator.integrations.adb.subprocess.run")
    def test_failure_raises(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(1, ["adb"], stderr="device offline")
        with pytest.raises(AdbError, match="device offline"):
            adb.run_adb(["shell", "input", "tap", "1", "2"])

    @patch("device_orchestrator.integrations.adb.subprocess.run")
    def test_timeout_raises(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(["adb"], 30)
        with pytest.raises(AdbError, match="timed out"):
            adb.run_adb(["devices"])

    @patch("device_orchestrator.integrations.adb.subprocess.run")
    def test_missing_binary(self, mock_run):
        mock_run.side_effect = FileNotFoundError()
        with pytest.raises(AdbError, match="not found"):
            adb.run_adb(["devices"])


class TestCapture:
    @patch("device_orchestrator.integrations.adb.subprocess.run")
    def test_main_display(self, mock_run):
        mock_run.return_value = _ok(_png())
        shot = AdbDevice().capture(0)
        assert (shot.width, shot.height) == (1080, 2400)
        assert mock_run.call_args.args[0] == ["adb", "exec-out", "screencap", "-p"]

    @patch("device_orchestrator.integrations.adb.subprocess.run")
    def test_secondary_display(self, mock_run):
        mock_run.return_value = _ok(_png())
        AdbDevice("abc").capture(4)
        assert mock_run.call_args.args[0] == ["adb", "-s", "abc", "exec-out", "screencap", "-p", "-d", "4"]

    @patch("device_orchestrator.integrations.adb.subprocess.run")
    def test_failure_returns_none(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(1, ["adb"], stderr=b"no device")
        assert AdbDevice().capture(0) is None


class TestDispatch:
    def _dispatch(self, text, surface_id=0, sleep=None):
        device = AdbDevice(sleep=sleep or (lambda s: None))
        return device.dispatch(parse_action(text), surface_id, 1000, 2000)

    @patch("device_orchestrator.integrations.adb.subprocess.run")
    def test_tap(self, mock_run):
        mock_run.return_value = _ok()
        result = self._dispatch('do(action="Tap", element=[500, 100])')
        assert result.success
        assert _commands(mock_run) == [["adb", "shell", "input", "tap", "500", "200"]]

    @patch("device_orchestrator.integrations.adb.subprocess.run")
    def test_tap_on_secondary_display(self, mock_run):
        mock_run.return_value = _ok()
        self._dispatch('do(action="Tap", element=[500, 100])', surface_id=3)
        assert _commands(mock_run) == [["adb", "shell", "input", "-d", "3", "tap", "500", "200"]]

    @patch("device_orchestrator.integrations.adb.subprocess.run")
    def test_double_tap(self, mock_run):
        mock_run.return_value = _ok()
        self._dispatch('do(action="Double Tap", element=[10, 10])')
        assert len(mock_run.call_args_list) == 2

    @patch("device_orchestrator.integrations.adb.subprocess.run")
    def test_long_press(self, mock_run):
        mock_run.return_value = _ok()
        self._dispatch('do(action="Long Press", element=[10, 10])')
        assert _commands(mock_run)[0][-1] == "3000"

    def test_tap_without_coordinates(self):
        result = self._dispatch('do(action="Tap")')
        assert not result.success
        assert not result.should_finish

    @patch("device_orchestrator.integrations.adb.subprocess.run")
    def test_launch_known_app(self, mock_run):
        mock_run.return_value = _ok()
        assert self._dispatch('do(action="Launch", app="Settings")', surface_id=2).success
        cmd = _commands(mock_run)[0]
        assert cmd[:6] == ["adb", "shell", "am", "start", "--display", "2"]
        assert cmd[-1] == "com.android.settings"

    @patch("device_orchestrator.integrations.adb.subprocess.run")
    def test_launch_missing_app(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(1, ["adb"], stderr="")
        result = self._dispatch('do(action="Launch", app="com.nope")')
        assert not result.success
        assert result.message == "App not found: com.nope"

    @patch("device_orchestrator.integrations.adb.subprocess.run")
    def test_type(self, mock_run):
        mock_run.return_value = _ok()
        self._dispatch('do(action="Type", text="hello world")')
        assert _commands(mock_run) == [["adb", "shell", "input", "text", "hello%sworld"]]

    @patch("device_orchestrator.integrations.adb.subprocess.run")
    def test_swipe_duration_clamped(self, mock_run):
        mock_run.return_value = _ok()
        self._dispatch('do(action="Swipe", start=[500, 800], end=[500, 200])')
        cmd = _commands(mock_run)[0]
        assert cmd[4:8] == ["500", "1600", "500", "400"]
        assert 1000 <= int(cmd[-1]) <= 2000

    def test_swipe_missing_end(self):
        result = self._dispatch('do(action="Swipe", start=[1, 1])')
        assert result.message == "Missing end coordinates"

    @patch("device_orchestrator.integrations.adb.subprocess.run")
    def test_back_and_home(self, mock_run):
        mock_run.return_value = _ok()
        self._dispatch('do(action="Back")')
        self._dispatch('do(action="Home")')
        assert [c[-1] for c in _commands(mock_run)] == ["KEYCODE_BACK", "KEYCODE_HOME"]

    def test_wait_sleeps(self):
        slept = []
        assert self._dispatch('do(action="Wait", duration="3 seconds")', sleep=slept.append).success
        assert slept == [3.0]

    def test_note_is_noop(self):
        assert self._dispatch('do(action="Note", message="price is 20")').success

    def test_unknown_action(self):
        result = self._dispatch('do(action="Teleport")')
        assert not result.success
        assert "Unknown action" in result.message

    def test_finish(self):
        result = self._dispatch('finish(message="ok")')
        assert result.should_finish
        assert result.message == "ok"

    @patch("device_orchestrator.integrations.adb.subprocess.run")
    def test_adb_failure_is_unsuccessful_step(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(1, ["adb"], stderr="offline")
        result = self._dispatch('do(action="Back")')
        assert not result.success
        assert not result.should_finish
