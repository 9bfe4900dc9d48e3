"""Device access over adb: screenshots and input for the task loop."""

import logging
import struct
import subprocess
import time

from device_orchestrator.core.actions import ActionResult, ParsedAction
from device_orchestrator.core.protocols import Screenshot
from device_orchestrator.core.states import MAIN_SURFACE

logger = logging.getLogger(__name__)

# Common display names the model uses for apps; anything else is treated
# as a package name.
APP_PACKAGES = {
    "Settings": "com.android.settings",
    "Chrome": "com.android.chrome",
    "Gmail": "com.google.android.gm",
    "Maps": "com.google.android.apps.maps",
    "YouTube": "com.google.android.youtube",
    "Camera": "com.android.camera",
    "Clock": "com.google.android.deskclock",
    "Calendar": "com.google.android.calendar",
    "WeChat": "com.tencent.mm",
    "微信": "com.tencent.mm",
    "淘宝": "com.taobao.taobao",
    "美团": "com.sankuai.meituan",
}

RELATIVE_SCALE = 1000


class AdbError(Exception):
    """Raised when an adb command fails."""


def run_adb(
    args: list[str],
    serial: str | None = None,
    binary: bool = False,
    timeout: float = 30,
) -> str | bytes:
    """Run an adb command and return stdout. Raises AdbError on failure."""
    cmd = ["adb"]
    if serial:
        cmd += ["-s", serial]
    cmd += args
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=not binary,
            check=True,
            timeout=timeout,
        )
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode(errors="replace") if isinstance(e.stderr, bytes) else e.stderr
        raise AdbError(f"adb {' '.join(args)} failed: {(stderr or '').strip()}") from e
    except subprocess.TimeoutExpired as e:
        raise AdbError(f"adb {' '.join(args)} timed out") from e
    except FileNotFoundError as e:
        raise AdbError("adb executable not found") from e
    return result.stdout if binary else result.stdout.strip()


def png_size(data: bytes) -> tuple[int, int]:
    """Read width and height from a PNG header."""
    if len(data) < 24 or data[:8] != b"\x89PNG\r\n\x1a\n":
        raise AdbError("Screenshot is not a PNG image")
    return struct.unpack(">II", data[16:24])


def to_pixels(point: list[int], width: int, height: int) -> tuple[int, int]:
    """Convert relative 0-999 coordinates to pixels."""
    x, y = point[0], point[1]
    return int(x / RELATIVE_SCALE * width), int(y / RELATIVE_SCALE * height)


def parse_duration(value: str | None) -> float:
    """Parse ``"2 seconds"`` style durations; defaults to one second."""
    if not value:
        return 1.0
    try:
        return float(value.replace("seconds", "").replace("second", "").strip())
    except ValueError:
        return 1.0


def _escape_text(text: str) -> str:
    escaped = text.replace("\\", "\\\\")
    for ch in "\"'`$&|;<>()":
        escaped = escaped.replace(ch, f"\\{ch}")
    return escaped.replace(" ", "%s")


class AdbDevice:
    """Perception and actuator for one device.

    Surface ids other than 0 are passed through as Android display ids, so
    a task bound to a secondary display is captured and driven there.
    """

    def __init__(self, serial: str | None = None, sleep=time.sleep):
        self.serial = serial
        self._sleep = sleep

    def _adb(self, args: list[str], binary: bool = False):
        return run_adb(args, serial=self.serial, binary=binary)

    def _input(self, surface_id: int, *args: str):
        cmd = ["shell", "input"]
        if surface_id != MAIN_SURFACE:
            cmd += ["-d", str(surface_id)]
        self._adb(cmd + list(args))

    # ── Perception ───────────────────────────────────────────────────────

    def capture(self, surface_id: int) -> Screenshot | None:
        cmd = ["exec-out", "screencap", "-p"]
        if surface_id != MAIN_SURFACE:
            cmd += ["-d", str(surface_id)]
        try:
            data = self._adb(cmd, binary=True)
            width, height = png_size(data)
        except AdbError as e:
            logger.warning("Screenshot of surface %s failed: %s", surface_id, e)
            return None
        return Screenshot(image=data, width=width, height=height)

    # ── Actuator ─────────────────────────────────────────────────────────

    def dispatch(self, action: ParsedAction, surface_id: int, width: int, height: int) -> ActionResult:
        if action.is_finish:
            return ActionResult(True, True, action.get_string("message"))
        if not action.is_do:
            return ActionResult(False, True, f"Unknown action type: {action.metadata}")

        kind = action.action_type
        try:
            if kind == "Launch":
                return self._launch(action, surface_id)
            if kind in ("Tap", "Double Tap", "Long Press"):
                return self._press(kind, action, surface_id, width, height)
            if kind in ("Type", "Type_Name"):
                self._input(surface_id, "text", _escape_text(action.get_string("text") or ""))
                return ActionResult(True)
            if kind == "Swipe":
                return self._swipe(action, surface_id, width, height)
            if kind == "Back":
                self._input(surface_id, "keyevent", "KEYCODE_BACK")
                return ActionResult(True)
            if kind == "Home":
                self._input(surface_id, "keyevent", "KEYCODE_HOME")
                return ActionResult(True)
            if kind == "Wait":
                self._sleep(parse_duration(action.get_string("duration")))
                return ActionResult(True)
            if kind in ("Note", "Call_API"):
                return ActionResult(True)
            if kind == "Interact":
                return ActionResult(True, False, "User interaction required")
        except AdbError as e:
            return ActionResult(False, False, str(e))
        return ActionResult(False, False, f"Unknown action: {kind}")

    def _launch(self, action: ParsedAction, surface_id: int) -> ActionResult:
        app = action.get_string("app")
        if not app:
            return ActionResult(False, False, "No app name specified")
        package = APP_PACKAGES.get(app, app)
        cmd = ["shell", "am", "start"]
        if surface_id != MAIN_SURFACE:
            cmd += ["--display", str(surface_id)]
        cmd += [
            "-a", "android.intent.action.MAIN",
            "-c", "android.intent.category.LAUNCHER",
            "-p", package,
        ]
        try:
            self._adb(cmd)
        except AdbError:
            return ActionResult(False, False, f"App not found: {app}")
        return ActionResult(True)

    def _press(self, kind: str, action: ParsedAction, surface_id: int, width: int, height: int) -> ActionResult:
        element = action.get_int_list("element")
        if not element or len(element) < 2:
            return ActionResult(False, False, "No element coordinates")
        x, y = to_pixels(element, width, height)
        if kind == "Tap":
            self._input(surface_id, "tap", str(x), str(y))
        elif kind == "Double Tap":
            self._input(surface_id, "tap", str(x), str(y))
            self._sleep(0.1)
            self._input(surface_id, "tap", str(x), str(y))
        else:
            self._input(surface_id, "swipe", str(x), str(y), str(x), str(y), "3000")
        return ActionResult(True)

    def _swipe(self, action: ParsedAction, surface_id: int, width: int, height: int) -> ActionResult:
        start = action.get_int_list("start")
        end = action.get_int_list("end")
        if not start or len(start) < 2:
            return ActionResult(False, False, "Missing start coordinates")
        if not end or len(end) < 2:
            return ActionResult(False, False, "Missing end coordinates")
        x1, y1 = to_pixels(start, width, height)
        x2, y2 = to_pixels(end, width, height)
        # Longer swipes get more time, clamped to 1-2 s.
        dist_sq = (x2 - x1) ** 2 + (y2 - y1) ** 2
        duration = max(1000, min(2000, dist_sq // 1000))
        self._input(surface_id, "swipe", str(x1), str(y1), str(x2), str(y2), str(duration))
        return ActionResult(True)
