import pytest

from sessionward.service.devices import (
    detect_device_type,
    extract_device_name,
    normalize_fingerprint,
)
from tests.support import MAC_SAFARI, WINDOWS_CHROME

IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
IPAD = (
    "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
PIXEL = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36"
)
LINUX_FIREFOX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"
WINDOWS_EDGE = WINDOWS_CHROME + " Edg/120.0.0.0"


class TestFingerprint:
    @pytest.mark.parametrize(
        "user_agent, fingerprint",
        [
            (MAC_SAFARI, "macos-safari"),
            (WINDOWS_CHROME, "windows-chrome"),
            (WINDOWS_EDGE, "windows-edge"),
            (IPHONE, "ios-safari"),
            (PIXEL, "android-chrome"),
            (LINUX_FIREFOX, "linux-firefox"),
            ("curl/8.4.0", "curl/8.4.0"),
            ("  Custom   Agent ", "custom agent"),
            (None, ""),
            ("", ""),
        ],
    )
    def test_normalize_fingerprint(self, user_agent, fingerprint):
        assert normalize_fingerprint(user_agent) == fingerprint

    def test_version_bump_keeps_fingerprint(self):
        upgraded = WINDOWS_CHROME.replace("Chrome/120.0.0.0", "Chrome/121.0.6167.85")

        assert normalize_fingerprint(upgraded) == normalize_fingerprint(WINDOWS_CHROME)


class TestDeviceLabels:
    @pytest.mark.parametrize(
        "user_agent, device_type",
        [
            (IPHONE, "mobile"),
            (PIXEL, "mobile"),
            (IPAD, "tablet"),
            (MAC_SAFARI, "desktop"),
            (LINUX_FIREFOX, "desktop"),
            ("curl/8.4.0", "unknown"),
            (None, "unknown"),
        ],
    )
    def test_detect_device_type(self, user_agent, device_type):
        assert detect_device_type(user_agent) == device_type

    @pytest.mark.parametrize(
        "user_agent, name",
        [
            (IPHONE, "iPhone"),
            (IPAD, "iPad"),
            (PIXEL, "Pixel 8"),
            (MAC_SAFARI, "Safari on macOS"),
            (WINDOWS_CHROME, "Chrome on Windows"),
            (WINDOWS_EDGE, "Edge on Windows"),
            (LINUX_FIREFOX, "Firefox on Linux"),
            ("curl/8.4.0", "Unknown Device"),
            (None, "Unknown Device"),
        ],
    )
    def test_extract_device_name(self, user_agent, name):
        assert extract_device_name(user_agent) == name
