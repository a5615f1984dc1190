from __future__ import annotations

import re
from typing import Optional

_ANDROID_MODEL = re.compile(r"Android[^;]*;\s*([^)]+)\)")
_WHITESPACE = re.compile(r"\s+")


def _os_family(ua: str) -> Optional[str]:
    if "windows" in ua:
        return "windows"
    if "iphone" in ua or "ipad" in ua:
        return "ios"
    if "android" in ua:
        return "android"
    if "mac os" in ua or "macintosh" in ua:
        return "macos"
    if "linux" in ua:
        return "linux"
    return None


def _browser_family(ua: str) -> Optional[str]:
    if "firefox" in ua:
        return "firefox"
    if "edg" in ua:
        return "edge"
    if "chrome" in ua or "crios" in ua:
        return "chrome"
    if "safari" in ua:
        return "safari"
    return None


def normalize_fingerprint(user_agent: Optional[str]) -> str:
    """Stable client fingerprint derived from a User-Agent header.

    Recognized agents collapse to "<os>-<browser>" so routine version upgrades
    keep the same fingerprint. Anything else falls back to the lower-cased,
    whitespace-normalized header, and a missing header yields "".
    """
    if not user_agent:
        return ""
    ua = _WHITESPACE.sub(" ", user_agent.strip().lower())
    parts = [part for part in (_os_family(ua), _browser_family(ua)) if part]
    if parts:
        return "-".join(parts)
    return ua[:256]


def detect_device_type(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "unknown"
    ua = user_agent.lower()
    if (
        "iphone" in ua
        or ("android" in ua and "mobile" in ua)
        or "windows phone" in ua
        or "blackberry" in ua
    ):
        return "mobile"
    if "ipad" in ua or ("android" in ua and "mobile" not in ua) or "tablet" in ua:
        return "tablet"
    if "windows" in ua or "macintosh" in ua or ("linux" in ua and "android" not in ua):
        return "desktop"
    return "unknown"


def extract_device_name(user_agent: Optional[str]) -> str:
    """Friendly label for session lists, e.g. "Chrome on macOS"."""
    if not user_agent:
        return "Unknown Device"
    ua = user_agent
    if "iPhone" in ua:
        return "iPhone"
    if "iPad" in ua:
        return "iPad"
    match = _ANDROID_MODEL.search(ua)
    if match:
        model = match.group(1).split(" Build")[0].strip()
        return model or "Android Device"

    def _on(browser: str, fallback: str) -> str:
        if "Mac OS" in ua:
            return f"{browser} on macOS"
        if "Windows" in ua:
            return f"{browser} on Windows"
        if "Linux" in ua:
            return f"{browser} on Linux"
        return fallback

    if "Edg" in ua:
        return _on("Edge", "Microsoft Edge")
    if "Chrome" in ua:
        return _on("Chrome", "Chrome")
    if "Firefox" in ua:
        return _on("Firefox", "Firefox")
    if "Safari" in ua:
        return "Safari on macOS"
    return "Unknown Device"
