"""Shared doubles and settings helpers for the test suite."""

import asyncio
from datetime import datetime, timedelta, timezone

from sessionward.config import Settings


TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
CLIENT_ID = "com.example.web"
REDIRECT_URI = "https://app.example.com/auth/callback"

MAC_SAFARI = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Safari/605.1.15"
)
WINDOWS_CHROME = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class MutableClock:
    """Callable clock the tests move forward explicitly."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now = self.now + timedelta(**delta)
        return self.now

    def timestamp(self):
        return self.now.timestamp()


class RecordingAuditSink:
    def __init__(self):
        self.events = []

    def record(self, event):
        self.events.append(event)

    def types(self):
        return [event.type for event in self.events]

    def of_type(self, event_type):
        return [event for event in self.events if event.type == event_type]


class ScriptedExchangeClient:
    """Token exchange double: returns queued claims or raises queued exceptions."""

    def __init__(self):
        self.responses = []
        self.by_code = {}
        self.calls = []
        self.delay = 0.0

    def queue(self, response):
        self.responses.append(response)

    def respond_to(self, code, response):
        self.by_code[code] = response

    async def exchange(self, code, code_verifier):
        self.calls.append((code, code_verifier))
        if self.delay:
            await asyncio.sleep(self.delay)
        if code in self.by_code:
            response = self.by_code.pop(code)
        elif self.responses:
            response = self.responses.pop(0)
        else:
            raise AssertionError("no scripted exchange response queued")
        if isinstance(response, BaseException):
            raise response
        return response


def make_settings(**overrides):
    values = {
        "jwt_secret": TEST_JWT_SECRET,
        "client_id": CLIENT_ID,
        "redirect_uri": REDIRECT_URI,
    }
    values.update(overrides)
    return Settings(**values)

