"""
Shared test doubles and scenario data.
"""

import json
from datetime import datetime, timedelta

from redis.exceptions import ConnectionError as RedisConnectionError

from necromancer.app.core.jwt import issue_token

# Request R of the dispatch scenario and two drivers north of it
REQUEST_COORDS = (-75.0, 40.0)
DRIVER_A_COORDS = (-75.0, 40.0044966)  # ~0.5 km
DRIVER_B_COORDS = (-75.0, 40.017986)  # ~2 km
FAR_COORDS = (-75.0, 40.2)  # ~22 km, outside the default radius
ROADSIDE = "Roadside Assistance"
FLATBED = "Flatbed Towing"


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.published = []
        self.fail_publish = False
        self.publish_calls = 0
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def publish(self, channel, message):
        self.publish_calls += 1
        if self.fail_publish:
            raise RedisConnectionError("Redis unavailable")
        self.published.append((channel, message))
        return 1

    def messages(self, channel):
        """Decoded payloads published on one channel, oldest first."""
        return [json.loads(data) for name, data in self.published if name == channel]

    def message_types(self, channel):
        return [message.get("type") or message.get("event") for message in self.messages(channel)]

    async def aclose(self):
        self._closed = True


def auth_headers(user_id: int, role: str) -> dict:
    token = issue_token(user_id, role)
    return {"Authorization": f"Bearer {token}"}
