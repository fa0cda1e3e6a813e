"""Shared fixtures: fake pad client, fake pad HTTP API and wired components."""

from collections import defaultdict

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from padctrl.controller import PadController
from padctrl.core import Settings
from padctrl.poller import StatusPoller
from padctrl.store import SessionStore

RUNNING_STATUS = {
    "mode": "manual",
    "belt_state": "running",
    "speed": 25,
    "distance": 1.2,
    "steps": 1500,
    "calories": 80,
    "duration": "12:30",
}


class FakeDeviceClient:
    """In-memory stand-in for DeviceClient.

    get_status() pops scripted results (dicts or exceptions) and falls back to
    ``status``. Every call is recorded in ``calls`` in order.
    """

    def __init__(self, statuses=None):
        self.calls = []
        self.statuses = list(statuses or [])
        self.status = dict(RUNNING_STATUS)
        self.failures = {}

    def script(self, *results):
        self.statuses.extend(results)

    def command_calls(self):
        return [c for c in self.calls if c[0] != "get_status"]

    async def get_status(self):
        self.calls.append(("get_status",))
        item = self.statuses.pop(0) if self.statuses else self.status
        if isinstance(item, BaseException):
            raise item
        return dict(item)

    async def _command(self, name, *args):
        self.calls.append((name, *args))
        error = self.failures.get(name)
        if error is not None:
            raise error
        return {"message": f"{name} ok"}

    async def start(self, km_h):
        result = await self._command("start", km_h)
        self.status.update(belt_state="running", speed=int(round(km_h * 10)))
        return result

    async def stop(self):
        result = await self._command("stop")
        self.status.update(belt_state="idle", speed=0)
        return result

    async def set_speed(self, km_h):
        result = await self._command("set_speed", km_h)
        self.status["speed"] = int(round(km_h * 10))
        return result

    async def set_mode(self, mode):
        result = await self._command("set_mode", mode.value)
        self.status["mode"] = mode.value
        return result

    async def save(self):
        await self._command("save")
        return {"message": "saved", "data": {"steps": 1500, "distance": 1.2, "duration": 750}}

    async def set_preferences(self, **prefs):
        return await self._command("set_preferences", prefs)

    async def calibrate(self):
        return await self._command("calibrate")

    async def get_history(self):
        await self._command("get_history")
        return [{"steps": 1500, "distance": 1.2}]


class FakePadApi:
    """aiohttp application imitating the pad control server under /api."""

    def __init__(self):
        self.requests = []
        self.queued = defaultdict(list)
        self.status = dict(RUNNING_STATUS)
        self.url = ""
        self.app = web.Application()
        self.app.router.add_route("*", "/api/{tail:.*}", self.handle)

    def queue(self, path, status, body=None):
        """Queue a one-off response for path (dict -> JSON, str or bytes -> raw body)."""
        self.queued[path].append((status, body))

    def paths(self):
        return [(method, path) for method, path, _ in self.requests]

    async def handle(self, request):
        path = "/" + request.match_info["tail"]
        self.requests.append((request.method, path, dict(request.query)))

        if self.queued[path]:
            status, body = self.queued[path].pop(0)
            if isinstance(body, bytes):
                return web.Response(status=status, body=body, content_type="application/json")
            if isinstance(body, str):
                return web.Response(status=status, text=body)
            if body is None:
                return web.Response(status=status)
            return web.json_response(body, status=status)

        if path == "/device/status":
            return web.json_response(self.status)
        if path == "/history":
            return web.json_response([])
        return web.json_response({"message": "ok"})


@pytest.fixture
def fast_settings():
    return Settings(
        poll_interval=0.01,
        reconnect_base_delay=0.02,
        reconnect_max_delay=0.05,
        request_retry_delay=0.0,
    )


@pytest.fixture
def store():
    return SessionStore()


@pytest.fixture
def fake_client():
    return FakeDeviceClient()


@pytest_asyncio.fixture
async def poller(fake_client, store, fast_settings):
    p = StatusPoller(fake_client, store, fast_settings)
    yield p
    await p.shutdown()


@pytest.fixture
def controller(fake_client, store, poller, fast_settings):
    return PadController(fake_client, store, poller, fast_settings)


@pytest_asyncio.fixture
async def pad_api():
    api = FakePadApi()
    server = TestServer(api.app)
    await server.start_server()
    api.url = str(server.make_url("/api"))
    yield api
    await server.close()
