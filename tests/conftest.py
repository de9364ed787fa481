import asyncio
import json

import pytest

from evsesim.state_machine import EVSEModel
from evsesim.station import Station


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    subprotocol = "ocpp1.6"

    def __init__(self):
        self.sent = []
        self.closed = False
        self._inbox = asyncio.Queue()

    async def send(self, raw):
        self.sent.append(json.loads(raw))

    async def close(self):
        self.closed = True
        self._inbox.put_nowait(None)

    def push(self, frame):
        """Queue a frame as if the CSMS had sent it."""
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self):
        """Close the connection from the remote side."""
        self._inbox.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        raw = await self._inbox.get()
        if raw is None:
            raise StopAsyncIteration
        return raw

    def calls(self, action):
        return [f for f in self.sent if f[0] == 2 and f[2] == action]


@pytest.fixture
def ws():
    return FakeWebSocket()


@pytest.fixture
def fake_connect(ws):
    urls = []

    async def connect(url, subprotocols=None):
        urls.append((url, subprotocols))
        return ws

    connect.urls = urls
    return connect


@pytest.fixture
def eventually():
    async def wait(predicate, timeout=2.0):
        async def poll():
            while not predicate():
                await asyncio.sleep(0.01)
        await asyncio.wait_for(poll(), timeout)
    return wait


@pytest.fixture
def station(fake_connect):
    model = EVSEModel(connectors=2, soc_pct=20.0)
    return Station(
        model,
        evse_type="ac-tri",
        connector_phases=None,
        ev_voltage=230,
        station_max_w=None,
        base_physical_w=22000,
        power_jitter_w=0,
        period_sec=10,
        heartbeat_sec=60,
        connect=fake_connect,
    )
