"""Shared pytest fixtures: a scripted relay and a local HTTP server."""

import asyncio
import json
import socket
import struct
from typing import Optional

import pytest_asyncio
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from tunnel_client import TunnelClient
from tunnel_common import TunnelConfig

SUSPEND = 'SUSPEND-7f3a'
EOF = '<<EOF-91c2>>'


async def wait_until(predicate, timeout: float = 5.0):
    """Wait for a condition driven by background tasks."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


async def wait_active(client: TunnelClient):
    await wait_until(lambda: client.session is not None and client.session.eof_marker is not None)


def response_for(request: bytes) -> bytes:
    return b'HTTP/1.1 200 OK\r\n\r\n' + request


# ============================================================================
# Relay stand-in
# ============================================================================

class FakeRelay:
    """Greets, acknowledges login and start, and records what the client sends."""

    def __init__(self, primary: bool = True):
        self.primary = primary
        self.login_status = 'ok'
        self.close_after_handshake = False
        self.stop_reading_after_handshake = False  # first connection only

        self.control = []
        self.binary: asyncio.Queue = asyncio.Queue()
        self.connections = 0
        self.handshakes = 0
        self.ws = None
        self.server = None
        self._paused = []

    @property
    def url(self) -> str:
        port = self.server.sockets[0].getsockname()[1]
        return f"ws://127.0.0.1:{port}"

    async def handler(self, ws):
        self.connections += 1
        number = self.connections
        self.ws = ws
        try:
            await ws.send(json.dumps({'type': 'hello'}))
            async for message in ws:
                if isinstance(message, bytes):
                    await self.binary.put(message)
                    continue

                data = json.loads(message)
                self.control.append(data)
                if data['type'] == 'login':
                    await ws.send(json.dumps({
                        'type': 'login', 'status': self.login_status, 'primary': self.primary
                    }))
                elif data['type'] == 'start':
                    await ws.send(json.dumps({'type': 'start', 'suspend': SUSPEND, 'eof': EOF}))
                    self.handshakes += 1
                    if self.close_after_handshake:
                        await ws.close()
                        return
                    if self.stop_reading_after_handshake and number == 1:
                        # Pings pile up unread and are never answered
                        ws.transport.pause_reading()
                        self._paused.append(ws.transport)
        except ConnectionClosed:
            pass

    async def start(self):
        self.server = await serve(self.handler, '127.0.0.1', 0)

    async def stop(self):
        for transport in self._paused:
            transport.abort()
        self.server.close()
        await self.server.wait_closed()


# ============================================================================
# Local HTTP server stand-in
# ============================================================================

class LocalHTTPServer:
    """Answers each connection with one response, then closes it."""

    def __init__(self):
        self.requests = []
        self.connections = 0
        self.reset_connections = set()  # 1-based connection numbers to reset mid-response
        self.terminator: Optional[bytes] = None
        self.first_chunk = asyncio.Event()
        self.hold: Optional[asyncio.Event] = None  # replies wait until set
        self.held = asyncio.Event()
        self.server = None

    @property
    def port(self) -> int:
        return self.server.sockets[0].getsockname()[1]

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.connections += 1
        number = self.connections

        data = await reader.read(65536)
        if not data:
            writer.close()
            return

        if self.terminator:
            self.first_chunk.set()
            while self.terminator not in data:
                chunk = await reader.read(65536)
                if not chunk:
                    break
                data += chunk
        self.requests.append(data)

        if self.hold is not None:
            self.held.set()
            await self.hold.wait()

        if number in self.reset_connections:
            writer.write(b'HTTP/1.1 200 OK\r\npartial')
            await writer.drain()
            sock = writer.get_extra_info('socket')
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack('ii', 1, 0))
            writer.transport.abort()
            return

        writer.write(response_for(data))
        await writer.drain()
        writer.close()
        await writer.wait_closed()

    async def start(self):
        self.server = await asyncio.start_server(self.handle, '127.0.0.1', 0)

    async def stop(self):
        self.server.close()
        await self.server.wait_closed()


@pytest_asyncio.fixture
async def relay():
    relay = FakeRelay()
    await relay.start()
    yield relay
    await relay.stop()


@pytest_asyncio.fixture
async def local_server():
    server = LocalHTTPServer()
    await server.start()
    yield server
    await server.stop()


@pytest_asyncio.fixture
async def make_client(relay, local_server):
    clients = []

    def factory(**overrides) -> TunnelClient:
        options = dict(
            provider=relay.url,
            domain='example.test',
            secret='s3cret',
            device='laptop',
            local_port=local_server.port,
            ping_interval=0,
            reconnect_interval=0,
        )
        options.update(overrides)
        client = TunnelClient(TunnelConfig(**options))
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.close()
