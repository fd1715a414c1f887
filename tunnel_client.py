#!/usr/bin/env python3
"""
Self Tunnel Client - expose a local HTTP server through a WebSocket relay

Version: 1.0.0

Protocol:
1. Relay greets with {"type": "hello"}, client answers with "login"
   (domain, secret, device)
2. After the login acknowledgement the client sends "start"; the relay
   answers with this session's suspend and end-of-response markers
3. Binary frames from the relay are raw HTTP requests; each one is written
   to the local server and the raw response, followed by the
   end-of-response marker, is sent back as one binary frame

Features:
- Single-flight forwarding, responses leave in request order
- Ping/pong heartbeat, automatic reconnect
- Pause/resume through the relay's suspend signal
"""

import asyncio
import ssl
import socket
import logging
import argparse
from typing import Awaitable, Callable, Optional, Tuple, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from tunnel_common import (
    ControlMessage, LinkState, MsgType, RequestQueue, Session, TunnelConfig, load_config,
    ECHO_PREFIX, LOCAL_KEEPALIVE_IDLE, LOCAL_READ_SIZE, PING_MIN_INTERVAL,
    PREVIEW_BYTES, PREVIEW_CHARS, RECONNECT_MIN_INTERVAL,
)

logger = logging.getLogger('self-tunnel')


def _preview(data: bytes) -> str:
    return data[:PREVIEW_BYTES].decode('utf-8', errors='replace')


# ============================================================================
# Local Link
# ============================================================================

class LocalLink:
    """Lazy TCP connection to the local application server."""

    def __init__(self, port: int, host: str = '127.0.0.1', debug: bool = False):
        self.host = host
        self.port = port
        self.debug = debug

        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self._connecting: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return (
            self.writer is not None
            and not self.writer.is_closing()
            and not self.reader.at_eof()
        )

    async def ensure_connection(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Reuse the open connection, join a pending attempt or open a new one."""
        if self.is_open:
            return self.reader, self.writer

        if self._connecting is None:
            self._connecting = asyncio.create_task(self._open())
        connecting = self._connecting
        try:
            return await asyncio.shield(connecting)
        finally:
            if connecting.done() and self._connecting is connecting:
                self._connecting = None

    async def _open(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        reader, writer = await asyncio.open_connection(self.host, self.port)

        sock = writer.get_extra_info('socket')
        if sock is not None:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
            if hasattr(socket, 'TCP_KEEPIDLE'):
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, LOCAL_KEEPALIVE_IDLE)

        self.reader, self.writer = reader, writer
        if self.debug:
            logger.debug(f"Connected to local HTTP server {self.host}:{self.port}")
        return reader, writer

    async def write(self, data: bytes):
        """Write into the open connection."""
        self.writer.write(data)
        await self.writer.drain()

    async def exchange(self, request: bytes) -> bytes:
        """
        Send one request and collect the response.

        The response ends when the local server closes its side of the
        connection; the exhausted connection is released afterwards.
        Raises OSError if the connection fails at any point.
        """
        reader, writer = await self.ensure_connection()
        writer.write(request)
        await writer.drain()

        chunks = []
        while True:
            chunk = await reader.read(LOCAL_READ_SIZE)
            if not chunk:
                break
            chunks.append(chunk)

        await self.close()
        return b''.join(chunks)

    def invalidate(self):
        """Drop the cached connection so the next request opens a fresh one."""
        if self.writer is not None:
            self.writer.close()
        self.reader = None
        self.writer = None

    async def close(self):
        writer = self.writer
        self.reader = None
        self.writer = None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Local socket close: {e}")
        if self.debug:
            logger.debug("Local socket closed")


# ============================================================================
# Request Forwarding
# ============================================================================

class RequestForwarder:
    """
    Forwards queued relay requests to the local server one at a time.

    Requests are answered strictly in arrival order. A drain task runs while
    the queue has items and is restarted by the next submit once it stops.
    Each request is bound to the relay session it arrived on; its response is
    only sent while that same session is still current.
    """

    def __init__(
        self,
        local: LocalLink,
        send_response: Callable[[bytes], Awaitable[bool]],
        current_session: Callable[[], Optional[Session]],
        debug: bool = False
    ):
        self.local = local
        self.queue = RequestQueue()
        self._send_response = send_response
        self._current_session = current_session
        self.debug = debug
        self._task: Optional[asyncio.Task] = None
        self.in_flight_session: Optional[Session] = None

    @property
    def processing(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(self, request: bytes):
        self.queue.put((request, self._current_session()))
        if not self.processing:
            self._task = asyncio.create_task(self._drain())

    async def _drain(self):
        while not self.queue.empty():
            request, session = self.queue.get()
            self.in_flight_session = session
            try:
                await self._forward(request, session)
            finally:
                self.in_flight_session = None

    async def _forward(self, request: bytes, session: Optional[Session]):
        if self.debug:
            logger.debug(f"IN: {len(request)} bytes\n{_preview(request)}...")

        try:
            body = await self.local.exchange(request)
        except (OSError, asyncio.IncompleteReadError) as e:
            # Next request gets a fresh connection
            self.local.invalidate()
            logger.error(f"Error processing request: {e}")
            return

        if self._current_session() is not session:
            logger.warning(
                f"Response of {len(body)} bytes dropped, its tunnel session has ended"
            )
            return

        marker = session.eof_marker if session else None
        if marker is None:
            logger.error(
                f"Response of {len(body)} bytes completed before the session "
                f"end-of-response marker was known, dropped"
            )
            return

        response = body + marker
        if not await self._send_response(response):
            logger.warning(f"Response of {len(response)} bytes dropped, tunnel not connected")
            return
        if self.debug:
            logger.debug(f"OUT: {len(response)} bytes\n{_preview(response)}...")

    def clear(self):
        """Forget requests that have not been started."""
        self.queue.clear()

    async def stop(self):
        self.queue.clear()
        if self.processing:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None


# ============================================================================
# Control Protocol
# ============================================================================

class ControlProtocol:
    """Classifies relay messages and drives the login handshake."""

    def __init__(
        self,
        config: TunnelConfig,
        link: 'TunnelLink',
        on_request: Callable[[bytes], Awaitable[None]],
        on_suspend: Optional[Callable[[], None]] = None
    ):
        self.config = config
        self.link = link
        self.on_request = on_request
        self.on_suspend = on_suspend

    async def handle(self, message: Union[str, bytes]):
        """Handle one message received from the relay."""
        if not message:
            return
        if isinstance(message, str):
            await self._handle_text(message)
        else:
            await self._handle_binary(message)

    async def _handle_text(self, text: str):
        if self.config.debug:
            preview = text[:PREVIEW_CHARS] + '...' if len(text) > PREVIEW_CHARS else text
            logger.debug(f"Received: {preview}")

        if text.startswith('{'):
            try:
                await self._dispatch(ControlMessage.deserialize(text))
            except (ValueError, KeyError, TypeError, RecursionError) as e:
                logger.error(f"Error processing message: {e}")
            return

        if text.startswith(ECHO_PREFIX):
            logger.info(f"Echo: {text[len(ECHO_PREFIX):]}")
            return

        logger.debug(f"Dropped unrecognized text frame ({len(text)} chars)")

    async def _dispatch(self, message: ControlMessage):
        link = self.link
        session = link.session

        if message.msg_type == MsgType.HELLO:
            await link.send_control(
                ControlMessage.login(self.config.domain, self.config.secret, self.config.device)
            )
            link.state = LinkState.AWAITING_LOGIN_ACK
            if self.config.debug:
                logger.debug("Authorization request sent")

        elif message.msg_type == MsgType.LOGIN:
            if not message.login_ok:
                logger.error(f"Tunnel login rejected: {message.fields.get('status')}")
                return
            if self.config.debug:
                logger.debug("Authorization successful. Starting tunnel...")
            session.primary = bool(message.fields.get('primary'))
            await link.send_control(ControlMessage.start(self.config.public))
            link.state = LinkState.ACTIVE
            link.start_heartbeat()

        elif message.msg_type == MsgType.START:
            session.suspend_marker, session.eof_marker = message.parse_start()
            if link.state == LinkState.SUSPENDED:
                link.state = LinkState.ACTIVE
            logger.info(f"Website should be accessible at {self.config.public_url(session.primary)}")

        elif message.msg_type == MsgType.ERROR:
            logger.error(f"Tunnel error: {message.fields.get('message')}")

    async def _handle_binary(self, data: bytes):
        session = self.link.session
        if session.suspend_marker is not None and data == session.suspend_marker:
            logger.info("Received suspend command")
            self.link.state = LinkState.SUSPENDED
            if self.on_suspend:
                self.on_suspend()
            return

        await self.on_request(data)


# ============================================================================
# Tunnel Link
# ============================================================================

class TunnelLink:
    """
    Owns the WebSocket connection to the relay.

    Connects, feeds received messages to the control protocol, runs the
    heartbeat while the tunnel is active and reconnects after every loss
    until closed.
    """

    def __init__(
        self,
        config: TunnelConfig,
        on_request: Callable[[bytes], Awaitable[None]],
        on_suspend: Optional[Callable[[], None]] = None,
        on_closed: Optional[Callable[[], None]] = None
    ):
        self.config = config
        self.protocol = ControlProtocol(config, self, on_request, on_suspend)
        self.reconnect_interval = config.reconnect_interval

        self.ws = None
        self.session: Optional[Session] = None
        self.state = LinkState.DISCONNECTED

        self._on_closed = on_closed
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self.ws is not None

    def start(self):
        """Start the connect/reconnect cycle on the running loop."""
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def _run(self):
        while not self._stop.is_set():
            await self._connect_once()

            if self._stop.is_set() or self.reconnect_interval <= RECONNECT_MIN_INTERVAL:
                break

            logger.info(f"Reconnecting to tunnel in {self.reconnect_interval:.0f} seconds...")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.reconnect_interval)
            except asyncio.TimeoutError:
                continue

        self.state = LinkState.DISCONNECTED

    def _connect_kwargs(self) -> dict:
        kwargs = {'ping_interval': None, 'max_size': None}
        if self.config.provider.startswith('wss://') and self.config.ca_cert:
            ssl_context = ssl.create_default_context()
            ssl_context.load_verify_locations(self.config.ca_cert)
            kwargs['ssl'] = ssl_context
        return kwargs

    async def _connect_once(self):
        self.state = LinkState.CONNECTING
        if self.config.debug:
            logger.debug(f"Connecting to tunnel at {self.config.provider}...")

        ws = None
        try:
            async with websockets.connect(self.config.provider, **self._connect_kwargs()) as ws:
                self._opened(ws)
                async for message in ws:
                    await self.protocol.handle(message)
        except ConnectionClosed:
            pass
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error(f"Tunnel connection error: {e!r}")
        finally:
            self._released(ws)

    def _opened(self, ws):
        self.ws = ws
        self.session = Session(alive=True)
        self.state = LinkState.AWAITING_GREETING
        logger.info("Connection to tunnel server established")

    def _released(self, ws):
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

        if ws is not None:
            logger.info(
                f"Tunnel connection closed: {ws.close_code} "
                f"{ws.close_reason or 'Reason not specified'}"
            )

        self.ws = None
        self.session = None
        self.state = LinkState.DISCONNECTED
        if self._on_closed:
            self._on_closed()

    # ------------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------------

    def start_heartbeat(self):
        if self.config.ping_interval <= PING_MIN_INTERVAL:
            return
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat(self.ws, self.session))

    async def _heartbeat(self, ws, session: Session):
        """A ping left unanswered for a whole interval kills the connection."""
        while True:
            await asyncio.sleep(self.config.ping_interval)

            if not session.alive:
                logger.warning("Tunnel connection lost.")
                ws.transport.abort()
                return

            session.alive = False
            try:
                pong_waiter = await ws.ping()
            except ConnectionClosed:
                return
            pong_waiter.add_done_callback(lambda waiter: self._pong(session, waiter))

    def _pong(self, session: Session, waiter: asyncio.Future):
        if waiter.cancelled() or waiter.exception() is not None:
            return
        session.alive = True
        if self.config.debug:
            logger.debug("Tunnel pong, alive")

    # ------------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------------

    async def send(self, data: Union[str, bytes]) -> bool:
        """Send a frame; returns False if there is no open connection."""
        ws = self.ws
        if ws is None:
            return False
        try:
            await ws.send(data)
            return True
        except ConnectionClosed as e:
            logger.error(f"WebSocket send error: {e}")
            return False

    async def send_control(self, message: ControlMessage) -> bool:
        return await self.send(message.serialize())

    async def close(self):
        """Close the connection and disable reconnecting for good."""
        self.reconnect_interval = 0
        self._stop.set()

        if self.ws is not None:
            await self.ws.close()
        elif self._task is not None:
            self._task.cancel()

        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def wait_closed(self):
        if self._task is None:
            return
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise


# ============================================================================
# Tunnel Client
# ============================================================================

class TunnelClient:
    """
    Tunnel between a relay and a local HTTP server.

    Must be created inside a running event loop; the connection cycle starts
    immediately.
    """

    def __init__(
        self,
        config: TunnelConfig,
        on_suspend: Optional[Callable[[], None]] = None,
        autostart: bool = True
    ):
        self.config = config
        self.local = LocalLink(config.local_port, config.local_host, config.debug)
        self.link = TunnelLink(
            config,
            on_request=self._handle_request,
            on_suspend=on_suspend,
            on_closed=self._link_closed,
        )
        self.forwarder = RequestForwarder(
            self.local, self.link.send, lambda: self.link.session, config.debug
        )
        self.closed = False

        if autostart:
            self.link.start()

    @property
    def session(self) -> Optional[Session]:
        return self.link.session

    @property
    def state(self) -> LinkState:
        return self.link.state

    def start(self):
        self.link.start()

    def _streaming_into_current(self) -> bool:
        return (
            self.config.stream_requests
            and self.forwarder.processing
            and self.local.is_open
            and self.forwarder.in_flight_session is not None
            and self.forwarder.in_flight_session is self.link.session
        )

    async def _handle_request(self, request: bytes):
        if self._streaming_into_current():
            # Continuation of the request currently being forwarded
            try:
                await self.local.write(request)
            except OSError as e:
                self.local.invalidate()
                logger.error(f"Local socket error: {e}")
            return

        self.forwarder.submit(request)

    def _link_closed(self):
        self.forwarder.clear()
        if not self.forwarder.processing:
            self.local.invalidate()

    async def pause(self):
        """Ask the relay to stop forwarding new requests."""
        session = self.link.session
        if not self.link.connected or session is None or session.suspend_marker is None:
            return
        await self.link.send(session.suspend_marker)

    async def resume(self):
        """Ask the relay to resume forwarding."""
        if not self.link.connected:
            return
        await self.link.send_control(ControlMessage.start(self.config.public))

    async def close(self):
        """Close the tunnel for good. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True

        await self.link.close()
        await self.forwarder.stop()
        await self.local.close()
        logger.info("Tunnel closed")

    async def wait_closed(self):
        await self.link.wait_closed()


def open_tunnel(on_suspend: Optional[Callable[[], None]] = None, **options) -> TunnelClient:
    """Create and start a tunnel from loose options (see TunnelConfig.from_options)."""
    return TunnelClient(TunnelConfig.from_options(**options), on_suspend=on_suspend)


# ============================================================================
# Main
# ============================================================================

async def run_client(config: TunnelConfig) -> int:
    """Run the tunnel until it stops for good."""
    tunnel = TunnelClient(config)
    try:
        await tunnel.wait_closed()
    finally:
        await tunnel.close()
    return 0


def main():
    parser = argparse.ArgumentParser(description='Self Tunnel Client')
    parser.add_argument('--config', '-c', default='config.yaml')
    parser.add_argument('--provider', default=None, help='Relay WebSocket URL')
    parser.add_argument('--domain', default=None, help='Tunnel domain (or TUNNEL_DOMAIN)')
    parser.add_argument('--secret', '-s', default=None, help='Tunnel secret (or TUNNEL_SECRET)')
    parser.add_argument('--device', default=None, help='Device name, used in the URL path')
    parser.add_argument('--public', action='store_true', default=None)
    parser.add_argument('--local-port', '-p', type=int, default=None)
    parser.add_argument('--ping-interval', type=float, default=None, help='Seconds between pings')
    parser.add_argument('--reconnect-interval', type=float, default=None,
                        help=f'Seconds before reconnecting (<= {RECONNECT_MIN_INTERVAL:.0f} disables)')
    parser.add_argument('--ca-cert', default=None)
    parser.add_argument('--stream', action='store_true', default=None,
                        help='Write follow-up frames into the request in flight')
    parser.add_argument('--debug', '-d', action='store_true')
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config_data = load_config(args.config)
    except FileNotFoundError:
        config_data = {}

    options = dict(config_data.get('tunnel', {}))
    overrides = {
        'provider': args.provider,
        'domain': args.domain,
        'secret': args.secret,
        'device': args.device,
        'public': args.public,
        'local_port': args.local_port,
        'ping_interval': args.ping_interval,
        'reconnect_interval': args.reconnect_interval,
        'ca_cert': args.ca_cert,
        'stream_requests': args.stream,
    }
    options.update({key: value for key, value in overrides.items() if value is not None})
    if args.debug:
        options['debug'] = True

    config = TunnelConfig.from_options(**options)

    if not config.domain:
        logger.error("No domain configured!")
        return 1

    if not config.secret:
        logger.error("No secret configured!")
        return 1

    try:
        return asyncio.run(run_client(config))
    except KeyboardInterrupt:
        return 0


if __name__ == '__main__':
    exit(main())
