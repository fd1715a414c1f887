"""
Self Tunnel - Common Protocol and Utilities
Control messages, configuration and per-session state shared by the client.

Version: 1.0.0
"""

import json
import os
from collections import deque
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


# ============================================================================
# Protocol Constants
# ============================================================================

DEFAULT_PROVIDER = 'wss://device-tunnel.top:3333'
DEFAULT_DEVICE = 'default-app'
DEFAULT_LOCAL_HOST = '127.0.0.1'
DEFAULT_LOCAL_PORT = 80
DEFAULT_PING_INTERVAL = 50.0       # seconds
DEFAULT_RECONNECT_INTERVAL = 30.0  # seconds

# Intervals at or below these values disable the feature
RECONNECT_MIN_INTERVAL = 10.0
PING_MIN_INTERVAL = 1.0

LOCAL_KEEPALIVE_IDLE = 10  # seconds before TCP keep-alive probing starts
LOCAL_READ_SIZE = 65536

ECHO_PREFIX = '->'

PREVIEW_BYTES = 64
PREVIEW_CHARS = 256


class MsgType(str, Enum):
    HELLO = 'hello'   # Relay greeting
    LOGIN = 'login'   # Login request / acknowledgement
    START = 'start'   # Start request / per-session markers
    ERROR = 'error'   # Operator-visible relay failure


class LinkState(Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    AWAITING_GREETING = 'awaiting-greeting'
    AWAITING_LOGIN_ACK = 'awaiting-login-ack'
    ACTIVE = 'active'
    SUSPENDED = 'suspended'


# ============================================================================
# Control Message
# ============================================================================

@dataclass
class ControlMessage:
    """
    Text control frame exchanged with the relay.

    Wire format: one JSON object per WebSocket text frame, with the message
    type under "type" and the remaining keys as fields:

        {"type": "login", "domain": "...", "secret": "...", "device": "..."}
    """
    msg_type: MsgType
    fields: Dict[str, Any] = field(default_factory=dict)

    def serialize(self) -> str:
        """Serialize message to a JSON text frame."""
        return json.dumps({'type': self.msg_type.value, **self.fields})

    @classmethod
    def deserialize(cls, text: str) -> 'ControlMessage':
        """
        Parse a text frame.

        Raises ValueError if the frame is not a JSON object with a known type.
        """
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("Control frame is not a JSON object")

        msg_type = data.pop('type', None)
        try:
            return cls(MsgType(msg_type), data)
        except ValueError:
            raise ValueError(f"Unknown control message type: {msg_type!r}")

    @classmethod
    def hello(cls) -> 'ControlMessage':
        """Create a relay greeting."""
        return cls(MsgType.HELLO)

    @classmethod
    def login(cls, domain: Optional[str], secret: Optional[str], device: str) -> 'ControlMessage':
        """Create a LOGIN request."""
        return cls(MsgType.LOGIN, {'domain': domain, 'secret': secret, 'device': device})

    @classmethod
    def start(cls, public: bool) -> 'ControlMessage':
        """Create a START request with the requested visibility."""
        return cls(MsgType.START, {'usage': 'public' if public else 'private'})

    @property
    def login_ok(self) -> bool:
        return self.msg_type == MsgType.LOGIN and self.fields.get('status') == 'ok'

    def parse_start(self) -> Tuple[bytes, bytes]:
        """Parse START acknowledgement to get (suspend marker, eof marker)."""
        if self.msg_type != MsgType.START:
            raise ValueError("Not a START message")
        suspend = self.fields['suspend']
        eof = self.fields['eof']
        if not isinstance(suspend, str) or not isinstance(eof, str):
            raise ValueError("START markers must be strings")
        return suspend.encode('utf-8'), eof.encode('utf-8')


# ============================================================================
# Configuration
# ============================================================================

@dataclass(frozen=True)
class TunnelConfig:
    """Tunnel configuration, fixed for the lifetime of a client."""
    provider: str = DEFAULT_PROVIDER
    domain: Optional[str] = None
    secret: Optional[str] = None
    device: str = DEFAULT_DEVICE
    public: bool = False
    local_host: str = DEFAULT_LOCAL_HOST
    local_port: int = DEFAULT_LOCAL_PORT
    ping_interval: float = DEFAULT_PING_INTERVAL
    reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL
    debug: bool = False
    stream_requests: bool = False  # Write follow-up frames into an in-flight exchange
    ca_cert: Optional[str] = None

    @classmethod
    def from_options(cls, **options) -> 'TunnelConfig':
        """
        Build a config from loose options.

        Missing provider, domain, secret and device fall back to the
        TUNNEL_PROVIDER, TUNNEL_DOMAIN, TUNNEL_SECRET and TUNNEL_DEVICE
        environment variables, then to the defaults. Unknown keys are ignored.
        """
        def pick(key, env_key=None, default=None):
            value = options.get(key)
            if value is None and env_key:
                value = os.environ.get(env_key)
            return default if value is None else value

        return cls(
            provider=pick('provider', 'TUNNEL_PROVIDER', DEFAULT_PROVIDER),
            domain=pick('domain', 'TUNNEL_DOMAIN'),
            secret=pick('secret', 'TUNNEL_SECRET'),
            device=pick('device', 'TUNNEL_DEVICE', DEFAULT_DEVICE),
            public=bool(pick('public', default=False)),
            local_host=pick('local_host', default=DEFAULT_LOCAL_HOST),
            local_port=int(pick('local_port', default=DEFAULT_LOCAL_PORT)),
            ping_interval=float(pick('ping_interval', default=DEFAULT_PING_INTERVAL)),
            reconnect_interval=float(pick('reconnect_interval', default=DEFAULT_RECONNECT_INTERVAL)),
            debug=bool(pick('debug', default=False)),
            stream_requests=bool(pick('stream_requests', default=False)),
            ca_cert=pick('ca_cert'),
        )

    def public_url(self, primary: bool) -> str:
        """Address the relay publishes this device under."""
        if primary:
            return f"https://{self.domain}"
        return f"https://{self.domain}/{self.device}"


@dataclass
class Session:
    """State of one live relay connection, discarded on disconnect."""
    primary: bool = False
    suspend_marker: Optional[bytes] = None
    eof_marker: Optional[bytes] = None
    alive: bool = False


def load_config(path: str) -> dict:
    """Load configuration from YAML file."""
    import yaml
    with open(path, 'r') as f:
        return yaml.safe_load(f) or {}


# ============================================================================
# Utilities
# ============================================================================

class RequestQueue:
    """FIFO of pending requests, each paired with the session it arrived on."""

    def __init__(self):
        self._items = deque()

    def put(self, item: Any):
        self._items.append(item)

    def get(self) -> Any:
        return self._items.popleft()

    def empty(self) -> bool:
        return not self._items

    def qsize(self) -> int:
        return len(self._items)

    def clear(self):
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)
