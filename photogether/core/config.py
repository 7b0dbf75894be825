"""
Configuration management for PhotoGether.
"""
import os
from dataclasses import dataclass, field
from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer


DEFAULT_STUN_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
    "stun:stun3.l.google.com:19302",
    "stun:stun4.l.google.com:19302",
]


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return float(value)


@dataclass
class PhotoGetherConfig:
    """Client and relay configuration settings."""

    # Relay server
    relay_url: str = "ws://localhost:8765/ws"
    relay_host: str = "0.0.0.0"
    relay_port: int = 8765

    # ICE servers
    stun_servers: List[str] = field(default_factory=lambda: list(DEFAULT_STUN_SERVERS))
    turn_address: Optional[str] = None
    turn_username: Optional[str] = None
    turn_password: Optional[str] = None

    # Timeouts (seconds)
    request_timeout: Optional[float] = 10.0
    negotiation_timeout: Optional[float] = 30.0

    # Relay reconnect backoff (seconds)
    auto_reconnect: bool = True
    reconnect_initial_delay: float = 0.5
    reconnect_max_delay: float = 30.0

    # Data channel
    data_channel_label: str = "photogether"

    log_level: str = "INFO"

    # WebRTC configuration
    rtc_config: Optional[RTCConfiguration] = None

    # Skip environment lookup, used by tests
    from_env: bool = True

    def __post_init__(self):
        """Initialize configuration from environment variables."""
        if self.from_env:
            self._load_environment()

        # Build WebRTC configuration
        self._build_rtc_config()

    def _load_environment(self):
        self.relay_url = os.environ.get('PHOTOGETHER_RELAY_URL', self.relay_url)
        self.relay_host = os.environ.get('PHOTOGETHER_RELAY_HOST', self.relay_host)
        self.relay_port = int(os.environ.get('PHOTOGETHER_RELAY_PORT', self.relay_port))

        stun = os.environ.get('PHOTOGETHER_STUN_SERVERS')
        if stun:
            self.stun_servers = [url.strip() for url in stun.split(',') if url.strip()]

        # TURN server settings
        self.turn_address = os.environ.get('TURN_ADDRESS', self.turn_address)
        self.turn_username = os.environ.get('TURN_USERNAME', self.turn_username)
        self.turn_password = os.environ.get('TURN_PASSWORD', self.turn_password)

        self.request_timeout = _env_float('PHOTOGETHER_REQUEST_TIMEOUT', self.request_timeout) or None
        self.negotiation_timeout = _env_float('PHOTOGETHER_NEGOTIATION_TIMEOUT', self.negotiation_timeout) or None

        self.auto_reconnect = os.environ.get(
            'PHOTOGETHER_AUTO_RECONNECT', 'true' if self.auto_reconnect else 'false'
        ).lower() == 'true'
        self.reconnect_initial_delay = _env_float('PHOTOGETHER_RECONNECT_DELAY', self.reconnect_initial_delay)
        self.reconnect_max_delay = _env_float('PHOTOGETHER_RECONNECT_MAX_DELAY', self.reconnect_max_delay)

        self.data_channel_label = os.environ.get('PHOTOGETHER_DATA_CHANNEL', self.data_channel_label)
        self.log_level = os.environ.get('PHOTOGETHER_LOG_LEVEL', self.log_level)

    def _build_rtc_config(self):
        """Build WebRTC configuration from the STUN/TURN settings."""
        ice_servers = [RTCIceServer(urls=url) for url in self.stun_servers]

        if self.turn_address:
            ice_servers.append(
                RTCIceServer(
                    urls=f"turn:{self.turn_address}",
                    username=self.turn_username,
                    credential=self.turn_password
                )
            )

        self.rtc_config = RTCConfiguration(iceServers=ice_servers)

    def has_turn_server(self) -> bool:
        """TURN server fully configured."""
        return all([self.turn_address, self.turn_username, self.turn_password])

    def __str__(self) -> str:
        """String representation of configuration."""
        return (f"PhotoGetherConfig(relay_url={self.relay_url}, stun_servers={len(self.stun_servers)}, "
                f"turn={self.has_turn_server()}, negotiation_timeout={self.negotiation_timeout})")
