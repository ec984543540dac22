from pydantic_settings import BaseSettings
from typing import Any, Dict, List, Optional
import os


class Settings(BaseSettings):
    # Debug settings
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False  # One JSON object per line instead of rich output

    # API settings
    PROJECT_NAME: str = "Tunnel Fleet Control Plane"
    VERSION: str = "1.0.0"
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8080

    # Registry persistence
    REGISTRY_FILE: str = os.getenv("REGISTRY_FILE", "./data/clients.json")

    # Server side discovery responder
    DISCOVERY_RESPONDER_ENABLED: bool = True
    TUNNEL_SERVICE_PORT: int = 22  # Port advertised to broadcast discovery

    # CORS
    BACKEND_CORS_ORIGINS: List[str] = [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:8080",
    ]

    # Discovery settings
    STATIC_SERVERS: List[str] = []  # host[:port[:priority[:weight]]]
    DISCOVERY_DOMAIN: Optional[str] = None  # Derived from the host FQDN when empty
    DISCOVERY_SRV_NAME: str = "_tunnel._tcp"
    DISCOVERY_PORTS: List[int] = [47474, 47475]
    BROADCAST_ADDRESS: str = "255.255.255.255"
    SUBNET_CIDR: Optional[str] = None  # Local /24 when empty
    SUBNET_MAX_HOSTS: int = 50
    SUBNET_PORTS: List[int] = [22, 2222]
    SUBNET_CONCURRENCY: int = 16
    DISCOVERY_TIMEOUT: float = 15.0
    STRATEGY_TIMEOUT: float = 8.0
    PROBE_TIMEOUT: float = 2.0
    ENABLE_STATIC_DISCOVERY: bool = True
    ENABLE_DNS_DISCOVERY: bool = True
    ENABLE_BROADCAST_DISCOVERY: bool = True
    ENABLE_SUBNET_DISCOVERY: bool = False  # Sweeps are noisy, opt in

    # Agent settings
    CONTROL_PLANE_URL: Optional[str] = None
    AGENT_HOSTNAME: Optional[str] = None
    TUNNELS: List[Dict[str, Any]] = []  # [{"service": "ssh", "local_port": 22, "remote_port": 10022}]

    # SSH transport settings
    SSH_BINARY: str = "ssh"
    SSH_USER: Optional[str] = "tunnel"
    SSH_KEY_FILE: Optional[str] = "~/.ssh/id_ed25519"
    SSH_STRICT_HOST_KEY_CHECKING: str = "accept-new"
    SSH_SERVER_ALIVE_INTERVAL: int = 30
    SSH_SERVER_ALIVE_COUNT_MAX: int = 3
    SSH_CONNECT_TIMEOUT: int = 10

    # Tunnel lifecycle
    CONNECT_GRACE_PERIOD: float = 3.0
    STOP_TIMEOUT: float = 5.0
    HEALTH_CHECK_INTERVAL: float = 30.0
    AUTO_RESTART: bool = True
    RESTART_DELAY: float = 5.0
    RESTART_MAX_DELAY: float = 300.0
    DEGRADED_WINDOW: float = 60.0  # Seconds a network warning keeps a session degraded
    REPORT_INTERVAL: float = 60.0

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
