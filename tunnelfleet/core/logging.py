import logging
from typing import Optional, Dict, Any, List
import json

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme
from rich.traceback import install as install_rich_traceback

from tunnelfleet.core.config import settings
from tunnelfleet.core.logger import JSONFormatter

# Install rich traceback handling
install_rich_traceback(show_locals=settings.DEBUG)

# Create rich console with custom theme
console = Console(
    theme=Theme(
        {
            "info": "cyan",
            "warning": "yellow",
            "error": "red",
            "debug": "grey50",
            "tunnel": "magenta",
            "discovery": "blue",
            "registry": "green",
        }
    )
)

LOG_LEVEL = logging.DEBUG if settings.DEBUG else getattr(
    logging, settings.LOG_LEVEL.upper(), logging.INFO
)


def _build_handler() -> logging.Handler:
    if settings.LOG_JSON:
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        return handler
    return RichHandler(
        console=console,
        rich_tracebacks=True,
        tracebacks_show_locals=settings.DEBUG,
        markup=True,
        show_time=True,
        show_path=settings.DEBUG,
    )


handler = _build_handler()

# Create logger
logger = logging.getLogger("tunnelfleet")
logger.setLevel(LOG_LEVEL)

# Remove existing handlers and add our handler
logger.handlers = []
logger.addHandler(handler)
logger.propagate = False


# Component loggers share the handler above
tunnel_logger = logging.getLogger("tunnel")
discovery_logger = logging.getLogger("discovery")
registry_logger = logging.getLogger("registry")
api_logger = logging.getLogger("api")

for log in [tunnel_logger, discovery_logger, registry_logger, api_logger]:
    log.setLevel(LOG_LEVEL)
    log.handlers = [handler]
    log.propagate = False


def log_tunnel_command(command: List[str]) -> None:
    """Log a tunnel subprocess command line."""
    tunnel_logger.debug(f"[bold]Executing command:[/bold] {' '.join(command)}")


def log_discovery_result(strategy: str, count: int, elapsed: float) -> None:
    """Log the outcome of a single discovery strategy."""
    discovery_logger.debug(
        f"[bold]Discovery strategy[/bold] [cyan]{strategy}[/cyan]: "
        f"{count} candidate(s) in {elapsed:.2f}s",
        extra={"strategy": strategy},
    )


def log_registry_operation(operation: str, details: Optional[Dict[str, Any]] = None) -> None:
    """Log a registry operation with optional details."""
    log_message = f"Registry: {operation}"
    if details:
        log_message += f" | {json.dumps(details, default=str)}"
    extra = {"client_id": details["client_id"]} if details and "client_id" in details else None
    registry_logger.info(log_message, extra=extra)
