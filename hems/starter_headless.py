#!/usr/bin/env python3
"""
HEMS - Headless Launcher

Serves the API with uvicorn on the configured port, or on the first free
port from 8000 when none is configured.
"""

import socket

import uvicorn

from hems.core.services.logging import get_logger
from hems.core.services.settings_config_service import get_settings_service

FIRST_PORT = 8000


def find_free_port(host: str = "127.0.0.1", start_port: int = FIRST_PORT) -> int:
    """First port from ``start_port`` that ``host`` can bind."""
    for port in range(start_port, 65536):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((host, port))
            except OSError:
                continue
            return port
    raise RuntimeError(f"No free port on {host} from {start_port}")


def resolve_port(host: str = "127.0.0.1") -> int:
    configured = get_settings_service().get_server_defaults()["port"]
    return configured or find_free_port(host)


def main():
    logger = get_logger(__name__)
    server = get_settings_service().get_server_defaults()
    port = resolve_port(server["host"])
    logger.info("server_starting", host=server["host"], port=port)
    try:
        uvicorn.run(
            "hems.api.main:app",
            host=server["host"],
            port=port,
            log_level=server["log_level"],
            reload=False,
        )
    finally:
        logger.info("server_stopped", port=port)


if __name__ == "__main__":
    main()
