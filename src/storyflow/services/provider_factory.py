"""Builds the generation provider selected by the connection settings."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from storyflow.constants import (
    COMFYUI_DEFAULT_HOST,
    COMFYUI_DEFAULT_PORT,
    DRAWTHINGS_DEFAULT_HOST,
    DRAWTHINGS_GENERATE_TIMEOUT,
    DRAWTHINGS_HTTP_DEFAULT_PORT,
)
from storyflow.services.provider import GenerationProvider

TRANSPORTS = ("http", "comfyui")


def create_provider(connection: Optional[Dict] = None, logger: Optional[logging.Logger] = None) -> GenerationProvider:
    """Return a provider for `connection['transport']` ('http' or 'comfyui')."""
    connection = connection or {}
    transport = (connection.get("transport") or "http").lower()

    if transport == "http":
        from drawthings_client import DrawThingsHTTPClient

        return DrawThingsHTTPClient(
            host=connection.get("host") or DRAWTHINGS_DEFAULT_HOST,
            port=int(connection.get("port") or DRAWTHINGS_HTTP_DEFAULT_PORT),
            shared_secret=connection.get("shared_secret") or "",
            timeout=int(connection.get("timeout") or DRAWTHINGS_GENERATE_TIMEOUT),
            logger=logger,
        )

    if transport == "comfyui":
        from comfyui_client import ComfyUIClient

        kwargs = {}
        if connection.get("timeout"):
            kwargs["max_wait"] = int(connection["timeout"])
        return ComfyUIClient(
            host=connection.get("host") or COMFYUI_DEFAULT_HOST,
            port=int(connection.get("port") or COMFYUI_DEFAULT_PORT),
            workflow_template=connection.get("workflow_template"),
            logger=logger,
            **kwargs,
        )

    raise ValueError(f"Unknown transport '{transport}' (expected one of: {', '.join(TRANSPORTS)})")
