# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application that reads the
relay configuration and starts the RelayCore scheduler with the app.

Usage:
    uvicorn moperator.server:app --host 0.0.0.0 --port 8000

Environment variables:
    MOPERATOR_CONFIG: Optional INI configuration file.
    MOPERATOR_DB_PATH: Path to SQLite database (default: /data/moperator.db)
    MOPERATOR_SIGNING_KEY: Webhook signing secret.
    MOPERATOR_API_TOKEN: Token required on operator write endpoints.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import load_relay_config
from .core import RelayCore

logging.basicConfig(
    level=os.environ.get("MOPERATOR_LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

_config = load_relay_config(os.environ.get("MOPERATOR_CONFIG"))
if not _config.signing_key:
    logging.getLogger("Moperator").warning("MOPERATOR_SIGNING_KEY is not set; webhooks will be signed with an empty key")

_core = RelayCore(_config)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler - starts and stops the core service."""
    await _core.start()
    yield
    await _core.stop()


app = create_app(_core, api_token=_config.api_token, lifespan=lifespan)
