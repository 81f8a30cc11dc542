# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Reliable webhook delivery of classified emails to AI agents.

This package routes inbound, already-classified email events to the agents
subscribed to their labels, with features including:

- Label-based fan-out with per-agent deduplication
- HMAC-SHA256 signed webhook payloads
- Bounded retry queue with exponential backoff and dead-lettering
- Endpoint health monitoring with automatic agent disabling
- Fixed-window rate limiting for the HTTP entry points
- Prometheus metrics and a FastAPI operator API

Example:
    Basic usage with the FastAPI application::

        from moperator.api import create_app
        from moperator.config_loader import RelayConfig
        from moperator.core import RelayCore

        core = RelayCore(RelayConfig(db_path="/data/moperator.db", signing_key="secret"))
        app = create_app(core, api_token="token")
"""

__version__ = "0.3.0"
