# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the relay.

Settings are read from an optional INI file and then overridden by
``MOPERATOR_*`` environment variables.

Example:
    Configuration file format (config.ini)::

        [relay]
        db_path = /data/moperator.db
        signing_key = change-me
        api_token = operator-token
        scheduler_interval = 300

        [dispatch]
        timeout = 10
        concurrency = 4

        [retry]
        max_attempts = 5
        base_delay = 60
        lease_seconds = 300
        retry_ttl_days = 7
        dead_letter_ttl_days = 30

        [health]
        timeout = 10
        max_consecutive_failures = 3

        [rate_limit]
        default_per_minute = 60
        strict_per_minute = 10
        tenant_per_minute = 60

    Loading it::

        config = load_relay_config("/etc/moperator/config.ini")
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .logger import get_logger

logger = get_logger("ConfigLoader")

DAY = 24 * 3600

ENV_OVERRIDES = {
    "MOPERATOR_DB_PATH": ("db_path", str),
    "MOPERATOR_SIGNING_KEY": ("signing_key", str),
    "MOPERATOR_API_TOKEN": ("api_token", str),
    "MOPERATOR_SCHEDULER_INTERVAL": ("scheduler_interval", float),
    "MOPERATOR_DISPATCH_TIMEOUT": ("dispatch_timeout", float),
}


@dataclass
class RelayConfig:
    """Runtime settings for :class:`moperator.core.RelayCore`.

    Attributes:
        db_path: SQLite database for the storage port.
        signing_key: Shared secret used to sign webhook payloads.
        api_token: Token required on operator write endpoints (None disables).
        scheduler_interval: Seconds between scheduled retry/health passes.
        dispatch_timeout: Seconds allowed for one webhook delivery.
        dispatch_concurrency: Parallel deliveries per fan-out.
        max_attempts: Delivery attempts before dead-lettering.
        base_delay: Retry backoff base in seconds.
        lease_seconds: Validity of a retry pass's claim on an item.
        retry_ttl: Seconds a pending retry item is kept.
        dead_letter_ttl: Seconds a dead letter is kept.
        health_timeout: Seconds allowed for one health probe.
        max_consecutive_failures: Failed probes before auto-disable.
        default_per_minute: Read rate limit per client.
        strict_per_minute: Write/admin rate limit per client.
        tenant_per_minute: Rate limit for authenticated tenants.
    """

    db_path: str = "/data/moperator.db"
    signing_key: str = ""
    api_token: str | None = None
    scheduler_interval: float = 300.0

    dispatch_timeout: float = 10.0
    dispatch_concurrency: int = 4

    max_attempts: int = 5
    base_delay: int = 60
    lease_seconds: int = 300
    retry_ttl: int = 7 * DAY
    dead_letter_ttl: int = 30 * DAY

    health_timeout: float = 10.0
    max_consecutive_failures: int = 3

    default_per_minute: int = 60
    strict_per_minute: int = 10
    tenant_per_minute: int = 60


def _read_ini(config: RelayConfig, path: Path) -> None:
    parser = configparser.ConfigParser()
    parser.read(path)

    if parser.has_section("relay"):
        section = parser["relay"]
        config.db_path = section.get("db_path", config.db_path)
        config.signing_key = section.get("signing_key", config.signing_key)
        config.api_token = section.get("api_token", config.api_token) or None
        config.scheduler_interval = section.getfloat("scheduler_interval", config.scheduler_interval)

    if parser.has_section("dispatch"):
        section = parser["dispatch"]
        config.dispatch_timeout = section.getfloat("timeout", config.dispatch_timeout)
        config.dispatch_concurrency = section.getint("concurrency", config.dispatch_concurrency)

    if parser.has_section("retry"):
        section = parser["retry"]
        config.max_attempts = section.getint("max_attempts", config.max_attempts)
        config.base_delay = section.getint("base_delay", config.base_delay)
        config.lease_seconds = section.getint("lease_seconds", config.lease_seconds)
        config.retry_ttl = int(section.getfloat("retry_ttl_days", config.retry_ttl / DAY) * DAY)
        config.dead_letter_ttl = int(
            section.getfloat("dead_letter_ttl_days", config.dead_letter_ttl / DAY) * DAY
        )

    if parser.has_section("health"):
        section = parser["health"]
        config.health_timeout = section.getfloat("timeout", config.health_timeout)
        config.max_consecutive_failures = section.getint(
            "max_consecutive_failures", config.max_consecutive_failures
        )

    if parser.has_section("rate_limit"):
        section = parser["rate_limit"]
        config.default_per_minute = section.getint("default_per_minute", config.default_per_minute)
        config.strict_per_minute = section.getint("strict_per_minute", config.strict_per_minute)
        config.tenant_per_minute = section.getint("tenant_per_minute", config.tenant_per_minute)


def load_relay_config(
    path: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> RelayConfig:
    """Build a :class:`RelayConfig` from an INI file and the environment.

    Args:
        path: Optional INI file. A missing file is logged and ignored.
        environ: Environment mapping, defaults to ``os.environ``.

    Returns:
        The resolved configuration.

    Raises:
        ValueError: If an environment override cannot be converted.
    """
    config = RelayConfig()
    if path:
        ini = Path(path)
        if ini.exists():
            _read_ini(config, ini)
        else:
            logger.warning("Config file %s not found, using defaults", path)

    env = os.environ if environ is None else environ
    for name, (attr, cast) in ENV_OVERRIDES.items():
        value = env.get(name)
        if value:
            try:
                setattr(config, attr, cast(value))
            except ValueError as exc:
                raise ValueError(f"Invalid value for {name}: {value!r}") from exc
    return config
