#!/usr/bin/env python3
"""ddns-relay - Multi-tenant Dynamic DNS Relay

A relay server that holds the DNS provider credentials and lets many agents
keep their own A records pointed at their current public address. Each agent
authenticates with a per-account secret token, carried inside an AES-GCM
envelope keyed with the account's own encryption key.

Supported DNS Providers:
    - aliyun: Alibaba Cloud DNS (Alidns)

Server (``ddns-relay``) environment variables:

    Settings:
        DDNS_SETTINGS_PATH     YAML settings file (default: server.yaml)
        DDNS_LISTEN_PORT       Override server.listen_port (default: 9876)
        DDNS_USERS_PATH        Override server.users_path (default: users.json)
        DNS_PROVIDER           Override server.provider (default: aliyun)

    Alibaba Cloud DNS Provider:
        ALIBABA_CLOUD_ACCESS_KEY_ID
        ALIBABA_CLOUD_ACCESS_KEY_SECRET

    Runtime:
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)

Agent (``ddns-relay-agent``) commands:

    update                 Poll the public IP and push changes (daemon)
    list                   List the records registered to this account
    remove <fqdn>          Release a record, e.g. ``home.example.com``
    key view               Show the current encryption key
    key reset              Generate a new key, rotate it on the server and
                           write it back to the config file
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional

from ddns_relay.client import (
    ClientError,
    LastIPStore,
    RelayClient,
    UpdateAgent,
    load_client_config,
    save_encryption_key,
)
from ddns_relay.crypto import generate_key
from ddns_relay.errors import LedgerLoadError
from ddns_relay.ledger import AccountStore, Ledger
from ddns_relay.provider import create_dns_provider
from ddns_relay.ratelimit import RateLimiter
from ddns_relay.server import create_app, serve
from ddns_relay.service import DDNSService
from ddns_relay.settings import Settings, SettingsError, load_settings

VERSION = "2.2.0"

logger = logging.getLogger("ddns_relay")

# =============================================================================
# Logging Setup
# =============================================================================


def setup_logging(level: Optional[str] = None) -> None:
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# =============================================================================
# Server
# =============================================================================


def validate_settings(settings: Settings) -> bool:
    """Validate configuration that can only be checked at startup."""
    errors = []

    if settings.provider == "aliyun":
        if not settings.access_key_id or not settings.access_key_secret:
            errors.append(
                "ALIBABA_CLOUD_ACCESS_KEY_ID and ALIBABA_CLOUD_ACCESS_KEY_SECRET are required "
                "when DNS_PROVIDER=aliyun"
            )
    else:
        errors.append(f"Unsupported DNS_PROVIDER: {settings.provider}. Supported: aliyun")

    if settings.rate_limit_seconds <= 0:
        logger.warning("⚠️  rate_limit_seconds <= 0, per-IP rate limiting is disabled")

    for error in errors:
        logger.error(error)
    return not errors


def build_service(settings: Settings) -> DDNSService:
    ledger = Ledger(AccountStore(settings.users_path))
    ledger.load()
    dns_provider = create_dns_provider(
        settings.provider,
        settings.access_key_id,
        settings.access_key_secret,
        timeout_seconds=settings.provider_timeout_seconds,
    )
    return DDNSService(ledger=ledger, dns_provider=dns_provider)


def main():
    """Server entry point."""
    setup_logging()
    logger.info(f"ddns-relay {VERSION} starting")

    try:
        settings = load_settings()
    except SettingsError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    if not validate_settings(settings):
        logger.error("Configuration validation failed")
        sys.exit(1)

    try:
        service = build_service(settings)
    except (LedgerLoadError, OSError) as e:
        logger.error(f"Failed to load accounts from {settings.users_path}: {e}")
        sys.exit(1)

    logger.info(f"DNS Provider: {service.dns_provider.name}")
    logger.info(f"Accounts: {len(service.ledger)}")
    logger.info(f"Max request body: {settings.max_body_bytes} bytes")
    logger.info(f"Rate limit: one request per {settings.rate_limit_seconds}s per client IP")
    logger.info(f"Client timeout: {settings.request_timeout_seconds}s")

    rate_limiter = RateLimiter(settings.rate_limit_seconds) if settings.rate_limit_seconds > 0 else None
    app = create_app(service, max_body_bytes=settings.max_body_bytes, rate_limiter=rate_limiter)

    try:
        serve(
            app,
            settings.listen_host,
            settings.listen_port,
            timeout_seconds=settings.request_timeout_seconds,
        )
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


# =============================================================================
# Agent
# =============================================================================


def _split_fqdn(fqdn: str) -> tuple[str, str]:
    rr, _, domain_name = fqdn.partition(".")
    if not rr or not domain_name:
        raise ClientError(f"'{fqdn}' is not a full domain name, e.g. 'home.example.com'")
    return rr, domain_name


def _build_agent_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ddns-relay-agent", description="ddns-relay agent - keep a DNS record on your public IP"
    )
    parser.add_argument(
        "--config",
        "-c",
        default="client.yaml",
        help="Client configuration file (default: client.yaml)",
    )
    parser.add_argument(
        "--last-ip-file",
        default="last_ip.txt",
        help="Where the last reported IP is stored (default: last_ip.txt)",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    update = commands.add_parser("update", help="Poll the public IP and push changes")
    update.add_argument("--once", action="store_true", help="Run a single update cycle and exit")
    commands.add_parser("list", help="List the records registered to this account")
    remove = commands.add_parser("remove", help="Release a registered record")
    remove.add_argument("fqdn", help="Full domain name, e.g. home.example.com")
    key = commands.add_parser("key", help="View or reset the encryption key")
    key.add_argument("action", choices=["view", "reset"])
    return parser


def agent_main(argv: Optional[List[str]] = None) -> int:
    """Agent entry point."""
    setup_logging()
    args = _build_agent_parser().parse_args(argv)

    try:
        config = load_client_config(args.config, require_target=args.command == "update")
        client = RelayClient(config)

        if args.command == "update":
            agent = UpdateAgent(client, LastIPStore(args.last_ip_file))
            logger.info(
                f"Agent started: user={config.username}, server={config.server_url}, "
                f"record={config.rr}.{config.domain_name}, "
                f"interval={config.check_interval_seconds}s"
            )
            if args.once:
                agent.check_and_update()
            else:
                agent.run_forever()

        elif args.command == "list":
            records = client.list_records()
            if not records:
                print("No records are registered to this account.")
            for r in records:
                print(f"- {r.get('rr')}.{r.get('domain_name')}")

        elif args.command == "remove":
            rr, domain_name = _split_fqdn(args.fqdn)
            result = client.remove(domain_name, rr)
            print(result.get("message", ""))

        elif args.action == "view":
            print(f"Current encryption key: {client.view_key()}")

        else:
            new_key = generate_key()
            client.reset_key(new_key)
            try:
                save_encryption_key(args.config, new_key)
            except (OSError, ValueError) as e:
                logger.critical(
                    f"Key was reset on the server but {args.config} could not be updated: {e}. "
                    f"Set encryption_key manually to: {new_key}"
                )
                return 1
            print(f"Encryption key reset and saved to {args.config}")

    except ClientError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    return 0


if __name__ == "__main__":
    main()
