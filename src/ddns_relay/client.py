"""Agent side: API client for the relay, public IP discovery and the update loop.

Example ``client.yaml``::

    client:
      server_url: "https://ddns.example.com:9876"
      username: "alice"
      secret_token: "..."
      encryption_key: "<32 characters>"
      domain_name: "example.com"
      rr: "home"
      check_interval_seconds: 300
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import requests
import yaml

from ddns_relay.crypto import seal
from ddns_relay.validators import validate_ipv4

logger = logging.getLogger(__name__)

PUBLIC_IP_SERVICES = ("https://api.ipify.org", "https://ifconfig.me/ip")


class ClientError(Exception):
    """A request to the relay or an IP lookup failed."""


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class ClientConfig:
    server_url: str
    username: str
    secret_token: str
    encryption_key: str
    domain_name: str = ""
    rr: str = ""
    check_interval_seconds: int = 300


def load_client_config(path: str, *, require_target: bool = False) -> ClientConfig:
    """Load the ``client`` section; ``require_target`` also demands domain_name/rr."""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ClientError(f"Cannot load client config {path}: {e}") from e

    section = data.get("client") if isinstance(data, dict) else None
    if not isinstance(section, dict):
        raise ClientError(f"Client config {path} must contain a 'client' mapping")

    config = ClientConfig(
        server_url=str(section.get("server_url") or "").rstrip("/"),
        username=str(section.get("username") or ""),
        secret_token=str(section.get("secret_token") or ""),
        encryption_key=str(section.get("encryption_key") or ""),
        domain_name=str(section.get("domain_name") or ""),
        rr=str(section.get("rr") or ""),
        check_interval_seconds=int(section.get("check_interval_seconds") or 300),
    )
    missing = [
        name
        for name in ("server_url", "username", "secret_token", "encryption_key")
        if not getattr(config, name)
    ]
    if require_target:
        missing += [name for name in ("domain_name", "rr") if not getattr(config, name)]
    if missing:
        raise ClientError(f"Client config {path} is missing: {', '.join(missing)}")
    return config


def save_encryption_key(path: str, new_key: str) -> None:
    """Write ``new_key`` back into the client config, keeping the other settings."""
    config_path = Path(path)
    data = yaml.safe_load(config_path.read_text("utf-8")) or {}
    data.setdefault("client", {})["encryption_key"] = new_key
    tmp_path = config_path.with_suffix(config_path.suffix + ".tmp")
    tmp_path.write_text(yaml.safe_dump(data, sort_keys=False), "utf-8")
    tmp_path.replace(config_path)


# =============================================================================
# Relay API Client
# =============================================================================


class RelayClient:
    def __init__(self, config: ClientConfig, timeout_seconds: float = 30.0):
        self.config = config
        self._timeout = timeout_seconds
        self._session = requests.Session()

    def _check(self, response: requests.Response) -> Any:
        if response.status_code != 200:
            raise ClientError(
                f"Server returned an error (status {response.status_code}): {response.text.strip()}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise ClientError(f"Server returned a non-JSON response: {e}") from e

    def send_secure(self, endpoint: str, method: str, payload: Dict[str, str]) -> Any:
        """Seal ``payload`` with the account key and send it inside an envelope."""
        sealed = seal(self.config.encryption_key, json.dumps(payload).encode("utf-8"))
        envelope = {"username": self.config.username, "data": sealed}
        try:
            response = self._session.request(
                method, f"{self.config.server_url}{endpoint}", json=envelope, timeout=self._timeout
            )
        except requests.exceptions.RequestException as e:
            raise ClientError(f"Request to {endpoint} failed: {e}") from e
        return self._check(response)

    def _get(self, endpoint: str) -> Any:
        try:
            response = self._session.get(
                f"{self.config.server_url}{endpoint}",
                params={"username": self.config.username},
                headers={"Authorization": f"Bearer {self.config.secret_token}"},
                timeout=self._timeout,
            )
        except requests.exceptions.RequestException as e:
            raise ClientError(f"Request to {endpoint} failed: {e}") from e
        return self._check(response)

    def update(self, domain_name: str, rr: str, new_ip: str) -> Dict[str, str]:
        return self.send_secure(
            "/update-dns",
            "POST",
            {
                "secret_token": self.config.secret_token,
                "domain_name": domain_name,
                "rr": rr,
                "new_ip": new_ip,
            },
        )

    def list_records(self) -> List[Dict[str, str]]:
        return self._get("/manage-records")

    def remove(self, domain_name: str, rr: str) -> Dict[str, str]:
        return self.send_secure(
            "/manage-records",
            "DELETE",
            {"secret_token": self.config.secret_token, "domain_name": domain_name, "rr": rr},
        )

    def view_key(self) -> str:
        return str(self._get("/manage-key").get("encryption_key", ""))

    def reset_key(self, new_key: str) -> Dict[str, str]:
        return self.send_secure(
            "/manage-key",
            "POST",
            {"secret_token": self.config.secret_token, "new_encryption_key": new_key},
        )


# =============================================================================
# Public IP Discovery and Last-IP Persistence
# =============================================================================


def get_public_ip(
    services: Sequence[str] = PUBLIC_IP_SERVICES,
    session: Optional[requests.Session] = None,
    timeout_seconds: float = 10.0,
) -> str:
    """Ask each service in turn for our public IPv4 address."""
    http = session or requests.Session()
    for service in services:
        try:
            response = http.get(service, timeout=timeout_seconds)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.warning(f"Public IP lookup via {service} failed: {e}")
            continue
        ip = response.text.strip()
        if validate_ipv4(ip):
            return ip
        logger.warning(f"Public IP lookup via {service} returned an invalid address: {ip!r}")
    raise ClientError("All public IP services failed")


class LastIPStore:
    def __init__(self, path: str):
        self.path = Path(path)

    def read(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text("utf-8").strip()

    def write(self, ip: str) -> None:
        self.path.write_text(ip, "utf-8")


# =============================================================================
# Update Agent
# =============================================================================


class UpdateAgent:
    """Polls the public IP and pushes changes to the relay."""

    def __init__(
        self,
        client: RelayClient,
        last_ip_store: LastIPStore,
        ip_lookup=get_public_ip,
    ):
        self.client = client
        self.last_ip_store = last_ip_store
        self._ip_lookup = ip_lookup

    def check_and_update(self) -> bool:
        """Run one polling cycle. Returns True if an update was sent successfully."""
        try:
            current_ip = self._ip_lookup()
        except ClientError as e:
            logger.error(f"Failed to determine public IP: {e}")
            return False

        try:
            last_ip = self.last_ip_store.read()
        except OSError as e:
            logger.error(f"Failed to read last known IP: {e}")
            last_ip = ""

        if current_ip == last_ip:
            logger.info(f"Public IP unchanged ({current_ip}), nothing to do")
            return False

        config = self.client.config
        logger.info(f"Public IP changed {last_ip or '(none)'} -> {current_ip}, notifying relay")
        try:
            result = self.client.update(config.domain_name, config.rr, current_ip)
        except ClientError as e:
            logger.error(f"Update failed: {e}")
            return False

        logger.info(f"Relay response: {result.get('message', result)}")
        try:
            self.last_ip_store.write(current_ip)
        except OSError as e:
            logger.critical(f"Update succeeded but saving last IP to {self.last_ip_store.path} failed: {e}")
        return True

    def run_forever(self) -> None:
        interval = max(5, self.client.config.check_interval_seconds)
        while True:
            self.check_and_update()
            time.sleep(interval)
