"""External DNS provider interface and the Alibaba Cloud DNS implementation."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests

from ddns_relay.errors import DNSProviderError

logger = logging.getLogger(__name__)

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ProviderRecord:
    """An A record as the provider reports it."""

    record_id: str
    rr: str
    value: str


@dataclass(frozen=True)
class Reconciliation:
    """Result of find-or-create.

    ``created`` is True only when this call materialized the record, in which
    case ``current_value`` is the value that was just written.
    """

    record_id: str
    current_value: str
    created: bool


# =============================================================================
# DNS Provider Interface
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers. Failures raise DNSProviderError."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def find_record(self, domain_name: str, rr: str) -> Optional[ProviderRecord]:
        """Find the A record for exactly ``rr`` under ``domain_name``."""
        pass

    @abstractmethod
    def create_record(self, domain_name: str, rr: str, value: str) -> str:
        """Create an A record and return its id."""
        pass

    @abstractmethod
    def update_record(self, record_id: str, rr: str, value: str) -> None:
        """Point an existing A record at ``value``."""
        pass

    @abstractmethod
    def delete_record(self, record_id: str) -> None:
        """Delete a record by id."""
        pass

    def find_or_create(self, domain_name: str, rr: str, value: str) -> Reconciliation:
        record = self.find_record(domain_name, rr)
        if record is None:
            record_id = self.create_record(domain_name, rr, value)
            logger.info(f"{self.name}: created {rr}.{domain_name} -> {value} (id {record_id})")
            return Reconciliation(record_id=record_id, current_value=value, created=True)
        return Reconciliation(record_id=record.record_id, current_value=record.value, created=False)


class AliyunDNSProvider(DNSProvider):
    """Alibaba Cloud DNS (Alidns) over its signed RPC API."""

    API_VERSION = "2015-01-09"

    def __init__(
        self,
        access_key_id: str,
        access_key_secret: str,
        endpoint: str = "https://alidns.aliyuncs.com",
        timeout_seconds: float = 10.0,
    ):
        self._access_key_id = access_key_id
        self._access_key_secret = access_key_secret
        self._endpoint = endpoint.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()

    @property
    def name(self) -> str:
        return "Alibaba Cloud DNS"

    def find_record(self, domain_name: str, rr: str) -> Optional[ProviderRecord]:
        data = self._call(
            "DescribeDomainRecords",
            {"DomainName": domain_name, "RRKeyWord": rr, "Type": "A", "PageSize": "500"},
        )
        records = (data.get("DomainRecords") or {}).get("Record") or []
        # RRKeyWord is a fuzzy match; only an exact RR counts.
        for r in records:
            if isinstance(r, dict) and r.get("RR") == rr:
                return ProviderRecord(
                    record_id=str(r.get("RecordId", "")),
                    rr=rr,
                    value=str(r.get("Value", "")),
                )
        return None

    def create_record(self, domain_name: str, rr: str, value: str) -> str:
        data = self._call(
            "AddDomainRecord",
            {"DomainName": domain_name, "RR": rr, "Type": "A", "Value": value},
        )
        record_id = data.get("RecordId")
        if not record_id:
            raise DNSProviderError(f"{self.name}: AddDomainRecord returned no RecordId")
        return str(record_id)

    def update_record(self, record_id: str, rr: str, value: str) -> None:
        self._call(
            "UpdateDomainRecord",
            {"RecordId": record_id, "RR": rr, "Type": "A", "Value": value},
        )
        logger.info(f"{self.name}: updated record {record_id} ({rr}) -> {value}")

    def delete_record(self, record_id: str) -> None:
        self._call("DeleteDomainRecord", {"RecordId": record_id})
        logger.info(f"{self.name}: deleted record {record_id}")

    # -------------------------------------------------------------------------
    # Request signing
    # -------------------------------------------------------------------------

    @staticmethod
    def _percent_encode(value: str) -> str:
        return quote(value, safe="~")

    def _sign(self, params: Dict[str, str]) -> str:
        canonical = "&".join(
            f"{self._percent_encode(k)}={self._percent_encode(v)}" for k, v in sorted(params.items())
        )
        string_to_sign = f"GET&{self._percent_encode('/')}&{self._percent_encode(canonical)}"
        digest = hmac.new(
            (self._access_key_secret + "&").encode("utf-8"),
            string_to_sign.encode("utf-8"),
            hashlib.sha1,
        ).digest()
        return base64.b64encode(digest).decode("ascii")

    def _signed_params(self, action: str, params: Dict[str, str]) -> Dict[str, str]:
        signed = {
            "Action": action,
            "Format": "JSON",
            "Version": self.API_VERSION,
            "AccessKeyId": self._access_key_id,
            "SignatureMethod": "HMAC-SHA1",
            "SignatureVersion": "1.0",
            "SignatureNonce": uuid.uuid4().hex,
            "Timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        signed.update(params)
        signed["Signature"] = self._sign(signed)
        return signed

    def _call(self, action: str, params: Dict[str, str]) -> Dict[str, Any]:
        try:
            response = self._session.get(
                f"{self._endpoint}/",
                params=self._signed_params(action, params),
                timeout=self._timeout,
            )
        except requests.exceptions.RequestException as e:
            raise DNSProviderError(f"{self.name}: {action} request failed: {e}") from e

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError):
            data = None

        if response.status_code >= 400:
            code = data.get("Code") if isinstance(data, dict) else None
            message = data.get("Message") if isinstance(data, dict) else response.text[:200]
            raise DNSProviderError(
                f"{self.name}: {action} failed with HTTP {response.status_code} ({code}): {message}"
            )
        if not isinstance(data, dict):
            raise DNSProviderError(f"{self.name}: {action} returned a non-JSON response")
        return data


# =============================================================================
# Provider Factory
# =============================================================================


def create_dns_provider(
    provider: str,
    access_key_id: str,
    access_key_secret: str,
    timeout_seconds: float = 10.0,
) -> DNSProvider:
    """Factory function to create the configured DNS provider."""
    if provider == "aliyun":
        return AliyunDNSProvider(access_key_id, access_key_secret, timeout_seconds=timeout_seconds)
    raise ValueError(f"Unsupported DNS provider: '{provider}'. Supported providers: aliyun")
