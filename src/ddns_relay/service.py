"""Update orchestrator.

Drives one privileged request from the raw envelope to a response:
authenticate, validate, reconcile with the DNS provider, bind in the ledger,
apply the new value. External provider state may run ahead of or behind the
ledger for a short window; the rules for which side wins are:

* a freshly created provider record that the ledger then refuses is deleted
  again (best effort, see ``_compensate_created_record``);
* a bound record whose value update fails stays bound;
* on delete, ledger removal is authoritative even if the provider delete fails.
"""

from __future__ import annotations

import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple, Type, TypeVar

from ddns_relay import validators
from ddns_relay.crypto import open_sealed
from ddns_relay.errors import (
    AuthenticationFailed,
    BadRequest,
    DecryptionFailed,
    DNSProviderError,
    InvalidKeyLength,
    NotFound,
    PersistenceFailed,
    QuotaExceeded,
    RecordConflict,
)
from ddns_relay.ledger import Account, Ledger
from ddns_relay.provider import DNSProvider, Reconciliation

logger = logging.getLogger(__name__)

# =============================================================================
# Decrypted Payloads
# =============================================================================


def _require_str(data: Dict[str, Any], field_name: str) -> str:
    value = data[field_name]
    if not isinstance(value, str):
        raise TypeError(f"'{field_name}' must be a string")
    return value


@dataclass(frozen=True)
class UpdateRequest:
    secret_token: str
    domain_name: str
    rr: str
    new_ip: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UpdateRequest":
        return cls(
            secret_token=_require_str(data, "secret_token"),
            domain_name=_require_str(data, "domain_name"),
            rr=_require_str(data, "rr"),
            new_ip=_require_str(data, "new_ip"),
        )


@dataclass(frozen=True)
class DeleteRecordRequest:
    secret_token: str
    domain_name: str
    rr: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeleteRecordRequest":
        return cls(
            secret_token=_require_str(data, "secret_token"),
            domain_name=_require_str(data, "domain_name"),
            rr=_require_str(data, "rr"),
        )


@dataclass(frozen=True)
class KeyResetRequest:
    secret_token: str
    new_encryption_key: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyResetRequest":
        return cls(
            secret_token=_require_str(data, "secret_token"),
            new_encryption_key=_require_str(data, "new_encryption_key"),
        )


PayloadT = TypeVar("PayloadT", UpdateRequest, DeleteRecordRequest, KeyResetRequest)


def _success(message: str) -> Dict[str, str]:
    return {"status": "success", "message": message}


def _check(verdict: validators.Verdict) -> None:
    if not verdict:
        raise BadRequest(verdict.reason)


def _tokens_match(expected: str, presented: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))


# =============================================================================
# Orchestrator
# =============================================================================


class DDNSService:
    def __init__(self, *, ledger: Ledger, dns_provider: DNSProvider):
        self.ledger = ledger
        self.dns_provider = dns_provider

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    def authenticate_envelope(
        self, body: Any, payload_type: Type[PayloadT]
    ) -> Tuple[str, PayloadT]:
        """Authenticate an encrypted envelope and return (username, payload)."""
        if not isinstance(body, dict):
            raise BadRequest("request body must be a JSON object")
        username = body.get("username")
        data = body.get("data")
        if not isinstance(data, str):
            raise BadRequest("request body must carry 'username' and 'data'")
        _check(validators.validate_username(username))

        try:
            account = self.ledger.lookup(username)
        except NotFound:
            raise AuthenticationFailed(f"unknown user '{username}'") from None

        try:
            plaintext = open_sealed(account.encryption_key, data)
        except DecryptionFailed:
            raise AuthenticationFailed(f"payload from '{username}' failed to decrypt") from None

        try:
            payload = payload_type.from_dict(json.loads(plaintext))
        except (ValueError, KeyError, TypeError, AttributeError, RecursionError):
            raise AuthenticationFailed(f"decrypted payload from '{username}' is malformed") from None

        if not _tokens_match(account.secret_token, payload.secret_token):
            raise AuthenticationFailed(f"secret token mismatch for '{username}'")

        return username, payload

    def authenticate_bearer(self, username: Any, authorization: str) -> Account:
        """Authenticate a read-only request by its ``Authorization: Bearer`` header."""
        _check(validators.validate_username(username))
        try:
            account = self.ledger.lookup(username)
        except NotFound:
            raise AuthenticationFailed(f"unknown user '{username}'", status_code=401) from None

        scheme, _, token = (authorization or "").partition(" ")
        if scheme != "Bearer" or not _tokens_match(account.secret_token, token):
            raise AuthenticationFailed(f"bearer token mismatch for '{username}'", status_code=401)
        return account

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def update_dns(self, body: Any) -> Dict[str, str]:
        username, req = self.authenticate_envelope(body, UpdateRequest)

        _check(validators.validate_domain_name(req.domain_name))
        _check(validators.validate_rr(req.rr))
        _check(validators.validate_ipv4(req.new_ip))
        fqdn = f"{req.rr}.{req.domain_name}"

        try:
            reconciliation = self.dns_provider.find_or_create(req.domain_name, req.rr, req.new_ip)
        except DNSProviderError as e:
            logger.error(f"User '{username}': find-or-create for {fqdn} failed: {e}")
            raise

        try:
            self.ledger.bind(username, req.domain_name, req.rr, reconciliation.record_id)
        except (QuotaExceeded, RecordConflict) as e:
            outcome = ""
            if reconciliation.created:
                if self._compensate_created_record(username, fqdn, reconciliation):
                    outcome = " (created record rolled back)"
                else:
                    outcome = " (orphan left at provider)"
            logger.warning(f"User '{username}': binding {fqdn} rejected{outcome}: {e}")
            raise
        except PersistenceFailed:
            logger.critical(
                f"User '{username}': {fqdn} is bound in memory only; account store write failed"
            )
            raise

        if reconciliation.current_value == req.new_ip:
            if reconciliation.created:
                msg = f"{fqdn} created with {req.new_ip}"
            else:
                msg = f"IP address unchanged ({req.new_ip}), no update needed"
            logger.info(f"User '{username}': {msg}")
            return _success(msg)

        try:
            self.dns_provider.update_record(reconciliation.record_id, req.rr, req.new_ip)
        except DNSProviderError as e:
            logger.error(
                f"User '{username}': updating {fqdn} to {req.new_ip} failed "
                f"(binding kept): {e}"
            )
            raise

        msg = f"{fqdn} updated to {req.new_ip}"
        logger.info(f"User '{username}': {msg}")
        return _success(msg)

    def _compensate_created_record(
        self, username: str, fqdn: str, reconciliation: Reconciliation
    ) -> bool:
        """Delete a provider record created for a request the ledger refused.

        Returns True when the record was removed. A failure is logged at
        CRITICAL and otherwise swallowed: the client is told about the
        rejection, not about the cleanup.
        """
        logger.info(
            f"Rolling back: deleting record {reconciliation.record_id} ({fqdn}) "
            f"just created for '{username}'"
        )
        try:
            self.dns_provider.delete_record(reconciliation.record_id)
        except DNSProviderError as e:
            logger.critical(
                f"Rollback failed: record {reconciliation.record_id} ({fqdn}) is orphaned "
                f"at the DNS provider and owned by no account: {e}"
            )
            return False
        return True

    def list_records(self, username: Any, authorization: str) -> List[Dict[str, str]]:
        account = self.authenticate_bearer(username, authorization)
        logger.info(f"User '{account.username}' listed {len(account.records)} record(s)")
        return [r.to_dict() for r in account.records]

    def delete_record(self, body: Any) -> Dict[str, str]:
        username, req = self.authenticate_envelope(body, DeleteRecordRequest)

        _check(validators.validate_domain_name(req.domain_name))
        _check(validators.validate_rr(req.rr))
        fqdn = f"{req.rr}.{req.domain_name}"

        persistence_error = None
        try:
            record_id = self.ledger.unbind(username, req.domain_name, req.rr)
        except PersistenceFailed as e:
            # Memory already released the name; finish the provider side anyway.
            persistence_error = e
            record_id = e.value or ""

        if not record_id:
            logger.warning(
                f"User '{username}': {fqdn} had no provider record id, removed from ledger only"
            )
        else:
            try:
                self.dns_provider.delete_record(record_id)
            except DNSProviderError as e:
                logger.critical(
                    f"User '{username}': {fqdn} removed from ledger but provider delete of "
                    f"record {record_id} failed: {e}"
                )

        if persistence_error is not None:
            raise persistence_error

        msg = f"{fqdn} has been removed"
        logger.info(f"User '{username}': {msg}")
        return _success(msg)

    def view_key(self, username: Any, authorization: str) -> Dict[str, str]:
        account = self.authenticate_bearer(username, authorization)
        logger.info(f"User '{account.username}' viewed their encryption key")
        return {"encryption_key": account.encryption_key}

    def reset_key(self, body: Any) -> Dict[str, str]:
        username, req = self.authenticate_envelope(body, KeyResetRequest)
        try:
            self.ledger.rotate_key(username, req.new_encryption_key)
        except InvalidKeyLength:
            logger.warning(f"User '{username}': rejected key rotation with a malformed key")
            raise
        logger.info(f"User '{username}' rotated their encryption key")
        return _success("encryption key has been reset")
