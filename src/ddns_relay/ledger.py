"""Record ledger: accounts, quotas and global ownership of DNS names.

The :class:`Ledger` is the only writer of account state. Every operation runs
under one reader/writer lock covering the whole account map, and every
mutation is written to disk (temp file + rename) before the lock is released.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ddns_relay.crypto import KEY_SIZE
from ddns_relay.errors import (
    InvalidKeyLength,
    LedgerLoadError,
    NotFound,
    PersistenceFailed,
    QuotaExceeded,
    RecordConflict,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class DomainRecord:
    """A DNS name bound to an account."""

    domain_name: str
    rr: str
    record_id: str = ""

    @property
    def key(self) -> Tuple[str, str]:
        return (self.domain_name, self.rr)

    @property
    def fqdn(self) -> str:
        return f"{self.rr}.{self.domain_name}"

    def to_dict(self) -> Dict[str, str]:
        return {"domain_name": self.domain_name, "rr": self.rr, "record_id": self.record_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DomainRecord":
        return cls(
            domain_name=str(data.get("domain_name") or ""),
            rr=str(data.get("rr") or ""),
            record_id=str(data.get("record_id") or ""),
        )


@dataclass
class Account:
    """A tenant: credentials, quota and owned records."""

    username: str
    secret_token: str
    encryption_key: str
    domain_limit: int = 1
    records: List[DomainRecord] = field(default_factory=list)

    def owns(self, domain_name: str, rr: str) -> bool:
        return any(r.key == (domain_name, rr) for r in self.records)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "secret_token": self.secret_token,
            "encryption_key": self.encryption_key,
            "domain_limit": self.domain_limit,
            "records": [r.to_dict() for r in self.records],
        }


def _key_length(key: str) -> int:
    return len(key.encode("utf-8"))


def account_from_dict(data: Any) -> Optional[Account]:
    """Build an Account from its stored form, or return None if it is malformed."""
    if not isinstance(data, dict):
        logger.warning(f"Skipping malformed account entry: {data!r}")
        return None

    username = data.get("username")
    secret_token = data.get("secret_token")
    encryption_key = data.get("encryption_key")
    if not isinstance(username, str) or not username:
        logger.warning("Skipping account without a username")
        return None
    if not isinstance(secret_token, str) or not secret_token:
        logger.warning(f"Skipping account '{username}': secret_token is missing")
        return None
    if not isinstance(encryption_key, str) or _key_length(encryption_key) != KEY_SIZE:
        logger.warning(
            f"Skipping account '{username}': encryption_key must be exactly {KEY_SIZE} bytes"
        )
        return None

    try:
        domain_limit = int(data.get("domain_limit") or 0)
    except (TypeError, ValueError):
        domain_limit = 0
    if domain_limit <= 0:
        domain_limit = 1

    raw_records = data.get("records") or []
    if not isinstance(raw_records, list):
        logger.warning(f"Skipping account '{username}': records must be a list")
        return None
    records = [DomainRecord.from_dict(r) for r in raw_records if isinstance(r, dict)]

    return Account(
        username=username,
        secret_token=secret_token,
        encryption_key=encryption_key,
        domain_limit=domain_limit,
        records=records,
    )


# =============================================================================
# Durable Storage
# =============================================================================


class AccountStore:
    """JSON file holding every account, replaced atomically on each save."""

    def __init__(self, path: str):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> List[Any]:
        """Return the raw account entries, or an empty list if the file is empty."""
        try:
            text = self.path.read_text("utf-8")
        except OSError as e:
            raise LedgerLoadError(f"Cannot read account store {self.path}: {e}") from e

        if not text.strip():
            return []
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise LedgerLoadError(f"Account store {self.path} is not valid JSON: {e}") from e

        users = data.get("users") if isinstance(data, dict) else None
        if users is None:
            return []
        if not isinstance(users, list):
            raise LedgerLoadError(f"Account store {self.path}: 'users' must be a list")
        return users

    def save(self, accounts: List[Account]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps({"users": [a.to_dict() for a in accounts]}, indent=2)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            tmp_path.replace(self.path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise


# =============================================================================
# Locking
# =============================================================================


class _ReadWriteLock:
    """Many concurrent readers or one writer. Writers are preferred once waiting."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


# =============================================================================
# Ledger
# =============================================================================


class Ledger:
    def __init__(self, store: AccountStore):
        self._store = store
        self._accounts: Dict[str, Account] = {}
        self._lock = _ReadWriteLock()

    def load(self) -> None:
        """Populate the ledger from the store, creating an empty store if missing.

        Malformed accounts are skipped. Two accounts claiming the same
        (domain_name, rr) is fatal and raises :class:`LedgerLoadError`.
        """
        with self._lock.write():
            if not self._store.exists():
                logger.warning(f"Account store {self._store.path} not found, creating an empty one")
                self._accounts = {}
                self._save_locked()
                return

            accounts: Dict[str, Account] = {}
            owners: Dict[Tuple[str, str], str] = {}
            for raw in self._store.load():
                account = account_from_dict(raw)
                if account is None:
                    continue
                if account.username in accounts:
                    logger.warning(f"Skipping duplicate account entry '{account.username}'")
                    continue
                for record in account.records:
                    owner = owners.get(record.key)
                    if owner is not None:
                        raise LedgerLoadError(
                            f"Record conflict: {record.fqdn} is claimed by both "
                            f"'{owner}' and '{account.username}'"
                        )
                    owners[record.key] = account.username
                accounts[account.username] = account

            self._accounts = accounts
            logger.info(f"Loaded {len(accounts)} account(s) from {self._store.path}")

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._accounts)

    def usernames(self) -> List[str]:
        with self._lock.read():
            return sorted(self._accounts)

    def lookup(self, username: str) -> Account:
        """Return a copy of the account; mutating it does not touch the ledger."""
        with self._lock.read():
            account = self._accounts.get(username)
            if account is None:
                raise NotFound(f"account '{username}' not found")
            return copy.deepcopy(account)

    def bind(self, username: str, domain_name: str, rr: str, record_id: str) -> None:
        """Bind (domain_name, rr) to ``username``, or refresh its record id."""
        key = (domain_name, rr)
        with self._lock.write():
            account = self._require_locked(username)

            for record in account.records:
                if record.key == key:
                    record.record_id = record_id
                    self._persist_locked(f"re-bind {rr}.{domain_name} for '{username}'")
                    return

            if len(account.records) >= account.domain_limit:
                raise QuotaExceeded(
                    f"'{username}' has reached its domain limit ({account.domain_limit})",
                    public_message=f"domain limit reached ({account.domain_limit})",
                )

            for other in self._accounts.values():
                if other.username != username and other.owns(domain_name, rr):
                    raise RecordConflict(
                        f"{rr}.{domain_name} is already owned by '{other.username}'",
                        public_message=f"{rr}.{domain_name} is already registered by another user",
                    )

            account.records.append(DomainRecord(domain_name, rr, record_id))
            self._persist_locked(f"bind {rr}.{domain_name} to '{username}'")

    def unbind(self, username: str, domain_name: str, rr: str) -> str:
        """Remove the record and return its provider record id (possibly empty)."""
        key = (domain_name, rr)
        with self._lock.write():
            account = self._require_locked(username)
            for i, record in enumerate(account.records):
                if record.key == key:
                    del account.records[i]
                    self._persist_locked(
                        f"unbind {rr}.{domain_name} from '{username}'", value=record.record_id
                    )
                    return record.record_id
            raise NotFound(
                f"'{username}' does not own {rr}.{domain_name}",
                public_message=f"{rr}.{domain_name} is not registered to this account",
            )

    def rotate_key(self, username: str, new_key: str) -> None:
        if not isinstance(new_key, str) or _key_length(new_key) != KEY_SIZE:
            raise InvalidKeyLength()
        with self._lock.write():
            account = self._require_locked(username)
            account.encryption_key = new_key
            self._persist_locked(f"rotate key for '{username}'")

    # -------------------------------------------------------------------------
    # Helpers; callers must hold the write lock.
    # -------------------------------------------------------------------------

    def _require_locked(self, username: str) -> Account:
        account = self._accounts.get(username)
        if account is None:
            raise NotFound(f"account '{username}' not found")
        return account

    def _save_locked(self) -> None:
        self._store.save(list(self._accounts.values()))

    def _persist_locked(self, action: str, value: Any = None) -> None:
        try:
            self._save_locked()
        except (OSError, TypeError, ValueError) as e:
            logger.critical(
                f"Persisting account store failed after '{action}'; "
                f"in-memory state is ahead of {self._store.path}: {e}"
            )
            raise PersistenceFailed(f"{action}: {e}", value=value) from e
