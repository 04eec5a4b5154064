"""Shared fixtures: an in-memory DNS provider and ledger factories."""

import json
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

import pytest

from ddns_relay.errors import DNSProviderError
from ddns_relay.ledger import AccountStore, Ledger
from ddns_relay.provider import DNSProvider, ProviderRecord

ALICE_KEY = "a" * 32
BOB_KEY = "b" * 32

# =============================================================================
# Mock DNS Provider
# =============================================================================


class MockDNSProvider(DNSProvider):
    """Mock DNS provider with in-memory record storage and call tracking."""

    def __init__(self) -> None:
        self.records: Dict[str, Tuple[str, str, str]] = {}  # id -> (domain, rr, value)
        self.find_calls: List[Tuple[str, str]] = []
        self.create_calls: List[Tuple[str, str, str]] = []
        self.update_calls: List[Tuple[str, str, str]] = []
        self.delete_calls: List[str] = []
        self.failing: Set[str] = set()
        self._next_id = 1000

    @property
    def name(self) -> str:
        return "MockDNS"

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.failing:
            raise DNSProviderError(f"MockDNS: {operation} failed")

    def add_existing(self, domain_name: str, rr: str, value: str) -> str:
        self._next_id += 1
        record_id = str(self._next_id)
        self.records[record_id] = (domain_name, rr, value)
        return record_id

    def find_record(self, domain_name: str, rr: str) -> Optional[ProviderRecord]:
        self.find_calls.append((domain_name, rr))
        self._maybe_fail("find")
        for record_id, (d, r, value) in self.records.items():
            if d == domain_name and r == rr:
                return ProviderRecord(record_id=record_id, rr=r, value=value)
        return None

    def create_record(self, domain_name: str, rr: str, value: str) -> str:
        self.create_calls.append((domain_name, rr, value))
        self._maybe_fail("create")
        return self.add_existing(domain_name, rr, value)

    def update_record(self, record_id: str, rr: str, value: str) -> None:
        self.update_calls.append((record_id, rr, value))
        self._maybe_fail("update")
        domain_name, _, _ = self.records[record_id]
        self.records[record_id] = (domain_name, rr, value)

    def delete_record(self, record_id: str) -> None:
        self.delete_calls.append(record_id)
        self._maybe_fail("delete")
        self.records.pop(record_id, None)


# =============================================================================
# Fixtures
# =============================================================================


def make_account(
    username: str,
    key: str,
    token: str = "tok",
    domain_limit: int = 1,
    records: Optional[List[Dict[str, str]]] = None,
) -> Dict:
    return {
        "username": username,
        "secret_token": token,
        "encryption_key": key,
        "domain_limit": domain_limit,
        "records": records or [],
    }


@pytest.fixture
def users_path(tmp_path: Path) -> Path:
    return tmp_path / "users.json"


@pytest.fixture
def make_ledger(users_path: Path) -> Callable[[List[Dict]], Ledger]:
    """Write the given raw accounts to disk and return a loaded Ledger."""

    def _make(accounts: List[Dict]) -> Ledger:
        users_path.write_text(json.dumps({"users": accounts}), "utf-8")
        ledger = Ledger(AccountStore(str(users_path)))
        ledger.load()
        return ledger

    return _make


@pytest.fixture
def provider() -> MockDNSProvider:
    return MockDNSProvider()
