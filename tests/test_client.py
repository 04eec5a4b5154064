"""Unit tests for the agent side: config, relay client, IP lookup and update loop."""

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests
import yaml

from conftest import ALICE_KEY
from ddns_relay.client import (
    ClientConfig,
    ClientError,
    LastIPStore,
    RelayClient,
    UpdateAgent,
    get_public_ip,
    load_client_config,
    save_encryption_key,
)
from ddns_relay.crypto import open_sealed


def make_config(**overrides) -> ClientConfig:
    values = dict(
        server_url="http://relay.test",
        username="alice",
        secret_token="tok",
        encryption_key=ALICE_KEY,
        domain_name="example.com",
        rr="home",
    )
    values.update(overrides)
    return ClientConfig(**values)


def http_response(status_code: int = 200, data=None, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = data
    response.text = text
    return response


# =============================================================================
# Configuration
# =============================================================================


class TestClientConfig:
    def write(self, tmp_path: Path, data) -> str:
        path = tmp_path / "client.yaml"
        path.write_text(yaml.safe_dump(data))
        return str(path)

    def test_load_full_config(self, tmp_path: Path) -> None:
        path = self.write(
            tmp_path,
            {
                "client": {
                    "server_url": "http://relay.test/",
                    "username": "alice",
                    "secret_token": "tok",
                    "encryption_key": ALICE_KEY,
                    "domain_name": "example.com",
                    "rr": "home",
                    "check_interval_seconds": 60,
                }
            },
        )

        config = load_client_config(path, require_target=True)

        assert config.server_url == "http://relay.test"
        assert config.check_interval_seconds == 60

    def test_target_only_required_for_update(self, tmp_path: Path) -> None:
        path = self.write(
            tmp_path,
            {
                "client": {
                    "server_url": "http://relay.test",
                    "username": "alice",
                    "secret_token": "tok",
                    "encryption_key": ALICE_KEY,
                }
            },
        )

        assert load_client_config(path).domain_name == ""
        with pytest.raises(ClientError, match="domain_name, rr"):
            load_client_config(path, require_target=True)

    def test_missing_credentials(self, tmp_path: Path) -> None:
        path = self.write(tmp_path, {"client": {"server_url": "http://relay.test"}})

        with pytest.raises(ClientError, match="username"):
            load_client_config(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ClientError, match="Cannot load"):
            load_client_config(str(tmp_path / "absent.yaml"))

    def test_save_encryption_key_keeps_other_settings(self, tmp_path: Path) -> None:
        path = self.write(tmp_path, {"client": {"username": "alice", "encryption_key": "old"}})

        save_encryption_key(path, "n" * 32)

        data = yaml.safe_load(Path(path).read_text())
        assert data == {"client": {"username": "alice", "encryption_key": "n" * 32}}
        assert not Path(path + ".tmp").exists()


# =============================================================================
# Relay API Client
# =============================================================================


class TestRelayClient:
    def test_update_sends_sealed_envelope(self) -> None:
        client = RelayClient(make_config())

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = http_response(data={"status": "success", "message": "ok"})

            result = client.update("example.com", "home", "1.2.3.4")

            assert result["status"] == "success"
            method, url = mock_request.call_args.args
            assert (method, url) == ("POST", "http://relay.test/update-dns")
            envelope = mock_request.call_args.kwargs["json"]
            assert envelope["username"] == "alice"
            payload = json.loads(open_sealed(ALICE_KEY, envelope["data"]))
            assert payload == {
                "secret_token": "tok",
                "domain_name": "example.com",
                "rr": "home",
                "new_ip": "1.2.3.4",
            }

    def test_remove_uses_delete(self) -> None:
        client = RelayClient(make_config())

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = http_response(data={"status": "success"})

            client.remove("example.com", "home")

            assert mock_request.call_args.args == ("DELETE", "http://relay.test/manage-records")

    def test_list_records_uses_bearer_token(self) -> None:
        client = RelayClient(make_config())
        records = [{"domain_name": "example.com", "rr": "home", "record_id": "1"}]

        with patch.object(client._session, "get") as mock_get:
            mock_get.return_value = http_response(data=records)

            assert client.list_records() == records
            kwargs = mock_get.call_args.kwargs
            assert kwargs["params"] == {"username": "alice"}
            assert kwargs["headers"] == {"Authorization": "Bearer tok"}

    def test_view_key(self) -> None:
        client = RelayClient(make_config())

        with patch.object(client._session, "get") as mock_get:
            mock_get.return_value = http_response(data={"encryption_key": ALICE_KEY})

            assert client.view_key() == ALICE_KEY

    def test_error_status_raises(self) -> None:
        client = RelayClient(make_config())

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = http_response(
                status_code=403, text='{"status":"error","message":"authentication failed"}'
            )

            with pytest.raises(ClientError, match="403"):
                client.reset_key("n" * 32)

    def test_network_error_raises(self) -> None:
        client = RelayClient(make_config())

        with patch.object(client._session, "get") as mock_get:
            mock_get.side_effect = requests.exceptions.ConnectionError("Connection refused")

            with pytest.raises(ClientError, match="Connection refused"):
                client.list_records()


# =============================================================================
# Public IP Discovery
# =============================================================================


class TestGetPublicIP:
    def test_first_service_wins(self) -> None:
        session = MagicMock()
        session.get.return_value = MagicMock(text="203.0.113.5\n")

        assert get_public_ip(["https://a.test", "https://b.test"], session=session) == "203.0.113.5"
        assert session.get.call_count == 1

    def test_falls_back_on_failure_and_bad_answer(self) -> None:
        session = MagicMock()
        session.get.side_effect = [
            requests.exceptions.Timeout("timed out"),
            MagicMock(text="<html>rate limited</html>"),
            MagicMock(text="198.51.100.2"),
        ]

        ip = get_public_ip(["https://a.test", "https://b.test", "https://c.test"], session=session)

        assert ip == "198.51.100.2"

    def test_all_services_fail(self) -> None:
        session = MagicMock()
        session.get.side_effect = requests.exceptions.ConnectionError("down")

        with pytest.raises(ClientError):
            get_public_ip(["https://a.test"], session=session)


class TestLastIPStore:
    def test_missing_file_reads_empty(self, tmp_path: Path) -> None:
        assert LastIPStore(str(tmp_path / "last_ip.txt")).read() == ""

    def test_write_then_read(self, tmp_path: Path) -> None:
        store = LastIPStore(str(tmp_path / "last_ip.txt"))
        store.write("1.2.3.4")

        assert store.read() == "1.2.3.4"


# =============================================================================
# Update Agent
# =============================================================================


class TestUpdateAgent:
    def make_agent(self, tmp_path: Path, ip: str = "1.2.3.4"):
        client = MagicMock()
        client.config = make_config()
        client.update.return_value = {"status": "success", "message": "updated"}
        store = LastIPStore(str(tmp_path / "last_ip.txt"))
        return UpdateAgent(client, store, ip_lookup=lambda: ip), client, store

    def test_changed_ip_is_pushed_and_saved(self, tmp_path: Path) -> None:
        agent, client, store = self.make_agent(tmp_path)

        assert agent.check_and_update() is True
        client.update.assert_called_once_with("example.com", "home", "1.2.3.4")
        assert store.read() == "1.2.3.4"

    def test_unchanged_ip_is_skipped(self, tmp_path: Path) -> None:
        agent, client, store = self.make_agent(tmp_path)
        store.write("1.2.3.4")

        assert agent.check_and_update() is False
        client.update.assert_not_called()

    def test_failed_update_does_not_save_ip(self, tmp_path: Path) -> None:
        agent, client, store = self.make_agent(tmp_path)
        client.update.side_effect = ClientError("Server returned an error (status 500)")

        assert agent.check_and_update() is False
        assert store.read() == ""

    def test_failed_ip_lookup(self, tmp_path: Path) -> None:
        client = MagicMock()
        store = LastIPStore(str(tmp_path / "last_ip.txt"))

        def lookup():
            raise ClientError("All public IP services failed")

        assert UpdateAgent(client, store, ip_lookup=lookup).check_and_update() is False
        client.update.assert_not_called()
