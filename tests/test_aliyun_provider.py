"""Unit tests for AliyunDNSProvider."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from ddns_relay.errors import DNSProviderError
from ddns_relay.provider import AliyunDNSProvider, ProviderRecord, create_dns_provider


def make_provider() -> AliyunDNSProvider:
    return AliyunDNSProvider(
        access_key_id="testid", access_key_secret="testsecret", endpoint="https://dns.test/"
    )


def json_response(data, status_code: int = 200) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = data
    response.text = str(data)
    return response


class TestAliyunFindRecord:
    """Tests for DescribeDomainRecords handling."""

    def test_exact_rr_match_only(self) -> None:
        """RRKeyWord is fuzzy, so 'home2' must not be taken for 'home'."""
        provider = make_provider()
        data = {
            "DomainRecords": {
                "Record": [
                    {"RR": "home2", "RecordId": "1", "Value": "10.0.0.1"},
                    {"RR": "home", "RecordId": "2", "Value": "10.0.0.2"},
                ]
            }
        }

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = json_response(data)

            record = provider.find_record("example.com", "home")

            assert record == ProviderRecord(record_id="2", rr="home", value="10.0.0.2")
            url = mock_get.call_args.args[0]
            params = mock_get.call_args.kwargs["params"]
            assert url == "https://dns.test/"
            assert params["Action"] == "DescribeDomainRecords"
            assert params["DomainName"] == "example.com"
            assert params["RRKeyWord"] == "home"
            assert params["Type"] == "A"
            assert mock_get.call_args.kwargs["timeout"] == 10.0

    def test_no_record(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = json_response({"DomainRecords": {"Record": []}})

            assert provider.find_record("example.com", "home") is None

    def test_numeric_record_id_is_stringified(self) -> None:
        provider = make_provider()
        data = {"DomainRecords": {"Record": [{"RR": "@", "RecordId": 12345, "Value": "1.1.1.1"}]}}

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = json_response(data)

            assert provider.find_record("example.com", "@").record_id == "12345"


class TestAliyunMutations:
    def test_create_returns_record_id(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = json_response({"RecordId": "9001", "RequestId": "x"})

            assert provider.create_record("example.com", "home", "1.2.3.4") == "9001"
            params = mock_get.call_args.kwargs["params"]
            assert params["Action"] == "AddDomainRecord"
            assert params["Value"] == "1.2.3.4"

    def test_create_without_record_id_fails(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = json_response({"RequestId": "x"})

            with pytest.raises(DNSProviderError):
                provider.create_record("example.com", "home", "1.2.3.4")

    def test_update_and_delete_actions(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = json_response({"RequestId": "x"})

            provider.update_record("42", "home", "5.6.7.8")
            provider.delete_record("42")

            actions = [c.kwargs["params"]["Action"] for c in mock_get.call_args_list]
            assert actions == ["UpdateDomainRecord", "DeleteDomainRecord"]
            assert mock_get.call_args_list[1].kwargs["params"]["RecordId"] == "42"


class TestAliyunErrors:
    """Every failure mode surfaces as DNSProviderError."""

    def test_http_error_includes_provider_code(self) -> None:
        provider = make_provider()
        data = {"Code": "InvalidAccessKeyId.NotFound", "Message": "Specified access key is not found."}

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = json_response(data, status_code=404)

            with pytest.raises(DNSProviderError, match="InvalidAccessKeyId.NotFound"):
                provider.find_record("example.com", "home")

    def test_network_error(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "get") as mock_get:
            mock_get.side_effect = requests.exceptions.ConnectionError("Connection refused")

            with pytest.raises(DNSProviderError) as exc_info:
                provider.delete_record("1")

            assert exc_info.value.status_code == 500
            assert "Connection refused" not in exc_info.value.public_message

    def test_non_json_response(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "get") as mock_get:
            response = MagicMock()
            response.status_code = 200
            response.json.side_effect = ValueError("no json")
            mock_get.return_value = response

            with pytest.raises(DNSProviderError, match="non-JSON"):
                provider.find_record("example.com", "home")


class TestAliyunSigning:
    def test_signed_params_carry_common_fields(self) -> None:
        provider = make_provider()

        params = provider._signed_params("DescribeDomainRecords", {"DomainName": "example.com"})

        assert params["AccessKeyId"] == "testid"
        assert params["SignatureMethod"] == "HMAC-SHA1"
        assert params["SignatureVersion"] == "1.0"
        assert params["Version"] == "2015-01-09"
        assert params["Format"] == "JSON"
        assert params["Signature"]

    def test_nonce_differs_per_request(self) -> None:
        provider = make_provider()

        first = provider._signed_params("DeleteDomainRecord", {"RecordId": "1"})
        second = provider._signed_params("DeleteDomainRecord", {"RecordId": "1"})

        assert first["SignatureNonce"] != second["SignatureNonce"]

    def test_signature_depends_on_secret_and_params(self) -> None:
        params = {"Action": "DeleteDomainRecord", "RecordId": "1"}
        provider = make_provider()
        other = AliyunDNSProvider("testid", "othersecret")

        assert provider._sign(params) == provider._sign(dict(params))
        assert provider._sign(params) != other._sign(params)
        assert provider._sign(params) != provider._sign({**params, "RecordId": "2"})

    def test_percent_encoding(self) -> None:
        assert AliyunDNSProvider._percent_encode("a b*c~d/e") == "a%20b%2Ac~d%2Fe"


class TestProviderFactory:
    def test_creates_aliyun(self) -> None:
        provider = create_dns_provider("aliyun", "id", "secret", timeout_seconds=3)
        assert isinstance(provider, AliyunDNSProvider)

    def test_unknown_provider(self) -> None:
        with pytest.raises(ValueError, match="Unsupported"):
            create_dns_provider("route53", "id", "secret")
