"""
Account lookup tests (Redis client mocked)
"""

from unittest.mock import MagicMock

import pytest
import redis

from travelwatch.exceptions import AccountLookupError, AccountLookupTimeout
from travelwatch.ingest.models import Account
from travelwatch.processor.account_lookup import InMemoryAccountLookup, RedisAccountLookup


class TestInMemoryAccountLookup:

    def test_found_and_missing(self) -> None:
        lookup = InMemoryAccountLookup([Account(account_id="ac_01", name="A")])

        account, found = lookup.get("ac_01")
        assert found
        assert account.name == "A"

        assert lookup.get("ac_99") == (None, False)


class TestRedisAccountLookup:

    @pytest.fixture
    def client(self) -> MagicMock:
        return MagicMock()

    @pytest.fixture
    def lookup(self, client) -> RedisAccountLookup:
        return RedisAccountLookup(client=client, socket_timeout=0.2)

    def test_reads_account_hash(self, lookup, client) -> None:
        client.hgetall.return_value = {
            "name": "Jane Roe",
            "email": "jane@example.com",
            "phone": "+1 555 0100",
        }

        account, found = lookup.get("ac_03")

        client.hgetall.assert_called_once_with("travelwatch:account:ac_03")
        assert found
        assert account == Account(
            account_id="ac_03",
            name="Jane Roe",
            email="jane@example.com",
            phone="+1 555 0100",
        )

    def test_missing_hash(self, lookup, client) -> None:
        client.hgetall.return_value = {}

        assert lookup.get("ac_03") == (None, False)

    def test_timeout(self, lookup, client) -> None:
        client.hgetall.side_effect = redis.TimeoutError("Timeout reading from socket")

        with pytest.raises(AccountLookupTimeout) as exc_info:
            lookup.get("ac_03")

        assert exc_info.value.timeout == 0.2

    def test_connection_error(self, lookup, client) -> None:
        client.hgetall.side_effect = redis.ConnectionError("refused")

        with pytest.raises(AccountLookupError) as exc_info:
            lookup.get("ac_03")

        assert not isinstance(exc_info.value, AccountLookupTimeout)

    def test_close(self, lookup, client) -> None:
        lookup.close()

        client.close.assert_called_once()
