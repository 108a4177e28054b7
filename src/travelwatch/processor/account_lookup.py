# =============================================================================
# TravelWatch - Account Lookup
# =============================================================================
"""
Read-only point lookups of account metadata.

The account table is owned by an external system of record and mirrored
into a keyed store with eventual consistency (a change upstream may show up
a few seconds later). The engine never writes to it, so every worker can
share one lookup without locking.

Redis layout (one hash per account)::

    HSET travelwatch:account:ac_03 name "Jane Roe" email "jane@example.com"

Example:
    lookup = RedisAccountLookup()
    account, found = lookup.get("ac_03")
    if found:
        print(account.email)
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from typing import Iterable, Mapping

import redis
from loguru import logger

from travelwatch.config import get_settings
from travelwatch.exceptions import AccountLookupError, AccountLookupTimeout
from travelwatch.ingest.models import Account


class AccountLookup(ABC):
    """Keyed, read-only access to account metadata."""

    @abstractmethod
    def get(self, account_id: str) -> tuple[Account | None, bool]:
        """
        Look up one account.

        Returns:
            (account, found). ``account`` is None when ``found`` is False.

        Raises:
            AccountLookupError: If the backend failed
        """

    def close(self) -> None:
        """Release backend resources."""


class InMemoryAccountLookup(AccountLookup):
    """Dictionary-backed lookup, for tests and file replays."""

    def __init__(self, accounts: Iterable[Account] = ()) -> None:
        self._accounts: dict[str, Account] = {a.account_id: a for a in accounts}

    def get(self, account_id: str) -> tuple[Account | None, bool]:
        account = self._accounts.get(account_id)
        return account, account is not None


class RedisAccountLookup(AccountLookup):
    """
    Lookup against per-account Redis hashes.

    Socket timeouts bound every call, so a slow Redis cannot stall a
    partition worker for longer than ``socket_timeout``.
    """

    # Redis key prefix
    ACCOUNT_PREFIX = "travelwatch:account:"

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        db: int | None = None,
        password: str | None = None,
        socket_timeout: float = 0.5,
        client: redis.Redis | None = None,
    ) -> None:
        """
        Initialize Redis connection.

        Args:
            host: Redis host (default: from config)
            port: Redis port (default: from config)
            db: Redis database number (default: from config)
            password: Redis password (optional)
            socket_timeout: Connect/read timeout in seconds
            client: Pre-built client, skips connecting
        """
        settings = get_settings()

        self._host = host or os.getenv("REDIS_HOST") or settings.redis.host
        self._port = port or settings.redis.port
        self._db = settings.redis.db if db is None else db
        self._password = password or settings.redis.password
        self._socket_timeout = socket_timeout

        if client is not None:
            self._client = client
        else:
            self._client = redis.Redis(
                host=self._host,
                port=self._port,
                db=self._db,
                password=self._password,
                decode_responses=True,
                socket_connect_timeout=socket_timeout,
                socket_timeout=socket_timeout,
            )

        logger.info(f"RedisAccountLookup initialized: {self._host}:{self._port}/{self._db}")

    def get(self, account_id: str) -> tuple[Account | None, bool]:
        key = f"{self.ACCOUNT_PREFIX}{account_id}"

        try:
            data: Mapping[str, str] = self._client.hgetall(key)
        except redis.TimeoutError as e:
            raise AccountLookupTimeout(account_id, self._socket_timeout, cause=e) from e
        except redis.RedisError as e:
            raise AccountLookupError(f"Redis lookup failed for {account_id}", cause=e) from e

        if not data:
            return None, False

        return Account(
            account_id=account_id,
            name=data.get("name"),
            email=data.get("email"),
            phone=data.get("phone"),
            address=data.get("address"),
        ), True

    def close(self) -> None:
        """Close Redis connection."""
        self._client.close()
        logger.debug("Redis connection closed")
