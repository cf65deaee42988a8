"""Safe Transaction Service client.

- Read pending multisig transactions and their decoded call data

- We never post anything to the service: execution happens by
  sending the underlying transaction to the forked chain directly

See `Safe Transaction Service API <https://docs.safe.global/core-api/transaction-service-reference>`__.
"""

import logging
from typing import Iterable

import requests
from eth_typing import HexAddress
from requests import Session
from web3 import Web3

from eth_governance.safe.decoded import PendingTransaction


logger = logging.getLogger(__name__)


#: Connect and read timeout for the tx service
DEFAULT_TIMEOUT = (10.0, 60.0)


class CustodyServiceError(Exception):
    """Safe Transaction Service did not give us what we asked."""


class SafeTransactionService:
    """Read-only Safe Transaction Service client.

    Example:

    .. code-block:: python

        service = SafeTransactionService("https://safe-transaction-mainnet.safe.global")
        pending = service.fetch_pending_transactions("0x...")
        for tx in get_transactions_to_execute(pending):
            print(tx.nonce, tx.safe_tx_hash)
    """

    def __init__(self, base_url: str, session: Session | None = None, timeout=DEFAULT_TIMEOUT):
        assert base_url.startswith("http"), f"Not a HTTP URL: {base_url}"
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def __repr__(self):
        return f"<SafeTransactionService {self.base_url}>"

    def _get_json(self, url: str, params: dict | None = None) -> dict:
        logger.debug("GET %s %s", url, params)
        resp = self.session.get(url, params=params, timeout=self.timeout)
        if resp.status_code == 404:
            raise CustodyServiceError(f"Not found: {url}")
        if resp.status_code != 200:
            raise CustodyServiceError(f"Safe tx service failed {resp.status_code} for {url}: {resp.text[0:500]}")
        return resp.json()

    def fetch_safe_nonce(self, safe_address: HexAddress | str) -> int:
        """Get the next nonce the Safe will execute."""
        safe_address = Web3.to_checksum_address(safe_address)
        data = self._get_json(f"{self.base_url}/api/v1/safes/{safe_address}/")
        return int(data["nonce"])

    def fetch_pending_transactions(self, safe_address: HexAddress | str) -> list[PendingTransaction]:
        """Get all not yet executed transactions at or above the current Safe nonce.

        - Follows pagination

        - Returns transactions as the service gives them,
          use :py:func:`get_transactions_to_execute` to order them
        """
        safe_address = Web3.to_checksum_address(safe_address)
        nonce = self.fetch_safe_nonce(safe_address)

        url = f"{self.base_url}/api/v1/safes/{safe_address}/multisig-transactions/"
        params = {"executed": "false", "nonce__gte": nonce}

        result = []
        while url:
            data = self._get_json(url, params)
            result += [PendingTransaction.parse(r) for r in data["results"]]
            url = data.get("next")
            # next link carries the query string
            params = None

        logger.info("Safe %s has %d pending transactions at nonce %d", safe_address, len(result), nonce)
        return result

    def fetch_transaction(self, safe_tx_hash: str) -> PendingTransaction:
        """Get a single multisig transaction by its Safe tx hash.

        :raise CustodyServiceError:
            Transaction not known
        """
        assert safe_tx_hash.startswith("0x"), f"Safe tx hash must be hex: {safe_tx_hash}"
        data = self._get_json(f"{self.base_url}/api/v1/multisig-transactions/{safe_tx_hash}/")
        return PendingTransaction.parse(data)


def get_transactions_to_execute(transactions: Iterable[PendingTransaction]) -> list[PendingTransaction]:
    """Order pending transactions for replay.

    - Sort ascending by nonce

    - If a nonce has multiple submissions, keep the most recent one
      and drop the rest

    :return:
        One transaction per nonce, ascending
    """
    by_nonce: dict[int, PendingTransaction] = {}
    for tx in transactions:
        existing = by_nonce.get(tx.nonce)
        if existing is None:
            by_nonce[tx.nonce] = tx
            continue

        if tx.submission_date > existing.submission_date:
            by_nonce[tx.nonce], dropped = tx, existing
        else:
            dropped = tx
        logger.info("Dropping resubmitted %s for nonce %d", dropped.safe_tx_hash, tx.nonce)

    return [by_nonce[n] for n in sorted(by_nonce)]
