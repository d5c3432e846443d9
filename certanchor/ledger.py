"""Ledger client for the certificate hash registry contract.

The contract exposes ``storeHash(string)`` and ``verifyHash(string) -> bool``
(plus an optional ``getTotalHashesCount()``). Digests are passed as 64-char
lowercase hex strings. A contract may revert ``storeHash`` for a digest it
already holds, so ``anchor`` checks ``verifyHash`` before sending and treats
a present digest as anchored.
"""

import json
import logging
import time
from typing import Optional, Protocol

from web3 import Web3
from web3.exceptions import Web3Exception

from .config import Settings
from .errors import ConfigError, LedgerError

logger = logging.getLogger(__name__)

# web3 surfaces RPC failures as Web3Exception subclasses, older providers as
# ValueError, and transport failures as OSError (requests)
_CHAIN_ERRORS = (Web3Exception, ValueError, OSError)


class Ledger(Protocol):
    """Protocol for append-only digest ledgers."""

    def anchor(self, digest: str) -> Optional[str]:
        """Record ``digest`` and return the transaction id.

        Returns None when the digest was already recorded and no new
        transaction is known to have recorded it.
        """
        ...

    def query(self, digest: str) -> bool:
        """Return True if ``digest`` has been recorded."""
        ...

    def total(self) -> Optional[int]:
        """Number of recorded digests, or None if the ledger cannot say."""
        ...


def load_abi(path) -> list:
    try:
        with open(path, "r") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Could not load contract ABI from {path}: {e}") from e


class Web3Ledger:
    """Ledger backed by an Ethereum-compatible node through web3.py.

    Transactions are signed locally when a private key is configured,
    otherwise they are sent from an account the node holds unlocked (the
    configured address, or the node's first account).
    """

    def __init__(
        self,
        w3: Web3,
        contract,
        private_key: Optional[str] = None,
        account_address: Optional[str] = None,
        gas_margin: float = 0.2,
        gas_ceiling: Optional[int] = None,
        retries: int = 2,
        receipt_timeout: int = 120,
        retry_delay: float = 1.0,
    ):
        self.w3 = w3
        self.contract = contract
        self.private_key = private_key
        self.account_address = account_address
        self.gas_margin = gas_margin
        self.gas_ceiling = gas_ceiling
        self.retries = retries
        self.receipt_timeout = receipt_timeout
        self.retry_delay = retry_delay
        self._sender = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Web3Ledger":
        settings.require("contract_address")
        if not Web3.is_address(settings.contract_address):
            raise ConfigError(f"CONTRACT_ADDRESS is not a valid address: {settings.contract_address}")

        w3 = Web3(Web3.HTTPProvider(
            settings.rpc_url,
            request_kwargs={"timeout": settings.request_timeout},
        ))
        contract = w3.eth.contract(
            address=Web3.to_checksum_address(settings.contract_address),
            abi=load_abi(settings.contract_abi_path),
        )
        return cls(
            w3,
            contract,
            private_key=settings.private_key,
            account_address=settings.account_address,
            gas_margin=settings.gas_margin,
            gas_ceiling=settings.gas_ceiling,
            retries=settings.anchor_retries,
            receipt_timeout=settings.receipt_timeout,
        )

    # --- Ledger protocol ---

    def anchor(self, digest: str) -> Optional[str]:
        """Submit ``digest`` and wait for it to be mined.

        The ledger is queried first, and a digest that is already present is
        not submitted again. Failed attempts are retried up to ``retries``
        times; before each retry, and once more before giving up, the ledger
        is queried again so a digest that landed anyway (a receipt wait that
        timed out, a concurrent upload) counts as anchored.

        Returns:
            0x-prefixed hash of the transaction sent by this call that
            recorded the digest, or None if the digest was already present
            and none of this call's transactions is known to have landed

        Raises:
            LedgerError: If every attempt failed and the digest is absent
        """
        if self._already_anchored(digest):
            logger.info("Digest %s... already anchored, nothing sent", digest[:12])
            return None

        last_error = None
        last_tx = None
        for attempt in range(self.retries + 1):
            if attempt:
                time.sleep(self.retry_delay * attempt)
                if self._already_anchored(digest):
                    logger.info("Digest %s... present after failed attempt, not resending", digest[:12])
                    return last_tx
            try:
                tx_hash = self._send(digest)
            except LedgerError as e:
                last_error = e
                logger.warning("Anchor attempt %d for %s... failed: %s", attempt + 1, digest[:12], e)
                continue
            last_tx = tx_hash
            try:
                self._confirm(tx_hash)
                return tx_hash
            except LedgerError as e:
                last_error = e
                logger.warning("Transaction %s not confirmed: %s", tx_hash, e)
        if self._already_anchored(digest):
            logger.info("Digest %s... present after final attempt", digest[:12])
            return last_tx
        raise last_error

    def query(self, digest: str) -> bool:
        try:
            return bool(self.contract.functions.verifyHash(digest).call())
        except _CHAIN_ERRORS as e:
            raise LedgerError(f"Ledger query failed: {e}") from e

    def total(self):
        if not any(item.get("name") == "getTotalHashesCount" for item in self.contract.abi):
            return None
        try:
            return int(self.contract.functions.getTotalHashesCount().call())
        except _CHAIN_ERRORS as e:
            raise LedgerError(f"Ledger count failed: {e}") from e

    # --- internals ---

    def sender(self) -> str:
        """Resolve the sending account once, on first use."""
        if self._sender is not None:
            return self._sender
        if self.private_key:
            address = self.w3.eth.account.from_key(self.private_key).address
            if self.account_address and Web3.to_checksum_address(self.account_address) != address:
                raise ConfigError("ACCOUNT_ADDRESS does not match PRIVATE_KEY")
        elif self.account_address:
            address = Web3.to_checksum_address(self.account_address)
        else:
            try:
                accounts = self.w3.eth.accounts
            except _CHAIN_ERRORS as e:
                raise LedgerError(f"Could not fetch node accounts: {e}") from e
            if not accounts:
                raise LedgerError("Node exposes no accounts; set PRIVATE_KEY")
            address = accounts[0]
            logger.info("Using node account %s", address)
        self._sender = address
        return address

    def gas_limit(self, estimate: int) -> int:
        """Apply the proportional margin, bounded by the optional ceiling."""
        limit = int(estimate * (1 + self.gas_margin))
        if self.gas_ceiling:
            if estimate > self.gas_ceiling:
                raise LedgerError(
                    f"Gas estimate {estimate} exceeds configured ceiling {self.gas_ceiling}"
                )
            limit = min(limit, self.gas_ceiling)
        return limit

    def _send(self, digest: str) -> str:
        sender = self.sender()
        call = self.contract.functions.storeHash(digest)
        try:
            estimate = call.estimate_gas({"from": sender})
        except _CHAIN_ERRORS as e:
            raise LedgerError(f"Gas estimation failed: {e}") from e
        gas = self.gas_limit(estimate)

        try:
            if self.private_key:
                txn = call.build_transaction({
                    "from": sender,
                    "nonce": self.w3.eth.get_transaction_count(sender),
                    "gas": gas,
                })
                signed = self.w3.eth.account.sign_transaction(txn, private_key=self.private_key)
                tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            else:
                tx_hash = call.transact({"from": sender, "gas": gas})
        except _CHAIN_ERRORS as e:
            raise LedgerError(f"Transaction submission failed: {e}") from e
        return Web3.to_hex(tx_hash)

    def _confirm(self, tx_hash: str) -> None:
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except _CHAIN_ERRORS as e:
            raise LedgerError(f"No receipt for {tx_hash}: {e}") from e
        if receipt.get("status") == 0:
            raise LedgerError(f"Transaction {tx_hash} reverted")

    def _already_anchored(self, digest: str) -> bool:
        try:
            return self.query(digest)
        except LedgerError as e:
            logger.warning("Could not check whether %s... is anchored: %s", digest[:12], e)
            return False
