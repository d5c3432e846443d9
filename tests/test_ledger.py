"""Tests for the web3 ledger client."""

import json
from unittest.mock import MagicMock

import pytest
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from certanchor.config import DEFAULT_ABI_PATH, Settings
from certanchor.errors import ConfigError, LedgerError
from certanchor.ledger import Web3Ledger, load_abi

NODE_ACCOUNT = "0x90F8bf6A479f320ead074411a4B0e7944Ea8c9C1"
CONTRACT = "0xe78A0F7E598Cc8b0Bb87894B0F60dD2a88d6a8Ab"
TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
DIGEST = "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
TX_A = b"\xaa" * 32
TX_B = b"\xbb" * 32


@pytest.fixture
def w3():
    w3 = MagicMock()
    w3.eth.accounts = [NODE_ACCOUNT]
    w3.eth.wait_for_transaction_receipt.return_value = {"status": 1}
    return w3


@pytest.fixture
def contract():
    contract = MagicMock()
    contract.abi = load_abi(DEFAULT_ABI_PATH)
    store_call = contract.functions.storeHash.return_value
    store_call.estimate_gas.return_value = 50000
    store_call.transact.return_value = TX_A
    contract.functions.verifyHash.return_value.call.return_value = False
    return contract


def make_ledger(w3, contract, **kwargs):
    kwargs.setdefault("retry_delay", 0)
    return Web3Ledger(w3, contract, **kwargs)


class TestGasLimit:
    def test_proportional_margin(self, w3, contract):
        ledger = make_ledger(w3, contract, gas_margin=0.2)
        assert ledger.gas_limit(100000) == 120000

    def test_ceiling_caps_margin(self, w3, contract):
        ledger = make_ledger(w3, contract, gas_margin=0.5, gas_ceiling=110000)
        assert ledger.gas_limit(100000) == 110000

    def test_estimate_above_ceiling_fails(self, w3, contract):
        ledger = make_ledger(w3, contract, gas_ceiling=90000)
        with pytest.raises(LedgerError):
            ledger.gas_limit(100000)


class TestAnchor:
    def test_unlocked_account_path(self, w3, contract):
        ledger = make_ledger(w3, contract, gas_margin=0.2)

        tx = ledger.anchor(DIGEST)

        assert tx == Web3.to_hex(TX_A)
        contract.functions.storeHash.assert_called_with(DIGEST)
        store_call = contract.functions.storeHash.return_value
        store_call.estimate_gas.assert_called_once_with({"from": NODE_ACCOUNT})
        store_call.transact.assert_called_once_with({"from": NODE_ACCOUNT, "gas": 60000})
        w3.eth.wait_for_transaction_receipt.assert_called_once_with(tx, timeout=120)

    def test_signed_path(self, w3, contract):
        w3.eth.account = Account
        w3.eth.get_transaction_count.return_value = 7
        w3.eth.send_raw_transaction.return_value = TX_B
        sender = Account.from_key(TEST_KEY).address
        store_call = contract.functions.storeHash.return_value
        store_call.build_transaction.return_value = {
            "to": Web3.to_checksum_address(CONTRACT),
            "value": 0,
            "gas": 60000,
            "gasPrice": Web3.to_wei(15, "gwei"),
            "nonce": 7,
            "chainId": 1337,
            "data": "0x",
        }
        ledger = make_ledger(w3, contract, private_key=TEST_KEY)

        tx = ledger.anchor(DIGEST)

        assert tx == Web3.to_hex(TX_B)
        store_call.build_transaction.assert_called_once_with({"from": sender, "nonce": 7, "gas": 60000})
        w3.eth.send_raw_transaction.assert_called_once()
        store_call.transact.assert_not_called()

    def test_mismatched_account_and_key(self, w3, contract):
        w3.eth.account = Account
        ledger = make_ledger(w3, contract, private_key=TEST_KEY, account_address=NODE_ACCOUNT)
        with pytest.raises(ConfigError):
            ledger.anchor(DIGEST)

    def test_node_without_accounts(self, w3, contract):
        w3.eth.accounts = []
        with pytest.raises(LedgerError):
            make_ledger(w3, contract, retries=0).anchor(DIGEST)

    def test_sender_resolved_once(self, w3, contract):
        ledger = make_ledger(w3, contract)
        ledger.anchor(DIGEST)
        w3.eth.accounts = []
        ledger.anchor(DIGEST)
        assert ledger.sender() == NODE_ACCOUNT

    def test_gas_estimation_failure(self, w3, contract):
        contract.functions.storeHash.return_value.estimate_gas.side_effect = ContractLogicError("execution reverted")
        ledger = make_ledger(w3, contract, retries=0)
        with pytest.raises(LedgerError, match="Gas estimation"):
            ledger.anchor(DIGEST)

    def test_retry_after_submission_failure(self, w3, contract):
        store_call = contract.functions.storeHash.return_value
        store_call.transact.side_effect = [OSError("connection reset"), TX_B]
        ledger = make_ledger(w3, contract, retries=2)

        assert ledger.anchor(DIGEST) == Web3.to_hex(TX_B)
        assert store_call.transact.call_count == 2
        contract.functions.verifyHash.assert_called_with(DIGEST)

    def test_no_resend_when_digest_landed(self, w3, contract):
        w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("timed out")
        contract.functions.verifyHash.return_value.call.side_effect = [False, True]
        store_call = contract.functions.storeHash.return_value
        ledger = make_ledger(w3, contract, retries=2)

        assert ledger.anchor(DIGEST) == Web3.to_hex(TX_A)
        assert store_call.transact.call_count == 1

    def test_gives_up_after_retries(self, w3, contract):
        store_call = contract.functions.storeHash.return_value
        store_call.transact.side_effect = OSError("node down")
        ledger = make_ledger(w3, contract, retries=2)

        with pytest.raises(LedgerError):
            ledger.anchor(DIGEST)
        assert store_call.transact.call_count == 3

    def test_query_failure_before_retry_still_retries(self, w3, contract):
        store_call = contract.functions.storeHash.return_value
        store_call.transact.side_effect = [OSError("node down"), TX_B]
        contract.functions.verifyHash.return_value.call.side_effect = OSError("node down")
        ledger = make_ledger(w3, contract, retries=1)

        assert ledger.anchor(DIGEST) == Web3.to_hex(TX_B)

    @pytest.mark.parametrize("retries", [0, 2])
    def test_present_digest_is_not_resent(self, w3, contract, retries):
        store_call = contract.functions.storeHash.return_value
        store_call.estimate_gas.side_effect = ContractLogicError("already stored")
        contract.functions.verifyHash.return_value.call.return_value = True
        ledger = make_ledger(w3, contract, retries=retries)

        assert ledger.anchor(DIGEST) is None
        store_call.estimate_gas.assert_not_called()
        store_call.transact.assert_not_called()

    @pytest.mark.parametrize("retries", [0, 2])
    def test_duplicate_revert_after_concurrent_anchor(self, w3, contract, retries):
        store_call = contract.functions.storeHash.return_value
        store_call.estimate_gas.side_effect = ContractLogicError("already stored")
        contract.functions.verifyHash.return_value.call.side_effect = [False, True]
        ledger = make_ledger(w3, contract, retries=retries)

        assert ledger.anchor(DIGEST) is None
        assert store_call.estimate_gas.call_count == 1
        store_call.transact.assert_not_called()

    def test_receipt_timeout_then_present_returns_own_tx(self, w3, contract):
        w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("timed out")
        contract.functions.verifyHash.return_value.call.side_effect = [False, True]
        ledger = make_ledger(w3, contract, retries=0)

        assert ledger.anchor(DIGEST) == Web3.to_hex(TX_A)

    def test_reverted_receipt(self, w3, contract):
        w3.eth.wait_for_transaction_receipt.return_value = {"status": 0}
        ledger = make_ledger(w3, contract, retries=0)
        with pytest.raises(LedgerError, match="reverted"):
            ledger.anchor(DIGEST)


class TestQuery:
    def test_query(self, w3, contract):
        contract.functions.verifyHash.return_value.call.return_value = True
        assert make_ledger(w3, contract).query(DIGEST) is True
        contract.functions.verifyHash.assert_called_with(DIGEST)

    def test_query_failure(self, w3, contract):
        contract.functions.verifyHash.return_value.call.side_effect = ValueError("rpc error")
        with pytest.raises(LedgerError):
            make_ledger(w3, contract).query(DIGEST)

    def test_total(self, w3, contract):
        contract.functions.getTotalHashesCount.return_value.call.return_value = 12
        assert make_ledger(w3, contract).total() == 12

    def test_total_unsupported(self, w3, contract):
        contract.abi = [item for item in contract.abi if item["name"] != "getTotalHashesCount"]
        assert make_ledger(w3, contract).total() is None


class TestFromSettings:
    def test_requires_contract_address(self):
        with pytest.raises(ConfigError):
            Web3Ledger.from_settings(Settings())

    def test_rejects_bad_address(self):
        with pytest.raises(ConfigError):
            Web3Ledger.from_settings(Settings(contract_address="0x1234"))

    def test_missing_abi(self, tmp_path):
        with pytest.raises(ConfigError):
            Web3Ledger.from_settings(
                Settings(contract_address=CONTRACT, contract_abi_path=tmp_path / "missing.json")
            )

    def test_builds_contract(self, tmp_path):
        abi_path = tmp_path / "abi.json"
        abi_path.write_text(json.dumps(load_abi(DEFAULT_ABI_PATH)))

        ledger = Web3Ledger.from_settings(
            Settings(contract_address=CONTRACT.lower(), contract_abi_path=abi_path, anchor_retries=5)
        )

        assert ledger.contract.address == Web3.to_checksum_address(CONTRACT)
        assert ledger.retries == 5

    def test_bundled_abi_exposes_contract_functions(self):
        names = {item["name"] for item in load_abi(DEFAULT_ABI_PATH)}
        assert {"storeHash", "verifyHash"} <= names
