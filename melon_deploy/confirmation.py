"""Broadcast signed transactions and wait for their receipts.

A deployment step is either one transaction or a chunk of transactions
signed with consecutive nonces. Both go through
:py:func:`broadcast_and_wait_transactions_to_complete`:

- broadcast in nonce order, so the node never sees a nonce gap

- poll until every transaction has a receipt

- fail the step if any receipt reverted
"""

import datetime
import logging
import time
from typing import Dict, List, Union

from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3RPCError

from melon_deploy.hotwallet import SignedTransactionWithNonce
from melon_deploy.revert_reason import describe_failed_receipt
from melon_deploy.tx import decode_signed_transaction, format_transaction, get_tx_broadcast_data

logger = logging.getLogger(__name__)


class BroadcastFailure(Exception):
    """The node refused a signed transaction."""


class ConfirmationTimedOut(Exception):
    """A transaction got no receipt within the confirmation timeout."""


class TransactionReverted(Exception):
    """A mined transaction has a failed receipt."""

    def __init__(self, tx_hash: HexBytes, msg: str, receipt: dict = None):
        super().__init__(msg)
        self.tx_hash = tx_hash
        self.receipt = receipt


def wait_transactions_to_complete(
    web3: Web3,
    txs: List[Union[HexBytes, str]],
    max_timeout=datetime.timedelta(minutes=5),
    poll_delay=datetime.timedelta(seconds=1),
) -> Dict[HexBytes, dict]:
    """Poll until every transaction has a receipt.

    We do not wait for further confirmations.

    :param txs:
        Transaction hashes

    :raise ConfirmationTimedOut:
        If some transactions are still without a receipt after ``max_timeout``

    :return:
        Transaction hash -> receipt
    """
    assert isinstance(poll_delay, datetime.timedelta)
    assert isinstance(max_timeout, datetime.timedelta)

    deadline = time.monotonic() + max_timeout.total_seconds()
    pending = [HexBytes(tx) for tx in txs]
    receipts = {}

    logger.debug("Waiting %d transactions to confirm, timeout is %s", len(pending), max_timeout)

    while True:
        still_pending = []
        for tx_hash in pending:
            try:
                receipts[tx_hash] = web3.eth.get_transaction_receipt(tx_hash)
                logger.debug("Confirmed tx %s in block %d", tx_hash.hex(), receipts[tx_hash]["blockNumber"])
            except TransactionNotFound:
                still_pending.append(tx_hash)

        pending = still_pending
        if not pending:
            return receipts

        if time.monotonic() > deadline:
            missing = ", ".join(tx_hash.hex() for tx_hash in pending)
            raise ConfirmationTimedOut(f"No receipt after {max_timeout} for: {missing}")

        time.sleep(poll_delay.total_seconds())


def broadcast_transactions(
    web3: Web3,
    txs: List[SignedTransactionWithNonce],
) -> List[HexBytes]:
    """Send signed transactions in the given order.

    :return:
        Transaction hashes in the same order

    :raise BroadcastFailure:
        If the node rejects a transaction, e.g. for a stale nonce or too little ETH for gas.
        Transactions before it in the list are already out.
    """
    hashes = []
    for tx in txs:
        assert isinstance(tx, SignedTransactionWithNonce), f"Got {tx}"
        raw_bytes = get_tx_broadcast_data(tx)

        try:
            tx_hash = web3.eth.send_raw_transaction(raw_bytes)
        except (ValueError, Web3RPCError) as e:
            decoded = format_transaction(decode_signed_transaction(raw_bytes))
            raise BroadcastFailure(f"Could not broadcast {tx.hash.hex()} from {tx.address} with nonce {tx.nonce}: {e}\n{decoded}") from e

        hashes.append(HexBytes(tx_hash))

    return hashes


def broadcast_and_wait_transactions_to_complete(
    web3: Web3,
    txs: List[SignedTransactionWithNonce],
    confirm_ok=True,
    max_timeout=datetime.timedelta(minutes=5),
    poll_delay=datetime.timedelta(seconds=1),
) -> Dict[HexBytes, dict]:
    """Broadcast signed transactions and wait for all of them.

    :param confirm_ok:
        Raise if any of the transactions reverted

    :return:
        Transaction hash -> receipt, in the broadcast order

    :raise TransactionReverted:
        For the first failed receipt in nonce order, if ``confirm_ok`` is set
    """
    hashes = broadcast_transactions(web3, txs)
    receipts = wait_transactions_to_complete(web3, hashes, max_timeout=max_timeout, poll_delay=poll_delay)

    ordered = {tx_hash: receipts[tx_hash] for tx_hash in hashes}

    if confirm_ok:
        for tx_hash, receipt in ordered.items():
            if receipt["status"] != 1:
                raise TransactionReverted(tx_hash, describe_failed_receipt(web3, receipt), receipt)

    return ordered
