"""Explain failed deployment and configuration transactions.

Nodes do not store why a transaction reverted.
We replay the failed transaction with ``eth_call`` against the latest state,
which is usually the state the deployment left behind a moment ago.
If later transactions changed that state, the replay may pass or fail differently.

Further reading

- `Web3.py Patterns: Revert Reason Lookups <https://snakecharmers.ethereum.org/web3py-revert-reason-parsing/>`_
"""

import logging
from typing import Union

from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, Web3RPCError

logger = logging.getLogger(__name__)

#: Returned when the replay does not revert
UNKNOWN_REASON = "<could not extract the revert reason>"


def _as_replay(tx: dict) -> dict:
    replay = {
        "from": tx["from"],
        "value": tx["value"],
        "data": tx["input"],
        "gas": tx["gas"],
    }
    # Contract creations have no recipient
    if tx.get("to"):
        replay["to"] = tx["to"]
    return replay


def fetch_transaction_revert_reason(
    web3: Web3,
    tx_hash: Union[HexBytes, str],
    unknown_error_message=UNKNOWN_REASON,
) -> str:
    """Replay a mined transaction and return its revert message.

    :param tx_hash:
        Failed transaction

    :param unknown_error_message:
        Returned if the replay goes through
    """
    tx_hash = HexBytes(tx_hash)
    tx = web3.eth.get_transaction(tx_hash)

    try:
        web3.eth.call(_as_replay(tx))
    except ContractLogicError as e:
        return e.args[0]
    except (ValueError, Web3RPCError) as e:
        logger.debug("Replay of %s failed with %s", tx_hash.hex(), e)
        data = e.args[0]
        if isinstance(data, dict):
            return data.get("message", unknown_error_message)
        return str(data)

    logger.warning("Transaction %s did not revert when replayed, the chain state has moved on", tx_hash.hex())
    return unknown_error_message


def describe_failed_receipt(web3: Web3, receipt: dict) -> str:
    """One line summary of a failed receipt for error messages.

    Tells apart contract creations from calls and includes the replayed revert reason.
    """
    tx_hash = HexBytes(receipt["transactionHash"])
    target = f"call to {receipt['to']}" if receipt.get("to") else "contract creation"
    reason = fetch_transaction_revert_reason(web3, tx_hash)
    return f"Transaction {tx_hash.hex()} ({target}) reverted in block {receipt['blockNumber']}, gas used {receipt['gasUsed']:,}: {reason}"
