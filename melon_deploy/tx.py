"""Signed transaction decoding and debug output.

Used to put readable transaction data into broadcast and gas estimation errors.
"""

import json
from typing import Union

from eth_account._utils.legacy_transactions import Transaction
from eth_account.datastructures import SignedTransaction
from eth_account.typed_transactions import TypedTransaction
from hexbytes import HexBytes


class DecodeFailure(Exception):
    """Raw bytes are neither a typed nor a legacy transaction."""


def decode_signed_transaction(raw_bytes: Union[bytes, str, HexBytes]) -> dict:
    """Turn raw signed transaction bytes back into a dict.

    Handles `EIP-2718 <https://eips.ethereum.org/EIPS/eip-2718>`_ typed
    transactions first and falls back to legacy RLP.

    .. code-block:: python

        signed = wallet.sign_transaction_with_new_nonce(tx)
        assert decode_signed_transaction(get_tx_broadcast_data(signed))["nonce"] == signed.nonce

    :raise DecodeFailure:
        If neither decoding works
    """
    raw_bytes = HexBytes(raw_bytes)

    try:
        return TypedTransaction.from_bytes(raw_bytes).transaction.as_dict()
    except ValueError:
        pass

    try:
        return Transaction.from_bytes(raw_bytes).as_dict()
    except Exception as e:
        raise DecodeFailure(f"Could not decode transaction: {raw_bytes.hex()}") from e


def get_tx_broadcast_data(signed_tx: SignedTransaction) -> HexBytes:
    """Raw bytes for ``eth_sendRawTransaction``.

    :param signed_tx:
        :py:class:`SignedTransaction` or :py:class:`melon_deploy.hotwallet.SignedTransactionWithNonce`
    """
    return HexBytes(signed_tx.raw_transaction)


def format_transaction(tx: dict) -> str:
    """Serialise a transaction dict as JSON for error logs.

    Bytes are rendered as ``0x`` hex, big integers stay integers.
    """

    def _default(v):
        if isinstance(v, (bytes, bytearray)):
            return "0x" + bytes(v).hex()
        return str(v)

    return json.dumps(dict(tx), indent=2, sort_keys=True, default=_default)
