"""Deployer keys and nonce management.

- Load signing accounts from a private key, an encrypted keystore or a key file

- Sign deployment transactions with nonces counted in process memory, see :py:class:`AccountNonceState`
"""

import json
import logging
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from melon_deploy.tx import decode_signed_transaction, get_tx_broadcast_data
from melon_deploy.utils import is_same_address

logger = logging.getLogger(__name__)


class SignedTransactionWithNonce(NamedTuple):
    """A signed transaction and where it came from.

    Batches are signed up front and broadcast later,
    so a broadcast failure must be traceable back to the sender, nonce and unsigned payload.
    """

    #: Bytes for ``eth_sendRawTransaction``
    raw_transaction: HexBytes

    #: Transaction hash
    hash: HexBytes

    #: Nonce allocated for this transaction
    nonce: int

    #: Signer
    address: str

    #: The unsigned transaction dict, including gas fields
    source: Optional[dict] = None

    def __eq__(self, other):
        assert isinstance(other, SignedTransactionWithNonce)
        return self.hash == other.hash

    def __hash__(self) -> int:
        return hash(self.hash)

    def __repr__(self):
        return f"<SignedTransactionWithNonce hash:{self.hash.hex()} from:{self.address} nonce:{self.nonce}>"


@dataclass(slots=True)
class AccountNonceState:
    """The next nonce to use for one signing account.

    - Synced lazily from the chain on the first transaction

    - Then incremented in memory once per signed transaction, never decremented

    All transactions of an account must be signed through the same instance
    during the process lifetime, otherwise nonces collide.
    """

    #: Account this counter belongs to
    address: HexAddress

    #: Nonce the next transaction gets.
    #:
    #: ``None`` until synced from the chain.
    next_nonce: Optional[int] = None

    def is_synced(self) -> bool:
        return self.next_nonce is not None

    def sync(self, onchain_nonce: int):
        """Initialise the counter from the on-chain transaction count.

        A lagging node may report a nonce older than what we have already used,
        in which case we keep our own counter.
        """
        if self.next_nonce is not None and onchain_nonce < self.next_nonce:
            logger.warning("Nonce sync for %s read on-chain nonce %d that is older than our current nonce %d, keeping ours", self.address, onchain_nonce, self.next_nonce)
            return
        self.next_nonce = onchain_nonce

    def allocate(self) -> int:
        """Get the nonce for the next transaction and move the counter forward."""
        assert self.next_nonce is not None, f"Nonce is not yet synced from the blockchain: {self.address}"
        nonce = self.next_nonce
        self.next_nonce += 1
        return nonce


def _normalise_key(key: str) -> str:
    assert isinstance(key, str), f"Expected private key as a hex string, got {type(key)}"
    key = key.strip()
    return key if key.startswith("0x") else "0x" + key


class HotWallet:
    """A deployer account with its private key in process memory.

    Wraps :py:class:`eth_account.signers.local.LocalAccount` and owns the
    :py:class:`AccountNonceState` of the account.
    :py:class:`melon_deploy.submitter.TransactionSubmitter` holds exactly one wallet per account.

    .. code-block:: python

        wallet = HotWallet.from_keystore("deployer.json", "deployer.pass")
        wallet.sync_nonce(web3)
        signed = wallet.sign_transaction_with_new_nonce(tx)

    Not thread safe.
    """

    def __init__(self, account: LocalAccount, nonce_state: Optional[AccountNonceState] = None):
        """
        :param nonce_state:
            Counter to continue from, e.g. kept from an earlier deployment in the same process
        """
        self.account = account
        if nonce_state is None:
            nonce_state = AccountNonceState(account.address)
        assert is_same_address(nonce_state.address, account.address), f"Nonce state {nonce_state.address} does not belong to {account.address}"
        self.nonce_state = nonce_state

    def __repr__(self):
        return f"<Hot wallet {self.account.address}>"

    @property
    def address(self) -> HexAddress:
        return self.account.address

    @property
    def current_nonce(self) -> Optional[int]:
        """The nonce the next transaction gets, or ``None`` if not synced yet."""
        return self.nonce_state.next_nonce

    def sync_nonce(self, web3: Web3, block_identifier="pending"):
        """Initialise the nonce counter from the chain."""
        self.nonce_state.sync(web3.eth.get_transaction_count(self.address, block_identifier))
        logger.info("Synced nonce for %s to %d", self.address, self.nonce_state.next_nonce)

    def reset_nonce(self, web3: Web3):
        """Take the node's pending transaction count as is.

        Used with ``LOCAL_CHAIN``, where other tools may send from the same account
        between our transactions.
        """
        self.nonce_state.next_nonce = web3.eth.get_transaction_count(self.address, "pending")

    def allocate_nonce(self) -> int:
        return self.nonce_state.allocate()

    def sign_transaction_with_new_nonce(self, tx: dict) -> SignedTransactionWithNonce:
        """Allocate a nonce and sign.

        :param tx:
            Unsigned transaction with gas fields filled in.
            The ``nonce`` is written into it.
        """
        assert type(tx) == dict
        assert "nonce" not in tx, f"Transaction already has a nonce: {tx}"
        tx["nonce"] = self.allocate_nonce()
        signed = self.account.sign_transaction(tx)

        raw_bytes = get_tx_broadcast_data(signed)
        decode_signed_transaction(raw_bytes)

        return SignedTransactionWithNonce(
            raw_transaction=raw_bytes,
            hash=HexBytes(signed.hash),
            nonce=tx["nonce"],
            address=self.address,
            source=tx,
        )

    @staticmethod
    def from_private_key(key: str) -> "HotWallet":
        """Create a wallet from a hex private key, with or without ``0x``."""
        return HotWallet(Account.from_key(_normalise_key(key)))

    @staticmethod
    def from_keystore(keystore: Path | str, passfile: Path | str) -> "HotWallet":
        """Decrypt a JSON keystore file with the password stored in another file.

        :param keystore:
            Path to a geth/parity style encrypted key file

        :param passfile:
            Path to a file holding the password. Trailing newline is ignored.
        """
        keystore = Path(keystore)
        with open(keystore, "rt", encoding="utf-8") as f:
            encrypted = json.load(f)
        password = Path(passfile).read_text(encoding="utf-8").rstrip("\r\n")
        wallet = HotWallet(Account.from_key(Account.decrypt(encrypted, password)))
        logger.info("Loaded keystore %s for %s", keystore, wallet.address)
        return wallet

    @staticmethod
    def create_for_testing(web3: Web3, test_account_n=0, eth_amount=10) -> "HotWallet":
        """A fresh deployer funded from one of the node's unlocked test accounts.

        .. code-block:: python

            web3 = Web3(EthereumTesterProvider())
            deployer = HotWallet.create_for_testing(web3, eth_amount=100)
        """
        wallet = HotWallet.from_private_key(secrets.token_hex(32))
        tx_hash = web3.eth.send_transaction(
            {
                "from": web3.eth.accounts[test_account_n],
                "to": wallet.address,
                "value": eth_amount * 10**18,
            }
        )
        web3.eth.wait_for_transaction_receipt(tx_hash)
        wallet.sync_nonce(web3)
        return wallet


def load_private_keys(path: Path | str) -> list[HotWallet]:
    """Load hot wallets from a JSON key file.

    The file is either a list of hex private keys,
    or a mapping of address to hex private key.
    With the mapping form, each key must derive the address it is listed under.

    :raise ValueError:
        If a key does not match its address
    """
    with open(path, "rt", encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, dict):
        wallets = []
        for address, key in data.items():
            wallet = HotWallet.from_private_key(key)
            if not is_same_address(wallet.address, address):
                raise ValueError(f"Private key listed for {address} belongs to {wallet.address}")
            wallets.append(wallet)
    else:
        assert isinstance(data, list), f"Expected a list or a mapping of private keys in {path}, got {type(data)}"
        wallets = [HotWallet.from_private_key(key) for key in data]

    logger.info("Loaded %d private keys from %s", len(wallets), path)
    return wallets
