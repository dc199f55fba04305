"""Sign, gas and broadcast deployment transactions.

All write transactions of the deployment flow through one :py:class:`TransactionSubmitter`.
It owns exactly one :py:class:`melon_deploy.hotwallet.HotWallet`, and thus one nonce counter,
per signing account.

- Gas limit is estimated and inflated by a safety factor unless given explicitly

- Nonces come from the in-memory counter, or from the node's pending count on local chains

- Each transaction is waited until it has a receipt before returning
"""

import datetime
import logging
from typing import Iterable, Optional, Type

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3
from web3._utils.contracts import prepare_transaction
from web3.contract.contract import Contract, ContractFunction

from melon_deploy.abi import present_args
from melon_deploy.confirmation import broadcast_and_wait_transactions_to_complete
from melon_deploy.gas import CALL_GAS_MULTIPLIER, DEPLOY_GAS_MULTIPLIER, apply_gas, estimate_gas_limit, estimate_gas_price
from melon_deploy.hotwallet import HotWallet, SignedTransactionWithNonce
from melon_deploy.tx import format_transaction
from melon_deploy.utils import chunked

logger = logging.getLogger(__name__)


#: How many transactions we sign ahead and broadcast together
DEFAULT_BATCH_SIZE = 16


class UnknownSigner(Exception):
    """We were asked to sign with an account we do not have a private key for."""


class TransactionSubmitter:
    """Submit transactions for one or more local signing accounts.

    Example:

    .. code-block:: python

        submitter = TransactionSubmitter(web3, [hot_wallet])

        registry = ...
        if submitter.call(registry.functions.engine()) != engine.address:
            submitter.send(registry.functions.setEngine(engine.address))

    .. note ::

        Never create two submitters, or two wallets, for the same account
        within one process. The nonce counters would collide.
    """

    def __init__(
        self,
        web3: Web3,
        wallets: Iterable[HotWallet] = (),
        default_sender: Optional[HexAddress] = None,
        local_chain=False,
        verbose=False,
        confirmation_timeout=datetime.timedelta(minutes=5),
        poll_delay=datetime.timedelta(seconds=1),
    ):
        """
        :param wallets:
            Signing accounts.

        :param default_sender:
            Account used when the caller does not tell.
            Defaults to the first wallet.

        :param local_chain:
            Always re-query the pending nonce from the node instead of counting in memory.

        :param verbose:
            Log every call, send and deploy at INFO level instead of DEBUG.
        """
        self.web3 = web3
        self.wallets: dict[str, HotWallet] = {}
        for wallet in wallets:
            self.add_wallet(wallet)

        if default_sender is None and self.wallets:
            default_sender = next(iter(self.wallets.values())).address

        self.default_sender = default_sender
        self.local_chain = local_chain
        self.verbose = verbose
        self.confirmation_timeout = confirmation_timeout
        self.poll_delay = poll_delay

        #: How many write transactions have been broadcast through us
        self.transaction_count = 0

        #: Lowercased address -> contract name, for the logs
        self.contract_names: dict[str, str] = {}

        self._chain_id: Optional[int] = None

    def __repr__(self):
        return f"<TransactionSubmitter accounts:{len(self.wallets)} local_chain:{self.local_chain}>"

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self.web3.eth.chain_id
        return self._chain_id

    @property
    def deployer(self) -> HexAddress:
        """The default signing account."""
        assert self.default_sender, "No signing account configured"
        return self.default_sender

    def add_wallet(self, wallet: HotWallet):
        """Take ownership of a signing account.

        :raise ValueError:
            If we already have a wallet for this address
        """
        key = wallet.address.lower()
        if key in self.wallets:
            raise ValueError(f"Already have a wallet for {wallet.address}, two nonce counters for the same account would collide")
        self.wallets[key] = wallet

    def get_wallet(self, sender: Optional[HexAddress] = None) -> HotWallet:
        address = sender or self.deployer
        wallet = self.wallets.get(address.lower())
        if wallet is None:
            raise UnknownSigner(f"No private key loaded for {address}")
        return wallet

    def name_contract(self, address: HexAddress | str, name: str):
        """Remember what lives at an address, so the call and send log lines show the contract name."""
        self.contract_names[address.lower()] = name

    def get_contract_label(self, func: ContractFunction) -> str:
        """Contract name of a bound call, or its address if we do not know the name."""
        return self.contract_names.get(func.address.lower(), func.address)

    def _log(self, msg: str, *args):
        logger.log(logging.INFO if self.verbose else logging.DEBUG, msg, *args)

    def _prepare_wallet(self, wallet: HotWallet):
        if self.local_chain:
            wallet.reset_nonce(self.web3)
        elif wallet.current_nonce is None:
            wallet.sync_nonce(self.web3)

    def call(self, func: ContractFunction, sender: Optional[HexAddress] = None):
        """Read contract state with ``eth_call``."""
        assert isinstance(func, ContractFunction), f"Got {func}"
        tx_params = {}
        if sender or self.default_sender:
            tx_params["from"] = sender or self.default_sender
        result = func.call(tx_params)
        self._log("Call %s.%s(%s) -> %s", self.get_contract_label(func), func.fn_name, present_args(func.args), result)
        return result

    def build_call(self, func: ContractFunction, sender: Optional[HexAddress] = None, value: int = 0) -> dict:
        """Turn a bound contract call into an unsigned transaction dict without gas or nonce."""
        assert isinstance(func, ContractFunction), f"Got {func}"
        return prepare_transaction(
            func.address,
            func.w3,
            abi_element_identifier=func.abi_element_identifier,
            contract_abi=func.contract_abi,
            abi_callable=func.abi,
            transaction={"from": sender or self.deployer, "value": value},
            fn_args=func.args,
            fn_kwargs=func.kwargs,
        )

    def submit(self, tx: dict, gas: Optional[int] = None, multiplier: float = CALL_GAS_MULTIPLIER) -> dict:
        """Sign, broadcast and wait for one transaction.

        :param tx:
            Unsigned transaction with ``from``, and ``to``, ``data`` and ``value`` as needed.

        :param gas:
            Explicit gas limit. Used verbatim.

        :param multiplier:
            Safety factor applied on the estimated gas limit.

        :raise Exception:
            Gas estimation failure from the node is logged with the transaction payload and re-raised.
            No nonce is consumed in this case.

        :return:
            Transaction receipt
        """
        signed = self.sign(tx, gas=gas, multiplier=multiplier)
        receipts = broadcast_and_wait_transactions_to_complete(
            self.web3,
            [signed],
            max_timeout=self.confirmation_timeout,
            poll_delay=self.poll_delay,
        )
        self.transaction_count += 1
        return receipts[HexBytes(signed.hash)]

    def prepare(self, tx: dict, gas: Optional[int] = None, multiplier: float = CALL_GAS_MULTIPLIER) -> dict:
        """Fill in gas limit, fees and chain id, but not the nonce.

        :raise Exception:
            Gas estimation failure, after logging the transaction
        """
        tx = dict(tx)
        wallet = self.get_wallet(tx.get("from"))
        tx["from"] = wallet.address
        tx["chainId"] = self.chain_id

        if gas is not None:
            tx["gas"] = gas
        else:
            try:
                tx["gas"] = estimate_gas_limit(self.web3, tx, multiplier)
            except Exception:
                logger.error("Gas estimation failed for transaction:\n%s", format_transaction(tx))
                raise

        apply_gas(tx, estimate_gas_price(self.web3))
        return tx

    def sign(self, tx: dict, gas: Optional[int] = None, multiplier: float = CALL_GAS_MULTIPLIER) -> SignedTransactionWithNonce:
        """Fill in gas, fees, chain id and nonce and sign.

        See :py:meth:`submit`.
        """
        tx = self.prepare(tx, gas=gas, multiplier=multiplier)
        wallet = self.get_wallet(tx["from"])
        self._prepare_wallet(wallet)
        return wallet.sign_transaction_with_new_nonce(tx)

    def send(
        self,
        func: ContractFunction,
        gas: Optional[int] = None,
        value: int = 0,
        sender: Optional[HexAddress] = None,
    ) -> dict:
        """Send a state changing contract call.

        :return:
            Transaction receipt
        """
        self._log("Send %s.%s(%s)", self.get_contract_label(func), func.fn_name, present_args(func.args))
        tx = self.build_call(func, sender=sender, value=value)
        return self.submit(tx, gas=gas, multiplier=CALL_GAS_MULTIPLIER)

    def transfer(
        self,
        to: HexAddress,
        value: int,
        gas: Optional[int] = None,
        sender: Optional[HexAddress] = None,
    ) -> dict:
        """Send plain ETH."""
        self._log("Transfer %d wei to %s", value, to)
        tx = {"from": sender or self.deployer, "to": Web3.to_checksum_address(to), "value": value}
        return self.submit(tx, gas=gas, multiplier=CALL_GAS_MULTIPLIER)

    def deploy(
        self,
        contract: Type[Contract],
        *constructor_args,
        gas: Optional[int] = None,
        sender: Optional[HexAddress] = None,
        name: Optional[str] = None,
    ) -> dict:
        """Send a contract creation transaction.

        :param contract:
            Contract proxy class with linked bytecode

        :return:
            Transaction receipt, with ``contractAddress`` set
        """
        assert contract.bytecode, f"Contract {name} has no bytecode, cannot deploy"
        self._log("Deploy %s(%s)", name or "<contract>", present_args(constructor_args))
        data = contract.constructor(*constructor_args).data_in_transaction
        tx = {"from": sender or self.deployer, "data": data, "value": 0}
        receipt = self.submit(tx, gas=gas, multiplier=DEPLOY_GAS_MULTIPLIER)
        if name and receipt["contractAddress"]:
            self.name_contract(receipt["contractAddress"], name)
        return receipt

    def send_batch(
        self,
        funcs: list[ContractFunction],
        sender: Optional[HexAddress] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> list[dict]:
        """Send independent contract calls, signing a chunk ahead with consecutive nonces.

        The calls must not depend on each other's results,
        because each is gas estimated against the state before the chunk.

        :return:
            Receipts in the order of ``funcs``
        """
        assert batch_size > 0
        wallet = self.get_wallet(sender)
        receipts = []
        for chunk in chunked(funcs, batch_size):
            # Estimate everything before any nonce is taken
            prepared = []
            for func in chunk:
                self._log("Send %s.%s(%s)", self.get_contract_label(func), func.fn_name, present_args(func.args))
                prepared.append(self.prepare(self.build_call(func, sender=wallet.address)))

            # On local chains the pending count does not see our unsent txs,
            # so refresh once per chunk and count in memory within it
            self._prepare_wallet(wallet)
            signed_txs = [wallet.sign_transaction_with_new_nonce(tx) for tx in prepared]

            chunk_receipts = broadcast_and_wait_transactions_to_complete(
                self.web3,
                signed_txs,
                max_timeout=self.confirmation_timeout,
                poll_delay=self.poll_delay,
            )
            self.transaction_count += len(signed_txs)
            receipts.extend(chunk_receipts.values())
        return receipts
