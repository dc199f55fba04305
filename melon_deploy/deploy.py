"""Deploy precompiled contracts, or adopt already deployed ones.

The main entry point is :py:func:`deploy_or_adopt`, also known as ``nab``:
given a contract name and the address mapping of a manifest category,
it either attaches to the address found in the manifest or deploys a fresh instance
and records its address.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, Union

from eth_typing import HexAddress
from web3 import Web3
from web3.contract.contract import Contract

from melon_deploy.abi import ZERO_ADDRESS, LibraryLinkingError, get_bytecode, get_contract, get_deployed_contract, get_linked_contract, has_unlinked_libraries
from melon_deploy.confirmation import TransactionReverted
from melon_deploy.submitter import DEFAULT_BATCH_SIZE, TransactionSubmitter

logger = logging.getLogger(__name__)


#: Manifest marker some input files use instead of an empty string
DEPLOY_MARKER = "DEPLOY"


class ContractDeploymentFailed(Exception):
    """Did not get successful tx receipt from a deployment."""

    def __init__(self, tx_hash, msg):
        super().__init__(msg)
        self.tx_hash = tx_hash


def needs_deployment(value: Optional[str]) -> bool:
    """Does a manifest address slot ask for a deployment.

    Absent, empty and ``"DEPLOY"`` all mean deploy me.
    """
    return value is None or value == "" or value == DEPLOY_MARKER


def has_code(web3: Web3, address: Union[HexAddress, str]) -> bool:
    """Is there a contract at the address on the connected chain."""
    code = web3.eth.get_code(Web3.to_checksum_address(address))
    return code is not None and len(code) > 0


def deploy_contract(
    submitter: TransactionSubmitter,
    artifacts_dir: Path,
    name: str,
    *constructor_args,
    libraries: Optional[dict[str, HexAddress]] = None,
    gas: Optional[int] = None,
) -> Contract:
    """Deploys a new contract from the compiler output.

    A generic helper function to deploy any contract.

    Example:

    .. code-block:: python

        engine = deploy_contract(submitter, artifacts_dir, "Engine", 30 * 24 * 3600, registry.address)
        print(f"Deployed Engine at {engine.address}")

    :param submitter:
        Signs and broadcasts the deployment with the default account

    :param artifacts_dir:
        Compiler output directory

    :param name:
        Contract name, ``<name>.bin`` and ``<name>.abi`` must exist

    :param constructor_args:
        Other arguments to pass to the contract's constructor

    :param libraries:
        Library name -> address to link into the bytecode

    :param gas:
        Gas limit. If not set, estimate it.

    :raise ContractDeploymentFailed:
        In the case we could not deploy the contract.

    :raise LibraryLinkingError:
        If the libraries do not match the bytecode.

    :return:
        Contract proxy instance
    """
    web3 = submitter.web3
    artifacts_dir = Path(artifacts_dir)

    if libraries:
        Contract = get_linked_contract(web3, artifacts_dir, name, libraries)
    else:
        bytecode = get_bytecode(artifacts_dir, name)
        if bytecode and has_unlinked_libraries(bytecode):
            logger.critical("Contract %s needs libraries, but none were given", name)
            raise LibraryLinkingError(f"Contract {name} has unlinked library placeholders")
        Contract = get_contract(web3, artifacts_dir, name)

    try:
        tx_receipt = submitter.deploy(Contract, *constructor_args, gas=gas, name=name)
    except TransactionReverted as e:
        raise ContractDeploymentFailed(e.tx_hash, f"Contract {name} deployment failed with args {constructor_args}: {e}") from e

    if tx_receipt["status"] != 1 or not tx_receipt["contractAddress"]:
        tx_hash = tx_receipt["transactionHash"]
        raise ContractDeploymentFailed(tx_hash, f"Contract {name} deployment failed with args {constructor_args}, tx hash is {tx_hash.hex()}")

    instance = Contract(address=tx_receipt["contractAddress"])
    instance.name = name
    return instance


def deploy_or_adopt(
    submitter: TransactionSubmitter,
    artifacts_dir: Path,
    name: str,
    constructor_args: Sequence,
    addresses: dict[str, str],
    key: Optional[str] = None,
    libraries: Optional[dict[str, HexAddress]] = None,
    verify_code=False,
    gas: Optional[int] = None,
) -> Contract:
    """Get a deployed contract from the manifest, or deploy it.

    - If ``addresses[key]`` has an address, attach the ABI of ``name`` to it. No transaction is made.

    - Otherwise deploy ``name`` with ``constructor_args`` and write the new address to ``addresses[key]``.

    Calling this twice with the same address mapping deploys at most once.

    Example:

    .. code-block:: python

        melon_addresses = manifest.addresses("melon")
        registry = deploy_or_adopt(submitter, artifacts_dir, "Registry", [owner], melon_addresses)
        whitelist = deploy_or_adopt(submitter, artifacts_dir, "WhiteList", [owner, kgt.address], kyber_addresses, key="KyberWhiteList")

    :param addresses:
        The ``addr`` mapping of a manifest category. Mutated in place.

    :param key:
        Manifest key, if different from the contract name.

    :param verify_code:
        Check there is code at a manifest address before adopting it.
        If not, log a warning and deploy a fresh instance.
        Without this, any address in the manifest is trusted as is.

    :return:
        Contract proxy instance
    """
    key = key or name
    web3 = submitter.web3
    current = addresses.get(key)

    if not needs_deployment(current):
        if verify_code and not has_code(web3, current):
            logger.warning("Manifest has %s at %s, but there is no code at the address, redeploying", key, current)
        else:
            logger.info("Adopting %s at %s", key, current)
            submitter.name_contract(current, key)
            return get_deployed_contract(web3, artifacts_dir, name, current)

    logger.info("Deploying %s", key)
    contract = deploy_contract(submitter, artifacts_dir, name, *constructor_args, libraries=libraries, gas=gas)
    addresses[key] = contract.address
    submitter.name_contract(contract.address, key)
    logger.info("Deployed %s at %s", key, contract.address)
    return contract


#: Shorthand
nab = deploy_or_adopt


@dataclass
class DeploymentContext:
    """Everything a subsystem deployer needs to deploy or adopt contracts."""

    #: Signs and broadcasts all transactions
    submitter: TransactionSubmitter

    #: Compiler output directory with ``<name>.bin`` and ``<name>.abi``
    artifacts_dir: Path

    #: Check code presence before adopting manifest addresses
    verify_code: bool = False

    #: How many registrations are signed ahead and broadcast together
    batch_size: int = DEFAULT_BATCH_SIZE

    @property
    def web3(self) -> Web3:
        return self.submitter.web3

    @property
    def deployer(self) -> HexAddress:
        return self.submitter.deployer

    def nab(
        self,
        name: str,
        constructor_args: Sequence,
        addresses: dict[str, str],
        key: Optional[str] = None,
        libraries: Optional[dict[str, HexAddress]] = None,
        gas: Optional[int] = None,
    ) -> Contract:
        """See :py:func:`deploy_or_adopt`."""
        return deploy_or_adopt(
            self.submitter,
            self.artifacts_dir,
            name,
            constructor_args,
            addresses,
            key=key,
            libraries=libraries,
            verify_code=self.verify_code,
            gas=gas,
        )

    def get_contract_at(self, name: str, address: Union[HexAddress, str]) -> Contract:
        """Attach the ABI of ``name`` to an address."""
        self.submitter.name_contract(address, name)
        return get_deployed_contract(self.web3, self.artifacts_dir, name, address)

    def call(self, func):
        return self.submitter.call(func)

    def send(self, func, **kwargs) -> dict:
        return self.submitter.send(func, **kwargs)

    def set_if_different(
        self,
        contract: Contract,
        getter: str,
        setter: str,
        desired,
        getter_args: Sequence = (),
        setter_args: Optional[Sequence] = None,
    ) -> bool:
        """Write a configuration value only if the contract has something else.

        Addresses are compared ignoring checksum casing.

        Example:

        .. code-block:: python

            ctx.set_if_different(registry, "priceSource", "setPriceSource", price_source.address)
            ctx.set_if_different(price_feed, "assetsToDecimals", "setDecimals", 8, getter_args=(token,), setter_args=(token, 8))

        :param getter:
            Name of the view function returning the current value

        :param setter:
            Name of the function setting the value

        :param getter_args:
            Arguments for the getter, e.g. a mapping key

        :param setter_args:
            Arguments for the setter. Defaults to ``(desired,)``.

        :return:
            True if we sent a transaction
        """
        current = self.call(getattr(contract.functions, getter)(*getter_args))
        if _same_value(current, desired):
            logger.debug("%s.%s already %s", _label(contract), getter, desired)
            return False

        if setter_args is None:
            setter_args = (desired,)

        logger.info("Setting %s.%s: %s -> %s", _label(contract), setter, current, desired)
        self.send(getattr(contract.functions, setter)(*setter_args))
        return True

    def register_missing(
        self,
        contract: Contract,
        check: str,
        register: str,
        items: Sequence[tuple],
        check_arity: int = 1,
        is_registered: Callable[[Any], bool] = None,
    ) -> int:
        """Register everything the contract does not know yet.

        A reconciliation pass: ``check(*item[:check_arity])`` is read for each item,
        and ``register(*item)`` is sent for the ones not registered.
        Registrations are independent, so they go out as a batch.

        :param items:
            Argument tuples for the register function.
            The first ``check_arity`` elements are the arguments of the check function.

        :param is_registered:
            Interpret the check result. By default anything truthy
            except the zero address counts as registered.

        :return:
            Number of registration transactions sent
        """
        is_registered = is_registered or is_set
        missing = [item for item in items if not is_registered(self.call(getattr(contract.functions, check)(*item[:check_arity])))]
        if not missing:
            logger.debug("%s: all %d items already pass %s", _label(contract), len(items), check)
            return 0
        logger.info("%s: calling %s for %d items", _label(contract), register, len(missing))
        funcs = [getattr(contract.functions, register)(*item) for item in missing]
        self.submitter.send_batch(funcs, batch_size=self.batch_size)
        return len(missing)


def is_set(value) -> bool:
    """Does a contract read return a set value.

    False for zero, false, empty and the zero address.
    """
    if isinstance(value, str) and value.lower() == ZERO_ADDRESS:
        return False
    return bool(value)


def _same_value(current, desired) -> bool:
    if isinstance(current, str) and isinstance(desired, str):
        return current.lower() == desired.lower()
    return current == desired


def _label(contract: Contract) -> str:
    return getattr(contract, "name", None) or contract.address
