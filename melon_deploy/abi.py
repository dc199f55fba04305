"""Compiled artifact loading and library linking.

Contracts are read from a compiler output directory holding a pair of files per contract:

- ``<name>.abi``: the JSON ABI

- ``<name>.bin``: the creation bytecode as hex, possibly with library placeholders

Provides functions to construct :py:class:`web3.contract.Contract` types from these files.
The results are cached for the speedup.
"""

import json
import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional, Type, Union

from eth_typing import HexAddress
from eth_utils import keccak
from web3 import Web3
from web3.contract.contract import Contract

logger = logging.getLogger(__name__)

# How big are our ABI and contract caches
_CACHE_SIZE = 512

#: Ethereum 0x0000000000000000000000000000000000000000 address
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

#: Any leftover library placeholder in a hex bytecode string.
#:
#: Hex never contains underscores, so a double underscore
#: always starts a 40 character placeholder.
UNLINKED_PLACEHOLDER_PATTERN = re.compile(r"__.{36}__")


class ArtifactNotFound(Exception):
    """The compiler output directory does not have the requested contract."""


class LibraryLinkingError(Exception):
    """Library address or placeholder does not match the bytecode we are linking."""


@lru_cache(maxsize=_CACHE_SIZE)
def get_abi_by_name(artifacts_dir: Path, name: str) -> list:
    """Reads ``<name>.abi`` from the artifact directory.

    Accepts both a bare ABI list and a solc combined JSON dict with an ``abi`` key.

    :param artifacts_dir:
        Compiler output directory

    :param name:
        Contract name, e.g. ``Registry``

    :raise ArtifactNotFound:
        If there is no ABI file for the contract
    """
    abi_path = Path(artifacts_dir) / f"{name}.abi"
    if not abi_path.exists():
        raise ArtifactNotFound(f"No ABI for contract {name}: {abi_path} does not exist")

    with open(abi_path, "rt", encoding="utf-8") as f:
        abi = json.load(f)

    if isinstance(abi, dict):
        abi = abi["abi"]

    return abi


@lru_cache(maxsize=_CACHE_SIZE)
def get_bytecode(artifacts_dir: Path, name: str) -> Optional[str]:
    """Reads ``<name>.bin`` from the artifact directory.

    Bytecode is returned as a string, because library placeholders are not parseable hex.

    :return:
        ``0x`` prefixed bytecode string or ``None`` for abstract contracts and interfaces
        that compile to empty bytecode.

    :raise ArtifactNotFound:
        If there is no bytecode file for the contract
    """
    bin_path = Path(artifacts_dir) / f"{name}.bin"
    if not bin_path.exists():
        raise ArtifactNotFound(f"No bytecode for contract {name}: {bin_path} does not exist")

    bytecode = bin_path.read_text(encoding="utf-8").strip()
    bytecode = bytecode.removeprefix("0x")
    if not bytecode:
        return None
    return "0x" + bytecode


def get_library_placeholders(library_name: str) -> tuple[str, str]:
    """Get the placeholder tokens solc leaves in the bytecode for a library.

    - Legacy solc: ``__`` followed by the first 36 characters of the library name, padded with underscores

    - solc 0.5+: ``__$`` followed by 34 hex characters of the library name hash and ``$__``

    Both are 40 characters, the width of a hex encoded address.

    :param library_name:
        Library name as solc saw it, either ``Types`` or a fully qualified ``src/Types.sol:Types``
    """
    legacy = ("__" + library_name[:36]).ljust(38, "_") + "__"
    hashed = "__$" + keccak(text=library_name).hex()[:34] + "$__"
    return legacy, hashed


def has_unlinked_libraries(bytecode: str) -> bool:
    """Does the bytecode still contain library placeholders."""
    return UNLINKED_PLACEHOLDER_PATTERN.search(bytecode) is not None


def link_libraries(bytecode: str, libraries: dict[str, Union[HexAddress, str]]) -> str:
    """Replace library placeholders with deployed library addresses.

    Pure function, no network access.

    Example:

    .. code-block:: python

        bytecode = get_bytecode(artifacts_dir, "Swap")
        linked = link_libraries(bytecode, {"Types": types.address})
        assert not has_unlinked_libraries(linked)

    :param bytecode:
        Unlinked bytecode as a hex string.

    :param libraries:
        Library name -> deployed address.

    :raise LibraryLinkingError:
        If a library address is not a valid address,
        or the bytecode does not contain any placeholder for a library.
        Both indicate a build or configuration mismatch.

    :return:
        Linked bytecode
    """
    assert type(bytecode) == str, f"Got {type(bytecode)}"

    linked = bytecode
    for library_name, address in libraries.items():
        if not (isinstance(address, str) and Web3.is_address(address)):
            logger.critical("Invalid address %r given for library %s", address, library_name)
            raise LibraryLinkingError(f"Library {library_name} has an invalid address: {address!r}")

        replacement = address.lower().removeprefix("0x")
        found = False
        for placeholder in get_library_placeholders(library_name):
            if placeholder in linked:
                linked = linked.replace(placeholder, replacement)
                found = True

        if not found:
            logger.critical("Library %s placeholder not found in the bytecode", library_name)
            raise LibraryLinkingError(f"Bytecode does not reference library {library_name}, check the library name and the build")

    return linked


def link(artifacts_dir: Path, name: str, libraries: dict[str, Union[HexAddress, str]]) -> str:
    """Load the bytecode of a contract and link it against deployed libraries.

    See :py:func:`link_libraries`.
    """
    bytecode = get_bytecode(artifacts_dir, name)
    assert bytecode, f"Contract {name} has no bytecode to link"
    return link_libraries(bytecode, libraries)


@lru_cache(maxsize=_CACHE_SIZE)
def get_contract(
    web3: Web3,
    artifacts_dir: Path,
    name: str,
    bytecode: Optional[str] = None,
) -> Type[Contract]:
    """Get Contract proxy class from the compiler output.

    `See Web3.py documentation on Contract instances <https://web3py.readthedocs.io/en/stable/contracts.html#contract-deployment-example>`_.

    Any results are cached. Web3 connection is part of the cache key.

    If the bytecode still has library placeholders, the proxy class is created
    without bytecode. It can be used to attach to deployed addresses, but not to deploy.
    Use :py:func:`get_linked_contract` for deployments.

    :param web3:
        Web3 instance

    :param artifacts_dir:
        Compiler output directory

    :param name:
        Contract name

    :param bytecode:
        Override bytecode payload for the contract

    :return:
        Contract proxy class
    """
    abi = get_abi_by_name(artifacts_dir, name)

    if bytecode is None:
        bytecode = get_bytecode(artifacts_dir, name)

    if bytecode is not None and has_unlinked_libraries(bytecode):
        bytecode = None

    return web3.eth.contract(abi=abi, bytecode=bytecode)


def get_linked_contract(
    web3: Web3,
    artifacts_dir: Path,
    name: str,
    libraries: dict[str, Union[HexAddress, str]],
) -> Type[Contract]:
    """Create a Contract proxy class with its bytecode linked against deployed libraries.

    .. note ::

        If you do not need linking use :py:func:`get_contract` which is faster.

    :raise LibraryLinkingError:
        See :py:func:`link_libraries`
    """
    bytecode = link(artifacts_dir, name, libraries)
    if has_unlinked_libraries(bytecode):
        missing = UNLINKED_PLACEHOLDER_PATTERN.findall(bytecode)
        logger.critical("Contract %s still has unlinked libraries: %s", name, missing)
        raise LibraryLinkingError(f"Contract {name} needs more libraries than given: {missing}")
    return get_contract(web3, artifacts_dir, name, bytecode=bytecode)


def get_deployed_contract(
    web3: Web3,
    artifacts_dir: Path,
    name: str,
    address: Union[HexAddress, str],
) -> Contract:
    """Get a Contract proxy object for a contract deployed at a specific address.

    No network access happens here.

    :param web3:
        Web3 instance

    :param artifacts_dir:
        Compiler output directory

    :param name:
        Contract name

    :param address:
        Ethereum address of the deployed contract

    :return:
        `web3.contract.Contract` proxy
    """
    assert isinstance(web3, Web3), f"Got {type(web3)} instead of Web3"
    assert address, f"get_deployed_contract() address was None"

    address = Web3.to_checksum_address(address)

    Contract = get_contract(web3, Path(artifacts_dir), name)
    contract = Contract(address)
    contract.name = name
    return contract


def _hexify(s: Any):
    if type(s) in (list, tuple):
        return ", ".join(_hexify(x) for x in s)
    if isinstance(s, str):
        return s
    elif isinstance(s, bytes):
        return "0x" + s.hex()
    return str(s)


def present_args(args: list | tuple | Any) -> str:
    """Make Solidity call arguments human readable for the logs.

    Bytes are displayed as hex.

    Example:

    .. code-block:: python

        logger.info("Deploying %s(%s)", name, present_args(constructor_args))

    Output::

        Deploying Engine(2592000, 0x5788F91Aa320e0610122fb88B39Ab8f35e50040b)
    """
    return _hexify(args)


#: 0x protocol asset proxy id of ERC-20 tokens, ``bytes4(keccak256("ERC20Token(address)"))``
ERC20_PROXY_ID = bytes.fromhex("f47261b0")


def encode_erc20_asset_data(token: Union[HexAddress, str]) -> bytes:
    """0x protocol asset data for an ERC-20 token.

    The proxy id followed by the token address as an ABI encoded word.
    """
    assert Web3.is_address(token), f"Not an address: {token}"
    return ERC20_PROXY_ID + bytes(12) + bytes.fromhex(token.lower().removeprefix("0x"))
