"""Stand-in contract artifacts for rehearsing deployments on throwaway chains.

The production contracts come from the protocol's own build.
To exercise the deployers against :py:class:`web3.EthereumTesterProvider`
without it, this module compiles small Solidity contracts shipped in
``melon_deploy/contracts`` that have the constructors and functions the deployers use,
and keep the state the reconciliation logic reads back.

Compilation uses `py-solc-x <https://solcx.readthedocs.io/>`_ standard JSON input.
The compiler binary is downloaded on the first use.
``py-solc-x`` comes with the ``test`` extra.

Example:

.. code-block:: python

    artifacts_dir = write_mock_artifacts(tmp_path / "out")
    ctx = DeploymentContext(submitter, artifacts_dir)
    deploy_system(ctx, DeploymentManifest({"tokens": {"addr": {"WETH": ""}}}))
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Optional

from solcx import compile_standard, get_installed_solc_versions, install_solc

from melon_deploy.abi import get_library_placeholders

logger = logging.getLogger(__name__)

#: Compiler the mock sources are written against
SOLC_VERSION = "0.8.26"

#: Oldest fork everything we run against understands
EVM_VERSION = "paris"

#: Where the Solidity sources live
CONTRACTS_DIR = Path(__file__).parent / "contracts"


class MockCompilationError(Exception):
    """solc reported errors for the mock sources."""


def ensure_solc_installed(version: str = SOLC_VERSION):
    installed = [str(v) for v in get_installed_solc_versions()]
    if version not in installed:
        logger.info("Installing solc %s", version)
        install_solc(version)


def get_mock_sources(contracts_dir: Path = CONTRACTS_DIR) -> dict[str, str]:
    """Source unit name -> Solidity source, for every ``.sol`` file."""
    return {path.name: path.read_text(encoding="utf-8") for path in sorted(contracts_dir.glob("*.sol"))}


def use_bare_library_placeholders(bytecode: str, link_references: dict) -> str:
    """Rewrite library placeholders to the form keyed by the bare library name.

    solc 0.5+ hashes the fully qualified ``<source unit>:<library>`` name into the placeholder,
    but :py:func:`melon_deploy.abi.link_libraries` callers name libraries as ``Types``.

    :param bytecode:
        Hex bytecode without ``0x``

    :param link_references:
        ``evm.bytecode.linkReferences`` of the solc output

    :return:
        Hex bytecode without ``0x``
    """
    for libraries in link_references.values():
        for library, references in libraries.items():
            _legacy, hashed = get_library_placeholders(library)
            for reference in references:
                start = reference["start"] * 2
                end = start + reference["length"] * 2
                assert end - start == len(hashed), f"Unexpected link reference width: {reference}"
                bytecode = bytecode[:start] + hashed + bytecode[end:]
    return bytecode


@lru_cache(maxsize=4)
def compile_mock_contracts(solc_version: str = SOLC_VERSION) -> dict[str, dict]:
    """Compile the mock sources.

    The result is cached for the process lifetime, so test suites compile once.

    :raise MockCompilationError:
        If solc reports any error

    :return:
        Contract name -> ``{"abi": list, "bytecode": str}``.
        Bytecode is ``0x`` prefixed hex and may contain library placeholders.
    """
    ensure_solc_installed(solc_version)

    standard_input = {
        "language": "Solidity",
        "sources": {name: {"content": source} for name, source in get_mock_sources().items()},
        "settings": {
            "optimizer": {"enabled": True, "runs": 200},
            "evmVersion": EVM_VERSION,
            "outputSelection": {"*": {"*": ["abi", "evm.bytecode.object", "evm.bytecode.linkReferences"]}},
        },
    }

    output = compile_standard(standard_input, solc_version=solc_version)

    errors = [e for e in output.get("errors", []) if e.get("severity") == "error"]
    if errors:
        messages = "\n".join(e.get("formattedMessage", e.get("message", "")) for e in errors)
        raise MockCompilationError(f"Mock contracts do not compile:\n{messages}")

    contracts = {}
    for source_name, source_contracts in output.get("contracts", {}).items():
        for name, artifact in source_contracts.items():
            assert name not in contracts, f"Contract {name} declared twice, second time in {source_name}"
            bytecode = artifact["evm"]["bytecode"]
            contracts[name] = {
                "abi": artifact["abi"],
                "bytecode": "0x" + use_bare_library_placeholders(bytecode["object"], bytecode.get("linkReferences", {})),
            }

    logger.info("Compiled %d mock contracts with solc %s", len(contracts), solc_version)
    return contracts


def write_mock_artifacts(directory: Path | str, names: Optional[Iterable[str]] = None) -> Path:
    """Write ``<name>.abi`` and ``<name>.bin`` for mock contracts.

    Interfaces and abstract contracts get an empty ``.bin``.

    :param directory:
        Created if it does not exist

    :param names:
        Contracts to write, all compiled contracts by default

    :return:
        The directory
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    contracts = compile_mock_contracts()
    names = list(names or contracts)
    for name in names:
        artifact = contracts[name]
        bytecode = artifact["bytecode"] if artifact["bytecode"] != "0x" else ""
        (directory / f"{name}.abi").write_text(json.dumps(artifact["abi"], indent=2), encoding="utf-8")
        (directory / f"{name}.bin").write_text(bytecode, encoding="utf-8")
    logger.info("Wrote %d mock artifacts to %s", len(names), directory)
    return directory
