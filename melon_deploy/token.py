"""Base token deployment.

Tokens live in the ``tokens`` manifest category, keyed by symbol.
``WETH`` is deployed from the ``WETH`` contract, every other symbol
from ``PreminedToken(symbol, decimals, name)`` that mints the supply to the deployer.
"""

import logging
from dataclasses import dataclass, field

from web3.contract.contract import Contract

from melon_deploy.deploy import DeploymentContext
from melon_deploy.manifest import DeploymentManifest

logger = logging.getLogger(__name__)

#: Manifest category
TOKENS_CATEGORY = "tokens"

#: The protocol cannot run without these
REQUIRED_TOKENS = ("WETH", "MLN")

DEFAULT_DECIMALS = 18


@dataclass
class TokenDeployment:
    """Deployed base tokens."""

    #: Symbol -> token contract
    tokens: dict[str, Contract] = field(default_factory=dict)

    #: Symbol -> ``{"decimals": int, "name": str}``
    conf: dict[str, dict] = field(default_factory=dict)

    @property
    def weth(self) -> Contract:
        return self.tokens["WETH"]

    @property
    def mln(self) -> Contract:
        return self.tokens["MLN"]

    def get_decimals(self, symbol: str) -> int:
        return self.conf[symbol]["decimals"]

    def get_address(self, symbol: str) -> str:
        return self.tokens[symbol].address

    def get_optional_address(self, symbol: str, fallback: str) -> str:
        """Address of ``symbol`` if we have it, otherwise of ``fallback``."""
        if symbol in self.tokens:
            return self.tokens[symbol].address
        return self.tokens[fallback].address

    def get_non_weth_symbols(self) -> list[str]:
        return [s for s in self.tokens if s != "WETH"]


def get_token_symbols(manifest: DeploymentManifest) -> list[str]:
    """All symbols mentioned in either the addresses or the configuration, required tokens first."""
    symbols = list(REQUIRED_TOKENS)
    if manifest.has_category(TOKENS_CATEGORY):
        for symbol in list(manifest.addresses(TOKENS_CATEGORY)) + list(manifest.category_conf(TOKENS_CATEGORY)):
            if symbol not in symbols:
                symbols.append(symbol)
    return symbols


def deploy_tokens(ctx: DeploymentContext, manifest: DeploymentManifest) -> TokenDeployment:
    """Deploy or adopt the base tokens.

    Missing token configuration is filled in with defaults and written back to the manifest,
    so that the output manifest documents what was deployed.
    """
    addresses = manifest.addresses(TOKENS_CATEGORY)
    conf = manifest.category_conf(TOKENS_CATEGORY)
    deployment = TokenDeployment()

    for symbol in get_token_symbols(manifest):
        info = conf.setdefault(symbol, {})
        info.setdefault("decimals", DEFAULT_DECIMALS)
        info.setdefault("name", "Wrapped Ether" if symbol == "WETH" else f"{symbol} token")

        if symbol == "WETH":
            token = ctx.nab("WETH", [], addresses)
        else:
            token = ctx.nab("PreminedToken", [symbol, info["decimals"], info["name"]], addresses, key=symbol)

        deployment.tokens[symbol] = token
        deployment.conf[symbol] = info

    logger.info("Tokens ready: %s", ", ".join(deployment.tokens))
    return deployment
