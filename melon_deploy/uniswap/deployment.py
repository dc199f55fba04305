"""Uniswap v1 deployment.

Uniswap v1 has a factory that clones an exchange template per token.
"""

import logging
from dataclasses import dataclass

from web3.contract.contract import Contract

from melon_deploy.deploy import DeploymentContext
from melon_deploy.manifest import DeploymentManifest
from melon_deploy.token import TokenDeployment

logger = logging.getLogger(__name__)

#: Manifest category
UNISWAP_CATEGORY = "uniswap"


@dataclass(frozen=True)
class UniswapDeployment:
    """Deployed Uniswap v1 contracts."""

    #: Exchange template the factory clones
    exchange_template: Contract

    factory: Contract

    @property
    def gateway(self) -> str:
        return self.factory.address


def deploy_uniswap(ctx: DeploymentContext, manifest: DeploymentManifest, tokens: TokenDeployment) -> UniswapDeployment:
    """Deploy or adopt Uniswap and create an exchange for every non-WETH token."""
    addresses = manifest.addresses(UNISWAP_CATEGORY)

    exchange_template = ctx.nab("UniswapExchange", [], addresses)
    factory = ctx.nab("UniswapFactory", [], addresses)

    ctx.set_if_different(factory, "exchangeTemplate", "initializeFactory", exchange_template.address)

    token_addresses = [(tokens.get_address(symbol),) for symbol in tokens.get_non_weth_symbols()]
    ctx.register_missing(factory, "getExchange", "createExchange", token_addresses)

    return UniswapDeployment(exchange_template=exchange_template, factory=factory)
