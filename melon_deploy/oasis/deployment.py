"""OasisDex matching market deployment."""

import logging
from dataclasses import dataclass

from web3.contract.contract import Contract

from melon_deploy.deploy import DeploymentContext
from melon_deploy.manifest import DeploymentManifest
from melon_deploy.token import TokenDeployment

logger = logging.getLogger(__name__)

#: Manifest category
OASIS_CATEGORY = "oasis"

#: Market close time, far in the future
DEFAULT_CLOSE_TIME = 99999999999


@dataclass(frozen=True)
class OasisDeployment:
    """Deployed OasisDex contracts."""

    exchange: Contract

    @property
    def gateway(self) -> str:
        return self.exchange.address


def deploy_oasis(ctx: DeploymentContext, manifest: DeploymentManifest, tokens: TokenDeployment) -> OasisDeployment:
    """Deploy or adopt the market and whitelist every token against WETH."""
    addresses = manifest.addresses(OASIS_CATEGORY)
    conf = manifest.category_conf(OASIS_CATEGORY)
    conf.setdefault("closeTime", DEFAULT_CLOSE_TIME)

    exchange = ctx.nab("OasisDexExchange", [conf["closeTime"]], addresses)

    weth = tokens.weth.address
    pairs = [(tokens.get_address(symbol), weth) for symbol in tokens.get_non_weth_symbols()]
    ctx.register_missing(exchange, "isTokenPairWhitelisted", "addTokenPairWhitelist", pairs, check_arity=2)

    return OasisDeployment(exchange=exchange)
