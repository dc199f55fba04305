"""0x protocol v2 and v3 deployment.

Both versions are an exchange plus an ERC-20 asset proxy.
The exchange must know the proxy and the proxy must authorise the exchange
before any order can be filled.
"""

import logging
from dataclasses import dataclass

from web3.contract.contract import Contract

from melon_deploy.abi import ERC20_PROXY_ID, encode_erc20_asset_data
from melon_deploy.deploy import DeploymentContext
from melon_deploy.manifest import DeploymentManifest
from melon_deploy.token import TokenDeployment

logger = logging.getLogger(__name__)

#: Manifest categories
ZEROEX_V2_CATEGORY = "zeroExV2"
ZEROEX_V3_CATEGORY = "zeroExV3"

#: Protocol fee multiplier of v3 exchange
DEFAULT_PROTOCOL_FEE_MULTIPLIER = 150000


@dataclass(frozen=True)
class ZeroExDeployment:
    """Deployed 0x contracts of one protocol version."""

    #: 2 or 3
    version: int

    exchange: Contract

    erc20_proxy: Contract

    @property
    def gateway(self) -> str:
        return self.exchange.address


def _wire(ctx: DeploymentContext, exchange: Contract, erc20_proxy: Contract):
    ctx.set_if_different(
        exchange,
        "getAssetProxy",
        "registerAssetProxy",
        erc20_proxy.address,
        getter_args=(ERC20_PROXY_ID,),
        setter_args=(erc20_proxy.address,),
    )
    ctx.register_missing(erc20_proxy, "authorized", "addAuthorizedAddress", [(exchange.address,)])


def deploy_zeroex_v2(ctx: DeploymentContext, manifest: DeploymentManifest, tokens: TokenDeployment) -> ZeroExDeployment:
    """Deploy or adopt 0x v2.

    The v2 exchange takes the asset data of the ZRX fee token.
    If there is no ``ZRX`` among the tokens, MLN stands in.
    """
    addresses = manifest.addresses(ZEROEX_V2_CATEGORY)
    zrx = tokens.get_optional_address("ZRX", "MLN")

    erc20_proxy = ctx.nab("ZeroExV2ERC20Proxy", [], addresses)
    exchange = ctx.nab("ZeroExV2Exchange", [encode_erc20_asset_data(zrx)], addresses)
    _wire(ctx, exchange, erc20_proxy)

    return ZeroExDeployment(version=2, exchange=exchange, erc20_proxy=erc20_proxy)


def deploy_zeroex_v3(ctx: DeploymentContext, manifest: DeploymentManifest, tokens: TokenDeployment) -> ZeroExDeployment:
    """Deploy or adopt 0x v3.

    The v3 exchange is bound to the chain id it is deployed on.
    """
    addresses = manifest.addresses(ZEROEX_V3_CATEGORY)
    conf = manifest.category_conf(ZEROEX_V3_CATEGORY)
    conf.setdefault("protocolFeeMultiplier", DEFAULT_PROTOCOL_FEE_MULTIPLIER)

    erc20_proxy = ctx.nab("ZeroExV3ERC20Proxy", [], addresses)
    exchange = ctx.nab("ZeroExV3Exchange", [ctx.submitter.chain_id], addresses)
    _wire(ctx, exchange, erc20_proxy)
    ctx.set_if_different(exchange, "protocolFeeMultiplier", "setProtocolFeeMultiplier", conf["protocolFeeMultiplier"])

    return ZeroExDeployment(version=3, exchange=exchange, erc20_proxy=erc20_proxy)
