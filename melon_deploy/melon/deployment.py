"""Melon protocol core deployment.

The core contracts are declared as a :py:class:`melon_deploy.graph.DependencyGraph`.
Reading a contract off the graph deploys or adopts it, after everything it needs.

After the contracts exist, :py:func:`register_melon` wires them to each other
through the registry. Every wiring step reads the on-chain value first,
so a second run against the same manifest sends nothing.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from eth_typing import HexAddress
from web3.contract.contract import Contract

from melon_deploy.config import ConfigurationError
from melon_deploy.deploy import DeploymentContext
from melon_deploy.graph import DependencyGraph, DeploymentNode, NodeConstructor
from melon_deploy.manifest import DeploymentManifest
from melon_deploy.token import TokenDeployment

logger = logging.getLogger(__name__)

#: Manifest category
MELON_CATEGORY = "melon"

#: Price feed is a fixture we update ourselves
TESTING_TRACK = "TESTING"

#: Price feed reads Kyber rates
KYBER_PRICE_TRACK = "KYBER_PRICE"

KNOWN_TRACKS = (TESTING_TRACK, KYBER_PRICE_TRACK)

#: 30 days
DEFAULT_ENGINE_DELAY = 30 * 24 * 3600

DEFAULT_PRICE_TOLERANCE = 10

#: 10%
DEFAULT_MAX_SPREAD = 10**17

#: Price the testing feed is seeded with, per token
SEED_PRICE = 10**18

#: Integration type of the engine adapter
ENGINE_INTEGRATION = 0

#: Integration type of exchange adapters
EXCHANGE_INTEGRATION = 1

#: Exchange category -> adapter contract
EXCHANGE_ADAPTERS = {
    "kyber": "KyberAdapter",
    "oasis": "OasisDexAdapter",
    "uniswap": "UniswapAdapter",
    "zeroExV2": "ZeroExV2Adapter",
    "zeroExV3": "ZeroExV3Adapter",
    "airSwap": "AirSwapAdapter",
}

FACTORIES = (
    "AccountingFactory",
    "FeeManagerFactory",
    "SharesFactory",
    "TradingFactory",
    "VaultFactory",
    "PolicyManagerFactory",
)

ADAPTERS = ("EngineAdapter",) + tuple(EXCHANGE_ADAPTERS.values())

POLICIES = ("PriceTolerance", "UserWhitelist")

FEES = ("ManagementFee", "PerformanceFee")


@dataclass
class MelonDeploymentConfig:
    """What node constructors of the core graph read."""

    ctx: DeploymentContext

    #: ``melon`` category address mapping, written to on deployment
    addresses: dict[str, str]

    #: ``melon`` category configuration, defaults filled in
    conf: dict

    tokens: TokenDeployment

    #: ``TESTING`` or ``KYBER_PRICE``
    track: str = TESTING_TRACK

    #: Exchange category -> gateway address, only for deployed exchanges
    gateways: dict[str, str] = field(default_factory=dict)

    @property
    def price_source_name(self) -> str:
        return "KyberPriceFeed" if self.track == KYBER_PRICE_TRACK else "TestingPriceFeed"

    def nab(self, name: str, constructor_args: list) -> Contract:
        return self.ctx.nab(name, constructor_args, self.addresses)


def get_melon_conf(manifest: DeploymentManifest, deployer: HexAddress) -> dict:
    """Fill in missing core parameters and return the ``melon`` category configuration.

    Owner and updater roles default to the deployer.
    """
    conf = manifest.category_conf(MELON_CATEGORY)
    conf.setdefault("registryOwner", deployer)
    conf.setdefault("initialMGM", deployer)
    conf.setdefault("fundFactoryOwner", deployer)
    conf.setdefault("initialUpdater", deployer)
    conf.setdefault("engineDelay", DEFAULT_ENGINE_DELAY)
    conf.setdefault("priceTolerance", DEFAULT_PRICE_TOLERANCE)
    conf.setdefault("userWhitelist", [deployer])
    conf.setdefault("maxSpread", DEFAULT_MAX_SPREAD)
    return conf


def get_track(manifest: DeploymentManifest) -> str:
    """Read the deployment track from the run-wide configuration.

    :raise ConfigurationError:
        On an unknown track
    """
    track = manifest.conf.setdefault("track", TESTING_TRACK)
    if track not in KNOWN_TRACKS:
        raise ConfigurationError(f"Unknown track {track}, must be one of {KNOWN_TRACKS}")
    return track


def _without_args(name: str) -> NodeConstructor:
    def _construct(config: MelonDeploymentConfig, graph: DependencyGraph) -> Contract:
        return config.nab(name, [])

    return _construct


def deploy_registry(config: MelonDeploymentConfig, graph: DependencyGraph) -> Contract:
    return config.nab("Registry", [config.conf["registryOwner"]])


def deploy_engine(config: MelonDeploymentConfig, graph: DependencyGraph) -> Contract:
    return config.nab("Engine", [config.conf["engineDelay"], graph["Registry"].address])


def deploy_shares_requestor(config: MelonDeploymentConfig, graph: DependencyGraph) -> Contract:
    return config.nab("SharesRequestor", [graph["Registry"].address])


def deploy_testing_price_feed(config: MelonDeploymentConfig, graph: DependencyGraph) -> Contract:
    tokens = config.tokens
    return config.nab("TestingPriceFeed", [tokens.weth.address, tokens.get_decimals("WETH")])


def deploy_kyber_price_feed(config: MelonDeploymentConfig, graph: DependencyGraph) -> Contract:
    """Kyber price feed reads rates from the network proxy.

    :raise ConfigurationError:
        If Kyber is not part of the deployment
    """
    kyber_proxy = config.gateways.get("kyber")
    if not kyber_proxy:
        raise ConfigurationError(f"Track {KYBER_PRICE_TRACK} needs the kyber category in the manifest")
    return config.nab(
        "KyberPriceFeed",
        [
            graph["Registry"].address,
            kyber_proxy,
            config.conf["maxSpread"],
            config.tokens.weth.address,
            config.conf["initialUpdater"],
        ],
    )


def deploy_fund_factory(config: MelonDeploymentConfig, graph: DependencyGraph) -> Contract:
    factories = [graph[name].address for name in FACTORIES]
    return config.nab("FundFactory", factories + [graph["Registry"].address, config.conf["fundFactoryOwner"]])


def deploy_price_tolerance(config: MelonDeploymentConfig, graph: DependencyGraph) -> Contract:
    return config.nab("PriceTolerance", [config.conf["priceTolerance"]])


def deploy_user_whitelist(config: MelonDeploymentConfig, graph: DependencyGraph) -> Contract:
    return config.nab("UserWhitelist", [config.conf["userWhitelist"]])


def create_melon_graph(config: MelonDeploymentConfig, overrides: Optional[dict[str, NodeConstructor]] = None) -> DependencyGraph:
    """Declare the core contracts.

    Only the price feed of the configured track is part of the graph.

    :param overrides:
        Replace the constructors of some contracts, e.g. adopt a mock instead
    """
    nodes = [
        DeploymentNode("Registry", deploy_registry),
        DeploymentNode("Engine", deploy_engine, ("Registry",)),
        DeploymentNode("SharesRequestor", deploy_shares_requestor, ("Registry",)),
    ]

    if config.track == KYBER_PRICE_TRACK:
        nodes.append(DeploymentNode("KyberPriceFeed", deploy_kyber_price_feed, ("Registry",)))
    else:
        nodes.append(DeploymentNode("TestingPriceFeed", deploy_testing_price_feed))

    nodes += [DeploymentNode(name, _without_args(name)) for name in FACTORIES]
    nodes.append(DeploymentNode("FundFactory", deploy_fund_factory, FACTORIES + ("Registry",)))
    nodes += [DeploymentNode(name, _without_args(name)) for name in ADAPTERS]
    nodes += [
        DeploymentNode("PriceTolerance", deploy_price_tolerance),
        DeploymentNode("UserWhitelist", deploy_user_whitelist),
    ]
    nodes += [DeploymentNode(name, _without_args(name)) for name in FEES]
    return DependencyGraph(config, nodes, overrides)


def register_melon(config: MelonDeploymentConfig, graph: DependencyGraph):
    """Wire the core contracts through the registry.

    - Registry pointers: fund factory, price source, native asset, MLN, engine, MGM, shares requestor

    - Fees, policies, integration adapters and assets are registered if missing

    - On the testing track, the price feed learns the token decimals

    - The price feed is updated once, if it has never been updated
    """
    ctx = config.ctx
    conf = config.conf
    tokens = config.tokens
    registry = graph["Registry"]
    price_source = graph[config.price_source_name]

    ctx.set_if_different(registry, "fundFactory", "setFundFactory", graph["FundFactory"].address)
    ctx.set_if_different(registry, "priceSource", "setPriceSource", price_source.address)
    ctx.set_if_different(registry, "nativeAsset", "setNativeAsset", tokens.weth.address)
    ctx.set_if_different(registry, "mlnToken", "setMlnToken", tokens.mln.address)
    ctx.set_if_different(registry, "engine", "setEngine", graph["Engine"].address)
    ctx.set_if_different(registry, "MGM", "setMGM", conf["initialMGM"])
    ctx.set_if_different(registry, "sharesRequestor", "setSharesRequestor", graph["SharesRequestor"].address)

    ctx.register_missing(registry, "feeIsRegistered", "registerFee", [(graph[name].address,) for name in FEES])
    ctx.register_missing(registry, "policyIsRegistered", "registerPolicy", [(graph[name].address,) for name in POLICIES])

    integrations = [(graph["EngineAdapter"].address, graph["Engine"].address, ENGINE_INTEGRATION)]
    for category, adapter_name in EXCHANGE_ADAPTERS.items():
        gateway = config.gateways.get(category)
        if gateway:
            integrations.append((graph[adapter_name].address, gateway, EXCHANGE_INTEGRATION))
    ctx.register_missing(registry, "integrationAdapterIsRegistered", "registerIntegrationAdapter", integrations)

    token_addresses = [tokens.get_address(symbol) for symbol in tokens.tokens]
    ctx.register_missing(registry, "assetIsRegistered", "registerAsset", [(a,) for a in token_addresses])

    if config.track == TESTING_TRACK:
        for symbol in tokens.tokens:
            address = tokens.get_address(symbol)
            decimals = tokens.get_decimals(symbol)
            ctx.set_if_different(price_source, "assetsToDecimals", "setDecimals", decimals, getter_args=(address,), setter_args=(address, decimals))

    if ctx.call(price_source.functions.lastUpdate()) == 0:
        logger.info("Seeding %s prices", config.price_source_name)
        if config.track == TESTING_TRACK:
            ctx.send(price_source.functions.update(token_addresses, [SEED_PRICE] * len(token_addresses)))
        else:
            ctx.send(price_source.functions.update())
