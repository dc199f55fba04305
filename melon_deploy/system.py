"""Whole system deployment.

:py:func:`deploy_system` deploys, or adopts, and wires every subsystem of a manifest in dependency order:

1. Base tokens

2. Third party exchanges that have a manifest category: Kyber, OasisDex, Uniswap, 0x v2, 0x v3, AirSwap

3. Price source

4. Registry, engine and shares requestor

5. Component factories

6. Fund factory

7. Integration adapters

8. Policies and fees

9. Registry cross registration

After each step the manifest is handed to a checkpoint callback, usually saving it to disk.
A run that crashes halfway can be restarted from the last checkpoint
and adopts everything that was deployed before the crash.

Example:

.. code-block:: python

    manifest = load_manifest("deploy_in.json")
    ctx = DeploymentContext(submitter, Path("out"))
    system = deploy_system(ctx, manifest, checkpoint=make_checkpoint("deploy_out.json"))
    print(system.contracts["Registry"].address)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from web3.contract.contract import Contract

from melon_deploy.airswap.deployment import AIRSWAP_CATEGORY, deploy_airswap
from melon_deploy.deploy import DeploymentContext
from melon_deploy.graph import NodeConstructor, resolve_all
from melon_deploy.kyber.deployment import KYBER_CATEGORY, deploy_kyber
from melon_deploy.manifest import DeploymentManifest
from melon_deploy.melon.deployment import (
    ADAPTERS,
    FACTORIES,
    FEES,
    POLICIES,
    MelonDeploymentConfig,
    create_melon_graph,
    get_melon_conf,
    get_track,
    register_melon,
)
from melon_deploy.oasis.deployment import OASIS_CATEGORY, deploy_oasis
from melon_deploy.token import TokenDeployment, deploy_tokens
from melon_deploy.uniswap.deployment import UNISWAP_CATEGORY, deploy_uniswap
from melon_deploy.zeroex.deployment import ZEROEX_V2_CATEGORY, ZEROEX_V3_CATEGORY, deploy_zeroex_v2, deploy_zeroex_v3

logger = logging.getLogger(__name__)


#: Called with the manifest after every deployment step
Checkpoint = Callable[[DeploymentManifest], None]


#: Exchange category -> deployer, in deployment order
EXCHANGE_DEPLOYERS = {
    KYBER_CATEGORY: deploy_kyber,
    OASIS_CATEGORY: deploy_oasis,
    UNISWAP_CATEGORY: deploy_uniswap,
    ZEROEX_V2_CATEGORY: deploy_zeroex_v2,
    ZEROEX_V3_CATEGORY: deploy_zeroex_v3,
    AIRSWAP_CATEGORY: deploy_airswap,
}


@dataclass
class SystemDeployment:
    """Result of a system deployment."""

    #: Manifest with every deployed address filled in
    manifest: DeploymentManifest

    tokens: TokenDeployment

    #: Exchange category -> the dataclass its deployer returned
    exchanges: dict[str, Any] = field(default_factory=dict)

    #: Core contract name -> proxy
    melon: dict[str, Contract] = field(default_factory=dict)

    #: Every contract by its manifest key, tokens by symbol
    contracts: dict[str, Contract] = field(default_factory=dict)


def apply_run_conf(ctx: DeploymentContext, manifest: DeploymentManifest):
    """Apply the run-wide ``deployer`` and ``batchSize`` manifest parameters to the context.

    :raise melon_deploy.submitter.UnknownSigner:
        If the manifest names a deployer we have no key for
    """
    run_conf = manifest.conf
    deployer = run_conf.get("deployer")
    if deployer:
        ctx.submitter.default_sender = ctx.submitter.get_wallet(deployer).address
    if run_conf.get("batchSize"):
        ctx.batch_size = int(run_conf["batchSize"])


def deploy_system(
    ctx: DeploymentContext,
    manifest: DeploymentManifest,
    checkpoint: Optional[Checkpoint] = None,
    overrides: Optional[dict[str, NodeConstructor]] = None,
) -> SystemDeployment:
    """Deploy or adopt every contract of the manifest and wire them together.

    :param ctx:
        Submitter and artifacts

    :param manifest:
        Mutated in place, new addresses and defaulted parameters are written into it

    :param checkpoint:
        Called with the manifest after each step

    :param overrides:
        Replace constructors of core contracts, see :py:func:`melon_deploy.melon.deployment.create_melon_graph`

    :raise melon_deploy.config.ConfigurationError:
        Unknown track, or Kyber price track without Kyber

    :return:
        All contracts and the updated manifest
    """

    def _step(label: str):
        logger.info("Deployment step done: %s", label)
        if checkpoint:
            checkpoint(manifest)

    apply_run_conf(ctx, manifest)
    track = get_track(manifest)
    start_count = ctx.submitter.transaction_count
    logger.info("Deploying system on track %s as %s", track, ctx.deployer)

    tokens = deploy_tokens(ctx, manifest)
    _step("tokens")

    exchanges = {}
    for category, deployer in EXCHANGE_DEPLOYERS.items():
        if manifest.has_category(category):
            exchanges[category] = deployer(ctx, manifest, tokens)
            _step(category)

    config = MelonDeploymentConfig(
        ctx=ctx,
        addresses=manifest.addresses("melon"),
        conf=get_melon_conf(manifest, ctx.deployer),
        tokens=tokens,
        track=track,
        gateways={category: deployment.gateway for category, deployment in exchanges.items()},
    )
    graph = create_melon_graph(config, overrides)

    graph.get_node(config.price_source_name)
    _step("price source")

    for name in ("Registry", "Engine", "SharesRequestor"):
        graph.get_node(name)
    _step("registry and engine")

    for name in FACTORIES:
        graph.get_node(name)
    _step("factories")

    graph.get_node("FundFactory")
    _step("fund factory")

    for name in ADAPTERS:
        graph.get_node(name)
    _step("adapters")

    for name in POLICIES + FEES:
        graph.get_node(name)
    _step("policies and fees")

    register_melon(config, graph)
    _step("cross registration")

    melon = resolve_all(graph)

    contracts = dict(tokens.tokens)
    for category, deployment in exchanges.items():
        contracts.update(_by_manifest_key(manifest.addresses(category), deployment))
    contracts.update(melon)

    logger.info("System deployment complete, %d transactions sent", ctx.submitter.transaction_count - start_count)

    return SystemDeployment(
        manifest=manifest,
        tokens=tokens,
        exchanges=exchanges,
        melon=melon,
        contracts=contracts,
    )


def _by_manifest_key(addresses: dict[str, str], deployment: Any) -> dict[str, Contract]:
    # Manifest keys differ from contract names for some exchange contracts, e.g. KGT
    by_address = {v.address.lower(): v for v in vars(deployment).values() if isinstance(v, Contract)}
    return {key: by_address[address.lower()] for key, address in addresses.items() if address and address.lower() in by_address}
