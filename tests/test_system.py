"""Whole system deployment tests against stand-in contracts."""

import pytest
from web3 import Web3

from melon_deploy.config import ConfigurationError
from melon_deploy.deploy import DeploymentContext
from melon_deploy.manifest import DeploymentManifest, load_manifest, make_checkpoint
from melon_deploy.melon.deployment import ADAPTERS, FACTORIES, FEES, POLICIES, SEED_PRICE
from melon_deploy.system import deploy_system
from melon_deploy.zeroex.deployment import DEFAULT_PROTOCOL_FEE_MULTIPLIER

ALL_EXCHANGES = ("kyber", "oasis", "uniswap", "zeroExV2", "zeroExV3", "airSwap")


def _full_manifest(track="TESTING") -> DeploymentManifest:
    data = {
        "conf": {"track": track},
        "tokens": {"addr": {"WETH": "", "MLN": "", "ZRX": ""}, "conf": {"ZRX": {"decimals": 18, "name": "0x Protocol Token"}}},
        "melon": {"addr": {}},
    }
    for category in ALL_EXCHANGES:
        data[category] = {"addr": {}}
    return DeploymentManifest(data)


def test_example_scenario(ctx: DeploymentContext, tmp_path):
    """Fill in a minimal manifest, then run again against the output and send nothing."""
    out = tmp_path / "deploy_out.json"
    manifest = DeploymentManifest({"tokens": {"addr": {"WETH": ""}}, "melon": {"addr": {"Registry": ""}}})

    system = deploy_system(ctx, manifest, checkpoint=make_checkpoint(out))

    output = load_manifest(out)
    assert output.get_address("tokens", "WETH") == system.tokens.weth.address
    assert output.get_address("melon", "Registry") == system.contracts["Registry"].address
    assert output.get_address("tokens", "MLN")
    for name in FACTORIES + ADAPTERS + POLICIES + FEES + ("Engine", "SharesRequestor", "FundFactory", "TestingPriceFeed"):
        assert output.get_address("melon", name), f"{name} not deployed"

    before = output.copy()
    sent = ctx.submitter.transaction_count
    second = deploy_system(ctx, output)
    assert ctx.submitter.transaction_count == sent
    assert second.contracts["Registry"].address == system.contracts["Registry"].address
    assert second.manifest == before


def test_registry_wiring(web3: Web3, ctx: DeploymentContext):
    manifest = DeploymentManifest({"tokens": {"addr": {}}, "oasis": {"addr": {}}})
    system = deploy_system(ctx, manifest)

    registry = system.melon["Registry"]
    melon = system.melon
    assert registry.functions.engine().call() == melon["Engine"].address
    assert registry.functions.priceSource().call() == melon["TestingPriceFeed"].address
    assert registry.functions.fundFactory().call() == melon["FundFactory"].address
    assert registry.functions.nativeAsset().call() == system.tokens.weth.address
    assert registry.functions.mlnToken().call() == system.tokens.mln.address
    assert registry.functions.MGM().call() == ctx.deployer
    assert registry.functions.sharesRequestor().call() == melon["SharesRequestor"].address

    for name in FEES:
        assert registry.functions.feeIsRegistered(melon[name].address).call()
    for name in POLICIES:
        assert registry.functions.policyIsRegistered(melon[name].address).call()
    for token in system.tokens.tokens.values():
        assert registry.functions.assetIsRegistered(token.address).call()

    # Only present exchanges get their adapter registered
    assert registry.functions.integrationAdapterIsRegistered(melon["EngineAdapter"].address).call()
    assert registry.functions.integrationAdapterIsRegistered(melon["OasisDexAdapter"].address).call()
    assert not registry.functions.integrationAdapterIsRegistered(melon["KyberAdapter"].address).call()

    price_feed = melon["TestingPriceFeed"]
    assert price_feed.functions.lastUpdate().call() != 0
    assert price_feed.functions.assetsToDecimals(system.tokens.mln.address).call() == 18
    assert SEED_PRICE == 10**18


def test_all_exchanges(ctx: DeploymentContext):
    """Every exchange subsystem deploys, wires and reconciles to no-ops on the second run."""
    manifest = _full_manifest()
    system = deploy_system(ctx, manifest)

    kyber = system.exchanges["kyber"]
    assert kyber.network_proxy.functions.kyberNetworkContract().call() == kyber.network.address
    assert kyber.network.functions.isEnabled().call() is True
    assert kyber.conversion_rates.functions.reserveContract().call() == kyber.reserve.address
    listed, _ = kyber.conversion_rates.functions.getTokenBasicData(system.tokens.mln.address).call()
    assert listed
    assert system.contracts["KGT"].address == kyber.kgt.address
    assert system.contracts["KyberWhiteList"].address == kyber.whitelist.address

    oasis = system.exchanges["oasis"].exchange
    assert oasis.functions.isTokenPairWhitelisted(system.tokens.mln.address, system.tokens.weth.address).call()

    uniswap = system.exchanges["uniswap"]
    assert uniswap.factory.functions.exchangeTemplate().call() == uniswap.exchange_template.address
    assert int(uniswap.factory.functions.getExchange(system.tokens.mln.address).call(), 16) != 0

    for category in ("zeroExV2", "zeroExV3"):
        zeroex = system.exchanges[category]
        assert zeroex.exchange.functions.getAssetProxy(bytes.fromhex("f47261b0")).call() == zeroex.erc20_proxy.address
        assert zeroex.erc20_proxy.functions.authorized(zeroex.exchange.address).call()
    assert system.exchanges["zeroExV3"].exchange.functions.protocolFeeMultiplier().call() == DEFAULT_PROTOCOL_FEE_MULTIPLIER

    assert system.manifest.get_address("airSwap", "Swap") == system.exchanges["airSwap"].swap.address

    registry = system.melon["Registry"]
    for adapter in ADAPTERS:
        assert registry.functions.integrationAdapterIsRegistered(system.melon[adapter].address).call(), f"{adapter} not registered"

    sent = ctx.submitter.transaction_count
    deploy_system(ctx, system.manifest)
    assert ctx.submitter.transaction_count == sent


def test_kyber_price_track(ctx: DeploymentContext):
    manifest = _full_manifest(track="KYBER_PRICE")
    system = deploy_system(ctx, manifest)
    assert "KyberPriceFeed" in system.melon
    assert "TestingPriceFeed" not in system.melon
    assert system.melon["Registry"].functions.priceSource().call() == system.melon["KyberPriceFeed"].address
    assert system.melon["KyberPriceFeed"].functions.lastUpdate().call() != 0


def test_kyber_price_track_needs_kyber(ctx: DeploymentContext):
    manifest = DeploymentManifest({"conf": {"track": "KYBER_PRICE"}, "tokens": {"addr": {}}})
    with pytest.raises(ConfigurationError):
        deploy_system(ctx, manifest)


def test_unknown_track(ctx: DeploymentContext):
    with pytest.raises(ConfigurationError):
        deploy_system(ctx, DeploymentManifest({"conf": {"track": "MAINNET"}}))
    assert ctx.submitter.transaction_count == 0


def test_checkpoint_after_each_step(ctx: DeploymentContext):
    """The manifest is handed out after every step, growing as the deployment goes."""
    snapshots = []
    deploy_system(ctx, DeploymentManifest({"oasis": {"addr": {}}}), checkpoint=lambda m: snapshots.append(m.as_dict()))

    assert len(snapshots) == 9
    assert snapshots[0]["tokens"]["addr"]["WETH"]
    assert "melon" not in snapshots[0]
    assert snapshots[1]["oasis"]["addr"]["OasisDexExchange"]
    assert snapshots[-1]["melon"]["addr"]["FundFactory"]


def test_override_core_contract(web3: Web3, ctx: DeploymentContext):
    """An override replaces how one core contract is obtained."""
    existing = ctx.nab("Engine", [1, ctx.deployer], {})

    def _existing_engine(config, graph):
        return existing

    system = deploy_system(ctx, DeploymentManifest(), overrides={"Engine": _existing_engine})
    assert system.melon["Engine"].address == existing.address
    assert system.melon["Registry"].functions.engine().call() == existing.address


def test_resume_after_crash(ctx: DeploymentContext, tmp_path, monkeypatch):
    """A run that dies during registration is finished from its output manifest without redeploying anything."""
    out = tmp_path / "deploy_out.json"
    send = ctx.send

    def _dies_at_set_engine(func, **kwargs):
        if func.fn_name == "setEngine":
            raise ConnectionError("Node went away")
        return send(func, **kwargs)

    with monkeypatch.context() as m:
        m.setattr(ctx, "send", _dies_at_set_engine)
        with pytest.raises(ConnectionError):
            deploy_system(ctx, _full_manifest(), checkpoint=make_checkpoint(out))

    crashed = load_manifest(out)
    deployed = list(crashed.iterate_addresses())
    assert crashed.get_address("melon", "FundFactory")
    assert crashed.get_address("kyber", "KyberNetworkProxy")

    deploys = []
    deploy = ctx.submitter.deploy

    def _record_deploy(contract, *args, **kwargs):
        deploys.append(kwargs.get("name"))
        return deploy(contract, *args, **kwargs)

    monkeypatch.setattr(ctx.submitter, "deploy", _record_deploy)
    system = deploy_system(ctx, load_manifest(out), checkpoint=make_checkpoint(out))

    assert deploys == []
    for category, name, address in deployed:
        assert system.manifest.get_address(category, name) == address

    registry = system.melon["Registry"]
    assert registry.address == crashed.get_address("melon", "Registry")
    assert registry.functions.engine().call() == system.melon["Engine"].address
    assert registry.functions.fundFactory().call() == system.melon["FundFactory"].address
    for adapter in ADAPTERS:
        assert registry.functions.integrationAdapterIsRegistered(system.melon[adapter].address).call(), f"{adapter} not registered"

    sent = ctx.submitter.transaction_count
    deploy_system(ctx, load_manifest(out))
    assert ctx.submitter.transaction_count == sent
