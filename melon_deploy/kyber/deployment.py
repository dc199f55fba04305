"""Kyber Network deployment.

Deploys a self-contained Kyber Network with one reserve that lists the base tokens,
and wires the contracts to each other.

Every step reads the current on-chain value first, so re-running against
an existing deployment sends nothing, and a run that crashed half way
picks up from the first step that did not happen.
"""

import logging
from dataclasses import dataclass

from eth_typing import HexAddress
from web3 import Web3
from web3.contract.contract import Contract

from melon_deploy.abi import ZERO_ADDRESS
from melon_deploy.deploy import DeploymentContext
from melon_deploy.manifest import DeploymentManifest
from melon_deploy.token import TokenDeployment
from melon_deploy.utils import is_same_address

logger = logging.getLogger(__name__)

#: Manifest category
KYBER_CATEGORY = "kyber"

#: Default parameters, can be overridden in the manifest category ``conf``
DEFAULT_KYBER_CONF = {
    "validRateDurationInBlocks": 500_000,
    "minimalRecordResolution": 2,
    "maxPerBlockImbalance": 10**29,
    "maxTotalImbalance": 12 * 10**29,
    "initialKncToEthRate": 18,
    "reserveTokenAmount": 10**23,
    # Wei sent to the reserve, nothing by default
    "initialReserveAmount": 0,
    "categoryCap": 10**28,
    "sgdToEthRate": 30_000,
    "tokensPerEther": 10**18,
    "ethersPerToken": 10**18,
}

#: Whitelist user category the cap is set for
DEFAULT_USER_CATEGORY = 0


@dataclass(frozen=True)
class KyberDeployment:
    """Deployed Kyber contracts."""

    #: Kyber Genesis Token, needed by the whitelist
    kgt: Contract

    conversion_rates: Contract

    network: Contract

    reserve: Contract

    whitelist: Contract

    fee_burner: Contract

    expected_rate: Contract

    #: Entry point for trading, the integration gateway
    network_proxy: Contract

    @property
    def gateway(self) -> str:
        return self.network_proxy.address


def get_withdraw_approval_key(token: HexAddress | str, withdraw_address: HexAddress | str) -> bytes:
    """Reserve ``approvedWithdrawAddresses`` key, ``keccak256(token, address)`` packed."""
    return bytes(Web3.solidity_keccak(["address", "address"], [token, withdraw_address]))


def add_operator_if_missing(ctx: DeploymentContext, contract: Contract, operator: HexAddress | str) -> bool:
    """Make ``operator`` an operator of a Kyber permission group contract.

    :return:
        True if we sent a transaction
    """
    operators = ctx.call(contract.functions.getOperators())
    if any(is_same_address(o, operator) for o in operators):
        return False
    logger.info("Adding %s as an operator of %s", operator, contract.name)
    ctx.send(contract.functions.addOperator(operator))
    return True


def wire_kyber(ctx: DeploymentContext, kyber: KyberDeployment, conf: dict):
    """Point the contracts to each other, set up operators, the reserve and the whitelist."""
    deployer = ctx.deployer
    network = kyber.network
    conversion_rates = kyber.conversion_rates
    reserve = kyber.reserve
    whitelist = kyber.whitelist

    ctx.set_if_different(kyber.network_proxy, "kyberNetworkContract", "setKyberNetworkContract", network.address)
    ctx.set_if_different(network, "whiteListContract", "setWhiteList", whitelist.address)
    ctx.set_if_different(network, "expectedRateContract", "setExpectedRate", kyber.expected_rate.address)
    ctx.set_if_different(network, "feeBurnerContract", "setFeeBurner", kyber.fee_burner.address)
    ctx.set_if_different(network, "kyberNetworkProxyContract", "setKyberProxy", kyber.network_proxy.address)
    ctx.set_if_different(network, "isEnabled", "setEnable", True)
    ctx.set_if_different(conversion_rates, "validRateDurationInBlocks", "setValidRateDurationInBlocks", conf["validRateDurationInBlocks"])
    ctx.set_if_different(conversion_rates, "reserveContract", "setReserveAddress", reserve.address)

    add_operator_if_missing(ctx, network, deployer)
    ctx.register_missing(network, "reserveType", "addReserve", [(reserve.address, True)])
    ctx.set_if_different(reserve, "tradeEnabled", "enableTrade", True, setter_args=())

    add_operator_if_missing(ctx, conversion_rates, deployer)
    add_operator_if_missing(ctx, whitelist, deployer)
    ctx.set_if_different(
        whitelist,
        "categoryCap",
        "setCategoryCap",
        conf["categoryCap"],
        getter_args=(DEFAULT_USER_CATEGORY,),
        setter_args=(DEFAULT_USER_CATEGORY, conf["categoryCap"]),
    )
    ctx.set_if_different(whitelist, "weiPerSgd", "setSgdToEthRate", conf["sgdToEthRate"])

    if conf["initialReserveAmount"] and ctx.web3.eth.get_balance(reserve.address) == 0:
        ctx.submitter.transfer(reserve.address, conf["initialReserveAmount"])

    current_network = ctx.call(reserve.functions.kyberNetwork())
    current_rates = ctx.call(reserve.functions.conversionRatesContract())
    if not (is_same_address(current_network, network.address) and is_same_address(current_rates, conversion_rates.address)):
        ctx.send(reserve.functions.setContracts(network.address, conversion_rates.address, ZERO_ADDRESS))


def list_kyber_token(ctx: DeploymentContext, kyber: KyberDeployment, token: Contract, conf: dict):
    """Make a token tradeable against ETH through the reserve.

    Each step is checked separately, in the order they must happen:

    - listing in the conversion rates, then imbalance limits and enabling trade

    - withdrawal approval of the deployer in the reserve

    - reserve token balance

    - step functions and base rates, base rates last as they mark the rates done

    - pair listing on the network
    """
    deployer = ctx.deployer
    conversion_rates = kyber.conversion_rates
    reserve = kyber.reserve

    listed, enabled = ctx.call(conversion_rates.functions.getTokenBasicData(token.address))
    if not listed:
        ctx.send(conversion_rates.functions.addToken(token.address))

    if not enabled:
        ctx.send(
            conversion_rates.functions.setTokenControlInfo(
                token.address,
                conf["minimalRecordResolution"],
                conf["maxPerBlockImbalance"],
                conf["maxTotalImbalance"],
            )
        )
        ctx.send(conversion_rates.functions.enableTokenTrade(token.address))

    approval_key = get_withdraw_approval_key(token.address, deployer)
    if not ctx.call(reserve.functions.approvedWithdrawAddresses(approval_key)):
        ctx.send(reserve.functions.approveWithdrawAddress(token.address, deployer, True))

    if ctx.call(token.functions.balanceOf(reserve.address)) == 0:
        ctx.send(token.functions.transfer(reserve.address, conf["reserveTokenAmount"]))

    buy_rate = ctx.call(conversion_rates.functions.getBasicRate(token.address, True))
    sell_rate = ctx.call(conversion_rates.functions.getBasicRate(token.address, False))
    if (buy_rate, sell_rate) != (conf["tokensPerEther"], conf["ethersPerToken"]):
        ctx.send(conversion_rates.functions.setQtyStepFunction(token.address, [0], [0], [0], [0]))
        ctx.send(conversion_rates.functions.setImbalanceStepFunction(token.address, [0], [0], [0], [0]))
        ctx.send(
            conversion_rates.functions.setBaseRate(
                [token.address],
                [conf["tokensPerEther"]],
                [conf["ethersPerToken"]],
                [bytes(14)],
                [bytes(14)],
                ctx.web3.eth.block_number,
                [0],
            )
        )

    if not ctx.call(kyber.network.functions.perReserveListedPairs(reserve.address, token.address)):
        ctx.send(kyber.network.functions.listPairForReserve(reserve.address, token.address, True, True, True))


def deploy_kyber(ctx: DeploymentContext, manifest: DeploymentManifest, tokens: TokenDeployment) -> KyberDeployment:
    """Deploy or adopt Kyber and wire it.

    The fee token is ``KNC`` if we have it, otherwise ``MLN``.
    Every non-WETH token is listed in the reserve and the reserve gets a starting balance of each.
    """
    addresses = manifest.addresses(KYBER_CATEGORY)
    conf = manifest.category_conf(KYBER_CATEGORY)
    for key, value in DEFAULT_KYBER_CONF.items():
        conf.setdefault(key, value)

    deployer = ctx.deployer
    knc = tokens.get_optional_address("KNC", "MLN")

    kgt = ctx.nab("BurnableToken", ["KGT", 18, "Kyber Genesis Token"], addresses, key="KGT")
    conversion_rates = ctx.nab("ConversionRates", [deployer], addresses)
    network = ctx.nab("KyberNetwork", [deployer], addresses)
    reserve = ctx.nab("KyberReserve", [network.address, conversion_rates.address, deployer], addresses)
    whitelist = ctx.nab("WhiteList", [deployer, kgt.address], addresses, key="KyberWhiteList")
    fee_burner = ctx.nab("FeeBurner", [deployer, knc, network.address, conf["initialKncToEthRate"]], addresses)
    expected_rate = ctx.nab("ExpectedRate", [network.address, knc, deployer], addresses)
    network_proxy = ctx.nab("KyberNetworkProxy", [deployer], addresses)

    kyber = KyberDeployment(
        kgt=kgt,
        conversion_rates=conversion_rates,
        network=network,
        reserve=reserve,
        whitelist=whitelist,
        fee_burner=fee_burner,
        expected_rate=expected_rate,
        network_proxy=network_proxy,
    )

    wire_kyber(ctx, kyber, conf)

    for symbol in tokens.get_non_weth_symbols():
        logger.info("Listing %s in the Kyber reserve", symbol)
        list_kyber_token(ctx, kyber, tokens.tokens[symbol], conf)

    return kyber
