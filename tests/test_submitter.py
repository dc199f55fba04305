"""Transaction submitter and nonce management tests."""

import datetime
import logging

import pytest
from web3 import Web3

from melon_deploy.abi import get_contract, get_deployed_contract
from melon_deploy.deploy import deploy_contract
from melon_deploy.gas import CALL_GAS_MULTIPLIER, DEPLOY_GAS_MULTIPLIER
from melon_deploy.hotwallet import AccountNonceState, HotWallet
from melon_deploy.submitter import TransactionSubmitter, UnknownSigner


def test_nonce_state_monotonic():
    state = AccountNonceState("0x000000000000000000000000000000000000dEaD")
    assert not state.is_synced()
    state.sync(5)
    assert [state.allocate() for _ in range(3)] == [5, 6, 7]

    # A lagging node does not rewind us
    state.sync(6)
    assert state.allocate() == 8


def test_nonces_consecutive(web3: Web3, submitter: TransactionSubmitter, deployer: HotWallet):
    """K transactions from one account use n0 .. n0+K-1."""
    start = deployer.current_nonce
    receiver = web3.eth.accounts[1]
    receipts = [submitter.transfer(receiver, 1) for _ in range(5)]
    nonces = [web3.eth.get_transaction(r["transactionHash"])["nonce"] for r in receipts]
    assert nonces == list(range(start, start + 5))
    assert deployer.current_nonce == start + 5
    assert submitter.transaction_count == 5


def test_batch_nonces_consecutive(web3: Web3, ctx, deployer: HotWallet):
    """Batched registrations sign ahead with consecutive nonces across chunks."""
    registry = deploy_contract(ctx.submitter, ctx.artifacts_dir, "Registry", deployer.address)
    start = deployer.current_nonce
    assets = [web3.eth.accounts[i] for i in range(5)]
    funcs = [registry.functions.registerAsset(a) for a in assets]

    receipts = ctx.submitter.send_batch(funcs, batch_size=2)

    nonces = [web3.eth.get_transaction(r["transactionHash"])["nonce"] for r in receipts]
    assert nonces == list(range(start, start + 5))
    for a in assets:
        assert registry.functions.assetIsRegistered(a).call() is True


def test_local_chain_requeries_nonce(web3: Web3, deployer: HotWallet):
    """Local chain mode survives transactions sent behind the submitter's back."""
    submitter = TransactionSubmitter(web3, [deployer], local_chain=True, poll_delay=datetime.timedelta(seconds=0.05))
    receiver = web3.eth.accounts[1]
    submitter.transfer(receiver, 1)

    # Another process uses the same key
    outside_tx = {
        "to": receiver,
        "value": 1,
        "gas": 21_000,
        "gasPrice": web3.eth.gas_price * 2,
        "chainId": web3.eth.chain_id,
        "nonce": web3.eth.get_transaction_count(deployer.address, "pending"),
    }
    signed = deployer.account.sign_transaction(outside_tx)
    web3.eth.wait_for_transaction_receipt(web3.eth.send_raw_transaction(signed.raw_transaction))

    receipt = submitter.transfer(receiver, 1)
    assert receipt["status"] == 1
    assert web3.eth.get_transaction(receipt["transactionHash"])["nonce"] == outside_tx["nonce"] + 1


def test_deploy_gas_multiplier(web3: Web3, submitter: TransactionSubmitter, artifacts_dir):
    Registry = get_contract(web3, artifacts_dir, "Registry")
    data = Registry.constructor(submitter.deployer).data_in_transaction
    estimate = web3.eth.estimate_gas({"from": submitter.deployer, "data": data, "value": 0})

    receipt = submitter.deploy(Registry, submitter.deployer, name="Registry")
    tx = web3.eth.get_transaction(receipt["transactionHash"])
    assert tx["gas"] == int(estimate * DEPLOY_GAS_MULTIPLIER)


def test_call_gas_multiplier(web3: Web3, ctx):
    registry = deploy_contract(ctx.submitter, ctx.artifacts_dir, "Registry", ctx.deployer)
    engine = web3.eth.accounts[2]
    estimate = registry.functions.setEngine(engine).estimate_gas({"from": ctx.deployer})

    receipt = ctx.send(registry.functions.setEngine(engine))
    tx = web3.eth.get_transaction(receipt["transactionHash"])
    assert tx["gas"] == int(estimate * CALL_GAS_MULTIPLIER)
    assert registry.functions.engine().call() == engine


def test_explicit_gas(web3: Web3, ctx):
    registry = deploy_contract(ctx.submitter, ctx.artifacts_dir, "Registry", ctx.deployer)
    receipt = ctx.send(registry.functions.setEngine(web3.eth.accounts[2]), gas=123_456)
    assert web3.eth.get_transaction(receipt["transactionHash"])["gas"] == 123_456


def test_gas_estimation_failure(web3: Web3, ctx, deployer: HotWallet, caplog):
    """A call the node refuses to simulate consumes no nonce and sends nothing."""
    token = deploy_contract(ctx.submitter, ctx.artifacts_dir, "WETH")
    nonce = deployer.current_nonce
    count = ctx.submitter.transaction_count

    # Registry interface on a token, unknown selector reverts
    not_registry = ctx.get_contract_at("Registry", token.address)
    with caplog.at_level(logging.ERROR):
        with pytest.raises(Exception):
            ctx.send(not_registry.functions.setEngine(web3.eth.accounts[2]))

    assert deployer.current_nonce == nonce
    assert ctx.submitter.transaction_count == count
    assert web3.eth.get_transaction_count(deployer.address) == nonce
    assert "Gas estimation failed" in caplog.text


def test_one_wallet_per_account(web3: Web3, deployer: HotWallet):
    submitter = TransactionSubmitter(web3, [deployer])
    with pytest.raises(ValueError):
        submitter.add_wallet(HotWallet(deployer.account))


def test_unknown_signer(submitter: TransactionSubmitter, web3: Web3):
    with pytest.raises(UnknownSigner):
        submitter.transfer(web3.eth.accounts[1], 1, sender=web3.eth.accounts[3])


def test_log_contract_names(web3: Web3, ctx, caplog):
    """Verbose log lines name the contract by its manifest key, unknown contracts by address."""
    ctx.submitter.verbose = True
    registry = ctx.nab("Registry", [ctx.deployer], {})
    anonymous = deploy_contract(ctx.submitter, ctx.artifacts_dir, "Registry", ctx.deployer)
    unnamed = get_deployed_contract(web3, ctx.artifacts_dir, "Registry", anonymous.address)

    with caplog.at_level(logging.INFO):
        ctx.send(registry.functions.setEngine(web3.eth.accounts[2]))
        adopted = ctx.nab("Registry", [ctx.deployer], {"MainRegistry": registry.address}, key="MainRegistry")
        ctx.call(adopted.functions.engine())
        ctx.submitter.contract_names.clear()
        ctx.call(unnamed.functions.engine())

    assert "Send Registry.setEngine" in caplog.text
    assert "Call MainRegistry.engine" in caplog.text
    assert f"Call {anonymous.address}.engine" in caplog.text


def test_nab_explicit_gas(web3: Web3, ctx):
    addresses = {}
    registry = ctx.nab("Registry", [ctx.deployer], addresses, gas=2_000_000)
    tx_hash = web3.eth.get_block("latest")["transactions"][0]
    assert web3.eth.get_transaction(tx_hash)["gas"] == 2_000_000
    assert addresses["Registry"] == registry.address
