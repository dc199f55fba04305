"""Partial redeployment tests."""

import pytest

from melon_deploy.config import DeployEnvironment
from melon_deploy.deploy import DeploymentContext
from melon_deploy.manifest import DeploymentManifest, ManifestError, load_manifest, save_manifest
from melon_deploy.redeploy import blank_addresses, partial_redeploy
from melon_deploy.system import deploy_system


@pytest.fixture()
def env(tmp_path) -> DeployEnvironment:
    return DeployEnvironment(deploy_in=tmp_path / "deploy_in.json", deploy_out=tmp_path / "deploy_out.json")


@pytest.fixture()
def previous_run(ctx: DeploymentContext, env: DeployEnvironment) -> DeploymentManifest:
    """Output manifest of an earlier full deployment."""
    system = deploy_system(ctx, DeploymentManifest({"tokens": {"addr": {}}}))
    save_manifest(system.manifest, env.deploy_out)
    return system.manifest.copy()


def test_redeploy_only_forced(ctx: DeploymentContext, env: DeployEnvironment, previous_run: DeploymentManifest):
    """Forced contract gets a new address, everything else keeps theirs."""
    old_engine = previous_run.get_address("melon", "Engine")
    old_registry = previous_run.get_address("melon", "Registry")

    system = partial_redeploy(ctx, ["Engine"], env=env)

    new_engine = system.manifest.get_address("melon", "Engine")
    assert new_engine != old_engine
    assert system.manifest.get_address("melon", "Registry") == old_registry
    assert system.manifest.get_address("tokens", "WETH") == previous_run.get_address("tokens", "WETH")

    # Registry now points to the new engine
    assert system.melon["Registry"].functions.engine().call() == new_engine

    saved = load_manifest(env.deploy_out)
    assert saved.get_address("melon", "Engine") == new_engine


def test_redeploy_all_reads_seed(ctx: DeploymentContext, env: DeployEnvironment, previous_run: DeploymentManifest):
    """With REDEPLOY_ALL the seed manifest is the source, unless partial is forced."""
    save_manifest(DeploymentManifest({"tokens": {"addr": {"WETH": ""}}}), env.deploy_in)
    env.redeploy_all = True

    assert env.get_source_manifest_path() == env.deploy_in
    assert env.get_source_manifest_path(force_partial=True) == env.deploy_out

    system = partial_redeploy(ctx, force_partial=True, env=env)
    assert system.manifest.get_address("melon", "Registry") == previous_run.get_address("melon", "Registry")


def test_blank_qualified_name(previous_run: DeploymentManifest):
    manifest = previous_run.copy()
    blanked = blank_addresses(manifest, ["melon.Registry", "WETH"])
    assert blanked == [("melon", "Registry"), ("tokens", "WETH")]
    assert manifest.get_address("melon", "Registry") is None
    assert manifest.get_address("tokens", "WETH") is None
    assert manifest.get_address("melon", "Engine") == previous_run.get_address("melon", "Engine")


def test_blank_unknown(previous_run: DeploymentManifest):
    with pytest.raises(ManifestError):
        blank_addresses(previous_run.copy(), ["melon.Nope"])
    with pytest.raises(ManifestError):
        blank_addresses(previous_run.copy(), ["Nope"])
