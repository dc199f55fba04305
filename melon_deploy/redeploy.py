"""Partial redeployment.

Redeploy a handful of contracts and adopt everything else from the previous run.

Example:

.. code-block:: python

    env = DeployEnvironment.from_env()
    web3 = env.create_web3()
    ctx = DeploymentContext(env.create_submitter(web3), env.artifacts_dir)

    # New Engine and new Registry, everything else adopted
    system = partial_redeploy(ctx, ["Engine", "melon.Registry"], env=env)
"""

import logging
from typing import Iterable, Optional

from melon_deploy.config import DeployEnvironment
from melon_deploy.deploy import DeploymentContext
from melon_deploy.manifest import DeploymentManifest, ManifestError, load_manifest, make_checkpoint, save_manifest
from melon_deploy.system import SystemDeployment, deploy_system

logger = logging.getLogger(__name__)


def blank_addresses(manifest: DeploymentManifest, names_to_force: Iterable[str]) -> list[tuple[str, str]]:
    """Mark contracts for redeployment.

    :param names_to_force:
        Either ``category.Name`` or a bare ``Name``.
        A bare name is blanked in every category that has a slot for it.

    :raise ManifestError:
        If a name is not found in the manifest

    :return:
        ``(category, name)`` pairs that were blanked
    """
    blanked = []
    for entry in names_to_force:
        if "." in entry:
            category, name = entry.split(".", 1)
            if not (manifest.has_category(category) and name in manifest.addresses(category)):
                raise ManifestError(f"Cannot redeploy {entry}: not in the manifest")
            targets = [(category, name)]
        else:
            targets = [(category, entry) for category in manifest.find(entry)]
            if not targets:
                raise ManifestError(f"Cannot redeploy {entry}: not in the manifest")

        for category, name in targets:
            logger.info("Forcing redeployment of %s.%s, was %s", category, name, manifest.addresses(category)[name])
            manifest.blank(category, name)
            blanked.append((category, name))
    return blanked


def partial_redeploy(
    ctx: DeploymentContext,
    names_to_force: Iterable[str] = (),
    force_partial=False,
    env: Optional[DeployEnvironment] = None,
) -> SystemDeployment:
    """Load the source manifest, blank the forced contracts and run the whole deployment.

    The manifest is saved to ``DEPLOY_OUT`` after every deployment step,
    and once more at the end.

    :param names_to_force:
        See :py:func:`blank_addresses`

    :param force_partial:
        Start from ``DEPLOY_OUT`` even if ``REDEPLOY_ALL`` is set

    :param env:
        Run configuration. Read from the environment if not given.
    """
    env = env or DeployEnvironment.from_env()
    source = env.get_source_manifest_path(force_partial=force_partial)
    logger.info("Partial redeploy from %s into %s", source, env.deploy_out)

    manifest = load_manifest(source)
    blank_addresses(manifest, names_to_force)

    system = deploy_system(ctx, manifest, checkpoint=make_checkpoint(env.deploy_out))
    save_manifest(system.manifest, env.deploy_out)
    return system
