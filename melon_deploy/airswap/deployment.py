"""AirSwap deployment.

``Swap`` is linked against the ``Types`` library, so the library goes out first.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from web3.contract.contract import Contract

from melon_deploy.deploy import DeploymentContext
from melon_deploy.manifest import DeploymentManifest
from melon_deploy.token import TokenDeployment

logger = logging.getLogger(__name__)

#: Manifest category
AIRSWAP_CATEGORY = "airSwap"


@dataclass(frozen=True)
class AirSwapDeployment:
    """Deployed AirSwap contracts."""

    #: Order hashing library
    types: Contract

    swap: Contract

    @property
    def gateway(self) -> str:
        return self.swap.address


def deploy_airswap(ctx: DeploymentContext, manifest: DeploymentManifest, tokens: Optional[TokenDeployment] = None) -> AirSwapDeployment:
    """Deploy or adopt AirSwap. No token setup is needed."""
    addresses = manifest.addresses(AIRSWAP_CATEGORY)
    types = ctx.nab("Types", [], addresses)
    swap = ctx.nab("Swap", [], addresses, libraries={"Types": types.address})
    return AirSwapDeployment(types=types, swap=swap)
