"""Deployment run configuration from environment variables."""

import datetime
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from web3 import HTTPProvider, Web3

from melon_deploy.hotwallet import HotWallet, load_private_keys
from melon_deploy.submitter import TransactionSubmitter
from melon_deploy.utils import parse_bool_env

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Environment or manifest parameters do not make a runnable deployment."""


@dataclass
class DeployEnvironment:
    """Parameters of a deployment run.

    Build with :py:meth:`from_env`.
    """

    #: JSON-RPC node
    json_rpc_url: str = "http://localhost:8545"

    #: Seed manifest for full redeploys
    deploy_in: Path = Path("deploy_in.json")

    #: Output manifest, also the source for incremental runs
    deploy_out: Path = Path("deploy_out.json")

    #: Read :py:attr:`deploy_in` instead of :py:attr:`deploy_out`
    redeploy_all: bool = False

    #: Encrypted signing key
    keystore: Optional[Path] = None

    #: Password for :py:attr:`keystore`
    passfile: Optional[Path] = None

    #: JSON file of raw private keys
    private_keys: Optional[Path] = None

    #: Query pending nonce from the node for every transaction
    local_chain: bool = False

    #: Log every call, send and deploy
    verbose: bool = False

    #: Compiler output with ``<name>.bin`` and ``<name>.abi``
    artifacts_dir: Path = Path("out")

    #: Check code before adopting manifest addresses
    verify_code: bool = False

    #: How long to wait for a receipt
    confirmation_timeout: datetime.timedelta = datetime.timedelta(minutes=5)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "DeployEnvironment":
        """Read the configuration from environment variables.

        ``JSON_RPC_URL``, ``DEPLOY_IN``, ``DEPLOY_OUT``, ``REDEPLOY_ALL``, ``KEYSTORE``, ``PASSFILE``,
        ``PRIVATE_KEYS``, ``LOCAL_CHAIN``, ``MLN_VERBOSE``, ``ARTIFACTS_DIR``, ``VERIFY_CODE``
        and ``CONFIRMATION_TIMEOUT`` (seconds).
        Unset variables keep the defaults.
        """

        def _path(name: str) -> Optional[Path]:
            value = environ.get(name)
            return Path(value) if value else None

        timeout = environ.get("CONFIRMATION_TIMEOUT")

        return cls(
            json_rpc_url=environ.get("JSON_RPC_URL") or cls.json_rpc_url,
            deploy_in=_path("DEPLOY_IN") or cls.deploy_in,
            deploy_out=_path("DEPLOY_OUT") or cls.deploy_out,
            redeploy_all=parse_bool_env(environ.get("REDEPLOY_ALL")),
            keystore=_path("KEYSTORE"),
            passfile=_path("PASSFILE"),
            private_keys=_path("PRIVATE_KEYS"),
            local_chain=parse_bool_env(environ.get("LOCAL_CHAIN")),
            verbose=parse_bool_env(environ.get("MLN_VERBOSE")),
            artifacts_dir=_path("ARTIFACTS_DIR") or cls.artifacts_dir,
            verify_code=parse_bool_env(environ.get("VERIFY_CODE")),
            confirmation_timeout=datetime.timedelta(seconds=int(timeout)) if timeout else cls.confirmation_timeout,
        )

    def get_source_manifest_path(self, force_partial=False) -> Path:
        """Which manifest the run starts from.

        :param force_partial:
            Use the previous output even if :py:attr:`redeploy_all` is set
        """
        if self.redeploy_all and not force_partial:
            return self.deploy_in
        return self.deploy_out

    def load_wallets(self) -> list[HotWallet]:
        """Load the signing keys.

        The keystore account comes first and becomes the default deployer.

        :raise ConfigurationError:
            If no keys are configured, or a keystore is given without a password file
        """
        wallets = []
        if self.keystore:
            if not self.passfile:
                raise ConfigurationError("KEYSTORE given without PASSFILE")
            wallets.append(HotWallet.from_keystore(self.keystore, self.passfile))

        if self.private_keys:
            known = {w.address.lower() for w in wallets}
            for wallet in load_private_keys(self.private_keys):
                if wallet.address.lower() not in known:
                    wallets.append(wallet)
                    known.add(wallet.address.lower())

        if not wallets:
            raise ConfigurationError("No signing keys: set KEYSTORE and PASSFILE, or PRIVATE_KEYS")

        return wallets

    def create_web3(self) -> Web3:
        web3 = Web3(HTTPProvider(self.json_rpc_url))
        logger.info("Connected to %s, chain id %d", self.json_rpc_url, web3.eth.chain_id)
        return web3

    def create_submitter(self, web3: Web3, wallets: Optional[list[HotWallet]] = None) -> TransactionSubmitter:
        if wallets is None:
            wallets = self.load_wallets()
        return TransactionSubmitter(
            web3,
            wallets,
            local_chain=self.local_chain,
            verbose=self.verbose,
            confirmation_timeout=self.confirmation_timeout,
        )
