"""deploy-system command line entry point.

Reads a manifest, deploys or adopts the whole system and writes the output manifest.

.. code-block:: shell

    export JSON_RPC_URL=http://localhost:8545
    export PRIVATE_KEYS=keys.json
    export ARTIFACTS_DIR=out
    deploy-system deploy_in.json deploy_out.json

Connection, keys and flags are read from the environment,
see :py:class:`melon_deploy.config.DeployEnvironment`.
The output manifest is saved after every deployment step,
so an interrupted run can be continued by feeding the output back in.

Exits 0 on success, 1 on any error.
"""

import argparse
import logging
import sys
from typing import Optional, Sequence

from tabulate import tabulate

from melon_deploy.config import DeployEnvironment
from melon_deploy.deploy import DeploymentContext
from melon_deploy.manifest import DeploymentManifest, load_manifest, make_checkpoint, save_manifest
from melon_deploy.system import deploy_system
from melon_deploy.utils import setup_console_logging

logger = logging.getLogger(__name__)


class _ArgumentParser(argparse.ArgumentParser):
    """Usage errors exit with status 1."""

    def error(self, message):
        self.print_usage(sys.stderr)
        print(f"{self.prog}: error: {message}", file=sys.stderr)
        sys.exit(1)


def create_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(prog="deploy-system", description="Deploy or update the Melon protocol contracts.")
    parser.add_argument("deploy_in", help="Input manifest")
    parser.add_argument("deploy_out", help="Output manifest, written after every deployment step")
    return parser


def format_summary(manifest: DeploymentManifest) -> str:
    """Table of all deployed addresses."""
    rows = [(category, name, address) for category, name, address in manifest.iterate_addresses()]
    return tabulate(rows, headers=["Category", "Contract", "Address"], tablefmt="simple")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = create_parser().parse_args(argv)

    env = DeployEnvironment.from_env()
    setup_console_logging(verbose=env.verbose)

    try:
        manifest = load_manifest(args.deploy_in)
        web3 = env.create_web3()
        submitter = env.create_submitter(web3)
        ctx = DeploymentContext(submitter, env.artifacts_dir, verify_code=env.verify_code)
        system = deploy_system(ctx, manifest, checkpoint=make_checkpoint(args.deploy_out))
        save_manifest(system.manifest, args.deploy_out)
    except Exception as e:
        logger.exception("Deployment failed: %s", e)
        return 1

    print(format_summary(system.manifest))
    logger.info("Wrote %s, %d transactions sent", args.deploy_out, submitter.transaction_count)
    return 0


def run():
    """Console script wrapper."""
    sys.exit(main())


if __name__ == "__main__":
    run()
