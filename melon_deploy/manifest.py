"""Deployment manifest reading and writing.

A manifest is a JSON file shared by deployment runs and by the code consuming the deployment:

.. code-block:: json

    {
      "conf": {"track": "TESTING"},
      "tokens": {
        "addr": {"WETH": "0x...", "MLN": ""},
        "conf": {"MLN": {"decimals": 18, "name": "Melon token"}}
      },
      "melon": {
        "addr": {"Registry": ""},
        "conf": {"engineDelay": 2592000}
      }
    }

- Top-level keys other than ``conf`` are subsystem categories

- Empty or missing address means the contract is deployed on the next run
"""

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, Optional

from web3 import Web3

from melon_deploy.deploy import needs_deployment

logger = logging.getLogger(__name__)


#: Top-level key holding run-wide parameters instead of a category
RUN_CONF_KEY = "conf"


class ManifestError(Exception):
    """Manifest file does not have the expected shape."""


class DeploymentManifest:
    """In-memory deployment manifest.

    Address mappings returned by :py:meth:`addresses` are live views,
    deployers write new addresses into them directly.
    """

    def __init__(self, data: Optional[dict] = None):
        """
        :raise ManifestError:
            If the tree, the run-wide ``conf`` or a category, or its ``addr`` or ``conf``, is not an object
        """
        if data is not None and not isinstance(data, dict):
            raise ManifestError(f"Manifest must be an object, got {type(data)}")
        data = copy.deepcopy(data) if data else {}
        if not isinstance(data.setdefault(RUN_CONF_KEY, {}), dict):
            raise ManifestError(f"Manifest {RUN_CONF_KEY} must be an object, got {type(data[RUN_CONF_KEY])}")
        for category, value in data.items():
            if category == RUN_CONF_KEY:
                continue
            if not isinstance(value, dict):
                raise ManifestError(f"Category {category} must be an object, got {type(value)}")
            for key in ("addr", "conf"):
                if not isinstance(value.setdefault(key, {}), dict):
                    raise ManifestError(f"{category}.{key} must be an object, got {type(value[key])}")
        self.data = data

    def __repr__(self):
        return f"<DeploymentManifest categories:{', '.join(self.categories())}>"

    def __eq__(self, other):
        return isinstance(other, DeploymentManifest) and self.data == other.data

    @property
    def conf(self) -> dict:
        """Run-wide parameters: ``track``, ``deployer``, ``batchSize``."""
        return self.data[RUN_CONF_KEY]

    def categories(self) -> list[str]:
        return [k for k in self.data.keys() if k != RUN_CONF_KEY]

    def has_category(self, category: str) -> bool:
        return category in self.data and category != RUN_CONF_KEY

    def ensure_category(self, category: str) -> dict:
        """Get a category, creating an empty one if needed."""
        assert category != RUN_CONF_KEY
        return self.data.setdefault(category, {"addr": {}, "conf": {}})

    def addresses(self, category: str) -> dict[str, str]:
        """The mutable ``addr`` mapping of a category."""
        return self.ensure_category(category)["addr"]

    def category_conf(self, category: str) -> dict:
        return self.ensure_category(category)["conf"]

    def get_address(self, category: str, name: str) -> Optional[str]:
        """Get a deployed address, or ``None`` if the slot asks for a deployment."""
        if not self.has_category(category):
            return None
        value = self.data[category]["addr"].get(name)
        if needs_deployment(value):
            return None
        return value

    def set_address(self, category: str, name: str, address: str):
        self.addresses(category)[name] = Web3.to_checksum_address(address)

    def blank(self, category: str, name: str):
        """Mark a contract to be redeployed on the next run."""
        self.addresses(category)[name] = ""

    def find(self, name: str) -> list[str]:
        """Categories that have an address slot for ``name``."""
        return [c for c in self.categories() if name in self.data[c]["addr"]]

    def iterate_addresses(self) -> Iterable[tuple[str, str, str]]:
        """Iterate ``(category, name, address)`` over all filled address slots."""
        for category in self.categories():
            for name, address in self.data[category]["addr"].items():
                if not needs_deployment(address):
                    yield category, name, address

    def validate(self):
        """Check every filled address slot holds a valid address.

        :raise ManifestError:
            On the first invalid address
        """
        for category, name, address in self.iterate_addresses():
            if not (isinstance(address, str) and Web3.is_address(address)):
                raise ManifestError(f"Manifest entry {category}.{name} is not a valid address: {address!r}")

    def copy(self) -> "DeploymentManifest":
        return DeploymentManifest(self.data)

    def as_dict(self) -> dict:
        return copy.deepcopy(self.data)


def load_manifest(path: Path | str) -> DeploymentManifest:
    """Read and validate a manifest file.

    :raise ManifestError:
        If the file is not a valid manifest
    """
    path = Path(path)
    with open(path, "rt", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ManifestError(f"Manifest {path} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ManifestError(f"Manifest {path} must contain a JSON object")

    manifest = DeploymentManifest(data)
    manifest.validate()
    logger.info("Loaded manifest %s with categories %s", path, manifest.categories())
    return manifest


def save_manifest(manifest: DeploymentManifest, path: Path | str):
    """Write a manifest file.

    The file is written next to the target and renamed over it,
    so a crash never leaves a half-written manifest behind.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wt", encoding="utf-8") as f:
            json.dump(manifest.data, f, indent=2)
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        os.unlink(tmp_name)
        raise
    logger.debug("Saved manifest %s", path)


def make_checkpoint(path: Path | str):
    """Get a callback that saves the manifest to ``path`` after each deployment step.

    See :py:func:`melon_deploy.system.deploy_system`.
    """

    def _checkpoint(manifest: DeploymentManifest):
        save_manifest(manifest, path)

    return _checkpoint
