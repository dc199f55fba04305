"""Logging setup and small helpers."""

import logging
import os
import sys
from itertools import islice
from typing import Iterable, Iterator, Optional

import coloredlogs

#: Loggers that flood the console with one line per JSON-RPC request
NOISY_LOGGERS = (
    "web3.providers.HTTPProvider",
    "web3.RequestManager",
    "web3.manager.RequestManager",
    "urllib3.connectionpool",
)


def setup_console_logging(default_log_level="info", verbose=False) -> logging.Logger:
    """Coloured log output on stdout for the deployment scripts.

    ``LOG_LEVEL`` environment variable overrides ``default_log_level``.

    :param verbose:
        Show the per-transaction call, send and deploy lines of
        :py:class:`melon_deploy.submitter.TransactionSubmitter`,
        i.e. never go above INFO.

    :return:
        Root logger
    """
    level = os.environ.get("LOG_LEVEL", default_log_level).upper()
    numeric_level = getattr(logging, level, None)
    assert isinstance(numeric_level, int), f"No level: {level}"

    if verbose:
        numeric_level = min(numeric_level, logging.INFO)

    coloredlogs.install(
        level=numeric_level,
        fmt="%(asctime)s %(name)-30s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stdout,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logging.getLogger()


def chunked(iterable: Iterable, chunk_size: int) -> Iterator[list]:
    """Split into lists of at most ``chunk_size`` items."""
    iterator = iter(iterable)
    while chunk := list(islice(iterator, chunk_size)):
        yield chunk


def is_same_address(a: Optional[str], b: Optional[str]) -> bool:
    """Compare two addresses ignoring the checksum casing.

    ``None`` and the empty string never match anything.
    """
    if not a or not b:
        return False
    return a.lower() == b.lower()


def parse_bool_env(value: Optional[str], default=False) -> bool:
    """Parse ``true``/``1``/``yes`` style environment variable values."""
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")
