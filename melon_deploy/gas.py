"""Gas fees and gas limits for deployment transactions.

Fees are filled in by us before signing, as web3.py has no gas price strategies
for `post London chains <https://web3py.readthedocs.io/en/stable/gas_price.html>`_.

Gas limits are estimated against the node and inflated by a safety factor.
Deployments of the large fund contracts and registry writes that follow
them may see different state at execution than at estimation.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from web3 import Web3

logger = logging.getLogger(__name__)


#: Gas limit safety factor for contract calls
CALL_GAS_MULTIPLIER = 2.0

#: Gas limit safety factor for contract deployments
DEPLOY_GAS_MULTIPLIER = 1.5


class GasPriceMethod(enum.Enum):
    """How fees are expressed in the transaction."""

    #: ``gasPrice``
    legacy = "legacy"

    #: ``maxFeePerGas`` and ``maxPriorityFeePerGas``
    london = "london"


@dataclass(slots=True)
class GasPriceSuggestion:
    """Fee fields for the next transaction."""

    method: GasPriceMethod

    #: Set with :py:attr:`GasPriceMethod.legacy`
    legacy_gas_price: Optional[int] = None

    #: Base fee of the latest block, set with :py:attr:`GasPriceMethod.london`
    base_fee: Optional[int] = None

    max_priority_fee_per_gas: Optional[int] = None

    max_fee_per_gas: Optional[int] = None


def estimate_gas_price(web3: Web3, method: Optional[GasPriceMethod] = None) -> GasPriceSuggestion:
    """Suggest fees from the latest block.

    - With a base fee: priority fee from the node, max fee is priority fee plus twice the base fee

    - Without: the node's ``eth_gasPrice``

    :param method:
        Force a method, detected from the latest block by default
    """
    base_fee = web3.eth.get_block("latest").get("baseFeePerGas")

    if method is None:
        method = GasPriceMethod.london if base_fee is not None else GasPriceMethod.legacy

    if method == GasPriceMethod.legacy:
        return GasPriceSuggestion(method=method, legacy_gas_price=web3.eth.gas_price)

    priority_fee = web3.eth.max_priority_fee
    return GasPriceSuggestion(
        method=method,
        base_fee=base_fee,
        max_priority_fee_per_gas=priority_fee,
        max_fee_per_gas=priority_fee + 2 * base_fee,
    )


def apply_gas(tx: dict, suggestion: GasPriceSuggestion) -> dict:
    """Write the fee fields into an unsigned transaction.

    :return:
        The same dict
    """
    assert isinstance(tx, dict), f"Expected tx to be dict, got {type(tx)}"

    if suggestion.method == GasPriceMethod.london:
        tx.pop("gasPrice", None)
        tx["maxFeePerGas"] = suggestion.max_fee_per_gas
        tx["maxPriorityFeePerGas"] = suggestion.max_priority_fee_per_gas
    else:
        tx["gasPrice"] = suggestion.legacy_gas_price

    return tx


def estimate_gas_limit(web3: Web3, tx: dict, multiplier: float) -> int:
    """Estimate the gas limit of a transaction and add a safety margin.

    Only the fields the node needs for the simulation are passed to ``eth_estimateGas``.

    :param tx:
        Unsigned transaction dict with at least ``from`` and ``data`` or ``to``

    :param multiplier:
        Safety factor, see :py:data:`CALL_GAS_MULTIPLIER` and :py:data:`DEPLOY_GAS_MULTIPLIER`

    :raise Exception:
        Whatever the node raises when the simulation reverts.
        The caller is responsible for logging the transaction.

    :return:
        Inflated gas limit
    """
    assert multiplier >= 1, f"Gas multiplier should not reduce the estimate: {multiplier}"
    simulated = {k: v for k, v in tx.items() if k in ("from", "to", "data", "value")}
    estimate = web3.eth.estimate_gas(simulated)
    gas = int(estimate * multiplier)
    logger.debug("Gas estimate %d, using limit %d", estimate, gas)
    return gas
