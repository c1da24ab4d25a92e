"""Fee-rate selection and commit/reveal fee estimation."""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Iterable, Tuple

from .network import AddressType, NetworkParams
from .provider_client import ProviderError, ProviderTransportError

logger = logging.getLogger(__name__)

ENV_MIN_FEE_RATE_FLOOR = "VERMILION_MIN_FEE_RATE_SATVB"
ENV_FALLBACK_FEE_RATE = "VERMILION_FALLBACK_FEE_RATE_SATVB"


def calculate_fee_sats(fee_rate_sat_vb: float, vsize: float) -> int:
    """Return the ceil'd fee in satoshis for the provided vsize."""

    return int(math.ceil(fee_rate_sat_vb * vsize))


def commit_header_and_outputs_fee(fee_rate: float, params: NetworkParams) -> float:
    """Fee for the commit's header and its two outputs, before any inputs.

    Deliberately not rounded: it is added to the reveal fee to form the
    coin-selection target and rounded only as part of the final commit fee.
    """

    return params.commit_fixed_vbytes * fee_rate


def input_weight_vbytes(address_type: AddressType, params: NetworkParams) -> float:
    """Virtual bytes one input of ``address_type`` adds to the commit."""

    return params.input_weight(address_type)


def estimate_reveal_fee(vsize: int, fee_rate: float, inscriptions: Iterable[Any]) -> int:
    """``ceil(vsize * fee_rate + total postage)``: the value the commit output must carry."""

    postage = sum(item.postage for item in inscriptions)
    return int(math.ceil(vsize * fee_rate + postage))


def estimate_commit_fee(fee_rate: float, selected: Iterable[Any], params: NetworkParams) -> int:
    """Commit fee for the chosen inputs.

    Each selected UTXO contributes ``value - effective_value``, which is the
    fee its input costs at ``fee_rate``.
    """

    inputs_fee = sum(utxo.value - utxo.effective_value for utxo in selected)
    return int(math.ceil(commit_header_and_outputs_fee(fee_rate, params) + inputs_fee))


def suggest_max_fee_sats(fee_sats: int) -> int:
    """Return a padded fee cap for user confirmation prompts.

    Rounds 20% above the computed fee up to the next 10k sats boundary.
    """

    if fee_sats <= 0:
        return 0
    padded = fee_sats * 1.20
    return int(math.ceil(padded / 10_000) * 10_000)


@dataclass
class FeeSelectionResult:
    """Container for fee-rate decisions."""

    fee_rate_sat_vb: float
    source: str
    floors_applied: list[Tuple[str, float]]
    fee_sats: int | None = None
    vsize: int | None = None

    def with_vsize(self, vsize: int) -> "FeeSelectionResult":
        return FeeSelectionResult(
            fee_rate_sat_vb=self.fee_rate_sat_vb,
            source=self.source,
            floors_applied=self.floors_applied,
            fee_sats=calculate_fee_sats(self.fee_rate_sat_vb, vsize),
            vsize=vsize,
        )


def _env_override(name: str) -> float | None:
    raw = os.environ.get(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid float in %s=%s; ignoring", name, raw)
        return None


def select_fee_rate(
    provider: Any,
    *,
    user_fee_rate_satvb: float | None = None,
    min_fee_rate_satvb_floor: float | None = None,
    fee_tier: str = "fastestFee",
    fallback_fee_rate_satvb: float | None = None,
    max_fee_sats: int | None = None,
    tx_vsize_estimate: int | None = None,
) -> FeeSelectionResult:
    """Pick a fee rate: the user's value, else the provider's recommendation.

    A fallback rate (argument or ``VERMILION_FALLBACK_FEE_RATE_SATVB``) is used
    only when one is configured; otherwise a provider failure propagates.
    Floors from the environment and the caller are applied last.
    """

    floor_candidates: list[Tuple[str, float]] = []
    for label, raw in (
        ("env", _env_override(ENV_MIN_FEE_RATE_FLOOR)),
        ("cli_floor", min_fee_rate_satvb_floor),
    ):
        if raw is not None:
            floor_candidates.append((label, float(raw)))

    floors_applied: list[Tuple[str, float]] = []
    floor_value = None
    if floor_candidates:
        floor_value = max(rate for _, rate in floor_candidates)
        floors_applied = [(label, rate) for label, rate in floor_candidates if rate == floor_value]

    if user_fee_rate_satvb is not None:
        fee_rate = float(user_fee_rate_satvb)
        source = "user"
    else:
        fallback = fallback_fee_rate_satvb or _env_override(ENV_FALLBACK_FEE_RATE)
        try:
            fee_rate = float(provider.get_fee_rate(fee_tier))
            source = f"provider[{fee_tier}]"
        except (ProviderError, ProviderTransportError) as exc:
            if fallback is None:
                raise
            logger.warning("Fee estimate unavailable (%s); using fallback %.2f sat/vB", exc, fallback)
            fee_rate = float(fallback)
            source = "fallback"

    if floor_value is not None and fee_rate < floor_value:
        logger.warning("Applying fee floor %.2f sat/vB over %s", floor_value, fee_rate)
        fee_rate = floor_value

    if fee_rate <= 0:
        raise ValueError(f"Fee rate must be positive, got {fee_rate}")

    selection = FeeSelectionResult(fee_rate_sat_vb=fee_rate, source=source, floors_applied=floors_applied)
    if tx_vsize_estimate:
        selection = selection.with_vsize(tx_vsize_estimate)

    if max_fee_sats is not None and selection.fee_sats is not None:
        if selection.fee_sats > max_fee_sats:
            raise ValueError(
                f"Computed fee {selection.fee_sats} sats exceeds max-fee-sats {max_fee_sats}"
            )
    return selection


def format_floors_for_log(floors: Iterable[Tuple[str, float]]) -> str:
    """Format fee floors for user-facing logs."""

    entries = [f"{label}={rate:.2f} sat/vB" for label, rate in floors]
    return ", ".join(entries) if entries else "none"
