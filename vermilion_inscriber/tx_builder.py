"""Coin selection and commit/reveal template assembly."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Iterable, List, Mapping, Optional, Sequence

from bitcoinutils.script import Script

from .addresses import address_to_script_pub_key, p2wpkh_redeem_script
from .errors import InsufficientFunds, InvalidInscriptionField, UnsupportedAddressType
from .network import AddressType, NetworkParams
from .ordinals.taproot_builder import TapCommitment, to_x_only
from .templates import TransactionTemplate

logger = logging.getLogger(__name__)

DEFAULT_MAX_TRIES = 100_000
# An all-zero txid would serialize as a coinbase input.
PLACEHOLDER_TXID = "11" * 32

_TXID_RE = re.compile(r"^[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class UTXO:
    txid: str
    vout: int
    value: int
    confirmed: bool = True
    effective_value: float | None = None

    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass(frozen=True)
class CoinSelection:
    """Inputs chosen to cover ``target`` and the strategy that found them."""

    selected: tuple
    target: float
    strategy: str

    @property
    def value_total(self) -> int:
        return sum(utxo.value for utxo in self.selected)

    @property
    def effective_total(self) -> float:
        return sum(utxo.effective_value for utxo in self.selected)

    @property
    def waste(self) -> float:
        return self.effective_total - self.target


def _selection_order(utxo: UTXO) -> tuple:
    return (utxo.effective_value, utxo.value, utxo.txid, utxo.vout)


def with_effective_values(
    utxos: Iterable[UTXO], address_type: AddressType, fee_rate: float, params: NetworkParams
) -> List[UTXO]:
    """Return copies carrying ``value - fee_rate * input_weight(address_type)``."""

    input_fee = fee_rate * params.input_weight(address_type)
    return [replace(utxo, effective_value=utxo.value - input_fee) for utxo in utxos]


def find_exact_match(candidates: Sequence[UTXO], target: float) -> Optional[List[UTXO]]:
    for utxo in candidates:
        if utxo.effective_value == target:
            return [utxo]
    return None


def branch_and_bound(
    candidates: Sequence[UTXO], target: float, max_tries: int | None = DEFAULT_MAX_TRIES
) -> Optional[List[UTXO]]:
    """Depth-first search for the subset with the least non-negative waste.

    ``candidates`` must be sorted ascending by effective value and hold only
    positive effective values. Each branch only extends with candidates after
    the last one taken, so no subset is visited twice. Returns None when no
    subset reaches ``target``. When ``max_tries`` nodes have been explored the
    best subset found so far is returned.
    """

    values = [utxo.effective_value for utxo in candidates]
    count = len(values)
    suffix = [0.0] * (count + 1)
    for index in range(count - 1, -1, -1):
        suffix[index] = suffix[index + 1] + values[index]

    best: Optional[List[int]] = None
    best_waste = float("inf")
    tries = 0

    def explore(start: int, chosen: List[int], current: float, depth: int) -> bool:
        nonlocal best, best_waste, tries
        tries += 1
        if max_tries is not None and tries > max_tries:
            return False

        if current >= target:
            waste = current - target
            if waste < best_waste:
                best, best_waste = list(chosen), waste
            return True
        if current + suffix[start] < target:
            return True
        if depth > count - start:
            return True

        for index in range(start, count):
            chosen.append(index)
            keep_going = explore(index + 1, chosen, current + values[index], depth + 1)
            chosen.pop()
            if not keep_going:
                return False
            # Ascending order: any later candidate would overshoot by more.
            if current + values[index] >= target:
                break
        return True

    if not explore(0, [], 0.0, 0):
        logger.warning("Branch-and-bound stopped after %d tries; using best subset found", max_tries)

    if best is None:
        return None
    return [candidates[index] for index in best]


def accumulate(candidates: Sequence[UTXO], target: float) -> Optional[List[UTXO]]:
    """Take candidates in ascending effective value until ``target`` is covered."""

    selected: List[UTXO] = []
    total = 0.0
    for utxo in candidates:
        selected.append(utxo)
        total += utxo.effective_value
        if total >= target:
            return selected
    return None


def select_utxos(
    utxos: Iterable[UTXO], target: float, *, max_tries: int | None = DEFAULT_MAX_TRIES
) -> CoinSelection:
    """Pick inputs whose effective values cover ``target``.

    Strategies run in order and the first success wins: a single exact match,
    branch-and-bound, then the greedy accumulator. Branch-and-bound explores at
    most ``max_tries`` nodes (100,000 by default) and then keeps the best subset
    found so far, so on large UTXO sets it is not exhaustive. Pass
    ``max_tries=None`` for an unbounded search. UTXOs without an effective value
    must be passed through :func:`with_effective_values` first.

    Raises:
        InsufficientFunds: If the candidates' effective values cannot reach ``target``.
    """

    pool = list(utxos)
    if any(utxo.effective_value is None for utxo in pool):
        raise ValueError("select_utxos requires UTXOs with effective values")

    candidates = sorted((utxo for utxo in pool if utxo.effective_value > 0), key=_selection_order)
    dropped = len(pool) - len(candidates)
    if dropped:
        logger.warning("Ignoring %d UTXOs that cost more to spend than they are worth", dropped)

    available = sum(utxo.effective_value for utxo in candidates)
    if available < target:
        logger.warning("Insufficient funds: needed=%.2f, available=%.2f sats", target, available)
        raise InsufficientFunds(
            f"Insufficient funds: need {target:.2f} sats of effective value, have {available:.2f}",
            needed=target,
            available=available,
            context={"candidates": len(candidates)},
        )

    for strategy, chooser in (
        ("exact", lambda: find_exact_match(candidates, target)),
        ("branch_and_bound", lambda: branch_and_bound(candidates, target, max_tries)),
        ("accumulate", lambda: accumulate(candidates, target)),
    ):
        chosen = chooser()
        if chosen:
            selection = CoinSelection(selected=tuple(chosen), target=target, strategy=strategy)
            logger.info(
                "Selected %d UTXOs via %s (effective %.2f for target %.2f)",
                len(chosen),
                strategy,
                selection.effective_total,
                target,
            )
            return selection

    raise InsufficientFunds(
        f"No UTXO subset reaches {target:.2f} sats",
        needed=target,
        available=available,
    )


def build_commit_template(
    selection: CoinSelection,
    *,
    address_type: AddressType,
    payment_address: str,
    payment_public_key: str,
    commitment: TapCommitment,
    commit_address: str,
    reveal_fee: int,
    commit_fee: int,
    params: NetworkParams,
    previous_transactions: Mapping[str, str] | None = None,
) -> TransactionTemplate:
    """Assemble the unsigned commit transaction.

    Output 0 pays ``reveal_fee`` to the commit address; a change output back to
    the payment address follows when the leftover reaches the dust threshold.
    P2PKH inputs need the raw previous transaction in ``previous_transactions``.
    """

    funding_script = address_to_script_pub_key(payment_address, params)
    template = TransactionTemplate(label="commit")

    for utxo in selection.selected:
        funding: dict = {"address_type": address_type, "owner": payment_address}
        if address_type is AddressType.P2TR:
            funding["tap_internal_key"] = to_x_only(payment_public_key)
        elif address_type is AddressType.P2SH_P2WPKH:
            funding["redeem_script"] = p2wpkh_redeem_script(payment_public_key)
        elif address_type is AddressType.P2PKH:
            raw = (previous_transactions or {}).get(utxo.txid)
            if not raw:
                raise UnsupportedAddressType(
                    f"P2PKH input {utxo.outpoint()} needs its previous transaction",
                    stage="commit_template",
                    context={"outpoint": utxo.outpoint()},
                )
            funding["non_witness_utxo"] = raw
        template.add_input(utxo.txid, utxo.vout, utxo.value, funding_script, **funding)

    template.add_output(reveal_fee, commitment.output_script, commit_address)

    change = selection.value_total - commit_fee - reveal_fee
    if change < 0:
        raise InsufficientFunds(
            f"Selected inputs fall {-change} sats short of the commit and reveal fees",
            needed=commit_fee + reveal_fee,
            available=selection.value_total,
            stage="commit_template",
        )
    if change >= params.dust_threshold:
        template.add_output(change, funding_script, payment_address)
    else:
        logger.info("Change of %d sats is below dust; leaving it to the fee", change)

    logger.info(
        "Built commit template: %d inputs, %d outputs, fee %d sats",
        len(template.inputs),
        len(template.outputs),
        template.fee,
    )
    return template


def _assemble_reveal(
    reveal_leaf: Script,
    commitment: TapCommitment,
    commit_txid: str,
    commit_value: int,
    postages: Sequence[int],
    destination_script: Script,
    destination_address: str | None,
    owner: str | None = None,
) -> TransactionTemplate:
    template = TransactionTemplate(label="reveal")
    template.add_input(
        commit_txid,
        0,
        commit_value,
        commitment.output_script,
        address_type=AddressType.P2TR,
        owner=owner,
        tap_internal_key=commitment.internal_key,
        tap_leaf_script=reveal_leaf,
        tap_control_block=commitment.control_block,
    )
    for postage in postages:
        template.add_output(postage, destination_script, destination_address)
    return template


def build_reveal_template(
    reveal_script,
    commitment: TapCommitment,
    commit_txid: str,
    commit_value: int,
    destination_script: Script,
    destination_address: str | None = None,
    owner: str | None = None,
) -> TransactionTemplate:
    """Assemble the unsigned reveal spending output 0 of ``commit_txid``.

    One output per inscription, in the order pointers were assigned.
    ``owner`` is the wallet address whose key signs the script path, if any.
    """

    if not _TXID_RE.match(commit_txid or ""):
        raise InvalidInscriptionField(
            f"commit_txid must be 64 hex characters, got {commit_txid!r}",
            stage="reveal_template",
            context={"commit_txid": commit_txid},
        )
    template = _assemble_reveal(
        reveal_script.to_script(),
        commitment,
        commit_txid,
        commit_value,
        [item.postage for item in reveal_script.inscriptions],
        destination_script,
        destination_address,
        owner,
    )
    logger.info("Built reveal template spending %s:0 with %d outputs", commit_txid, len(template.outputs))
    return template


def build_dry_run_reveal_template(
    reveal_script, commitment: TapCommitment, destination_script: Script
) -> TransactionTemplate:
    """Reveal template for size estimation: placeholder commit txid, zero input value."""

    return _assemble_reveal(
        reveal_script.to_script(),
        commitment,
        PLACEHOLDER_TXID,
        0,
        [item.postage for item in reveal_script.inscriptions],
        destination_script,
        None,
    )
