"""Commit/reveal inscription workflow.

This module drives one inscription request end to end: it builds the reveal
script and its taproot commitment, sizes the reveal with a throwaway signed
copy, selects funding, assembles the commit and reveal templates and runs the
signing protocol the wallet's capabilities allow. Signed transactions are
returned to the caller; broadcasting is a separate, explicit step
(:func:`broadcast_inscription`).
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Sequence

from bitcoinutils.script import Script
from bitcoinutils.transactions import Transaction

from ..addresses import address_to_script_pub_key, create_taproot_address
from ..errors import BroadcastFailed, PartialBroadcast, SigningRejected
from ..fees import (
    commit_header_and_outputs_fee,
    estimate_commit_fee,
    estimate_reveal_fee,
    input_weight_vbytes,
    select_fee_rate,
    suggest_max_fee_sats,
)
from ..network import AddressType, NetworkParams
from ..provider_client import ProviderError, ProviderTransportError, filter_cardinal_utxos
from ..signer import generate_disposable_key, sign_reveal_script_path, x_only_public_key
from ..templates import TransactionTemplate, finalize_template
from ..tx_builder import (
    DEFAULT_MAX_TRIES,
    CoinSelection,
    build_commit_template,
    build_dry_run_reveal_template,
    build_reveal_template,
    select_utxos,
    with_effective_values,
)
from ..wallets import WalletAdapter, WalletCapability, WalletSnapshot, signing_hints
from .inscriptions import Inscription, RevealScript, build_reveal_script
from .taproot_builder import TapCommitment, compute_tap_commitment, to_x_only

logger = logging.getLogger(__name__)

CommitSignedHook = Callable[[str, str], Any]


class FlowKind(str, Enum):
    """Signing protocols, chosen from the wallet's capability."""

    EPHEMERAL = "ephemeral"
    ONE_SIGN = "one_sign"
    TWO_SIGN = "two_sign"


class FlowState(str, Enum):
    BUILT_SCRIPT = "built_script"
    SIZED = "sized"
    SELECTED = "selected"
    COMMIT_BUILT = "commit_built"
    EPHEMERAL = "ephemeral"
    ONE_SIGN = "one_sign"
    TWO_SIGN = "two_sign"
    REVEAL_BUILT = "reveal_built"
    SIGNED = "signed"
    DONE = "done"


_TRANSITIONS = {
    None: {FlowState.BUILT_SCRIPT},
    FlowState.BUILT_SCRIPT: {FlowState.SIZED},
    FlowState.SIZED: {FlowState.SELECTED},
    FlowState.SELECTED: {FlowState.COMMIT_BUILT},
    FlowState.COMMIT_BUILT: {FlowState.EPHEMERAL, FlowState.ONE_SIGN, FlowState.TWO_SIGN},
    FlowState.EPHEMERAL: {FlowState.REVEAL_BUILT},
    FlowState.ONE_SIGN: {FlowState.REVEAL_BUILT},
    FlowState.TWO_SIGN: {FlowState.REVEAL_BUILT},
    FlowState.REVEAL_BUILT: {FlowState.SIGNED},
    FlowState.SIGNED: {FlowState.DONE},
}


def select_flow(capability: WalletCapability, address_type: AddressType) -> FlowKind:
    """Pick the signing protocol for a wallet.

    Non-taproot payment addresses use a disposable reveal key. Taproot wallets
    that can sign a custom script path and key-path inputs get both
    transactions in one batched call; every other taproot wallet signs twice.
    """

    if address_type is not AddressType.P2TR:
        return FlowKind.EPHEMERAL
    if capability.supports_custom_address_signing and capability.supports_key_path_signing:
        return FlowKind.ONE_SIGN
    return FlowKind.TWO_SIGN


def estimate_reveal_vsize(
    inscriptions: Sequence[Inscription], destination_script: Script, params: NetworkParams
) -> int:
    """Virtual size of a fully signed reveal, measured on a throwaway copy.

    The copy is locked to a disposable key, spends a placeholder commit txid and is
    signed for real so the witness has its true size.
    """

    key = generate_disposable_key()
    internal_key = x_only_public_key(key)
    reveal_script = build_reveal_script(inscriptions, internal_key, params)
    commitment = compute_tap_commitment(reveal_script, internal_key)
    template = build_dry_run_reveal_template(reveal_script, commitment, destination_script)
    vsize = finalize_template(sign_reveal_script_path(template, key)).get_vsize()
    logger.debug("Estimated reveal vsize %d vB for %d inscriptions", vsize, len(inscriptions))
    return vsize


def estimate_inscription_fees(
    inscriptions: Sequence[Inscription],
    destination_script: Script,
    fee_rate: float,
    address_type: AddressType,
    params: NetworkParams,
) -> dict[str, Any]:
    """Fee figures for a request, without touching the wallet or provider."""

    vsize = estimate_reveal_vsize(inscriptions, destination_script, params)
    reveal_fee = estimate_reveal_fee(vsize, fee_rate, inscriptions)
    fixed = commit_header_and_outputs_fee(fee_rate, params)
    per_input = fee_rate * input_weight_vbytes(address_type, params)
    return {
        "reveal_vsize": vsize,
        "reveal_fee": reveal_fee,
        "commit_fixed_fee": fixed,
        "commit_fee_per_input": per_input,
        "target": reveal_fee + fixed,
        "suggested_max_fee_sats": suggest_max_fee_sats(int(reveal_fee + fixed + per_input)),
    }


@dataclass
class InscriptionResult:
    """Signed commit and reveal transactions produced by one flow."""

    flow: FlowKind
    commit_tx: Transaction
    reveal_tx: Transaction
    commit_address: str
    fee_rate: float
    reveal_fee: int
    commit_fee: int
    selection: CoinSelection
    inscriptions: tuple
    commit_broadcast: bool = False
    states: List[FlowState] = field(default_factory=list)

    @property
    def commit_tx_hex(self) -> str:
        return self.commit_tx.serialize()

    @property
    def reveal_tx_hex(self) -> str:
        return self.reveal_tx.serialize()

    @property
    def commit_txid(self) -> str:
        return self.commit_tx.get_txid()

    @property
    def reveal_txid(self) -> str:
        return self.reveal_tx.get_txid()

    def inscription_ids(self) -> List[str]:
        return [f"{self.reveal_txid}i{index}" for index in range(len(self.inscriptions))]

    def summary(self) -> dict[str, Any]:
        return {
            "flow": self.flow.value,
            "commit_address": self.commit_address,
            "commit_txid": self.commit_txid,
            "reveal_txid": self.reveal_txid,
            "commit_vsize": self.commit_tx.get_vsize(),
            "reveal_vsize": self.reveal_tx.get_vsize(),
            "fee_rate_sat_vb": self.fee_rate,
            "reveal_fee": self.reveal_fee,
            "commit_fee": self.commit_fee,
            "coin_selection": self.selection.strategy,
            "inputs": len(self.selection.selected),
            "inscriptions": self.inscription_ids(),
        }


class InscriptionFlow:
    """One commit/reveal request, advanced through :class:`FlowState` in order."""

    def __init__(
        self,
        inscriptions: Sequence[Inscription],
        wallet: WalletAdapter,
        params: NetworkParams,
        provider: Any,
        *,
        fee_rate: float | None = None,
        destination_address: str | None = None,
        exclude_outpoints: Iterable[Any] = (),
        on_commit_signed: Optional[CommitSignedHook] = None,
        max_tries: int | None = DEFAULT_MAX_TRIES,
    ) -> None:
        self.inscriptions = list(inscriptions)
        self.wallet = wallet
        self.params = params
        self.provider = provider
        self.fee_rate = fee_rate
        self.destination_address = destination_address
        self.exclude_outpoints = list(exclude_outpoints)
        self.on_commit_signed = on_commit_signed
        self.max_tries = max_tries
        self.state: FlowState | None = None
        self.history: List[FlowState] = []

    def _advance(self, state: FlowState) -> None:
        if state not in _TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Illegal flow transition {self.state} -> {state}")
        logger.debug("Flow state %s -> %s", self.state.value if self.state else "start", state.value)
        self.state = state
        self.history.append(state)

    def _resolve_fee_rate(self) -> float:
        if self.fee_rate is not None:
            if self.fee_rate <= 0:
                raise ValueError(f"Fee rate must be positive, got {self.fee_rate}")
            return float(self.fee_rate)
        return select_fee_rate(self.provider).fee_rate_sat_vb

    def _previous_transactions(self, selection: CoinSelection, address_type: AddressType) -> dict[str, str]:
        if address_type is not AddressType.P2PKH:
            return {}
        txids = sorted({utxo.txid for utxo in selection.selected})
        return {txid: self.provider.get_raw_previous_transaction(txid) for txid in txids}

    def run(self) -> InscriptionResult:
        snapshot = WalletSnapshot.from_adapter(self.wallet, self.params)
        flow = select_flow(snapshot.capability, snapshot.payment_address_type)
        if flow is FlowKind.ONE_SIGN and not callable(getattr(self.wallet, "sign_batch", None)):
            logger.info("Wallet has no batched signing; falling back to two signing calls")
            flow = FlowKind.TWO_SIGN
        logger.info(
            "Inscribing %d items from %s (%s) using the %s flow",
            len(self.inscriptions),
            snapshot.payment_address,
            snapshot.payment_address_type.value,
            flow.value,
        )
        fee_rate = self._resolve_fee_rate()
        destination = self.destination_address or snapshot.ordinals_address
        destination_script = address_to_script_pub_key(destination, self.params)

        ephemeral_key = None
        if flow is FlowKind.EPHEMERAL:
            ephemeral_key = generate_disposable_key()
            internal_key = x_only_public_key(ephemeral_key)
        else:
            internal_key = to_x_only(snapshot.payment_public_key)

        reveal_script = build_reveal_script(self.inscriptions, internal_key, self.params)
        commitment = compute_tap_commitment(reveal_script, internal_key)
        commit_address = create_taproot_address(commitment.tweaked_public_key, self.params)
        self._advance(FlowState.BUILT_SCRIPT)

        vsize = estimate_reveal_vsize(self.inscriptions, destination_script, self.params)
        reveal_fee = estimate_reveal_fee(vsize, fee_rate, reveal_script.inscriptions)
        self._advance(FlowState.SIZED)

        candidates = filter_cardinal_utxos(
            self.provider.list_confirmed_spendable_outputs(snapshot.payment_address),
            min_value=self.params.cardinal_min_value,
            exclude=self.exclude_outpoints,
        )
        target = reveal_fee + commit_header_and_outputs_fee(fee_rate, self.params)
        selection = select_utxos(
            with_effective_values(candidates, snapshot.payment_address_type, fee_rate, self.params),
            target,
            max_tries=self.max_tries,
        )
        self._advance(FlowState.SELECTED)

        commit_fee = estimate_commit_fee(fee_rate, selection.selected, self.params)
        commit_template = build_commit_template(
            selection,
            address_type=snapshot.payment_address_type,
            payment_address=snapshot.payment_address,
            payment_public_key=snapshot.payment_public_key,
            commitment=commitment,
            commit_address=commit_address,
            reveal_fee=reveal_fee,
            commit_fee=commit_fee,
            params=self.params,
            previous_transactions=self._previous_transactions(selection, snapshot.payment_address_type),
        )
        self._advance(FlowState.COMMIT_BUILT)
        self._advance(FlowState[flow.name])

        reveal = _RevealInputs(reveal_script, commitment, reveal_fee, destination_script, destination)
        if flow is FlowKind.EPHEMERAL:
            commit_tx, reveal_tx, broadcast = self._run_ephemeral(snapshot, commit_template, reveal, ephemeral_key)
        elif flow is FlowKind.ONE_SIGN:
            commit_tx, reveal_tx, broadcast = self._run_one_sign(snapshot, commit_template, reveal)
        else:
            commit_tx, reveal_tx, broadcast = self._run_two_sign(snapshot, commit_template, reveal)
        self._advance(FlowState.DONE)

        result = InscriptionResult(
            flow=flow,
            commit_tx=commit_tx,
            reveal_tx=reveal_tx,
            commit_address=commit_address,
            fee_rate=fee_rate,
            reveal_fee=reveal_fee,
            commit_fee=commit_fee,
            selection=selection,
            inscriptions=reveal_script.inscriptions,
            commit_broadcast=broadcast,
            states=list(self.history),
        )
        logger.info("Signed commit %s and reveal %s", result.commit_txid, result.reveal_txid)
        return result

    def _build_reveal(self, reveal: "_RevealInputs", commit_txid: str, owner: str | None) -> TransactionTemplate:
        template = build_reveal_template(
            reveal.script,
            reveal.commitment,
            commit_txid,
            reveal.value,
            reveal.destination_script,
            reveal.destination_address,
            owner=owner,
        )
        self._advance(FlowState.REVEAL_BUILT)
        return template

    def _run_ephemeral(self, snapshot, commit_template, reveal, ephemeral_key):
        signed_commit = self.wallet.sign(commit_template, signing_hints(commit_template, snapshot.addresses))
        commit_tx = finalize_template(signed_commit)
        reveal_template = self._build_reveal(reveal, commit_tx.get_txid(), None)
        reveal_tx = finalize_template(sign_reveal_script_path(reveal_template, ephemeral_key))
        self._advance(FlowState.SIGNED)
        return commit_tx, reveal_tx, False

    def _run_one_sign(self, snapshot, commit_template, reveal):
        commit_txid = commit_template.unsigned_txid()
        reveal_template = self._build_reveal(reveal, commit_txid, snapshot.payment_address)
        templates = [commit_template, reveal_template]
        hints = [signing_hints(template, snapshot.addresses) for template in templates]
        signed = list(self.wallet.sign_batch(templates, hints))
        if len(signed) != 2:
            raise SigningRejected(f"Batched signing returned {len(signed)} transactions, expected 2")

        commit_tx = finalize_template(signed[0])
        if commit_tx.get_txid() != commit_txid:
            raise SigningRejected(
                "Signed commit does not match the template the reveal was built on",
                context={"expected": commit_txid, "actual": commit_tx.get_txid()},
            )
        reveal_tx = finalize_template(signed[1])
        self._advance(FlowState.SIGNED)
        return commit_tx, reveal_tx, False

    def _run_two_sign(self, snapshot, commit_template, reveal):
        signed_commit = self.wallet.sign(commit_template, signing_hints(commit_template, snapshot.addresses))
        commit_tx = finalize_template(signed_commit)
        commit_txid = commit_tx.get_txid()
        logger.info("Commit %s signed; building reveal", commit_txid)

        broadcast = False
        if self.on_commit_signed is not None:
            try:
                self.on_commit_signed(commit_tx.serialize(), commit_txid)
            except (ProviderError, ProviderTransportError) as exc:
                raise BroadcastFailed(f"Commit broadcast failed: {exc}", context={"commit_txid": commit_txid}) from exc
            broadcast = True

        try:
            reveal_template = self._build_reveal(reveal, commit_txid, snapshot.payment_address)
            signed_reveal = self.wallet.sign(reveal_template, signing_hints(reveal_template, snapshot.addresses))
            reveal_tx = finalize_template(signed_reveal)
        except Exception as exc:
            if not broadcast:
                raise
            logger.error("Reveal failed after commit %s was handed off: %s", commit_txid, exc)
            raise PartialBroadcast(
                f"Commit {commit_txid} was handed off but the reveal failed: {exc}",
                commit_txid=commit_txid,
                stage="reveal",
            ) from exc
        self._advance(FlowState.SIGNED)
        return commit_tx, reveal_tx, broadcast


@dataclass(frozen=True)
class _RevealInputs:
    script: RevealScript
    commitment: TapCommitment
    value: int
    destination_script: Script
    destination_address: str


def create_inscriptions(
    inscriptions: Sequence[Inscription],
    wallet: WalletAdapter,
    params: NetworkParams,
    provider: Any,
    **options: Any,
) -> InscriptionResult:
    """Build and sign the commit and reveal transactions for ``inscriptions``."""

    return InscriptionFlow(inscriptions, wallet, params, provider, **options).run()


def broadcast_inscription(
    provider: Any,
    result: InscriptionResult,
    *,
    package: bool = True,
    delay_seconds: float = 0.0,
) -> dict[str, str]:
    """Send the signed pair to the network.

    As a package both transactions are accepted or rejected together. Sent
    one at a time, a reveal failure after the commit was accepted raises
    :class:`PartialBroadcast`.
    """

    if package:
        try:
            provider.submit_package([result.commit_tx_hex, result.reveal_tx_hex])
        except (ProviderError, ProviderTransportError) as exc:
            raise BroadcastFailed(f"Package submission failed: {exc}", context={"commit_txid": result.commit_txid}) from exc
        return {"commit_txid": result.commit_txid, "reveal_txid": result.reveal_txid}

    if not result.commit_broadcast:
        try:
            provider.broadcast(result.commit_tx_hex)
        except (ProviderError, ProviderTransportError) as exc:
            raise BroadcastFailed(f"Commit broadcast failed: {exc}", context={"commit_txid": result.commit_txid}) from exc
        if delay_seconds:
            time.sleep(delay_seconds)

    try:
        provider.broadcast(result.reveal_tx_hex)
    except (ProviderError, ProviderTransportError) as exc:
        logger.error("Reveal broadcast failed after commit %s: %s", result.commit_txid, exc)
        raise PartialBroadcast(
            f"Commit {result.commit_txid} is on the network but the reveal was rejected: {exc}",
            commit_txid=result.commit_txid,
            context={"reveal_txid": result.reveal_txid},
        ) from exc
    return {"commit_txid": result.commit_txid, "reveal_txid": result.reveal_txid}


def write_receipt(path: Path, result: InscriptionResult, details: dict[str, Any] | None = None) -> Path:
    """Persist a JSON receipt for the inscription flow."""

    path.parent.mkdir(parents=True, exist_ok=True)
    receipt: dict[str, Any] = result.summary()
    receipt["commit_tx_hex"] = result.commit_tx_hex
    receipt["reveal_tx_hex"] = result.reveal_tx_hex
    receipt.update(details or {})
    path.write_text(json.dumps(receipt, indent=2))
    return path


__all__ = [
    "FlowKind",
    "FlowState",
    "InscriptionFlow",
    "InscriptionResult",
    "broadcast_inscription",
    "create_inscriptions",
    "estimate_inscription_fees",
    "estimate_reveal_vsize",
    "select_flow",
    "write_receipt",
]
