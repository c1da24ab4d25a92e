"""Unsigned transaction templates exchanged with signing wallets.

A template is the minimal partially-signed container the inscription flow
needs: ordered inputs carrying the funding data a signer requires for their
spend type, ordered outputs, recorded signatures, and finalization into a
``bitcoinutils`` :class:`~bitcoinutils.transactions.Transaction`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, List, Optional, Tuple

from bitcoinutils.script import Script
from bitcoinutils.transactions import Transaction, TxInput, TxOutput, TxWitnessInput

from .errors import SigningRejected
from .network import AddressType

logger = logging.getLogger(__name__)


@dataclass
class TemplateInput:
    """One input plus the data needed to sign and finalize it."""

    txid: str
    vout: int
    value: int
    script_pub_key: Script
    address_type: Optional[AddressType] = None
    owner: Optional[str] = None
    non_witness_utxo: Optional[str] = None
    redeem_script: Optional[Script] = None
    tap_internal_key: Optional[bytes] = None
    tap_leaf_script: Optional[Script] = None
    tap_control_block: Optional[bytes] = None
    tap_key_sig: Optional[str] = None
    tap_script_sig: Optional[str] = None
    partial_sig: Optional[Tuple[str, str]] = None

    @property
    def is_script_path(self) -> bool:
        return self.tap_leaf_script is not None

    @property
    def has_witness(self) -> bool:
        return self.is_script_path or self.address_type is not AddressType.P2PKH

    @property
    def is_signed(self) -> bool:
        if self.is_script_path:
            return self.tap_script_sig is not None
        if self.address_type is AddressType.P2TR:
            return self.tap_key_sig is not None
        return self.partial_sig is not None

    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass
class TemplateOutput:
    value: int
    script_pub_key: Script
    address: Optional[str] = None


@dataclass
class TransactionTemplate:
    """Ordered inputs and outputs of a transaction awaiting signatures."""

    inputs: List[TemplateInput] = field(default_factory=list)
    outputs: List[TemplateOutput] = field(default_factory=list)
    label: str = ""

    def add_input(self, txid: str, vout: int, value: int, script_pub_key: Script, **funding: Any) -> TemplateInput:
        txin = TemplateInput(txid=txid, vout=vout, value=value, script_pub_key=script_pub_key, **funding)
        self.inputs.append(txin)
        return txin

    def add_output(self, value: int, script_pub_key: Script, address: str | None = None) -> TemplateOutput:
        txout = TemplateOutput(value=value, script_pub_key=script_pub_key, address=address)
        self.outputs.append(txout)
        return txout

    def record_signature(
        self,
        index: int,
        *,
        tap_key_sig: str | None = None,
        tap_script_sig: str | None = None,
        partial_sig: Tuple[str, str] | None = None,
    ) -> None:
        txin = self.inputs[index]
        if tap_key_sig is not None:
            txin.tap_key_sig = tap_key_sig
        if tap_script_sig is not None:
            txin.tap_script_sig = tap_script_sig
        if partial_sig is not None:
            txin.partial_sig = partial_sig

    def copy(self) -> "TransactionTemplate":
        return TransactionTemplate(
            inputs=[replace(txin) for txin in self.inputs],
            outputs=[replace(txout) for txout in self.outputs],
            label=self.label,
        )

    def prevout_scripts(self) -> List[Script]:
        return [txin.script_pub_key for txin in self.inputs]

    def prevout_amounts(self) -> List[int]:
        return [txin.value for txin in self.inputs]

    @property
    def input_total(self) -> int:
        return sum(txin.value for txin in self.inputs)

    @property
    def output_total(self) -> int:
        return sum(txout.value for txout in self.outputs)

    @property
    def fee(self) -> int:
        return self.input_total - self.output_total

    def to_unsigned_transaction(self) -> Transaction:
        """Return the transaction without any signatures, for digests and txids."""

        return Transaction(
            [TxInput(txin.txid, txin.vout) for txin in self.inputs],
            [TxOutput(txout.value, txout.script_pub_key) for txout in self.outputs],
            has_segwit=any(txin.has_witness for txin in self.inputs),
        )

    def unsigned_txid(self) -> str:
        """Txid of the template.

        Signatures only land in witnesses for segwit inputs, so for a
        template without legacy inputs this equals the final txid.
        """

        return self.to_unsigned_transaction().get_txid()

    def summary(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "inputs": [txin.outpoint() for txin in self.inputs],
            "outputs": [{"address": txout.address, "value": txout.value} for txout in self.outputs],
            "fee": self.fee,
        }


def _finalize_input(index: int, txin: TemplateInput) -> Tuple[Script, TxWitnessInput]:
    if not txin.is_signed:
        raise SigningRejected(
            f"Input {index} ({txin.outpoint()}) was returned without a signature",
            context={"input": index, "outpoint": txin.outpoint()},
        )

    if txin.is_script_path:
        if txin.tap_control_block is None:
            raise SigningRejected(f"Script-path input {index} has no control block", context={"input": index})
        witness = [txin.tap_script_sig, txin.tap_leaf_script.to_hex(), txin.tap_control_block.hex()]
        return Script([]), TxWitnessInput(witness)

    if txin.address_type is AddressType.P2TR:
        return Script([]), TxWitnessInput([txin.tap_key_sig])

    sig, pubkey = txin.partial_sig
    if txin.address_type is AddressType.P2WPKH:
        return Script([]), TxWitnessInput([sig, pubkey])
    if txin.address_type is AddressType.P2SH_P2WPKH:
        if txin.redeem_script is None:
            raise SigningRejected(f"P2SH-P2WPKH input {index} has no redeem script", context={"input": index})
        return Script([txin.redeem_script.to_hex()]), TxWitnessInput([sig, pubkey])
    return Script([sig, pubkey]), TxWitnessInput([])


def finalize_template(template: TransactionTemplate) -> Transaction:
    """Materialize scriptSigs and witnesses into a broadcastable transaction.

    Raises:
        SigningRejected: If any input lacks the signature its spend type needs.
    """

    tx_inputs: List[TxInput] = []
    witnesses: List[TxWitnessInput] = []
    for index, txin in enumerate(template.inputs):
        script_sig, witness = _finalize_input(index, txin)
        tx_inputs.append(TxInput(txin.txid, txin.vout, script_sig=script_sig))
        witnesses.append(witness)

    has_segwit = any(txin.has_witness for txin in template.inputs)
    tx = Transaction(
        tx_inputs,
        [TxOutput(txout.value, txout.script_pub_key) for txout in template.outputs],
        has_segwit=has_segwit,
        witnesses=witnesses if has_segwit else None,
    )
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("Finalized %s transaction %s (%d vB)", template.label or "unnamed", tx.get_txid(), tx.get_vsize())
    return tx
