"""Local signing with ``bitcoinutils`` keys.

Used by the engine for disposable reveal keys and by :class:`LocalKeyWallet`.
Every helper returns a signed copy and leaves the input template untouched.
"""

from __future__ import annotations

import logging
from typing import Iterable

from bitcoinutils.keys import PrivateKey
from cryptography.hazmat.primitives.asymmetric import ec

from .errors import SigningRejected
from .network import AddressType
from .ordinals.taproot_builder import to_x_only
from .templates import TransactionTemplate

logger = logging.getLogger(__name__)


def generate_disposable_key() -> PrivateKey:
    """Return a fresh secp256k1 key that is never persisted or logged."""

    secret = ec.generate_private_key(ec.SECP256K1()).private_numbers().private_value
    return PrivateKey(secret_exponent=secret)


def x_only_public_key(private_key: PrivateKey) -> bytes:
    return to_x_only(private_key.get_public_key().to_hex(compressed=True))


def _sign_script_path(template: TransactionTemplate, index: int, private_key: PrivateKey) -> None:
    txin = template.inputs[index]
    if txin.tap_internal_key != x_only_public_key(private_key):
        raise SigningRejected(
            f"Key does not match the internal key of script-path input {index}",
            context={"input": index},
        )
    sig = private_key.sign_taproot_input(
        template.to_unsigned_transaction(),
        index,
        template.prevout_scripts(),
        template.prevout_amounts(),
        script_path=True,
        tapleaf_script=txin.tap_leaf_script,
        tweak=False,
    )
    template.record_signature(index, tap_script_sig=sig)


def _sign_key_path(template: TransactionTemplate, index: int, private_key: PrivateKey) -> None:
    txin = template.inputs[index]
    tx = template.to_unsigned_transaction()
    public_key = private_key.get_public_key()

    if txin.address_type is AddressType.P2TR:
        sig = private_key.sign_taproot_input(
            tx, index, template.prevout_scripts(), template.prevout_amounts()
        )
        template.record_signature(index, tap_key_sig=sig)
        return

    if txin.address_type in (AddressType.P2WPKH, AddressType.P2SH_P2WPKH):
        # BIP143 scriptCode for a P2WPKH spend is the P2PKH script of the key.
        script_code = public_key.get_address().to_script_pub_key()
        sig = private_key.sign_segwit_input(tx, index, script_code, txin.value)
    elif txin.address_type is AddressType.P2PKH:
        sig = private_key.sign_input(tx, index, txin.script_pub_key)
    else:
        raise SigningRejected(f"Input {index} has no known spend type", context={"input": index})
    template.record_signature(index, partial_sig=(sig, public_key.to_hex(compressed=True)))


def sign_template_inputs(
    template: TransactionTemplate, private_key: PrivateKey, indices: Iterable[int]
) -> TransactionTemplate:
    """Sign ``indices`` of ``template`` with ``private_key``.

    Script-path inputs get a tapscript signature with the untweaked key; other
    inputs are signed for their recorded address type.
    """

    signed = template.copy()
    for index in indices:
        if signed.inputs[index].is_script_path:
            _sign_script_path(signed, index, private_key)
        else:
            _sign_key_path(signed, index, private_key)
    return signed


def sign_reveal_script_path(
    template: TransactionTemplate, private_key: PrivateKey, index: int = 0
) -> TransactionTemplate:
    """Sign the reveal's script-path input with a local key."""

    if not template.inputs[index].is_script_path:
        raise SigningRejected(f"Input {index} is not a script-path spend", context={"input": index})
    signed = sign_template_inputs(template, private_key, [index])
    logger.debug("Signed reveal input %d with a local key", index)
    return signed
