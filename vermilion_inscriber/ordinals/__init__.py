"""Ordinals inscription envelopes and their taproot commitments.

The commit/reveal workflow lives in
:mod:`vermilion_inscriber.ordinals.workflows`; it is not imported here so that
the address helpers can depend on the taproot primitives without a cycle.
"""

from vermilion_inscriber.ordinals.inscriptions import (
    Inscription,
    RevealScript,
    assign_pointers,
    build_reveal_script,
    delegate_bytes,
    encode_envelope,
    encode_pointer,
)
from vermilion_inscriber.ordinals.taproot_builder import (
    TapCommitment,
    compute_tap_commitment,
    tagged_hash,
    taproot_leaf_hash,
    taproot_tweak_pubkey,
)

__all__ = [
    "Inscription",
    "RevealScript",
    "assign_pointers",
    "build_reveal_script",
    "delegate_bytes",
    "encode_envelope",
    "encode_pointer",
    "TapCommitment",
    "compute_tap_commitment",
    "tagged_hash",
    "taproot_leaf_hash",
    "taproot_tweak_pubkey",
]
