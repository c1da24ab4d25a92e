"""BIP341 Taproot commitment utilities.

This module implements the Taproot primitives needed to commit to an
inscription reveal script: tagged hashing, leaf hashing, key tweaking and
control-block construction for a single-leaf script tree.

All operations follow BIP340 (Schnorr) and BIP341 (Taproot).
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any, Tuple

from bitcoinutils.script import Script
from cryptography.hazmat.primitives.asymmetric import ec

from ..errors import InvalidKey

# BIP340/341 constants
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SECP256K1_FIELD_SIZE = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F

TAPSCRIPT_LEAF_VERSION = 0xC0


def tagged_hash(tag: str, data: bytes) -> bytes:
    """Compute BIP340-style tagged hash.

    Tagged hashing prevents cross-protocol attacks by domain-separating different
    hash uses. The tag is hashed and prepended twice to the message before the
    final hash.

    Args:
        tag: Domain separation tag (e.g., "TapLeaf", "TapTweak")
        data: Data to hash

    Returns:
        32-byte SHA256 hash

    Reference:
        BIP340: https://github.com/bitcoin/bips/blob/master/bip-0340.mediawiki
    """
    tag_hash = hashlib.sha256(tag.encode()).digest()
    return hashlib.sha256(tag_hash + tag_hash + data).digest()


def ser_compact_size(n: int) -> bytes:
    """Serialize an integer as a Bitcoin compact size."""
    if n < 253:
        return bytes([n])
    elif n <= 0xFFFF:
        return b"\xfd" + n.to_bytes(2, "little")
    elif n <= 0xFFFFFFFF:
        return b"\xfe" + n.to_bytes(4, "little")
    else:
        return b"\xff" + n.to_bytes(8, "little")


def taproot_leaf_hash(leaf_script: bytes, leaf_version: int = TAPSCRIPT_LEAF_VERSION) -> bytes:
    """Compute TapLeaf hash for a single script leaf.

    Args:
        leaf_script: The serialized script
        leaf_version: Leaf version (0xc0 = TAPSCRIPT)

    Returns:
        32-byte tagged hash of the leaf
    """
    return tagged_hash(
        "TapLeaf",
        bytes([leaf_version]) + ser_compact_size(len(leaf_script)) + leaf_script,
    )


def to_x_only(public_key: bytes | str) -> bytes:
    """Return the 32-byte x-only form of a compressed or x-only public key.

    Raises:
        InvalidKey: If the key has the wrong length, prefix, or is not hex.
    """

    if isinstance(public_key, str):
        try:
            public_key = bytes.fromhex(public_key)
        except ValueError as exc:
            raise InvalidKey("Public key is not valid hex") from exc

    if len(public_key) == 32:
        return public_key
    if len(public_key) == 33 and public_key[0] in (0x02, 0x03):
        return public_key[1:]
    raise InvalidKey(
        f"Public key must be 32-byte x-only or 33-byte compressed, got {len(public_key)} bytes",
        context={"public_key": public_key.hex()},
    )


def taproot_tweak_pubkey(internal_key: bytes, merkle_root: bytes) -> Tuple[bytes, int]:
    """Tweak an internal public key with a merkle root per BIP341.

    This implements the core Taproot tweaking operation:
    Q = P + H_taptweak(P || merkle_root) * G

    Args:
        internal_key: 32-byte x-only internal public key
        merkle_root: 32-byte merkle root hash (or empty for key-path only)

    Returns:
        Tuple of (tweaked_pubkey, parity) where:
            - tweaked_pubkey: 32-byte x-only tweaked public key
            - parity: 0 if even y-coordinate, 1 if odd

    Raises:
        ValueError: If the internal key is invalid or tweaking fails
    """
    if len(internal_key) != 32:
        raise ValueError(f"Internal key must be 32 bytes, got {len(internal_key)}")

    tweak_hash = tagged_hash("TapTweak", internal_key + merkle_root)
    tweak_int = int.from_bytes(tweak_hash, "big")

    if tweak_int >= SECP256K1_ORDER:
        raise ValueError("Tweak value exceeds curve order")

    # For x-only keys we always use the even-y point
    try:
        internal_point = _point_from_xonly(internal_key)
    except Exception as exc:
        raise ValueError(f"Invalid internal key: {exc}") from exc

    curve = ec.SECP256K1()
    private_key = ec.derive_private_key(tweak_int, curve)
    tweak_point = private_key.public_key().public_numbers()

    try:
        tweaked_point = _point_add(internal_point, tweak_point)
    except Exception as exc:
        raise ValueError(f"Point addition failed: {exc}") from exc

    tweaked_x = tweaked_point.x.to_bytes(32, "big")
    parity = tweaked_point.y % 2

    return tweaked_x, parity


def _point_from_xonly(x_bytes: bytes) -> ec.EllipticCurvePublicNumbers:
    """Reconstruct a secp256k1 point from x-only coordinate (assuming even y)."""
    x = int.from_bytes(x_bytes, "big")

    if x >= SECP256K1_FIELD_SIZE:
        raise ValueError("x-coordinate exceeds field size")

    # y^2 = x^3 + 7 (mod p)
    y_squared = (pow(x, 3, SECP256K1_FIELD_SIZE) + 7) % SECP256K1_FIELD_SIZE

    # p ≡ 3 mod 4, so y = y_squared^((p+1)/4)
    y = pow(y_squared, (SECP256K1_FIELD_SIZE + 1) // 4, SECP256K1_FIELD_SIZE)

    if pow(y, 2, SECP256K1_FIELD_SIZE) != y_squared:
        raise ValueError("x-coordinate is not on the curve")

    if y % 2 != 0:
        y = SECP256K1_FIELD_SIZE - y

    return ec.EllipticCurvePublicNumbers(x, y, ec.SECP256K1())


def _point_add(p1: ec.EllipticCurvePublicNumbers, p2: ec.EllipticCurvePublicNumbers) -> ec.EllipticCurvePublicNumbers:
    """Add two secp256k1 points in affine coordinates."""
    x1, y1 = p1.x, p1.y
    x2, y2 = p2.x, p2.y

    p = SECP256K1_FIELD_SIZE

    if x1 == x2:
        if y1 == y2:
            # Point doubling: λ = (3*x1^2) / (2*y1)
            lam = (3 * x1 * x1 * pow(2 * y1, -1, p)) % p
        else:
            raise ValueError("Point addition results in point at infinity")
    else:
        # Point addition: λ = (y2 - y1) / (x2 - x1)
        lam = ((y2 - y1) * pow(x2 - x1, -1, p)) % p

    x3 = (lam * lam - x1 - x2) % p
    y3 = (lam * (x1 - x3) - y1) % p

    return ec.EllipticCurvePublicNumbers(x3, y3, ec.SECP256K1())


@dataclass(frozen=True)
class TapCommitment:
    """Single-leaf taproot commitment to a reveal script."""

    leaf_hash: bytes
    internal_key: bytes
    tweaked_public_key: bytes
    parity: int
    control_block: bytes

    @property
    def output_script(self) -> Script:
        """P2TR scriptPubKey: OP_1 <32-byte output key>."""
        return Script(["OP_1", self.tweaked_public_key.hex()])

    def to_dict(self) -> dict[str, Any]:
        return {
            "leaf_hash": self.leaf_hash.hex(),
            "internal_key": self.internal_key.hex(),
            "tweaked_public_key": self.tweaked_public_key.hex(),
            "parity": self.parity,
            "control_block": self.control_block.hex(),
        }


def compute_tap_commitment(leaf_script: Any, internal_key: bytes | str) -> TapCommitment:
    """Commit ``internal_key`` to a single script leaf.

    ``leaf_script`` is either raw script bytes or any object exposing
    ``to_bytes()`` (a :class:`~vermilion_inscriber.ordinals.inscriptions.RevealScript`
    or a ``bitcoinutils`` ``Script``). For a single leaf the merkle root equals
    the leaf hash and the control block carries no merkle path.

    Raises:
        InvalidKey: If ``internal_key`` is not a valid x-only point.
    """

    script_bytes = leaf_script if isinstance(leaf_script, bytes) else leaf_script.to_bytes()
    key = to_x_only(internal_key)

    leaf_hash = taproot_leaf_hash(script_bytes)
    try:
        output_key, parity = taproot_tweak_pubkey(key, leaf_hash)
    except ValueError as exc:
        raise InvalidKey(str(exc), context={"internal_key": key.hex()}) from exc

    control_block = bytes([TAPSCRIPT_LEAF_VERSION | parity]) + key
    return TapCommitment(
        leaf_hash=leaf_hash,
        internal_key=key,
        tweaked_public_key=output_key,
        parity=parity,
        control_block=control_block,
    )
