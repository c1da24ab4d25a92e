"""Address encoding, decoding and spend-type classification.

Supports the four payment address types the inscriber can fund from
(P2TR, P2WPKH, P2SH-P2WPKH, P2PKH). Segwit addresses follow BIP173 (bech32) and
BIP350 (bech32m); legacy addresses use base58check.
"""

from __future__ import annotations

import hashlib
import logging

from bitcoinutils.keys import PublicKey
from bitcoinutils.script import Script

from .errors import InvalidKey, NetworkMismatch, UnsupportedAddressType
from .network import NETWORKS, AddressType, NetworkParams
from .ordinals.taproot_builder import taproot_tweak_pubkey, to_x_only

logger = logging.getLogger(__name__)

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
BECH32M_CONST = 0x2BC830A3
B58_DIGITS = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def bech32_polymod(values: list[int]) -> int:
    """Compute bech32 checksum polymod."""
    GEN = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for value in values:
        b = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i in range(5):
            chk ^= GEN[i] if ((b >> i) & 1) else 0
    return chk


def bech32_hrp_expand(hrp: str) -> list[int]:
    """Expand HRP for bech32 checksum."""
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def bech32_create_checksum(hrp: str, data: list[int], spec: str) -> list[int]:
    """Compute bech32/bech32m checksum.

    Args:
        hrp: Human-readable part
        data: Data values (5-bit)
        spec: Either 'bech32' or 'bech32m'

    Returns:
        Checksum values (6 elements)
    """
    values = bech32_hrp_expand(hrp) + data
    const = BECH32M_CONST if spec == "bech32m" else 1
    polymod = bech32_polymod(values + [0, 0, 0, 0, 0, 0]) ^ const
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def bech32_encode(hrp: str, witver: int, witprog: bytes) -> str:
    """Encode a segwit address using bech32m (for witness v1+) or bech32 (v0).

    Reference:
        BIP173 (bech32): https://github.com/bitcoin/bips/blob/master/bip-0173.mediawiki
        BIP350 (bech32m): https://github.com/bitcoin/bips/blob/master/bip-0350.mediawiki
    """
    spec = "bech32m" if witver >= 1 else "bech32"
    data = _convertbits(witprog, 8, 5)
    if data is None:
        raise ValueError("Failed to convert witness program to 5-bit")
    combined = [witver] + data
    checksum = bech32_create_checksum(hrp, combined, spec)
    return hrp + "1" + "".join(CHARSET[d] for d in combined + checksum)


def bech32_decode(address: str) -> tuple[str, int, bytes]:
    """Decode a segwit address into ``(hrp, witness_version, witness_program)``.

    Raises:
        ValueError: If the string is not a valid bech32/bech32m segwit address.
    """

    if address.lower() != address and address.upper() != address:
        raise ValueError("mixed-case bech32 string")
    address = address.lower()
    pos = address.rfind("1")
    if pos < 1 or pos + 7 > len(address) or len(address) > 90:
        raise ValueError("bech32 separator missing or misplaced")
    if any(ord(c) < 33 or ord(c) > 126 for c in address):
        raise ValueError("invalid character in bech32 string")

    hrp = address[:pos]
    try:
        data = [CHARSET.index(c) for c in address[pos + 1 :]]
    except ValueError as exc:
        raise ValueError("invalid bech32 data character") from exc

    polymod = bech32_polymod(bech32_hrp_expand(hrp) + data)
    if polymod == 1:
        spec = "bech32"
    elif polymod == BECH32M_CONST:
        spec = "bech32m"
    else:
        raise ValueError("bech32 checksum mismatch")

    witver = data[0]
    program = _convertbits(bytes(data[1:-6]), 5, 8, pad=False)
    if program is None or not 2 <= len(program) <= 40 or witver > 16:
        raise ValueError("invalid witness program")
    if (witver == 0) != (spec == "bech32"):
        raise ValueError(f"witness version {witver} must not use {spec}")
    return hrp, witver, bytes(program)


def _convertbits(data: bytes, frombits: int, tobits: int, pad: bool = True) -> list[int] | None:
    """Convert between bit groups, returning None on invalid padding."""
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1

    for value in data:
        if value < 0 or value >> frombits:
            return None
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)

    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        return None

    return ret


def _sha256d(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def base58check_encode(version: int, payload: bytes) -> str:
    raw = bytes([version]) + payload
    raw += _sha256d(raw)[:4]
    number = int.from_bytes(raw, "big")
    encoded = ""
    while number > 0:
        number, remainder = divmod(number, 58)
        encoded = B58_DIGITS[remainder] + encoded
    leading_zeros = len(raw) - len(raw.lstrip(b"\x00"))
    return B58_DIGITS[0] * leading_zeros + encoded


def base58check_decode(address: str) -> tuple[int, bytes]:
    """Return ``(version, payload)`` for a base58check string."""

    number = 0
    for char in address:
        index = B58_DIGITS.find(char)
        if index < 0:
            raise ValueError(f"invalid base58 character {char!r}")
        number = number * 58 + index
    body = number.to_bytes((number.bit_length() + 7) // 8, "big") if number else b""
    leading_zeros = len(address) - len(address.lstrip(B58_DIGITS[0]))
    raw = b"\x00" * leading_zeros + body
    if len(raw) < 5:
        raise ValueError("base58check payload too short")
    payload, checksum = raw[:-4], raw[-4:]
    if _sha256d(payload)[:4] != checksum:
        raise ValueError("base58check checksum mismatch")
    return payload[0], payload[1:]


def p2tr_script(output_key: bytes) -> Script:
    return Script(["OP_1", output_key.hex()])


def p2wpkh_script(pubkey_hash: bytes) -> Script:
    return Script(["OP_0", pubkey_hash.hex()])


def p2sh_script(script_hash: bytes) -> Script:
    return Script(["OP_HASH160", script_hash.hex(), "OP_EQUAL"])


def p2pkh_script(pubkey_hash: bytes) -> Script:
    return Script(["OP_DUP", "OP_HASH160", pubkey_hash.hex(), "OP_EQUALVERIFY", "OP_CHECKSIG"])


def _load_public_key(public_key: str) -> PublicKey:
    try:
        return PublicKey(public_key)
    except Exception as exc:  # bitcoinutils raises assorted errors for bad points
        raise InvalidKey(
            f"Invalid public key: {exc}", context={"public_key": public_key}
        ) from exc


def p2wpkh_redeem_script(public_key: str) -> Script:
    """Return the ``OP_0 <hash160(pubkey)>`` redeem script wrapped by P2SH-P2WPKH."""

    pubkey = _load_public_key(public_key)
    return pubkey.get_segwit_address().to_script_pub_key()


def _known_hrps() -> set[str]:
    return {params.bech32_hrp for params in NETWORKS.values()}


def _known_base58_versions() -> set[int]:
    versions: set[int] = set()
    for params in NETWORKS.values():
        versions.update({params.p2pkh_version, params.p2sh_version})
    return versions


def _decode(address: str, params: NetworkParams) -> tuple[str, bytes]:
    """Return ``(kind, program)`` where kind is P2TR, P2WPKH, P2SH or P2PKH."""

    context = {"address": address, "network": params.name}
    try:
        hrp, witver, program = bech32_decode(address)
    except ValueError:
        hrp = None

    if hrp is not None:
        if hrp != params.bech32_hrp:
            raise NetworkMismatch(
                f"Address {address} belongs to HRP '{hrp}', expected '{params.bech32_hrp}'",
                context=context,
            )
        if witver == 1 and len(program) == 32:
            return AddressType.P2TR.value, program
        if witver == 0 and len(program) == 20:
            return AddressType.P2WPKH.value, program
        raise UnsupportedAddressType(
            f"Unsupported witness program v{witver} ({len(program)} bytes) in {address}",
            context=context,
        )

    try:
        version, payload = base58check_decode(address)
    except ValueError as exc:
        if address.lower().split("1", 1)[0] in _known_hrps():
            raise UnsupportedAddressType(f"Malformed segwit address {address}", context=context) from exc
        raise UnsupportedAddressType(f"Malformed address {address}: {exc}", context=context) from exc

    if len(payload) != 20:
        raise UnsupportedAddressType(f"Unexpected base58 payload length in {address}", context=context)
    if version == params.p2pkh_version:
        return AddressType.P2PKH.value, payload
    if version == params.p2sh_version:
        return "P2SH", payload
    if version in _known_base58_versions():
        raise NetworkMismatch(
            f"Address {address} uses version byte {version:#04x} from another network",
            context=context,
        )
    raise UnsupportedAddressType(f"Unknown base58 version {version:#04x} in {address}", context=context)


def address_to_script_pub_key(address: str, params: NetworkParams) -> Script:
    """Return the output script paying to ``address`` on ``params``' network."""

    kind, program = _decode(address, params)
    if kind == AddressType.P2TR.value:
        return p2tr_script(program)
    if kind == AddressType.P2WPKH.value:
        return p2wpkh_script(program)
    if kind == "P2SH":
        return p2sh_script(program)
    return p2pkh_script(program)


def classify_address(
    address: str, params: NetworkParams, public_key: str | None = None
) -> AddressType:
    """Determine the spend type of a payment address.

    P2SH addresses are only accepted when they wrap the P2WPKH program of
    ``public_key``; any other P2SH script is unsupported.
    """

    kind, program = _decode(address, params)
    if kind != "P2SH":
        return AddressType(kind)

    if public_key is None:
        raise UnsupportedAddressType(
            f"Cannot classify P2SH address {address} without its public key",
            context={"address": address},
        )
    redeem_script = p2wpkh_redeem_script(public_key)
    if redeem_script.to_p2sh_script_pub_key().to_hex() != p2sh_script(program).to_hex():
        raise UnsupportedAddressType(
            f"P2SH address {address} does not wrap a P2WPKH program for the given key",
            context={"address": address, "public_key": public_key},
        )
    return AddressType.P2SH_P2WPKH


def create_taproot_address(output_key: bytes, params: NetworkParams) -> str:
    """Create a bech32m taproot address for a 32-byte tweaked output key."""

    if len(output_key) != 32:
        raise ValueError(f"Output key must be 32 bytes, got {len(output_key)}")
    return bech32_encode(params.bech32_hrp, 1, output_key)


def address_from_public_key(
    public_key: str, address_type: AddressType, params: NetworkParams
) -> str:
    """Derive the single-key address of ``address_type`` for ``public_key``.

    Taproot addresses use the BIP86 key-path-only tweak.
    """

    if address_type is AddressType.P2TR:
        try:
            output_key, _parity = taproot_tweak_pubkey(to_x_only(public_key), b"")
        except ValueError as exc:
            raise InvalidKey(str(exc), stage="address", context={"public_key": public_key}) from exc
        return create_taproot_address(output_key, params)

    pubkey = _load_public_key(public_key)
    pubkey_hash = bytes.fromhex(pubkey.to_hash160())
    if address_type is AddressType.P2WPKH:
        return bech32_encode(params.bech32_hrp, 0, pubkey_hash)
    if address_type is AddressType.P2SH_P2WPKH:
        wrapped = p2wpkh_redeem_script(public_key).to_p2sh_script_pub_key()
        return base58check_encode(params.p2sh_version, bytes.fromhex(wrapped.script[1]))
    if address_type is AddressType.P2PKH:
        return base58check_encode(params.p2pkh_version, pubkey_hash)
    raise UnsupportedAddressType(f"Unsupported address type {address_type}")
