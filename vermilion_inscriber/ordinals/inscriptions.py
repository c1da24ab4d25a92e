"""Inscription envelopes and reveal scripts.

An inscription is carried in a never-executed ``OP_FALSE OP_IF ... OP_ENDIF``
region of the reveal tapscript. Metadata fields are written as tag/value push
pairs in a fixed order, followed by an empty separator push and the content
body split into chunks of at most 520 bytes (the tapscript element size limit).

Script elements are kept in the token form understood by ``bitcoinutils``
``Script``: opcode names (``"OP_IF"``) and hex-encoded data pushes.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Sequence

from bitcoinutils.script import Script

from ..errors import InvalidInscriptionField, InvalidPostage
from ..network import DEFAULT_POSTAGE_SATS, NetworkParams
from .taproot_builder import to_x_only

logger = logging.getLogger(__name__)

ENVELOPE_MARKER = b"ord"
MAX_PUSH_BYTES = 520
LARGE_CONTENT_WARNING_BYTES = 390_000

# Tag opcodes, written in this order when present.
TAG_CONTENT_TYPE = "OP_1"
TAG_POINTER = "OP_2"
TAG_METAPROTOCOL = "OP_7"
TAG_CONTENT_ENCODING = "OP_9"
TAG_DELEGATE = "OP_11"

# Empty push; doubles as the body separator.
EMPTY_PUSH = "OP_0"

_DELEGATE_RE = re.compile(r"^(?P<txid>[0-9a-fA-F]{64})i(?P<index>\d+)$")


@dataclass(frozen=True)
class Inscription:
    """Content plus metadata to be inscribed on one output."""

    content: Optional[bytes] = None
    content_type: Optional[str] = None
    content_encoding: Optional[str] = None
    metaprotocol: Optional[str] = None
    delegate: Optional[str] = None
    pointer: Optional[int] = None
    postage: int = DEFAULT_POSTAGE_SATS

    @classmethod
    def from_text(cls, text: str, content_type: str = "text/plain;charset=utf-8", **kwargs) -> "Inscription":
        return cls(content=text.encode("utf-8"), content_type=content_type, **kwargs)


def encode_pointer(value: int) -> bytes:
    """Little-endian minimal encoding; zero encodes as an empty value."""

    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInscriptionField(f"Pointer must be an integer, got {value!r}")
    if value < 0:
        raise InvalidInscriptionField(f"Pointer must be non-negative, got {value}", context={"pointer": value})

    encoded = bytearray()
    while value > 0:
        encoded.append(value & 0xFF)
        value >>= 8
    return bytes(encoded)


def delegate_bytes(delegate_id: str) -> bytes:
    """Encode ``<txid>i<index>`` as the reversed txid followed by the minimal index."""

    match = _DELEGATE_RE.match(delegate_id or "")
    if match is None:
        raise InvalidInscriptionField(
            f"Delegate must look like <64-hex-txid>i<index>, got {delegate_id!r}",
            context={"delegate": delegate_id},
        )
    txid = bytes.fromhex(match.group("txid"))[::-1]
    return txid + encode_pointer(int(match.group("index")))


def _text_tag(name: str, value: str) -> str:
    if value == "":
        raise InvalidInscriptionField(f"{name} must not be empty when present", context={name: value})
    encoded = value.encode("utf-8")
    if len(encoded) > MAX_PUSH_BYTES:
        raise InvalidInscriptionField(
            f"{name} is {len(encoded)} bytes; tag values are limited to {MAX_PUSH_BYTES}",
            context={name: value},
        )
    return encoded.hex()


def _push(data: bytes) -> str:
    return data.hex() if data else EMPTY_PUSH


def chunk_content(content: bytes, size: int = MAX_PUSH_BYTES) -> List[bytes]:
    return [content[i : i + size] for i in range(0, len(content), size)]


def encode_envelope(inscription: Inscription) -> List[str]:
    """Return the envelope script elements for one inscription.

    The result excludes the leading ``<pubkey> OP_CHECKSIG`` pair.

    Raises:
        InvalidInscriptionField: For negative pointers, empty tag values,
            malformed delegate ids or oversized tag values.
    """

    elements: List[str] = ["OP_0", "OP_IF", ENVELOPE_MARKER.hex()]

    if inscription.content_type is not None:
        elements += [TAG_CONTENT_TYPE, _text_tag("content_type", inscription.content_type)]
    if inscription.pointer is not None:
        elements += [TAG_POINTER, _push(encode_pointer(inscription.pointer))]
    if inscription.content_encoding is not None:
        elements += [TAG_CONTENT_ENCODING, _text_tag("content_encoding", inscription.content_encoding)]
    if inscription.metaprotocol is not None:
        elements += [TAG_METAPROTOCOL, _text_tag("metaprotocol", inscription.metaprotocol)]
    if inscription.delegate is not None:
        elements += [TAG_DELEGATE, delegate_bytes(inscription.delegate).hex()]

    if inscription.content:
        elements.append(EMPTY_PUSH)
        elements.extend(chunk.hex() for chunk in chunk_content(bytes(inscription.content)))

    elements.append("OP_ENDIF")
    return elements


def assign_pointers(inscriptions: Sequence[Inscription]) -> List[Inscription]:
    """Return copies where every inscription after the first points past its predecessors.

    Inscription ``i > 0`` gets ``pointer = sum(postage of inscriptions[0..i-1])``.
    The first inscription keeps whatever pointer it was given.
    """

    assigned: List[Inscription] = []
    offset = 0
    for index, inscription in enumerate(inscriptions):
        if index == 0:
            assigned.append(inscription)
        else:
            assigned.append(replace(inscription, pointer=offset))
        offset += inscription.postage
    return assigned


def validate_postage(inscriptions: Iterable[Inscription], params: NetworkParams) -> None:
    for index, inscription in enumerate(inscriptions):
        postage = inscription.postage
        if isinstance(postage, bool) or not isinstance(postage, int) or postage < params.min_postage:
            raise InvalidPostage(
                f"Inscription #{index} postage {postage!r} is below the {params.name} minimum of "
                f"{params.min_postage} sats",
                context={"index": index, "postage": postage, "min_postage": params.min_postage},
            )


@dataclass(frozen=True)
class RevealScript:
    """The reveal tapscript: ``<pubkey> OP_CHECKSIG`` followed by each envelope."""

    public_key: bytes
    inscriptions: tuple
    elements: tuple

    def to_script(self) -> Script:
        return Script(list(self.elements))

    def to_bytes(self) -> bytes:
        return self.to_script().to_bytes()

    def to_hex(self) -> str:
        return self.to_bytes().hex()


def build_reveal_script(
    inscriptions: Sequence[Inscription], public_key: bytes | str, params: NetworkParams
) -> RevealScript:
    """Compose the reveal script for ``inscriptions`` locked to ``public_key``.

    Pointers are assigned on copies (see :func:`assign_pointers`); the returned
    :class:`RevealScript` carries those copies in output order.

    Raises:
        InvalidInscriptionField: If the list is empty or a field cannot be encoded.
        InvalidPostage: If any postage is below ``params.min_postage``.
        InvalidKey: If ``public_key`` is malformed.
    """

    if not inscriptions:
        raise InvalidInscriptionField("At least one inscription is required", stage="reveal_script")

    validate_postage(inscriptions, params)
    key = to_x_only(public_key)

    content_bytes = sum(len(item.content or b"") for item in inscriptions)
    if content_bytes > LARGE_CONTENT_WARNING_BYTES:
        logger.warning(
            "Inscribing %d content bytes; reveal transactions this large may not be relayed",
            content_bytes,
        )

    assigned = assign_pointers(inscriptions)
    elements: List[str] = [key.hex(), "OP_CHECKSIG"]
    for inscription in assigned:
        elements.extend(encode_envelope(inscription))

    logger.debug("Built reveal script with %d inscriptions (%d elements)", len(assigned), len(elements))
    return RevealScript(public_key=key, inscriptions=tuple(assigned), elements=tuple(elements))
