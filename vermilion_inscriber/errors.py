"""Error taxonomy for the inscription pipeline.

Every failure the engine can surface derives from :class:`InscriptionError`.
All of them except :class:`PartialBroadcast` are raised before anything
irreversible happens, so the caller can simply retry the whole flow. Each error
records the pipeline ``stage`` it was raised from and a ``context`` mapping with
the inputs relevant to that stage.
"""

from __future__ import annotations

from typing import Any, Mapping


class InscriptionError(RuntimeError):
    """Base class for failures raised while building or signing inscriptions."""

    default_stage = "unknown"

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage or self.default_stage
        self.context = dict(context or {})

    def __str__(self) -> str:
        return f"[{self.stage}] {self.message}"


class InvalidInscriptionField(InscriptionError):
    """An inscription field cannot be encoded (negative pointer, empty tag value...)."""

    default_stage = "envelope"


class InvalidPostage(InscriptionError):
    """An inscription's postage is below the network's minimum output value."""

    default_stage = "reveal_script"


class InvalidKey(InscriptionError):
    """A public key is malformed or not on the secp256k1 curve."""

    default_stage = "commitment"


class UnsupportedAddressType(InscriptionError):
    """An address could not be parsed or is not one of the supported spend types."""

    default_stage = "address"


class InsufficientFunds(InscriptionError):
    """The candidate UTXOs cannot cover the commit and reveal costs."""

    default_stage = "coin_selection"

    def __init__(
        self,
        message: str,
        *,
        needed: float,
        available: float,
        stage: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        merged = {"needed": needed, "available": available}
        merged.update(context or {})
        super().__init__(message, stage=stage, context=merged)
        self.needed = needed
        self.available = available


class NetworkMismatch(InscriptionError):
    """An address or wallet belongs to a different network than requested."""

    default_stage = "network"


class SigningRejected(InscriptionError):
    """The wallet refused to sign or returned an incomplete signature set."""

    default_stage = "signing"


class BroadcastFailed(InscriptionError):
    """The provider rejected a transaction before anything was accepted."""

    default_stage = "broadcast"


class PartialBroadcast(InscriptionError):
    """The commit transaction is on the network but the reveal is not.

    This state is never recovered automatically. ``commit_txid`` identifies the
    funded commitment output so the reveal can be rebuilt out-of-band.
    """

    default_stage = "broadcast"

    def __init__(
        self,
        message: str,
        *,
        commit_txid: str,
        stage: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        merged = {"commit_txid": commit_txid}
        merged.update(context or {})
        super().__init__(message, stage=stage, context=merged)
        self.commit_txid = commit_txid
