"""Bitcoin ordinals inscriber: commit/reveal construction and signing flows."""

from .errors import (
    BroadcastFailed,
    InscriptionError,
    InsufficientFunds,
    InvalidInscriptionField,
    InvalidKey,
    InvalidPostage,
    NetworkMismatch,
    PartialBroadcast,
    SigningRejected,
    UnsupportedAddressType,
)
from .network import NETWORKS, AddressType, NetworkParams, get_network
from .ordinals.inscriptions import Inscription
from .ordinals.workflows import (
    FlowKind,
    FlowState,
    InscriptionResult,
    broadcast_inscription,
    create_inscriptions,
    select_flow,
)
from .wallets import LocalKeyWallet, WalletCapability, WalletSnapshot

__all__ = [
    "AddressType",
    "BroadcastFailed",
    "FlowKind",
    "FlowState",
    "Inscription",
    "InscriptionError",
    "InscriptionResult",
    "InsufficientFunds",
    "InvalidInscriptionField",
    "InvalidKey",
    "InvalidPostage",
    "LocalKeyWallet",
    "NETWORKS",
    "NetworkMismatch",
    "NetworkParams",
    "PartialBroadcast",
    "SigningRejected",
    "UnsupportedAddressType",
    "WalletCapability",
    "WalletSnapshot",
    "broadcast_inscription",
    "create_inscriptions",
    "get_network",
    "select_flow",
]
