"""Signing wallet contract and an in-process key wallet."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

from bitcoinutils.keys import PrivateKey

from .addresses import address_from_public_key, address_to_script_pub_key, classify_address
from .errors import InvalidKey, NetworkMismatch, SigningRejected
from .network import AddressType, NetworkParams
from .signer import sign_template_inputs, x_only_public_key
from .templates import TransactionTemplate

logger = logging.getLogger(__name__)

SigningHints = Mapping[str, Sequence[int]]


@dataclass(frozen=True)
class WalletCapability:
    """What a wallet can sign beyond its own plain inputs."""

    supports_custom_address_signing: bool = False
    supports_key_path_signing: bool = False


@runtime_checkable
class WalletAdapter(Protocol):
    """Narrow interface the inscription flow needs from a signing wallet.

    ``sign`` and ``sign_batch`` return signed copies; a rejection raises
    :class:`~vermilion_inscriber.errors.SigningRejected`. Wallets without
    batched signing simply do not define ``sign_batch``.
    """

    capability: WalletCapability
    payment_address: str
    ordinals_address: str
    payment_public_key: str
    ordinals_public_key: str

    def sign(self, template: TransactionTemplate, hints: Optional[SigningHints] = None) -> TransactionTemplate:
        ...


@dataclass(frozen=True)
class WalletSnapshot:
    """Read-only copy of a wallet's capability and addresses taken at connect time."""

    capability: WalletCapability
    payment_address: str
    ordinals_address: str
    payment_public_key: str
    ordinals_public_key: str
    payment_address_type: AddressType

    @classmethod
    def from_adapter(cls, wallet: WalletAdapter, params: NetworkParams) -> "WalletSnapshot":
        snapshot = cls(
            capability=wallet.capability,
            payment_address=wallet.payment_address,
            ordinals_address=wallet.ordinals_address,
            payment_public_key=wallet.payment_public_key,
            ordinals_public_key=wallet.ordinals_public_key,
            payment_address_type=classify_address(
                wallet.payment_address, params, wallet.payment_public_key
            ),
        )
        check_wallet_network(snapshot, params)
        return snapshot

    @property
    def addresses(self) -> tuple:
        return (self.payment_address, self.ordinals_address)


def check_wallet_network(snapshot: WalletSnapshot, params: NetworkParams) -> None:
    """Raise :class:`NetworkMismatch` when the wallet's addresses are not on ``params``."""

    for address in snapshot.addresses:
        try:
            address_to_script_pub_key(address, params)
        except NetworkMismatch as exc:
            raise NetworkMismatch(
                f"Wallet is connected to the wrong network (expected {params.name})",
                stage="connect",
                context={"address": address, "network": params.name},
            ) from exc


def signing_hints(template: TransactionTemplate, addresses: Iterable[str]) -> Dict[str, List[int]]:
    """Group the template's input indices by the wallet address that owns them."""

    hints: Dict[str, List[int]] = {address: [] for address in addresses}
    for index, txin in enumerate(template.inputs):
        if txin.owner in hints:
            hints[txin.owner].append(index)
    return hints


class LocalKeyWallet:
    """Wallet backed by one private key held in process.

    The same key backs the payment address (of ``address_type``) and the
    taproot ordinals address. Capability flags are configurable so the CLI
    and tests can drive each signing flow.
    """

    def __init__(
        self,
        private_key: PrivateKey,
        params: NetworkParams,
        *,
        address_type: AddressType = AddressType.P2TR,
        capability: WalletCapability | None = None,
    ) -> None:
        self._key = private_key
        self.params = params
        self.address_type = address_type
        self.capability = capability or WalletCapability(True, True)
        public_key = private_key.get_public_key().to_hex(compressed=True)
        self.payment_public_key = public_key
        self.ordinals_public_key = public_key
        self.payment_address = address_from_public_key(public_key, address_type, params)
        self.ordinals_address = address_from_public_key(public_key, AddressType.P2TR, params)

    @classmethod
    def from_secret_hex(cls, secret_hex: str, params: NetworkParams, **kwargs) -> "LocalKeyWallet":
        try:
            secret = int(secret_hex.strip(), 16)
        except ValueError as exc:
            raise InvalidKey("Wallet secret must be hex", stage="wallet") from exc
        if not 0 < secret < 2**256:
            raise InvalidKey("Wallet secret is out of range", stage="wallet")
        return cls(PrivateKey(secret_exponent=secret), params, **kwargs)

    def _owned_indices(self, template: TransactionTemplate, hints: Optional[SigningHints]) -> List[int]:
        if hints is not None:
            return sorted({index for indices in hints.values() for index in indices})
        own_key = x_only_public_key(self._key)
        indices = []
        for index, txin in enumerate(template.inputs):
            if txin.is_script_path:
                if txin.tap_internal_key == own_key:
                    indices.append(index)
            elif txin.owner in (self.payment_address, self.ordinals_address):
                indices.append(index)
        return indices

    def sign(self, template: TransactionTemplate, hints: Optional[SigningHints] = None) -> TransactionTemplate:
        indices = self._owned_indices(template, hints)
        if not indices:
            raise SigningRejected(f"No inputs of the {template.label or 'given'} transaction belong to this wallet")
        logger.info("Local wallet signing %d inputs of %s", len(indices), template.label or "template")
        return sign_template_inputs(template, self._key, indices)

    def sign_batch(
        self,
        templates: Sequence[TransactionTemplate],
        hints: Optional[Sequence[Optional[SigningHints]]] = None,
    ) -> List[TransactionTemplate]:
        hint_list = list(hints) if hints is not None else [None] * len(templates)
        return [self.sign(template, hint) for template, hint in zip(templates, hint_list)]
