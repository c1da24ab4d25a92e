"""Immutable per-network parameters.

Every component receives a :class:`NetworkParams` value explicitly; nothing in
the package looks networks up from module state at build time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from .config import ConfigurationError


class AddressType(str, Enum):
    """Spend types a payment address may have."""

    P2TR = "P2TR"
    P2WPKH = "P2WPKH"
    P2SH_P2WPKH = "P2SH-P2WPKH"
    P2PKH = "P2PKH"


# Virtual bytes contributed by one input of each spend type: outpoint,
# sequence and script length (40 + 1), plus the scriptSig/witness payload.
# https://bitcoin.stackexchange.com/questions/84004
DEFAULT_INPUT_WEIGHTS: Mapping[AddressType, float] = MappingProxyType(
    {
        AddressType.P2TR: 40 + 1 + 66 / 4,
        AddressType.P2WPKH: 40 + 1 + 108 / 4,
        AddressType.P2SH_P2WPKH: 40 + 24 + 108 / 4,
        AddressType.P2PKH: 40 + 108,
    }
)

# Transaction header (10.5 vB) and two taproot-sized outputs (43 vB each).
COMMIT_HEADER_VBYTES = 10.5
COMMIT_OUTPUT_VBYTES = 43
COMMIT_OUTPUT_COUNT = 2

DUST_THRESHOLD_SATS = 546
DEFAULT_POSTAGE_SATS = 546
CARDINAL_MIN_VALUE_SATS = 1000


@dataclass(frozen=True)
class NetworkParams:
    """Constants describing one ledger network."""

    name: str
    bech32_hrp: str
    p2pkh_version: int
    p2sh_version: int
    api_base_url: str | None
    dust_threshold: int = DUST_THRESHOLD_SATS
    min_postage: int = DEFAULT_POSTAGE_SATS
    cardinal_min_value: int = CARDINAL_MIN_VALUE_SATS
    commit_header_vbytes: float = COMMIT_HEADER_VBYTES
    commit_output_vbytes: float = COMMIT_OUTPUT_VBYTES
    commit_output_count: int = COMMIT_OUTPUT_COUNT
    input_weights: Mapping[AddressType, float] = field(
        default_factory=lambda: DEFAULT_INPUT_WEIGHTS
    )

    def input_weight(self, address_type: AddressType) -> float:
        return self.input_weights[address_type]

    @property
    def commit_fixed_vbytes(self) -> float:
        return self.commit_header_vbytes + self.commit_output_count * self.commit_output_vbytes


MAINNET = NetworkParams(
    name="mainnet",
    bech32_hrp="bc",
    p2pkh_version=0x00,
    p2sh_version=0x05,
    api_base_url="https://mempool.space/api",
)
TESTNET = NetworkParams(
    name="testnet",
    bech32_hrp="tb",
    p2pkh_version=0x6F,
    p2sh_version=0xC4,
    api_base_url="https://mempool.space/testnet/api",
)
TESTNET4 = NetworkParams(
    name="testnet4",
    bech32_hrp="tb",
    p2pkh_version=0x6F,
    p2sh_version=0xC4,
    api_base_url="https://mempool.space/testnet4/api",
)
SIGNET = NetworkParams(
    name="signet",
    bech32_hrp="tb",
    p2pkh_version=0x6F,
    p2sh_version=0xC4,
    api_base_url="https://mempool.space/signet/api",
)
REGTEST = NetworkParams(
    name="regtest",
    bech32_hrp="bcrt",
    p2pkh_version=0x6F,
    p2sh_version=0xC4,
    api_base_url=None,
)

NETWORKS: Mapping[str, NetworkParams] = MappingProxyType(
    {params.name: params for params in (MAINNET, TESTNET, TESTNET4, SIGNET, REGTEST)}
)


def get_network(name: str) -> NetworkParams:
    """Return the parameters for ``name`` or raise :class:`ConfigurationError`."""

    try:
        return NETWORKS[name.strip().lower()]
    except KeyError as exc:
        known = ", ".join(sorted(NETWORKS))
        raise ConfigurationError(f"Unknown network '{name}'; expected one of: {known}") from exc
