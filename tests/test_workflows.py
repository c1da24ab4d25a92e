from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from bitcoinutils.keys import PrivateKey
from bitcoinutils.transactions import Transaction

from vermilion_inscriber.addresses import address_to_script_pub_key
from vermilion_inscriber.errors import (
    BroadcastFailed,
    InsufficientFunds,
    NetworkMismatch,
    PartialBroadcast,
    SigningRejected,
)
from vermilion_inscriber.network import MAINNET, TESTNET4, AddressType
from vermilion_inscriber.ordinals.inscriptions import Inscription
from vermilion_inscriber.ordinals.workflows import (
    FlowKind,
    FlowState,
    broadcast_inscription,
    create_inscriptions,
    estimate_inscription_fees,
    estimate_reveal_vsize,
    select_flow,
    write_receipt,
)
from vermilion_inscriber.provider_client import ProviderError
from vermilion_inscriber.tx_builder import UTXO
from vermilion_inscriber.wallets import LocalKeyWallet, WalletCapability

FUNDING_TXID = "5e" * 32


class StubProvider:
    def __init__(self, utxos: list[UTXO] | None = None, fee_rate: float = 10.0) -> None:
        self.utxos = utxos if utxos is not None else [UTXO(FUNDING_TXID, 1, 100_000)]
        self.fee_rate = fee_rate
        self.raw_requests: list[str] = []
        self.broadcasts: list[str] = []
        self.packages: list[list[str]] = []
        self.fail_on: set[int] = set()

    def get_fee_rate(self, tier: str | None = None) -> float:
        return self.fee_rate

    def list_confirmed_spendable_outputs(self, address: str) -> list[UTXO]:
        return list(self.utxos)

    def get_raw_previous_transaction(self, txid: str) -> str:
        self.raw_requests.append(txid)
        return "0200000001" + txid

    def broadcast(self, tx_hex: str) -> str:
        self.broadcasts.append(tx_hex)
        if len(self.broadcasts) in self.fail_on:
            raise ProviderError(400, "bad-txns-inputs-missingorspent")
        return "ok"

    def submit_package(self, tx_hexes: list[str]) -> dict:
        self.packages.append(list(tx_hexes))
        if self.fail_on:
            raise ProviderError(400, "package rejected")
        return {"package_msg": "success"}


class RecordingWallet:
    """LocalKeyWallet wrapper that records each signing request."""

    def __init__(
        self,
        address_type: AddressType = AddressType.P2TR,
        capability: WalletCapability | None = None,
        params=TESTNET4,
        reject: tuple[str, ...] = (),
    ) -> None:
        self.inner = LocalKeyWallet(
            PrivateKey(secret_exponent=0xA11CE), params, address_type=address_type, capability=capability
        )
        self.capability = self.inner.capability
        self.payment_address = self.inner.payment_address
        self.ordinals_address = self.inner.ordinals_address
        self.payment_public_key = self.inner.payment_public_key
        self.ordinals_public_key = self.inner.ordinals_public_key
        self.reject = reject
        self.sign_calls: list[str] = []
        self.batch_calls: list[list[str]] = []

    def sign(self, template, hints=None):
        self.sign_calls.append(template.label)
        if template.label in self.reject:
            raise SigningRejected(f"User declined the {template.label}")
        return self.inner.sign(template, hints)

    def sign_batch(self, templates, hints=None):
        self.batch_calls.append([template.label for template in templates])
        return self.inner.sign_batch(templates, hints)


class SingleCallWallet(RecordingWallet):
    sign_batch = None


def _inscribe(wallet: Any, provider: StubProvider | None = None, **options: Any):
    provider = provider or StubProvider()
    options.setdefault("fee_rate", 10)
    return create_inscriptions([Inscription.from_text("hello ordinals")], wallet, TESTNET4, provider, **options)


@pytest.mark.parametrize(
    ("capability", "address_type", "expected"),
    [
        (WalletCapability(True, True), AddressType.P2TR, FlowKind.ONE_SIGN),
        (WalletCapability(True, False), AddressType.P2TR, FlowKind.TWO_SIGN),
        (WalletCapability(False, True), AddressType.P2TR, FlowKind.TWO_SIGN),
        (WalletCapability(False, False), AddressType.P2TR, FlowKind.TWO_SIGN),
        (WalletCapability(True, True), AddressType.P2WPKH, FlowKind.EPHEMERAL),
        (WalletCapability(False, False), AddressType.P2SH_P2WPKH, FlowKind.EPHEMERAL),
        (WalletCapability(False, False), AddressType.P2PKH, FlowKind.EPHEMERAL),
    ],
)
def test_select_flow(capability, address_type, expected) -> None:
    assert select_flow(capability, address_type) is expected


def test_one_sign_flow_signs_both_transactions_in_one_call() -> None:
    wallet = RecordingWallet()
    result = _inscribe(wallet)

    assert result.flow is FlowKind.ONE_SIGN
    assert wallet.batch_calls == [["commit", "reveal"]]
    assert wallet.sign_calls == []
    assert result.states == [
        FlowState.BUILT_SCRIPT,
        FlowState.SIZED,
        FlowState.SELECTED,
        FlowState.COMMIT_BUILT,
        FlowState.ONE_SIGN,
        FlowState.REVEAL_BUILT,
        FlowState.SIGNED,
        FlowState.DONE,
    ]


def test_commit_and_reveal_amounts_for_a_single_funding_output() -> None:
    result = _inscribe(RecordingWallet())

    commit_outputs = [txout.amount for txout in result.commit_tx.outputs]
    assert len(commit_outputs) == 2
    assert commit_outputs[0] == result.reveal_fee
    assert sum(commit_outputs) + result.commit_fee == 100_000
    assert [txout.amount for txout in result.reveal_tx.outputs] == [546]

    reveal_input = result.reveal_tx.inputs[0]
    assert (reveal_input.txid, reveal_input.txout_index) == (result.commit_txid, 0)
    assert [utxo.txid for utxo in result.selection.selected] == [FUNDING_TXID]


def test_reveal_fee_covers_measured_size() -> None:
    wallet = RecordingWallet()
    result = _inscribe(wallet)

    destination = address_to_script_pub_key(wallet.ordinals_address, TESTNET4)
    estimated = estimate_reveal_vsize([Inscription.from_text("hello ordinals")], destination, TESTNET4)
    assert result.reveal_tx.get_vsize() == estimated
    assert result.reveal_fee - 546 >= estimated * 10


def test_ephemeral_flow_signs_only_the_commit() -> None:
    wallet = RecordingWallet(address_type=AddressType.P2WPKH)
    result = _inscribe(wallet)

    assert result.flow is FlowKind.EPHEMERAL
    assert wallet.sign_calls == ["commit"]
    assert wallet.batch_calls == []
    assert FlowState.EPHEMERAL in result.states
    assert result.reveal_tx.inputs[0].txid == result.commit_txid


def test_two_sign_flow_builds_reveal_from_signed_commit() -> None:
    wallet = RecordingWallet(capability=WalletCapability(True, False))
    result = _inscribe(wallet)

    assert result.flow is FlowKind.TWO_SIGN
    assert wallet.sign_calls == ["commit", "reveal"]
    assert result.reveal_tx.inputs[0].txid == result.commit_txid


def test_one_sign_falls_back_without_batch_support() -> None:
    wallet = SingleCallWallet()
    result = _inscribe(wallet)

    assert result.flow is FlowKind.TWO_SIGN
    assert wallet.sign_calls == ["commit", "reveal"]


def test_legacy_wallet_fetches_previous_transactions() -> None:
    provider = StubProvider()
    result = _inscribe(RecordingWallet(address_type=AddressType.P2PKH), provider)

    assert result.flow is FlowKind.EPHEMERAL
    assert provider.raw_requests == [FUNDING_TXID]
    assert result.commit_tx.has_segwit is False


def test_custom_destination_receives_the_inscription() -> None:
    other = LocalKeyWallet(PrivateKey(secret_exponent=0xB0B), TESTNET4)
    result = _inscribe(RecordingWallet(), destination_address=other.ordinals_address)

    expected = address_to_script_pub_key(other.ordinals_address, TESTNET4)
    assert result.reveal_tx.outputs[0].script_pubkey.to_hex() == expected.to_hex()


def test_excluded_outpoints_are_not_spent() -> None:
    provider = StubProvider([UTXO("aa" * 32, 0, 80_000), UTXO("bb" * 32, 0, 80_000)])
    result = _inscribe(RecordingWallet(), provider, exclude_outpoints=[f"{'aa' * 32}:0"])

    assert [utxo.txid for utxo in result.selection.selected] == ["bb" * 32]


def test_fee_rate_comes_from_provider_when_not_given(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("VERMILION_MIN_FEE_RATE_SATVB", raising=False)
    result = _inscribe(RecordingWallet(), StubProvider(fee_rate=3), fee_rate=None)
    assert result.fee_rate == 3.0


def test_insufficient_funds_stop_before_signing() -> None:
    wallet = RecordingWallet()
    with pytest.raises(InsufficientFunds):
        _inscribe(wallet, StubProvider([UTXO("aa" * 32, 0, 2_000)]))
    assert wallet.sign_calls == [] and wallet.batch_calls == []


def test_wallet_on_another_network_is_rejected() -> None:
    with pytest.raises(NetworkMismatch):
        _inscribe(RecordingWallet(params=MAINNET))


def test_declined_reveal_after_commit_handoff_is_partial_broadcast() -> None:
    handed_off: list[tuple[str, str]] = []
    wallet = RecordingWallet(capability=WalletCapability(False, False), reject=("reveal",))

    with pytest.raises(PartialBroadcast) as excinfo:
        _inscribe(wallet, on_commit_signed=lambda tx_hex, txid: handed_off.append((tx_hex, txid)))

    assert len(handed_off) == 1
    assert excinfo.value.commit_txid == handed_off[0][1]
    assert excinfo.value.stage == "reveal"


def test_rejected_commit_handoff_is_a_broadcast_failure() -> None:
    wallet = RecordingWallet(capability=WalletCapability(False, False))

    def reject_commit(tx_hex: str, txid: str) -> None:
        raise ProviderError(400, "bad-txns-inputs-missingorspent")

    with pytest.raises(BroadcastFailed) as excinfo:
        _inscribe(wallet, on_commit_signed=reject_commit)

    assert not isinstance(excinfo.value, PartialBroadcast)
    assert excinfo.value.stage == "broadcast"
    assert "commit_txid" in excinfo.value.context
    assert wallet.sign_calls == ["commit"]


def test_declined_reveal_without_handoff_is_a_plain_rejection() -> None:
    wallet = RecordingWallet(capability=WalletCapability(False, False), reject=("reveal",))
    with pytest.raises(SigningRejected):
        _inscribe(wallet)


def test_package_broadcast() -> None:
    provider = StubProvider()
    result = _inscribe(RecordingWallet(), provider)

    txids = broadcast_inscription(provider, result)

    assert provider.packages == [[result.commit_tx_hex, result.reveal_tx_hex]]
    assert txids == {"commit_txid": result.commit_txid, "reveal_txid": result.reveal_txid}


def test_rejected_package_is_a_broadcast_failure() -> None:
    provider = StubProvider()
    result = _inscribe(RecordingWallet(), provider)
    provider.fail_on = {1}

    with pytest.raises(BroadcastFailed):
        broadcast_inscription(provider, result)


def test_sequential_broadcast_reports_partial_failure() -> None:
    provider = StubProvider()
    result = _inscribe(RecordingWallet(), provider)
    provider.fail_on = {2}

    with pytest.raises(PartialBroadcast) as excinfo:
        broadcast_inscription(provider, result, package=False)

    assert provider.broadcasts == [result.commit_tx_hex, result.reveal_tx_hex]
    assert excinfo.value.commit_txid == result.commit_txid


def test_sequential_commit_failure_sends_nothing_else() -> None:
    provider = StubProvider()
    result = _inscribe(RecordingWallet(), provider)
    provider.fail_on = {1}

    with pytest.raises(BroadcastFailed):
        broadcast_inscription(provider, result, package=False)
    assert provider.broadcasts == [result.commit_tx_hex]


def test_sequential_broadcast_skips_commit_already_handed_off() -> None:
    provider = StubProvider()
    result = _inscribe(
        RecordingWallet(capability=WalletCapability(False, False)),
        provider,
        on_commit_signed=lambda tx_hex, txid: None,
    )
    assert result.commit_broadcast is True

    broadcast_inscription(provider, result, package=False)
    assert provider.broadcasts == [result.reveal_tx_hex]


def test_estimate_reveal_vsize_measures_a_signed_reveal() -> None:
    destination = address_to_script_pub_key(RecordingWallet().ordinals_address, TESTNET4)

    small = estimate_reveal_vsize([Inscription.from_text("hi")], destination, TESTNET4)
    large = estimate_reveal_vsize([Inscription.from_text("hi" * 600)], destination, TESTNET4)

    # Witness bytes count a quarter, so 1,198 extra content bytes add about 300 vB.
    assert 100 < small < large
    assert 290 <= large - small <= 310


def test_signed_reveal_survives_reparsing() -> None:
    inscriptions = [
        Inscription(content=bytes(range(256)) * 3, content_type="application/octet-stream"),
        Inscription.from_text("second", postage=700),
    ]
    provider = StubProvider()
    result = create_inscriptions(inscriptions, RecordingWallet(), TESTNET4, provider, fee_rate=10)
    reveal = result.reveal_tx

    parsed = Transaction.from_raw(reveal.serialize())

    assert parsed.serialize() == reveal.serialize()
    assert parsed.get_txid() == reveal.get_txid()
    assert parsed.get_vsize() == reveal.get_vsize()
    assert [(txin.txid, txin.txout_index) for txin in parsed.inputs] == [(result.commit_txid, 0)]
    assert [txout.amount for txout in parsed.outputs] == [546, 700]
    assert [txout.script_pubkey.to_hex() for txout in parsed.outputs] == [
        txout.script_pubkey.to_hex() for txout in reveal.outputs
    ]
    assert parsed.witnesses[0].stack == reveal.witnesses[0].stack


def test_estimate_inscription_fees_figures() -> None:
    destination = address_to_script_pub_key(RecordingWallet().ordinals_address, TESTNET4)
    estimate = estimate_inscription_fees(
        [Inscription.from_text("hello ordinals")], destination, 2.0, AddressType.P2WPKH, TESTNET4
    )

    assert estimate["commit_fixed_fee"] == 193.0
    assert estimate["commit_fee_per_input"] == 136.0
    assert estimate["target"] == estimate["reveal_fee"] + 193.0
    assert estimate["reveal_fee"] == estimate["reveal_vsize"] * 2 + 546


def test_write_receipt(tmp_path: Path) -> None:
    result = _inscribe(RecordingWallet())
    path = write_receipt(tmp_path / "receipts" / "hello.json", result, {"network": "testnet4"})

    receipt = json.loads(path.read_text())
    assert receipt["flow"] == "one_sign"
    assert receipt["commit_txid"] == result.commit_txid
    assert receipt["inscriptions"] == [f"{result.reveal_txid}i0"]
    assert receipt["reveal_tx_hex"] == result.reveal_tx_hex
    assert receipt["network"] == "testnet4"
