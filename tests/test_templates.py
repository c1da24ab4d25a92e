from __future__ import annotations

import logging

import pytest
from bitcoinutils.keys import PrivateKey
from bitcoinutils.transactions import Transaction

from vermilion_inscriber.addresses import address_from_public_key, address_to_script_pub_key, p2wpkh_redeem_script
from vermilion_inscriber.errors import SigningRejected
from vermilion_inscriber.network import TESTNET4, AddressType
from vermilion_inscriber.ordinals.taproot_builder import to_x_only
from vermilion_inscriber.signer import sign_template_inputs
from vermilion_inscriber.templates import TransactionTemplate, finalize_template

KEY = PrivateKey(secret_exponent=0xC0FFEE)
PUBLIC_KEY = KEY.get_public_key().to_hex()


def _template(address_type: AddressType, count: int = 2) -> TransactionTemplate:
    address = address_from_public_key(PUBLIC_KEY, address_type, TESTNET4)
    script = address_to_script_pub_key(address, TESTNET4)
    funding: dict = {"address_type": address_type, "owner": address}
    if address_type is AddressType.P2TR:
        funding["tap_internal_key"] = to_x_only(PUBLIC_KEY)
    elif address_type is AddressType.P2SH_P2WPKH:
        funding["redeem_script"] = p2wpkh_redeem_script(PUBLIC_KEY)

    template = TransactionTemplate(label="test")
    for vout in range(count):
        template.add_input("ab" * 32, vout, 10_000, script, **funding)
    template.add_output(15_000, script, address)
    return template


@pytest.mark.parametrize(
    "address_type", [AddressType.P2TR, AddressType.P2WPKH, AddressType.P2SH_P2WPKH, AddressType.P2PKH]
)
def test_finalized_transaction_survives_serialization(address_type: AddressType) -> None:
    template = _template(address_type)
    signed = sign_template_inputs(template, KEY, range(len(template.inputs)))
    tx = finalize_template(signed)

    parsed = Transaction.from_raw(tx.serialize())
    assert len(parsed.inputs) == 2
    assert len(parsed.outputs) == 1
    assert parsed.get_txid() == tx.get_txid()
    assert parsed.get_vsize() == tx.get_vsize()


def test_segwit_txid_is_known_before_signing() -> None:
    template = _template(AddressType.P2TR)
    signed = sign_template_inputs(template, KEY, [0, 1])
    assert finalize_template(signed).get_txid() == template.unsigned_txid()


def test_finalize_measures_size_only_for_debug_logging(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    signed = sign_template_inputs(_template(AddressType.P2WPKH), KEY, [0, 1])
    measured: list[int] = []
    original_get_vsize = Transaction.get_vsize

    def counting_get_vsize(self):
        measured.append(1)
        return original_get_vsize(self)

    monkeypatch.setattr(Transaction, "get_vsize", counting_get_vsize)

    caplog.set_level(logging.INFO, logger="vermilion_inscriber.templates")
    finalize_template(signed)
    assert measured == []

    caplog.set_level(logging.DEBUG, logger="vermilion_inscriber.templates")
    finalize_template(signed)
    assert measured == [1]
    assert "Finalized test transaction" in caplog.text


def test_signing_returns_a_copy() -> None:
    template = _template(AddressType.P2WPKH)
    signed = sign_template_inputs(template, KEY, [0])

    assert signed.inputs[0].is_signed
    assert not template.inputs[0].is_signed
    assert signed.inputs[0].partial_sig[1] == PUBLIC_KEY


def test_unsigned_inputs_block_finalization() -> None:
    template = _template(AddressType.P2WPKH)
    partially_signed = sign_template_inputs(template, KEY, [0])

    with pytest.raises(SigningRejected) as excinfo:
        finalize_template(partially_signed)
    assert excinfo.value.context["input"] == 1


def test_nested_segwit_carries_redeem_script_in_script_sig() -> None:
    template = _template(AddressType.P2SH_P2WPKH, count=1)
    tx = finalize_template(sign_template_inputs(template, KEY, [0]))

    redeem = p2wpkh_redeem_script(PUBLIC_KEY)
    assert tx.inputs[0].script_sig.to_hex() == "16" + redeem.to_hex()
    assert len(tx.witnesses[0].stack) == 2


def test_legacy_only_transactions_have_no_witness() -> None:
    template = _template(AddressType.P2PKH, count=1)
    tx = finalize_template(sign_template_inputs(template, KEY, [0]))

    assert tx.has_segwit is False
    assert tx.get_vsize() == tx.get_size()


def test_summary_and_fee() -> None:
    template = _template(AddressType.P2TR)
    summary = template.summary()

    assert summary["fee"] == 5_000
    assert summary["inputs"] == [f"{'ab' * 32}:0", f"{'ab' * 32}:1"]
    assert summary["outputs"][0]["value"] == 15_000
