from __future__ import annotations

import itertools
import random

import pytest
from bitcoinutils.keys import PrivateKey

from vermilion_inscriber.addresses import address_from_public_key, create_taproot_address
from vermilion_inscriber.errors import InsufficientFunds, InvalidInscriptionField, UnsupportedAddressType
from vermilion_inscriber.network import TESTNET4, AddressType
from vermilion_inscriber.ordinals.inscriptions import Inscription, build_reveal_script
from vermilion_inscriber.ordinals.taproot_builder import compute_tap_commitment, to_x_only
from vermilion_inscriber.tx_builder import (
    UTXO,
    CoinSelection,
    branch_and_bound,
    build_commit_template,
    build_reveal_template,
    select_utxos,
    with_effective_values,
)


def _utxos(values: list[int]) -> list[UTXO]:
    return [UTXO(f"{index:064x}", index, value, effective_value=value) for index, value in enumerate(values)]


def _effective(selection: CoinSelection) -> list[float]:
    return [utxo.effective_value for utxo in selection.selected]


def test_exact_match_wins_first() -> None:
    selection = select_utxos(_utxos([1000, 3000, 5000]), 3000)
    assert selection.strategy == "exact"
    assert _effective(selection) == [3000]
    assert selection.waste == 0


def test_branch_and_bound_minimizes_waste() -> None:
    selection = select_utxos(_utxos([5000, 1000, 3500, 2000]), 4400)
    assert selection.strategy == "branch_and_bound"
    assert _effective(selection) == [1000, 3500]
    assert selection.waste == 100


def test_exhausted_search_falls_back_to_accumulate(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level("WARNING")
    selection = select_utxos(_utxos([1000, 2000, 3500, 5000]), 4400, max_tries=1)
    assert selection.strategy == "accumulate"
    assert _effective(selection) == [1000, 2000, 3500]
    assert "Branch-and-bound stopped" in caplog.text


def test_branch_and_bound_returns_none_when_unreachable() -> None:
    assert branch_and_bound(_utxos([100, 200]), 1000) is None


def test_insufficient_funds_reports_needed_and_available() -> None:
    with pytest.raises(InsufficientFunds) as excinfo:
        select_utxos(_utxos([1000, 2000]), 3001)
    assert excinfo.value.needed == 3001
    assert excinfo.value.available == 3000
    assert excinfo.value.stage == "coin_selection"


def test_outputs_worth_less_than_their_input_fee_are_dropped() -> None:
    utxos = with_effective_values(
        [UTXO("aa" * 32, 0, 500), UTXO("bb" * 32, 0, 9000)], AddressType.P2PKH, 5, TESTNET4
    )
    assert utxos[0].effective_value == 500 - 740

    selection = select_utxos(utxos, 8000)
    assert [utxo.txid for utxo in selection.selected] == ["bb" * 32]
    with pytest.raises(InsufficientFunds):
        select_utxos(utxos, 8300)


def test_missing_effective_values_are_rejected() -> None:
    with pytest.raises(ValueError):
        select_utxos([UTXO("aa" * 32, 0, 1000)], 10)


@pytest.mark.parametrize("seed", range(25))
def test_selection_always_covers_target_and_ignores_input_order(seed: int) -> None:
    rng = random.Random(seed)
    utxos = _utxos([rng.randint(600, 50_000) for _ in range(8)])
    target = rng.randint(1000, sum(utxo.value for utxo in utxos))

    selection = select_utxos(utxos, target)
    assert selection.effective_total >= target

    shuffled = list(utxos)
    rng.shuffle(shuffled)
    assert select_utxos(shuffled, target) == selection


def _reachable_min_waste(values: list[int], target: int) -> int | None:
    """Least waste over subsets the depth-limited search can reach.

    A subset is reached when no proper prefix already covers ``target`` and,
    after each of its first k-1 picks, no more candidates have been taken than
    remain after the last pick.
    """

    count = len(values)
    best = None
    for size in range(1, count + 1):
        for chosen in itertools.combinations(range(count), size):
            sums = list(itertools.accumulate(values[index] for index in chosen))
            if sums[-1] < target or any(partial >= target for partial in sums[:-1]):
                continue
            if any(depth > count - (chosen[depth - 1] + 1) for depth in range(1, size)):
                continue
            waste = sums[-1] - target
            best = waste if best is None else min(best, waste)
    return best


@pytest.mark.parametrize("seed", range(30))
def test_branch_and_bound_matches_brute_force_over_reachable_subsets(seed: int) -> None:
    rng = random.Random(1000 + seed)
    values = sorted(rng.randint(500, 20_000) for _ in range(rng.randint(3, 10)))
    target = rng.randint(500, sum(values))

    chosen = branch_and_bound(_utxos(values), target, max_tries=None)

    expected = _reachable_min_waste(values, target)
    if expected is None:
        assert chosen is None
    else:
        assert chosen is not None
        assert sum(utxo.effective_value for utxo in chosen) - target == expected


def _commit_fixture(address_type: AddressType = AddressType.P2WPKH):
    key = PrivateKey(secret_exponent=0x5EED)
    public_key = key.get_public_key().to_hex()
    internal_key = to_x_only(public_key)
    reveal = build_reveal_script([Inscription.from_text("fixture")], internal_key, TESTNET4)
    commitment = compute_tap_commitment(reveal, internal_key)
    return {
        "address_type": address_type,
        "payment_address": address_from_public_key(public_key, address_type, TESTNET4),
        "payment_public_key": public_key,
        "commitment": commitment,
        "commit_address": create_taproot_address(commitment.tweaked_public_key, TESTNET4),
        "params": TESTNET4,
    }, reveal


def _selection(value: int) -> CoinSelection:
    return CoinSelection(selected=(UTXO("cd" * 32, 1, value, effective_value=value - 680),), target=0, strategy="exact")


def test_commit_template_pays_commitment_then_change() -> None:
    fixture, _ = _commit_fixture()
    template = build_commit_template(_selection(20_000), reveal_fee=2_000, commit_fee=1_645, **fixture)

    assert [output.value for output in template.outputs] == [2_000, 16_355]
    assert template.outputs[0].script_pub_key.to_hex() == fixture["commitment"].output_script.to_hex()
    assert template.outputs[1].address == fixture["payment_address"]
    assert template.fee == 1_645
    assert template.inputs[0].owner == fixture["payment_address"]


def test_commit_template_drops_dust_change() -> None:
    fixture, _ = _commit_fixture()
    template = build_commit_template(_selection(4_000), reveal_fee=2_000, commit_fee=1_455, **fixture)

    assert len(template.outputs) == 1
    assert template.fee == 2_000


def test_commit_template_rejects_negative_change() -> None:
    fixture, _ = _commit_fixture()
    with pytest.raises(InsufficientFunds):
        build_commit_template(_selection(3_000), reveal_fee=2_000, commit_fee=1_455, **fixture)


def test_p2pkh_inputs_need_previous_transactions() -> None:
    fixture, _ = _commit_fixture(AddressType.P2PKH)
    with pytest.raises(UnsupportedAddressType):
        build_commit_template(_selection(20_000), reveal_fee=2_000, commit_fee=2_000, **fixture)

    template = build_commit_template(
        _selection(20_000),
        reveal_fee=2_000,
        commit_fee=2_000,
        previous_transactions={"cd" * 32: "0200"},
        **fixture,
    )
    assert template.inputs[0].non_witness_utxo == "0200"
    assert not template.inputs[0].has_witness


def test_reveal_template_spends_commit_output_zero() -> None:
    fixture, reveal = _commit_fixture()
    destination = fixture["commitment"].output_script
    template = build_reveal_template(reveal, fixture["commitment"], "ef" * 32, 2_000, destination)

    txin = template.inputs[0]
    assert (txin.txid, txin.vout, txin.value) == ("ef" * 32, 0, 2_000)
    assert txin.is_script_path
    assert txin.tap_control_block == fixture["commitment"].control_block
    assert [output.value for output in template.outputs] == [546]


@pytest.mark.parametrize("txid", ["", "ef" * 31, "zz" * 32])
def test_reveal_template_rejects_bad_commit_txid(txid: str) -> None:
    fixture, reveal = _commit_fixture()
    with pytest.raises(InvalidInscriptionField) as excinfo:
        build_reveal_template(reveal, fixture["commitment"], txid, 2_000, fixture["commitment"].output_script)
    assert excinfo.value.stage == "reveal_template"
