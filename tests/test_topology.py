import pytest

from conftest import make_tx

from charm_cards.errors import TopologyError
from charm_cards.topology import ensure_valid_topology, validate_topology


def test_spell_spending_commit_output_is_valid(package_pair) -> None:
    commit, spell = package_pair

    result = validate_topology(commit.to_hex(), spell.to_hex())

    assert result.valid
    assert result.matching_inputs == 1
    assert result.diagnostics["matching_outpoints"] == [f"{commit.txid}:0"]
    assert result.diagnostics["commit_txid"] == commit.txid
    assert result.diagnostics["spell_inputs"] == 2


def test_swapped_pair_is_reported(package_pair) -> None:
    commit, spell = package_pair

    result = validate_topology(spell.to_hex(), commit.to_hex())

    assert not result.valid
    assert result.swapped
    assert result.reason.startswith("transactions are swapped")


def test_unrelated_pair_is_invalid() -> None:
    first = make_tx([("11" * 32, 0)])
    second = make_tx([("22" * 32, 0)])

    result = validate_topology(first.to_hex(), second.to_hex())

    assert not result.valid
    assert not result.swapped
    assert result.matching_inputs == 0
    assert result.diagnostics["commit_output_outpoints"] == [f"{first.txid}:0"]
    assert result.diagnostics["spell_input_outpoints"] == ["22" * 32 + ":0"]


def test_spending_a_missing_commit_output_is_invalid(package_pair) -> None:
    commit, _ = package_pair
    spell = make_tx([(commit.txid, 5)])

    assert not validate_topology(commit.to_hex(), spell.to_hex()).valid


def test_unparseable_transaction_is_invalid(package_pair) -> None:
    commit, _ = package_pair

    result = validate_topology(commit.to_hex(), "deadbeef")

    assert not result.valid
    assert "spell transaction could not be parsed" in result.reason


def test_ensure_valid_topology_raises(package_pair) -> None:
    commit, spell = package_pair
    assert ensure_valid_topology(commit.to_hex(), spell.to_hex()).valid

    with pytest.raises(TopologyError) as excinfo:
        ensure_valid_topology(spell.to_hex(), commit.to_hex())

    assert excinfo.value.swapped is True
    assert excinfo.value.http_status == 502
    assert excinfo.value.to_dict()["swapped"] is True
