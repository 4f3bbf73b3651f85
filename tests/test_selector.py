import random

import pytest

from conftest import make_tx

from charm_cards.errors import (
    InsufficientFundsError,
    NoEligibleUtxoError,
    TransientNetworkError,
    UpstreamUnavailableError,
)
from charm_cards.lookup import TransactionNotFoundError, TxStatus
from charm_cards.model import UTXO
from charm_cards.selector import UTXOSelector


class StubLookup:
    def __init__(self, utxos, *, statuses=None, hexes=None, fail: bool = False) -> None:
        self.utxos = list(utxos)
        self.statuses = dict(statuses or {})
        self.hexes = dict(hexes or {})
        self.fail = fail

    def get_address_utxos(self, _address):
        if self.fail:
            raise TransientNetworkError("lookup down")
        return list(self.utxos)

    def get_transaction_hex(self, txid):
        if txid not in self.hexes:
            raise TransactionNotFoundError(txid)
        return self.hexes[txid]

    def get_transaction_status(self, txid):
        if txid not in self.statuses:
            raise TransactionNotFoundError(txid)
        return self.statuses[txid]


class StubRPC:
    def __init__(self, prune_height):
        self.prune_height = prune_height
        self.calls = 0

    def get_prune_height(self):
        self.calls += 1
        return self.prune_height


def _funded(parent_txid: str, value: int, height: int | None):
    """Return (utxo, tx hex) for a tx spending ``parent_txid``."""

    tx = make_tx([(parent_txid, 0)], value=value)
    utxo = UTXO(txid=tx.txid, vout=0, value=value, confirmed=height is not None, block_height=height)
    return utxo, tx.to_hex()


def test_single_sufficient_utxo_is_selected() -> None:
    utxo = UTXO(txid="a" * 64, vout=0, value=2000, confirmed=True, block_height=10)
    selector = UTXOSelector(StubLookup([utxo]))

    assert selector.select_funding_utxo("tb1paddr", set(), 1500) == utxo


def test_prefers_confirmed_then_smallest_sufficient() -> None:
    utxos = [
        UTXO("11" * 32, 0, 900, confirmed=False),
        UTXO("22" * 32, 0, 50_000, confirmed=True, block_height=5),
        UTXO("33" * 32, 0, 2_000, confirmed=True, block_height=5),
        UTXO("44" * 32, 0, 1_000, confirmed=True, block_height=5),
        UTXO("55" * 32, 0, 100, confirmed=True, block_height=5),
    ]
    selector = UTXOSelector(StubLookup(utxos))

    assert selector.select_funding_utxo("tb1paddr", minimum_sats=1000).txid == "44" * 32
    assert selector.select_funding_utxo("tb1paddr", minimum_sats=1).txid == "55" * 32

    only_unconfirmed_fits = [UTXO("66" * 32, 0, 5000, confirmed=False), UTXO("77" * 32, 0, 10)]
    selector = UTXOSelector(StubLookup(only_unconfirmed_fits))
    assert selector.select_funding_utxo("tb1paddr", minimum_sats=1000).txid == "66" * 32


def test_excluded_charm_utxo_is_never_chosen() -> None:
    charm = UTXO("aa" * 32, 0, 100_000, confirmed=True, block_height=5)
    fee = UTXO("bb" * 32, 1, 3_000, confirmed=True, block_height=5)
    selector = UTXOSelector(StubLookup([charm, fee]))

    assert selector.select_funding_utxo("tb1paddr", {charm.outpoint}, 1000) == fee

    with pytest.raises(NoEligibleUtxoError):
        selector.select_funding_utxo("tb1paddr", {charm.outpoint, fee.outpoint.upper()}, 1000)


def test_insufficient_funds_reports_shortfall() -> None:
    utxos = [UTXO("aa" * 32, 0, 400, True, 5), UTXO("bb" * 32, 0, 1_200, True, 5)]
    selector = UTXOSelector(StubLookup(utxos))

    with pytest.raises(InsufficientFundsError) as excinfo:
        selector.select_funding_utxo("tb1paddr", minimum_sats=2_000)

    assert excinfo.value.available == 1_200
    assert excinfo.value.shortfall == 800
    assert excinfo.value.to_dict()["shortfall_sats"] == 800


def test_empty_set_and_outage_are_distinct() -> None:
    with pytest.raises(NoEligibleUtxoError):
        UTXOSelector(StubLookup([])).select_funding_utxo("tb1paddr", minimum_sats=1)

    with pytest.raises(UpstreamUnavailableError):
        UTXOSelector(StubLookup([], fail=True)).select_funding_utxo("tb1paddr", minimum_sats=1)


def test_pruned_block_and_ancestors_are_rejected() -> None:
    old_parent, recent_parent, unknown_parent = "01" * 32, "02" * 32, "03" * 32
    statuses = {
        old_parent: TxStatus(True, 90),
        recent_parent: TxStatus(True, 150),
    }
    own_block_pruned, hex_a = _funded(recent_parent, 2_000, 95)
    ancestor_pruned, hex_b = _funded(old_parent, 3_000, 200)
    ancestor_unknown, hex_c = _funded(unknown_parent, 4_000, 200)
    good, hex_d = _funded(recent_parent, 5_000, 200)
    hexes = {
        own_block_pruned.txid: hex_a,
        ancestor_pruned.txid: hex_b,
        ancestor_unknown.txid: hex_c,
        good.txid: hex_d,
    }
    lookup = StubLookup(
        [own_block_pruned, ancestor_pruned, ancestor_unknown, good], statuses=statuses, hexes=hexes
    )
    selector = UTXOSelector(lookup, prune_height=100)

    assert selector.select_funding_utxo("tb1paddr", minimum_sats=1_000) == good

    lookup.utxos.remove(good)
    with pytest.raises(NoEligibleUtxoError):
        selector.select_funding_utxo("tb1paddr", minimum_sats=1_000)


def test_unconfirmed_utxo_still_checks_its_parents() -> None:
    pruned_parent = "04" * 32
    utxo, raw = _funded(pruned_parent, 5_000, None)
    lookup = StubLookup([utxo], statuses={pruned_parent: TxStatus(True, 10)}, hexes={utxo.txid: raw})

    with pytest.raises(NoEligibleUtxoError):
        UTXOSelector(lookup, prune_height=100).select_funding_utxo("tb1paddr", minimum_sats=1)

    lookup.statuses[pruned_parent] = TxStatus(False, None)
    assert UTXOSelector(lookup, prune_height=100).select_funding_utxo("tb1paddr", minimum_sats=1) == utxo


def test_prune_height_is_discovered_from_node_once() -> None:
    utxo, raw = _funded("05" * 32, 5_000, 50)
    rpc = StubRPC(prune_height=60)
    selector = UTXOSelector(
        StubLookup([utxo], statuses={"05" * 32: TxStatus(True, 40)}, hexes={utxo.txid: raw}), rpc=rpc
    )

    with pytest.raises(NoEligibleUtxoError):
        selector.select_funding_utxo("tb1paddr", minimum_sats=1)
    with pytest.raises(NoEligibleUtxoError):
        selector.select_funding_utxo("tb1paddr", minimum_sats=1)
    assert rpc.calls == 1


def test_selection_never_returns_pruned_lineage() -> None:
    rng = random.Random(1234)
    for _ in range(50):
        prune_height = rng.randint(50, 150)
        statuses, hexes, utxos, lineage = {}, {}, [], {}
        for index in range(rng.randint(1, 6)):
            parent = f"{index + 1:02x}" * 32
            parent_height = rng.choice([None, rng.randint(1, 200)])
            statuses[parent] = TxStatus(parent_height is not None, parent_height)
            own_height = rng.choice([None, rng.randint(1, 200)])
            utxo, raw = _funded(parent, rng.randint(100, 10_000), own_height)
            utxos.append(utxo)
            hexes[utxo.txid] = raw
            lineage[utxo.txid] = (own_height, parent_height)
        selector = UTXOSelector(StubLookup(utxos, statuses=statuses, hexes=hexes), prune_height=prune_height)
        try:
            chosen = selector.select_funding_utxo("tb1paddr", minimum_sats=rng.randint(0, 10_000))
        except (NoEligibleUtxoError, InsufficientFundsError):
            continue
        own_height, parent_height = lineage[chosen.txid]
        assert own_height is None or own_height > prune_height
        assert parent_height is None or parent_height > prune_height
