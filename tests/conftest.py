from __future__ import annotations

import json
from typing import Any, Dict, List, Tuple

import pytest

from charm_cards.address import encode_taproot_address
from charm_cards.transaction import Transaction, TxInput, TxOutput

TAPROOT_SCRIPT = bytes.fromhex("5120") + bytes(range(32))


class FakeResponse:
    def __init__(self, status_code: int = 200, json_data: Any = None, text: str | None = None, url: str = ""):
        self.status_code = status_code
        self._json = json_data
        if text is None:
            text = json.dumps(json_data) if json_data is not None else ""
        self.text = text
        self.url = url

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> Any:
        if self._json is None:
            raise ValueError("no json body")
        return self._json


class FakeSession:
    """Route (method, url) pairs to canned responses.

    A route value may be a response, an exception instance to raise, or a
    list consumed one item per call (the last item repeats).
    """

    def __init__(self, routes: Dict[Tuple[str, str], Any] | None = None) -> None:
        self.routes = dict(routes or {})
        self.calls: List[Dict[str, Any]] = []

    def _dispatch(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        if (method, url) not in self.routes:
            return FakeResponse(404, text="not found", url=url)
        outcome = self.routes[(method, url)]
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
        if isinstance(outcome, Exception):
            raise outcome
        outcome.url = url
        return outcome

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._dispatch("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._dispatch("POST", url, **kwargs)

    def calls_to(self, method: str, url: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["method"] == method and call["url"] == url]


def make_tx(
    inputs: List[Tuple[str, int]],
    n_outputs: int = 1,
    *,
    witness: bool = False,
    value: int = 1000,
    locktime: int = 0,
) -> Transaction:
    return Transaction(
        version=2,
        inputs=[
            TxInput(
                prev_txid=txid,
                prev_vout=vout,
                witness=[b"\x01" * 64] if witness else [],
            )
            for txid, vout in inputs
        ],
        outputs=[TxOutput(value=value + i, script_pubkey=TAPROOT_SCRIPT) for i in range(n_outputs)],
        locktime=locktime,
    )


def make_package(witness: bool = True) -> Tuple[Transaction, Transaction]:
    """A commit spending an external outpoint and a spell spending commit output 0."""

    commit = make_tx([("ab" * 32, 1)], n_outputs=2, witness=witness)
    spell = make_tx([(commit.txid, 0), ("cd" * 32, 0)], n_outputs=2, witness=witness)
    return commit, spell


@pytest.fixture
def taproot_address() -> str:
    return encode_taproot_address(bytes(range(32)), "testnet4")


@pytest.fixture
def other_taproot_address() -> str:
    return encode_taproot_address(bytes(range(32, 64)), "testnet4")


@pytest.fixture
def package_pair() -> Tuple[Transaction, Transaction]:
    return make_package()


@pytest.fixture(autouse=True)
def reset_config_path(monkeypatch):
    monkeypatch.setattr("charm_cards.config._CONFIG_PATH_OVERRIDE", None)
