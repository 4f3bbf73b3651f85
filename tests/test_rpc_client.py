import json

import pytest
import requests

from conftest import FakeResponse, FakeSession

from charm_cards.config import RPCConfig
from charm_cards.rpc_client import BitcoinRPCClient, RPCError, RPCTransportError, format_rpc_hint

NODE = "http://127.0.0.1:48332"


def _client(outcome, wallet=None):
    client = BitcoinRPCClient(RPCConfig(user="alice", password="secret", port=48332, wallet=wallet))
    url = f"{NODE}/wallet/{wallet}" if wallet else NODE
    client._session = FakeSession({("POST", url): outcome})
    return client


def test_call_sends_json_rpc_payload() -> None:
    client = _client(FakeResponse(200, {"result": {"pruned": True, "pruneheight": 812}, "error": None}))

    assert client.get_prune_height() == 812

    (call,) = client._session.calls
    payload = json.loads(call["data"])
    assert payload["method"] == "getblockchaininfo"
    assert payload["params"] == []
    assert call["auth"] == ("alice", "secret")


def test_unpruned_node_has_no_prune_height() -> None:
    client = _client(FakeResponse(200, {"result": {"pruned": False}, "error": None}))

    assert client.get_prune_height() is None


def test_wallet_calls_use_wallet_path() -> None:
    client = _client(FakeResponse(200, {"result": "ab" * 32, "error": None}), wallet="cards")

    assert client.sendrawtransaction("00") == "ab" * 32


def test_node_error_body_becomes_rpc_error() -> None:
    client = _client(
        FakeResponse(500, {"result": None, "error": {"code": -26, "message": "min relay fee not met"}})
    )

    with pytest.raises(RPCError) as excinfo:
        client.sendrawtransaction("00")

    assert excinfo.value.code == -26
    assert "minrelaytxfee" in format_rpc_hint(excinfo.value)


@pytest.mark.parametrize(
    "outcome, status",
    [
        (FakeResponse(401, text="Unauthorized"), 401),
        (FakeResponse(503, text="busy"), 503),
        (requests.ConnectionError("refused"), None),
    ],
)
def test_transport_failures(outcome, status) -> None:
    client = _client(outcome)

    with pytest.raises(RPCTransportError) as excinfo:
        client.getblockchaininfo()

    assert excinfo.value.status_code == status


def test_hints_for_common_failures() -> None:
    assert "commit transaction" in format_rpc_hint({"code": -25, "message": "Missing inputs"})
    assert "already confirmed" in format_rpc_hint(RPCError(-27, "Transaction already in block chain"))
    assert format_rpc_hint({"code": -1, "message": "whatever"}) is None
    assert format_rpc_hint(None) is None
