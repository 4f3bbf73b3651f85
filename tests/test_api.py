import pytest

from charm_cards.api import create_app
from charm_cards.config import ServiceConfig
from charm_cards.errors import (
    BroadcastFailedError,
    InsufficientFundsError,
    PartialBroadcastError,
    ProverRejectedError,
    TopologyError,
    UpstreamUnavailableError,
)
from charm_cards.model import BroadcastAttempt, AttemptOutcome

APP_VK = "0f" * 32
APP_ID = "1e" * 32
NFT = {
    "brand": "Acme",
    "image": "",
    "initial_amount": 2500,
    "expiration_date": 1_900_000_000,
    "created_at": 1_700_000_000,
    "remaining_balance": 2500,
}


class StubResult:
    def __init__(self, params) -> None:
        self.params = params

    def to_response(self):
        return {
            "spell": {"version": 8},
            "proof": {"commit_txid": "aa" * 32, "spell_txid": "bb" * 32, "broadcasted": True},
        }


class StubService:
    def __init__(self, error=None, **config) -> None:
        self.config = ServiceConfig.for_network("testnet4", **config)
        self.error = error
        self.calls = []

    def _handle(self, name, params, funding_address=None):
        self.calls.append((name, params, funding_address))
        if self.error is not None:
            raise self.error
        return StubResult(params)

    def mint(self, params):
        return self._handle("mint", params)

    def transfer(self, params, funding_address=None):
        return self._handle("transfer", params, funding_address)

    def redeem(self, params, funding_address=None):
        return self._handle("redeem", params, funding_address)


def _client(service, **kwargs):
    app = create_app(service, **kwargs)
    return app.test_client()


def _mint_body(address):
    return {
        "inUtxo": "aa" * 32 + ":0",
        "recipientAddress": address,
        "brand": "Acme",
        "initialAmount": "2500",
        "appVk": APP_VK,
        "image": "https://cdn.example/card.png",
    }


def test_health_reports_network() -> None:
    response = _client(StubService()).get("/health")

    assert response.status_code == 200
    assert response.get_json() == {"status": "ok", "network": "testnet4"}


def test_mint_maps_request_fields(taproot_address) -> None:
    service = StubService(output_sats=1500)

    response = _client(service).post("/mint", json=_mint_body(taproot_address))

    assert response.status_code == 200
    assert response.get_json()["proof"]["broadcasted"] is True
    name, params, _ = service.calls[0]
    assert name == "mint"
    assert params.minting_utxo == "aa" * 32 + ":0"
    assert params.amount_cents == 2500
    assert params.image == "https://cdn.example/card.png"
    assert params.output_sats == 1500


def test_mint_falls_back_to_configured_vk(taproot_address) -> None:
    service = StubService(app_vk="ee" * 32)
    body = _mint_body(taproot_address)
    del body["appVk"]

    assert _client(service).post("/mint", json=body).status_code == 200
    assert service.calls[0][1].app_vk == "ee" * 32

    response = _client(StubService()).post("/mint", json=body)
    assert response.status_code == 400
    assert "appVk" in response.get_json()["error"]


@pytest.mark.parametrize(
    "body, message",
    [
        (None, "JSON object"),
        ({"recipientAddress": "tb1p"}, "inUtxo"),
        ({"inUtxo": "x", "recipientAddress": "tb1p", "brand": "b", "initialAmount": 1.5}, "initialAmount"),
    ],
)
def test_bad_requests_are_rejected(body, message) -> None:
    client = _client(StubService(app_vk=APP_VK))

    response = client.post("/mint", json=body) if body is not None else client.post("/mint", data="nope")

    assert response.status_code == 400
    assert message in response.get_json()["error"]


def test_transfer_defaults_balance_from_nft(taproot_address, other_taproot_address) -> None:
    service = StubService()
    body = {
        "cardUtxo": "cc" * 32 + ":1",
        "appId": APP_ID,
        "appVk": APP_VK,
        "nft": NFT,
        "amount": 1000,
        "recipientAddress": other_taproot_address,
        "changeAddress": taproot_address,
        "fundingAddress": "tb1pfunding",
    }

    response = _client(service).post("/transfer", json=body)

    assert response.status_code == 200
    name, params, funding_address = service.calls[0]
    assert name == "transfer"
    assert params.current_balance == 2500
    assert params.nft.brand == "Acme"
    assert funding_address == "tb1pfunding"


def test_redeem_requires_nft(taproot_address) -> None:
    body = {"cardUtxo": "cc" * 32 + ":1", "appId": APP_ID, "amount": 100, "changeAddress": taproot_address}

    response = _client(StubService(app_vk=APP_VK)).post("/redeem", json=body)

    assert response.status_code == 400
    assert "nft" in response.get_json()["error"]


@pytest.mark.parametrize(
    "error, status",
    [
        (InsufficientFundsError("too poor", required=3000, available=1000), 400),
        (ProverRejectedError("rejected", status_code=422, prover_message="nope"), 422),
        (UpstreamUnavailableError("prover down"), 503),
        (TopologyError("bad pair", swapped=True), 502),
        (BroadcastFailedError("commit refused", stage="commit"), 502),
        (PartialBroadcastError("spell refused", commit_txid="aa" * 32), 502),
    ],
)
def test_engine_errors_map_to_status(taproot_address, error, status) -> None:
    response = _client(StubService(error=error)).post("/mint", json=_mint_body(taproot_address))

    assert response.status_code == status
    payload = response.get_json()
    assert payload["status"] == status
    assert payload["error"] == error.message
    assert "debug" not in payload


def test_partial_broadcast_exposes_commit_txid_and_debug(taproot_address) -> None:
    attempt = BroadcastAttempt("esplora", "https://x/tx", AttemptOutcome.TRANSIENT_ERROR, reason="reset")
    error = PartialBroadcastError("spell refused", commit_txid="aa" * 32, attempts=[attempt])

    response = _client(StubService(error=error), debug_errors=True).post(
        "/mint", json=_mint_body(taproot_address)
    )

    payload = response.get_json()
    assert payload["commit_txid"] == "aa" * 32
    assert payload["debug"]["attempts"][0]["reason"] == "reset"


def test_unexpected_errors_are_opaque(taproot_address) -> None:
    response = _client(StubService(error=KeyError("secret"))).post("/mint", json=_mint_body(taproot_address))

    assert response.status_code == 500
    assert response.get_json() == {"error": "Internal server error", "status": 500}


def test_unknown_route_is_json_404() -> None:
    response = _client(StubService()).get("/nope")

    assert response.status_code == 404
    assert response.get_json()["status"] == 404
