import json

import pytest

from conftest import make_package

from charm_cards import cli
from charm_cards.errors import InsufficientFundsError
from charm_cards.model import UTXO

APP_VK = "0f" * 32


class StubSelector:
    def __init__(self) -> None:
        self.calls = []

    def select_funding_utxo(self, address, exclude_ids=(), minimum_sats=0):
        self.calls.append((address, set(exclude_ids), minimum_sats))
        return UTXO("aa" * 32, 1, 4000, True, 100)


class StubService:
    instances = []

    def __init__(self, config, broadcast=True) -> None:
        self.config = config
        self.broadcast_enabled = broadcast
        self.selector = StubSelector()
        self.minted = []
        StubService.instances.append(self)

    def mint(self, params):
        self.minted.append(params)
        raise InsufficientFundsError("too poor", required=3000, available=1000)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "charm-cards.yaml"
    path.write_text(f"network: testnet4\napp:\n  vk: {'ee' * 32}\n")
    return path


@pytest.fixture
def stub_service(monkeypatch):
    StubService.instances = []
    monkeypatch.setattr(cli, "GiftCardService", StubService)
    return StubService


def test_check_topology_reports_valid_package(capsys) -> None:
    commit, spell = make_package()

    cli.main(["check-topology", "--commit-hex", commit.to_hex(), "--spell-hex", spell.to_hex()])

    output = json.loads(capsys.readouterr().out)
    assert output["valid"] is True
    assert output["diagnostics"]["matching_inputs"] == 1


def test_check_topology_exits_non_zero_when_swapped(tmp_path, capsys) -> None:
    commit, spell = make_package()
    (tmp_path / "commit.hex").write_text(spell.to_hex())
    (tmp_path / "spell.hex").write_text(commit.to_hex())

    with pytest.raises(SystemExit) as excinfo:
        cli.main(
            [
                "check-topology",
                "--commit-file",
                str(tmp_path / "commit.hex"),
                "--spell-file",
                str(tmp_path / "spell.hex"),
            ]
        )

    assert excinfo.value.code == 1
    assert json.loads(capsys.readouterr().out)["swapped"] is True


def test_check_topology_requires_both_transactions(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["check-topology", "--commit-hex", "00"])

    assert excinfo.value.code == 1
    assert "--spell-hex" in capsys.readouterr().err


def test_validate_spell_file(config_file, tmp_path, capsys, stub_service, taproot_address) -> None:
    spell_path = tmp_path / "spell.yaml"
    spell_path.write_text(
        json.dumps(
            {
                "version": 8,
                "apps": {"$01": f"t/{'1e' * 32}/{APP_VK}"},
                "ins": [{"utxo_id": "aa" * 32 + ":0", "charms": {}}],
                "outs": [{"address": taproot_address, "sats": 100, "charms": {"$01": 5}}],
            }
        )
    )

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--config", str(config_file), "validate-spell", str(spell_path)])

    assert excinfo.value.code == 1
    output = json.loads(capsys.readouterr().out)
    assert output["valid"] is False
    assert [v["code"] for v in output["violations"]] == ["min_sats"]


def test_select_utxo_prints_choice(config_file, capsys, stub_service) -> None:
    cli.main(
        [
            "--config",
            str(config_file),
            "select-utxo",
            "--address",
            "tb1pfunding",
            "--exclude",
            "bb" * 32 + ":0",
            "--minimum-sats",
            "1500",
        ]
    )

    output = json.loads(capsys.readouterr().out)
    assert output["txid"] == "aa" * 32
    service = stub_service.instances[0]
    assert service.selector.calls == [("tb1pfunding", {"bb" * 32 + ":0"}, 1500)]


def test_mint_errors_are_reported_as_json(config_file, capsys, stub_service, taproot_address) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(
            [
                "--config",
                str(config_file),
                "--mock",
                "mint",
                "--in-utxo",
                "aa" * 32 + ":0",
                "--recipient",
                taproot_address,
                "--brand",
                "Acme",
                "--amount",
                "2500",
                "--no-broadcast",
            ]
        )

    assert excinfo.value.code == 1
    err = capsys.readouterr().err
    payload = json.loads(err.split("error: ", 1)[1])
    assert payload["shortfall_sats"] == 2000

    service = stub_service.instances[0]
    assert service.config.mock_mode is True
    assert service.broadcast_enabled is False
    assert service.minted[0].app_vk == "ee" * 32


def test_missing_config_file_is_an_error(tmp_path, capsys, stub_service) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--config", str(tmp_path / "absent.yaml"), "await-tx", "--txid", "aa" * 32])

    assert excinfo.value.code == 1
    assert "Config file not found" in capsys.readouterr().err
