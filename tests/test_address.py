from charm_cards.address import (
    decode_segwit_address,
    encode_taproot_address,
    is_taproot_address,
    taproot_address_problem,
)


def test_encoded_testnet_address_round_trips() -> None:
    key = bytes(range(32))
    address = encode_taproot_address(key, "testnet4")

    assert address.startswith("tb1p")
    assert len(address) == 62
    assert decode_segwit_address(address) == ("tb", 1, key)
    assert is_taproot_address(address, "testnet4")
    assert is_taproot_address(address, "signet")


def test_address_is_bound_to_its_network() -> None:
    mainnet = encode_taproot_address(bytes(32), "mainnet")

    assert mainnet.startswith("bc1p")
    assert is_taproot_address(mainnet, "mainnet")
    assert not is_taproot_address(mainnet, "testnet4")
    assert not is_taproot_address(encode_taproot_address(bytes(32), "regtest"), "mainnet")


def test_corrupted_checksum_is_rejected(taproot_address: str) -> None:
    last = taproot_address[-1]
    corrupted = taproot_address[:-1] + ("q" if last != "q" else "p")

    assert not is_taproot_address(corrupted, "testnet4")
    assert "checksum" in taproot_address_problem(corrupted, "testnet4")


def test_segwit_v0_address_is_not_taproot() -> None:
    # BIP173 test vector, bech32 (not bech32m) checksum.
    assert not is_taproot_address("bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4", "mainnet")


def test_mixed_case_is_rejected(taproot_address: str) -> None:
    mixed = taproot_address[:5] + taproot_address[5:].upper()

    assert decode_segwit_address(mixed) is None


def test_address_problem_mentions_expected_prefix() -> None:
    assert taproot_address_problem("", "testnet4") == "address must be a non-empty string"
    assert "tb1p" in taproot_address_problem("bc1pxyz", "testnet4")
    assert taproot_address_problem(encode_taproot_address(bytes(32), "testnet"), "testnet") is None
