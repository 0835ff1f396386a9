import pytest

from mint_catalog.classification import (
    classify_metadata,
    classify_mint,
    is_nft_mint_transaction,
)

from conftest import SOL_MINT


@pytest.mark.parametrize("mint", ["POOLxyz111", "abcJupzzz", "xxnftyy", ""])
def test_mint_deny_markers(mint):
    verdict = classify_mint(mint)
    assert not verdict
    assert verdict.reason


def test_ordinary_mint_accepted():
    assert classify_mint(SOL_MINT)
    assert classify_mint("ABC123").accepted


@pytest.mark.parametrize(
    "name,symbol",
    [
        ("Liquidity Pool Share", "LPS"),
        ("Jupiter Vault", "JV"),
        ("My Test Coin", "MTC"),
        ("alice.sol", "ALICE"),
        ("Fancy", "ata"),
    ],
)
def test_metadata_deny_terms(name, symbol):
    assert not classify_metadata(name, symbol)


def test_short_terms_match_whole_words_only():
    # "ata" and "dbc" would otherwise match inside these names.
    assert classify_metadata("Catapult", "CAT")
    assert classify_metadata("Data Coin", "DTC")
    assert not classify_metadata("Data ATA", "DTC")


def test_empty_metadata_accepted():
    assert classify_metadata(None, "")


def test_candy_machine_logs_rejected():
    tx = {"meta": {"logMessages": ["Program log: Candy Machine mint instruction"]}}
    verdict = is_nft_mint_transaction(tx)
    assert not verdict
    assert "candy machine" in verdict.reason


def test_candy_guard_account_rejected():
    tx = {
        "meta": {"logMessages": []},
        "transaction": {
            "message": {
                "accountKeys": [
                    {"pubkey": SOL_MINT},
                    {"pubkey": "Guard1JwRhJkVH6XZhzoYxeBVQe872VH6QggF4BWmS9g"},
                ]
            }
        },
    }
    assert not is_nft_mint_transaction(tx)


def test_token_metadata_program_alone_is_not_nft():
    tx = {
        "meta": {"logMessages": ["Program log: Instruction: InitializeMint2"]},
        "transaction": {
            "message": {
                "accountKeys": ["metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s", SOL_MINT],
                "instructions": [{"programId": "metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s"}],
            }
        },
    }
    assert is_nft_mint_transaction(tx)
    assert is_nft_mint_transaction(None)
