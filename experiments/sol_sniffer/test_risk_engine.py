import asyncio
from types import SimpleNamespace

import pytest
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID

from errors import ConfigError
from risk_engine import INSECURE, PolicyChecker, RiskEngine, TokenAuthorityStatus, parse_mint_authorities
from settings import CheckSettings

WSOL = "So11111111111111111111111111111111111111112"


def mint_data(mint_authority=False, freeze_authority=False):
    data = bytearray(82)
    if mint_authority:
        data[0:4] = (1).to_bytes(4, "little")
    if freeze_authority:
        data[46:50] = (1).to_bytes(4, "little")
    return bytes(data)


class FakeSolanaClient:
    def __init__(self, value=None, error=None):
        self.value = value
        self.error = error

    async def get_account_info(self, pubkey):
        if self.error:
            raise self.error
        return SimpleNamespace(value=self.value)


class Authorities:
    def __init__(self, status):
        self.status = status
        self.calls = 0

    async def __call__(self, mint):
        self.calls += 1
        return self.status


def test_parse_mint_authorities():
    assert parse_mint_authorities(mint_data()).is_secure
    status = parse_mint_authorities(mint_data(mint_authority=True, freeze_authority=True))
    assert status.has_mint_authority and status.has_freeze_authority
    with pytest.raises(ValueError):
        parse_mint_authorities(b"\x01" * 40)


def test_risk_engine_reads_account():
    account = SimpleNamespace(owner=TOKEN_PROGRAM_ID, data=mint_data(freeze_authority=True))
    engine = RiskEngine(FakeSolanaClient(value=account))

    status = asyncio.run(engine.get_token_authorities(WSOL))

    assert status == TokenAuthorityStatus(has_mint_authority=False, has_freeze_authority=True)


def test_mint_owned_by_foreign_program_is_insecure():
    account = SimpleNamespace(owner=Pubkey.from_string(WSOL), data=mint_data())
    engine = RiskEngine(FakeSolanaClient(value=account))

    assert asyncio.run(engine.get_token_authorities(WSOL)) == INSECURE


def test_token_2022_mint_is_read():
    account = SimpleNamespace(owner=TOKEN_2022_PROGRAM_ID, data=mint_data())
    engine = RiskEngine(FakeSolanaClient(value=account))

    assert asyncio.run(engine.get_token_authorities(WSOL)).is_secure


def test_risk_engine_lookup_failures_count_as_insecure():
    assert asyncio.run(RiskEngine(FakeSolanaClient(value=None)).get_token_authorities(WSOL)) == INSECURE
    assert asyncio.run(RiskEngine(FakeSolanaClient(error=OSError("down"))).get_token_authorities(WSOL)) == INSECURE
    assert asyncio.run(RiskEngine(FakeSolanaClient()).get_token_authorities("not-base58!")) == INSECURE


def test_full_mode_checks_naming_first():
    authorities = Authorities(INSECURE)
    checker = PolicyChecker(authorities, check_mode="full", blocked_suffixes=("pump",))

    rejection = asyncio.run(checker.evaluate("AbCdEfPUMP"))

    assert rejection.check == "naming"
    assert rejection.reason == "Token ends with pump"
    assert authorities.calls == 0


def test_full_mode_blocked_substring():
    checker = PolicyChecker(Authorities(TokenAuthorityStatus(False, False)), check_mode="full", blocked_suffixes=(), blocked_substrings=("scam",))
    rejection = asyncio.run(checker.evaluate("xxSCAMxx"))
    assert rejection.reason == "Suspicious token name (contains scam)"


def test_snipe_mode_only_checks_authorities():
    checker = PolicyChecker(Authorities(TokenAuthorityStatus(False, False)), check_mode="snipe")
    assert asyncio.run(checker.evaluate("Mintpump")) is None

    checker = PolicyChecker(Authorities(TokenAuthorityStatus(True, False)), check_mode="snipe")
    rejection = asyncio.run(checker.evaluate("Mint"))
    assert (rejection.check, rejection.reason) == ("authority", "Token has mint authority")


def test_allowed_authorities_pass():
    status = TokenAuthorityStatus(has_mint_authority=True, has_freeze_authority=True)
    checker = PolicyChecker(Authorities(status), allow_mint_authority=True)
    assert asyncio.run(checker.evaluate("Mint")).reason == "Token has freeze authority"

    checker = PolicyChecker(Authorities(status), allow_mint_authority=True, allow_freeze_authority=True)
    assert asyncio.run(checker.evaluate("Mint")) is None


def test_none_mode_runs_no_checks():
    authorities = Authorities(INSECURE)
    checker = PolicyChecker(authorities, check_mode="none")
    assert asyncio.run(checker.evaluate("Mintpump")) is None
    assert authorities.calls == 0


def test_invalid_configuration():
    with pytest.raises(ConfigError):
        PolicyChecker(Authorities(INSECURE), check_mode="paranoid")
    with pytest.raises(ConfigError):
        PolicyChecker(None, check_mode="snipe")


def test_from_settings():
    checks = CheckSettings(mode="full", blocked_suffixes=("moon",), blocked_substrings=("rug",))
    checker = PolicyChecker.from_settings(checks, Authorities(INSECURE))
    assert checker.check_mode == "full"
    assert checker.blocked_suffixes == ("moon",)
    assert checker.blocked_substrings == ("rug",)
