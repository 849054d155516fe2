import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from solana.rpc.async_api import AsyncClient
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID

from errors import ConfigError
from settings import CHECK_MODES

logger = logging.getLogger("RiskEngine")

MINT_ACCOUNT_SIZE = 82
MINT_AUTHORITY_OFFSET = 0
FREEZE_AUTHORITY_OFFSET = 46
TOKEN_PROGRAMS = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)


@dataclass(frozen=True)
class TokenAuthorityStatus:
    has_mint_authority: bool
    has_freeze_authority: bool

    @property
    def is_secure(self) -> bool:
        return not self.has_mint_authority and not self.has_freeze_authority


@dataclass(frozen=True)
class PolicyRejection:
    check: str
    reason: str


INSECURE = TokenAuthorityStatus(has_mint_authority=True, has_freeze_authority=True)


def parse_mint_authorities(data: bytes) -> TokenAuthorityStatus:
    """Reads the COption tags of the SPL mint layout (1 = authority present)."""
    if len(data) < MINT_ACCOUNT_SIZE:
        raise ValueError(f"mint account data too short ({len(data)} bytes)")
    mint_tag = int.from_bytes(data[MINT_AUTHORITY_OFFSET:MINT_AUTHORITY_OFFSET + 4], "little")
    freeze_tag = int.from_bytes(data[FREEZE_AUTHORITY_OFFSET:FREEZE_AUTHORITY_OFFSET + 4], "little")
    return TokenAuthorityStatus(has_mint_authority=mint_tag == 1, has_freeze_authority=freeze_tag == 1)


class RiskEngine:
    def __init__(self, rpc_client: AsyncClient):
        self.client = rpc_client

    async def get_token_authorities(self, token_mint_str: str) -> TokenAuthorityStatus:
        """
        Looks up Mint / Freeze authority of a token.
        Any lookup failure counts as insecure.
        """
        try:
            mint_pubkey = Pubkey.from_string(token_mint_str)
            resp = await self.client.get_account_info(mint_pubkey)
            if not resp.value:
                logger.warning(f"Mint account not found for {token_mint_str[:12]}")
                return INSECURE

            if resp.value.owner not in TOKEN_PROGRAMS:
                logger.warning(f"{token_mint_str[:12]} is owned by {resp.value.owner}, not a token program")
                return INSECURE

            data = resp.value.data
            if not isinstance(data, bytes):
                data = bytes(data)

            status = parse_mint_authorities(data)
            logger.debug(f"🔬 {token_mint_str[:12]}: mint_auth={status.has_mint_authority}, freeze_auth={status.has_freeze_authority}")
            return status

        except Exception as e:
            logger.error(f"❌ Authority check error for {token_mint_str[:12]}: {e}")
            return INSECURE


AuthoritySource = Callable[[str], Awaitable[TokenAuthorityStatus]]


class PolicyChecker:
    """
    Ordered pre-trade checks. The first failing check wins.

      snipe -> authority
      full  -> naming, authority
      none  -> nothing
    """

    def __init__(
        self,
        authority_source: Optional[AuthoritySource] = None,
        check_mode: str = "snipe",
        allow_mint_authority: bool = False,
        allow_freeze_authority: bool = False,
        blocked_suffixes: Sequence[str] = ("pump",),
        blocked_substrings: Sequence[str] = (),
    ):
        if check_mode not in CHECK_MODES:
            raise ConfigError(f"Invalid check mode: {check_mode}")
        if check_mode != "none" and authority_source is None:
            raise ConfigError(f"check mode '{check_mode}' needs an authority source")
        self.authority_source = authority_source
        self.check_mode = check_mode
        self.allow_mint_authority = allow_mint_authority
        self.allow_freeze_authority = allow_freeze_authority
        self.blocked_suffixes = tuple(s.lower() for s in blocked_suffixes)
        self.blocked_substrings = tuple(s.lower() for s in blocked_substrings)

    @classmethod
    def from_settings(cls, checks, authority_source: Optional[AuthoritySource]) -> "PolicyChecker":
        return cls(
            authority_source,
            check_mode=checks.mode,
            allow_mint_authority=checks.allow_mint_authority,
            allow_freeze_authority=checks.allow_freeze_authority,
            blocked_suffixes=checks.blocked_suffixes,
            blocked_substrings=checks.blocked_substrings,
        )

    def _checks(self) -> List[Tuple[str, Callable]]:
        if self.check_mode == "snipe":
            return [("authority", self.check_authorities)]
        if self.check_mode == "full":
            return [("naming", self.check_naming), ("authority", self.check_authorities)]
        return []

    async def check_naming(self, mint: str) -> Optional[str]:
        name = mint.strip().lower()
        for suffix in self.blocked_suffixes:
            if name.endswith(suffix):
                return f"Token ends with {suffix}"
        for part in self.blocked_substrings:
            if part in name:
                return f"Suspicious token name (contains {part})"
        return None

    async def check_authorities(self, mint: str) -> Optional[str]:
        status = await self.authority_source(mint)
        if status.is_secure:
            return None
        if not self.allow_mint_authority and status.has_mint_authority:
            return "Token has mint authority"
        if not self.allow_freeze_authority and status.has_freeze_authority:
            return "Token has freeze authority"
        return None

    async def evaluate(self, mint: str) -> Optional[PolicyRejection]:
        for name, check in self._checks():
            reason = await check(mint)
            if reason:
                logger.info(f"❌ {reason}, skipping {mint[:12]}...")
                return PolicyRejection(check=name, reason=reason)
        if self.check_mode != "none":
            logger.info(f"✅ {self.check_mode} check passed for {mint[:12]}")
        return None
