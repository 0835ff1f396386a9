"""Periodic holder snapshots for freshly discovered mints."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Mapping

from .catalog import HolderBalance, TokenCatalog
from .errors import ProviderError
from .ledger import TOKEN2022_PROGRAM, TOKEN_PROGRAM, LedgerClient

logger = logging.getLogger(__name__)

HOLDER_PROGRAMS = (TOKEN_PROGRAM, TOKEN2022_PROGRAM)


def parse_token_accounts(accounts: Iterable[Mapping[str, Any]]) -> List[HolderBalance]:
    """Turn jsonParsed token accounts into positive per-account balances."""
    balances: List[HolderBalance] = []
    for entry in accounts:
        account = entry.get("account") or {}
        data = account.get("data") if isinstance(account, Mapping) else None
        parsed = data.get("parsed") if isinstance(data, Mapping) else None
        info = parsed.get("info") if isinstance(parsed, Mapping) else None
        if not isinstance(info, Mapping):
            continue
        owner = info.get("owner")
        token_amount = info.get("tokenAmount")
        if not isinstance(owner, str) or not isinstance(token_amount, Mapping):
            continue
        raw = str(token_amount.get("amount") or "0")
        try:
            raw_int = int(raw)
            decimals = int(token_amount.get("decimals") or 0)
        except (TypeError, ValueError):
            continue
        if raw_int <= 0:
            continue
        balances.append(HolderBalance(owner=owner, amount=raw_int / (10 ** decimals), raw_amount=str(raw_int)))
    return balances


def merge_balances(balances: Iterable[HolderBalance]) -> List[HolderBalance]:
    """Sum balances per owner, drop empty owners and sort largest first."""
    merged: Dict[str, HolderBalance] = {}
    for balance in balances:
        prev = merged.get(balance.owner)
        if prev is None:
            merged[balance.owner] = HolderBalance(balance.owner, balance.amount, balance.raw_amount)
        else:
            prev.amount += balance.amount
            prev.raw_amount = str(int(prev.raw_amount) + int(balance.raw_amount))
    rows = [b for b in merged.values() if b.amount > 0]
    rows.sort(key=lambda b: b.amount, reverse=True)
    return rows


class HolderIndexer:
    def __init__(
        self,
        catalog: TokenCatalog,
        ledger: LedgerClient,
        *,
        batch_limit: int = 50,
        pacing: float = 0.05,
    ) -> None:
        self.catalog = catalog
        self.ledger = ledger
        self.batch_limit = batch_limit
        self.pacing = pacing

    async def _query_program(self, program_id: str, mint: str) -> List[HolderBalance]:
        filters = [{"memcmp": {"offset": 0, "bytes": mint}}]
        accounts = await self.ledger.get_program_accounts_parsed(program_id, filters)
        return parse_token_accounts(accounts)

    async def snapshot_holders(self, mint: str) -> int:
        """Replace the stored holder view for ``mint``; returns the holder count."""
        results = await asyncio.gather(
            *(self._query_program(program, mint) for program in HOLDER_PROGRAMS),
            return_exceptions=True,
        )
        balances: List[HolderBalance] = []
        failures = 0
        for program, result in zip(HOLDER_PROGRAMS, results):
            if isinstance(result, BaseException):
                failures += 1
                logger.debug("getProgramAccounts(%s) failed for %s: %s", program, mint, result)
                continue
            balances.extend(result)
        if failures == len(HOLDER_PROGRAMS):
            # Keep the previous snapshot rather than replacing it with nothing.
            raise ProviderError("ledger", f"holder queries failed for {mint}")
        rows = merge_balances(balances)
        count = await self.catalog.replace_holders(mint, rows)
        logger.debug("Holder snapshot for %s: %d holders", mint, count)
        return count

    async def run_once(self) -> int:
        mints = await self.catalog.find_fresh_mints(self.batch_limit)
        indexed = 0
        for mint in mints:
            try:
                await self.snapshot_holders(mint)
                indexed += 1
            except Exception as exc:
                logger.warning("Holder snapshot failed for %s: %s", mint, exc)
            if self.pacing:
                await asyncio.sleep(self.pacing)
        if mints:
            logger.info("Indexed holders for %d/%d fresh mints", indexed, len(mints))
        return indexed


__all__ = ["HolderIndexer", "merge_balances", "parse_token_accounts"]
