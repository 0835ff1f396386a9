from __future__ import annotations

import asyncio
import datetime
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Mapping, Sequence, Tuple, TypeVar

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    and_,
    delete,
    func,
    or_,
    select,
)
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .classification import classify_metadata, classify_mint
from .errors import CatalogUnavailable

Base = declarative_base()
logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_FRESH = "fresh"
STATUS_CURVE = "curve"
STATUS_ACTIVE = "active"
STATUS_RANK = {STATUS_FRESH: 0, STATUS_CURVE: 1, STATUS_ACTIVE: 2}

DEFAULT_SOURCE = "helius"

METADATA_FIELDS = (
    "name",
    "symbol",
    "metadata_uri",
    "image_url",
    "website",
    "twitter",
    "telegram",
    "bonding_curve_address",
)

_CONNECTIVITY_MARKERS = (
    "connection",
    "timeout",
    "timed out",
    "database is locked",
    "unable to open",
    "closed",
    "server has gone away",
)


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def to_utc_datetime(value: datetime.datetime | float | int | None) -> datetime.datetime:
    """Coerce epoch seconds or aware datetimes to naive UTC."""
    if value is None:
        return utcnow()
    if isinstance(value, datetime.datetime):
        if value.tzinfo is not None:
            value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
        return value
    return datetime.datetime.fromtimestamp(float(value), tz=datetime.timezone.utc).replace(tzinfo=None)


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class Token(Base):
    __tablename__ = "tokens"

    id = Column(Integer, primary_key=True)
    mint = Column(String, nullable=False, unique=True)
    name = Column(String)
    symbol = Column(String)
    decimals = Column(Integer, nullable=False, default=0)
    supply = Column(Float, nullable=False, default=0.0)
    blocktime = Column(DateTime, index=True)
    source = Column(String, default=DEFAULT_SOURCE)
    status = Column(String, nullable=False, default=STATUS_FRESH)
    bonding_curve_address = Column(String)
    is_on_curve = Column(Boolean, nullable=False, default=False)
    metadata_uri = Column(Text)
    image_url = Column(Text)
    website = Column(Text)
    twitter = Column(Text)
    telegram = Column(Text)
    socials_checked_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('fresh', 'curve', 'active')", name="ck_tokens_status"
        ),
        Index("ix_tokens_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"Token(mint={self.mint!r}, status={self.status!r}, name={self.name!r})"


class MarketSnapshot(Base):
    __tablename__ = "market_snapshots"

    id = Column(Integer, primary_key=True)
    token_id = Column(Integer, ForeignKey("tokens.id", ondelete="CASCADE"), nullable=False)
    price_usd = Column(Float, nullable=False)
    marketcap = Column(Float, nullable=False, default=0.0)
    volume_24h = Column(Float, nullable=False, default=0.0)
    liquidity = Column(Float, nullable=False, default=0.0)
    source = Column(String)
    timestamp = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("ix_market_snapshots_token_ts", "token_id", "timestamp"),)


class TokenHolder(Base):
    __tablename__ = "token_holders"

    mint = Column(String, primary_key=True)
    owner = Column(String, primary_key=True)
    amount = Column(Float, nullable=False)
    raw_amount = Column(String, nullable=False)
    updated_at = Column(DateTime, default=utcnow)


class HolderSummary(Base):
    __tablename__ = "token_holder_summary"

    mint = Column(String, primary_key=True)
    holder_count = Column(Integer, nullable=False, default=0)
    top_holder_amount = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime, default=utcnow)


@dataclass(slots=True)
class HolderBalance:
    owner: str
    amount: float
    raw_amount: str


def _is_connectivity_error(exc: BaseException) -> bool:
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    if isinstance(exc, (OperationalError, InterfaceError)):
        text = str(exc).lower()
        return any(marker in text for marker in _CONNECTIVITY_MARKERS)
    return isinstance(exc, (ConnectionError, asyncio.TimeoutError))


class TokenCatalog:
    """Persistent store for tokens, market snapshots and holder views.

    One instance is created per process and handed to every component.
    Connectivity failures dispose the engine, rebuild it and retry the whole
    operation a few times before raising :class:`CatalogUnavailable`.
    """

    def __init__(
        self,
        url: str = "sqlite:///mint_catalog.db",
        *,
        echo: bool = False,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        if url.startswith("sqlite:///"):
            url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        self.url = url
        self.echo = echo
        self.max_retries = max(1, int(max_retries))
        self.retry_delay = max(0.0, float(retry_delay))
        self._build_engine()

    def _build_engine(self) -> None:
        kwargs: dict[str, Any] = {"echo": self.echo}
        if not self.url.startswith("sqlite"):
            kwargs["pool_pre_ping"] = True
        self.engine = create_async_engine(self.url, **kwargs)
        self.Session: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=self.engine, expire_on_commit=False
        )

    async def _recreate_engine(self) -> None:
        old = self.engine
        self._build_engine()
        try:
            await old.dispose()
        except Exception:
            logger.debug("Disposing stale engine failed", exc_info=True)

    async def init(self) -> None:
        """Create tables when missing; safe to call repeatedly."""
        async with self.engine.begin() as conn:
            if self.url.startswith("sqlite+aiosqlite"):
                try:
                    await conn.exec_driver_sql("PRAGMA journal_mode=WAL;")
                    await conn.exec_driver_sql("PRAGMA synchronous=NORMAL;")
                except Exception:
                    logger.debug("SQLite PRAGMA tuning failed", exc_info=True)
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    async def _run(
        self,
        op: Callable[[AsyncSession], Awaitable[T]],
        *,
        label: str,
    ) -> T:
        last_exc: BaseException | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                async with self.Session() as session:
                    async with session.begin():
                        return await op(session)
            except (DBAPIError, ConnectionError, asyncio.TimeoutError) as exc:
                if not _is_connectivity_error(exc):
                    raise
                last_exc = exc
                logger.warning(
                    "Catalog %s failed (attempt %d/%d): %s",
                    label,
                    attempt,
                    self.max_retries,
                    exc,
                )
                if attempt < self.max_retries:
                    await self._recreate_engine()
                    await asyncio.sleep(self.retry_delay * attempt)
        raise CatalogUnavailable(f"catalog {label} failed after {self.max_retries} attempts") from last_exc

    # ------------------------------------------------------------------
    # tokens
    # ------------------------------------------------------------------

    async def upsert_discovered(
        self,
        mint: str,
        decimals: int,
        supply: float,
        blocktime: datetime.datetime | float | None,
        *,
        name: str | None = None,
        symbol: str | None = None,
        metadata_uri: str | None = None,
        image_url: str | None = None,
        bonding_curve_address: str | None = None,
        is_on_curve: bool = False,
        status: str = STATUS_FRESH,
        source: str = DEFAULT_SOURCE,
    ) -> Tuple[Token, bool]:
        """Insert a newly observed mint or merge a repeated observation.

        Returns ``(token, created)``. Existing non-empty fields win, the
        on-curve flag is OR-ed and the status keeps its higher rank.
        """
        if status not in STATUS_RANK:
            raise ValueError(f"unknown status {status!r}")
        when = to_utc_datetime(blocktime)
        incoming = {
            "name": name,
            "symbol": symbol,
            "metadata_uri": metadata_uri,
            "image_url": image_url,
            "bonding_curve_address": bonding_curve_address,
        }

        async def _op(session: AsyncSession) -> Tuple[Token, bool]:
            token = await session.scalar(select(Token).where(Token.mint == mint))
            if token is None:
                token = Token(
                    mint=mint,
                    decimals=int(decimals),
                    supply=float(supply),
                    blocktime=when,
                    source=source,
                    status=status,
                    is_on_curve=bool(is_on_curve),
                    **{k: v for k, v in incoming.items() if not _is_empty(v)},
                )
                session.add(token)
                try:
                    await session.flush()
                except IntegrityError as exc:
                    # Another writer inserted the same mint; retry as a merge.
                    raise _ConcurrentInsert() from exc
                return token, True
            for key, value in incoming.items():
                if not _is_empty(value) and _is_empty(getattr(token, key)):
                    setattr(token, key, value)
            token.is_on_curve = bool(token.is_on_curve or is_on_curve)
            if STATUS_RANK[status] > STATUS_RANK.get(token.status, 0):
                token.status = status
            return token, False

        try:
            token, created = await self._run(_op, label="upsert")
        except _ConcurrentInsert:
            token, created = await self._run(_op, label="upsert")
        if created:
            logger.info("Created new token: %s status=%s curve=%s", mint, status, bool(is_on_curve))
        return token, created

    async def get_token(self, mint: str) -> Token | None:
        async def _op(session: AsyncSession) -> Token | None:
            return await session.scalar(select(Token).where(Token.mint == mint))

        return await self._run(_op, label="get_token")

    async def update_metadata(
        self,
        mint: str,
        *,
        is_on_curve: bool | None = None,
        **fields: Any,
    ) -> frozenset[str]:
        """Merge descriptive fields using coalesce-on-write.

        A field is written only when the stored value is empty and the new
        value is not. ``source`` may replace the default discovery source.
        ``is_on_curve`` can only be raised here. Returns the changed field
        names (empty when the token is unknown or nothing changed).
        """
        unknown = set(fields) - set(METADATA_FIELDS) - {"source"}
        if unknown:
            raise TypeError(f"unsupported metadata field(s): {', '.join(sorted(unknown))}")

        async def _op(session: AsyncSession) -> frozenset[str]:
            token = await session.scalar(select(Token).where(Token.mint == mint))
            if token is None:
                return frozenset()
            changed: set[str] = set()
            for key, value in fields.items():
                if _is_empty(value):
                    continue
                if isinstance(value, str):
                    value = value.strip()
                current = getattr(token, key)
                if key == "source":
                    if current in (None, "", DEFAULT_SOURCE) and value != current:
                        token.source = value
                        changed.add(key)
                    continue
                if _is_empty(current):
                    setattr(token, key, value)
                    changed.add(key)
            if is_on_curve and not token.is_on_curve and token.status != STATUS_ACTIVE:
                token.is_on_curve = True
                changed.add("is_on_curve")
            if changed:
                token.updated_at = utcnow()
            return frozenset(changed)

        changed = await self._run(_op, label="update_metadata")
        if changed:
            logger.info("Updated token %s metadata: %s", mint, ", ".join(sorted(changed)))
        return changed

    async def mark_socials_checked(self, mint: str) -> None:
        async def _op(session: AsyncSession) -> None:
            token = await session.scalar(select(Token).where(Token.mint == mint))
            if token is not None:
                token.socials_checked_at = utcnow()

        await self._run(_op, label="mark_socials_checked")

    async def find_mints_needing_metadata(self, limit: int) -> List[str]:
        missing = [
            or_(column.is_(None), column == "")
            for column in (Token.name, Token.symbol, Token.metadata_uri, Token.image_url)
        ]
        stmt = (
            select(Token.mint)
            .where(or_(*missing))
            .order_by(Token.blocktime.desc().nulls_last(), Token.id.desc())
            .limit(max(0, int(limit)))
        )
        return await self._scalars(stmt, label="find_mints_needing_metadata")

    async def find_mints_needing_socials(
        self, limit: int, *, recheck_after: float = 3600.0
    ) -> List[str]:
        cutoff = utcnow() - datetime.timedelta(seconds=recheck_after)
        stmt = (
            select(Token.mint)
            .where(
                Token.metadata_uri.is_not(None),
                Token.metadata_uri != "",
                or_(
                    Token.website.is_(None),
                    Token.twitter.is_(None),
                    Token.telegram.is_(None),
                    Token.source == DEFAULT_SOURCE,
                ),
                or_(Token.socials_checked_at.is_(None), Token.socials_checked_at < cutoff),
            )
            .order_by(Token.blocktime.desc().nulls_last(), Token.id.desc())
            .limit(max(0, int(limit)))
        )
        return await self._scalars(stmt, label="find_mints_needing_socials")

    async def find_fresh_mints(self, limit: int) -> List[str]:
        stmt = (
            select(Token.mint)
            .where(Token.status == STATUS_FRESH)
            .order_by(Token.created_at.desc(), Token.id.desc())
            .limit(max(0, int(limit)))
        )
        return await self._scalars(stmt, label="find_fresh_mints")

    async def find_tokens_needing_market_data(self, limit: int, max_age: float) -> List[Token]:
        """Return tokens without a snapshot newer than ``max_age`` seconds."""
        cutoff = utcnow() - datetime.timedelta(seconds=max_age)
        latest = (
            select(
                MarketSnapshot.token_id.label("token_id"),
                func.max(MarketSnapshot.timestamp).label("latest_ts"),
            )
            .group_by(MarketSnapshot.token_id)
            .subquery()
        )
        stmt = (
            select(Token)
            .outerjoin(latest, latest.c.token_id == Token.id)
            .where(or_(latest.c.latest_ts.is_(None), latest.c.latest_ts < cutoff))
            .order_by(latest.c.latest_ts.asc().nulls_first(), Token.created_at.desc())
            .limit(max(0, int(limit)))
        )
        return await self._scalars(stmt, label="find_tokens_needing_market_data")

    async def _scalars(self, stmt: Any, *, label: str) -> List[Any]:
        async def _op(session: AsyncSession) -> List[Any]:
            return list((await session.scalars(stmt)).all())

        return await self._run(_op, label=label)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def advance_status(self, mint: str, status: str, *, clear_curve: bool = False) -> bool:
        """Move ``mint`` forward to ``status``; backwards moves are refused."""
        if status not in STATUS_RANK:
            raise ValueError(f"unknown status {status!r}")

        async def _op(session: AsyncSession) -> Tuple[bool, str | None]:
            token = await session.scalar(select(Token).where(Token.mint == mint))
            if token is None:
                return False, None
            previous = token.status
            if STATUS_RANK[status] <= STATUS_RANK.get(previous, 0):
                return False, previous
            token.status = status
            if clear_curve:
                token.is_on_curve = False
            token.updated_at = utcnow()
            return True, previous

        changed, previous = await self._run(_op, label="advance_status")
        if changed:
            logger.info("Token %s status %s -> %s", mint, previous, status)
        elif previous is not None and previous != status:
            logger.debug("Refused status change for %s: %s -> %s", mint, previous, status)
        return changed

    async def reset_status(self, mint: str, status: str = STATUS_FRESH) -> bool:
        """Administrative override that may move a token backwards."""
        if status not in STATUS_RANK:
            raise ValueError(f"unknown status {status!r}")

        async def _op(session: AsyncSession) -> bool:
            token = await session.scalar(select(Token).where(Token.mint == mint))
            if token is None:
                return False
            token.status = status
            token.updated_at = utcnow()
            return True

        done = await self._run(_op, label="reset_status")
        if done:
            logger.warning("Administrative status reset: %s -> %s", mint, status)
        return done

    async def set_curve(self, mint: str, address: str | None = None) -> bool:
        async def _op(session: AsyncSession) -> bool:
            token = await session.scalar(select(Token).where(Token.mint == mint))
            if token is None or token.status == STATUS_ACTIVE:
                return False
            token.is_on_curve = True
            if address and _is_empty(token.bonding_curve_address):
                token.bonding_curve_address = address
            token.updated_at = utcnow()
            return True

        return await self._run(_op, label="set_curve")

    async def find_lifecycle_candidates(self, limit: int = 500) -> Tuple[List[str], List[str]]:
        """Return ``(fresh_on_curve, curve_with_market_data)`` mint lists."""
        has_snapshot = (
            select(MarketSnapshot.id).where(MarketSnapshot.token_id == Token.id).exists()
        )
        to_curve = (
            select(Token.mint)
            .where(Token.status == STATUS_FRESH, Token.is_on_curve.is_(True))
            .limit(limit)
        )
        to_active = (
            select(Token.mint)
            .where(Token.status == STATUS_CURVE, has_snapshot)
            .limit(limit)
        )

        async def _op(session: AsyncSession) -> Tuple[List[str], List[str]]:
            fresh = list((await session.scalars(to_curve)).all())
            curve = list((await session.scalars(to_active)).all())
            return fresh, curve

        return await self._run(_op, label="find_lifecycle_candidates")

    # ------------------------------------------------------------------
    # market snapshots
    # ------------------------------------------------------------------

    async def append_snapshot(
        self,
        token_id: int,
        quote: Any,
        *,
        timestamp: datetime.datetime | float | None = None,
    ) -> MarketSnapshot:
        """Append one snapshot built from ``quote``.

        ``quote`` needs ``price``, ``marketcap``, ``volume_24h``, ``liquidity``
        and ``source`` attributes (see ``market_data.MarketQuote``).
        """
        snapshot = MarketSnapshot(
            token_id=token_id,
            price_usd=float(quote.price),
            marketcap=float(quote.marketcap or 0.0),
            volume_24h=float(quote.volume_24h or 0.0),
            liquidity=float(quote.liquidity or 0.0),
            source=getattr(quote, "source", None),
            timestamp=to_utc_datetime(timestamp),
        )

        async def _op(session: AsyncSession) -> MarketSnapshot:
            session.add(snapshot)
            await session.flush()
            return snapshot

        return await self._run(_op, label="append_snapshot")

    async def latest_snapshot(self, token_id: int) -> MarketSnapshot | None:
        stmt = (
            select(MarketSnapshot)
            .where(MarketSnapshot.token_id == token_id)
            .order_by(MarketSnapshot.timestamp.desc(), MarketSnapshot.id.desc())
            .limit(1)
        )
        rows = await self._scalars(stmt, label="latest_snapshot")
        return rows[0] if rows else None

    async def snapshot_history(self, token_id: int, limit: int = 100) -> List[MarketSnapshot]:
        stmt = (
            select(MarketSnapshot)
            .where(MarketSnapshot.token_id == token_id)
            .order_by(MarketSnapshot.timestamp.desc(), MarketSnapshot.id.desc())
            .limit(max(0, int(limit)))
        )
        return await self._scalars(stmt, label="snapshot_history")

    async def prune_snapshots(self, older_than: datetime.timedelta) -> int:
        """Delete snapshots older than ``older_than``, keeping each token's latest."""
        cutoff = utcnow() - older_than
        newest_ids = select(func.max(MarketSnapshot.id)).group_by(MarketSnapshot.token_id)
        stmt = delete(MarketSnapshot).where(
            and_(MarketSnapshot.timestamp < cutoff, MarketSnapshot.id.not_in(newest_ids))
        )

        async def _op(session: AsyncSession) -> int:
            result = await session.execute(stmt)
            return int(result.rowcount or 0)

        removed = await self._run(_op, label="prune_snapshots")
        if removed:
            logger.info("Pruned %d market snapshots older than %s", removed, cutoff)
        return removed

    # ------------------------------------------------------------------
    # holders
    # ------------------------------------------------------------------

    async def replace_holders(self, mint: str, holders: Sequence[HolderBalance]) -> int:
        """Replace the holder view for ``mint`` wholesale in one transaction."""
        now = utcnow()
        rows = [
            TokenHolder(
                mint=mint,
                owner=h.owner,
                amount=float(h.amount),
                raw_amount=str(h.raw_amount),
                updated_at=now,
            )
            for h in holders
        ]
        top = max((float(h.amount) for h in holders), default=0.0)

        async def _op(session: AsyncSession) -> int:
            await session.execute(delete(TokenHolder).where(TokenHolder.mint == mint))
            await session.execute(delete(HolderSummary).where(HolderSummary.mint == mint))
            session.add_all(rows)
            session.add(
                HolderSummary(
                    mint=mint,
                    holder_count=len(rows),
                    top_holder_amount=top,
                    updated_at=now,
                )
            )
            return len(rows)

        return await self._run(_op, label="replace_holders")

    async def top_holders(self, mint: str, limit: int = 20) -> List[TokenHolder]:
        stmt = (
            select(TokenHolder)
            .where(TokenHolder.mint == mint)
            .order_by(TokenHolder.amount.desc())
            .limit(max(0, int(limit)))
        )
        return await self._scalars(stmt, label="top_holders")

    async def holder_summary(self, mint: str) -> HolderSummary | None:
        rows = await self._scalars(
            select(HolderSummary).where(HolderSummary.mint == mint), label="holder_summary"
        )
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # cleanup
    # ------------------------------------------------------------------

    async def discard_tokens(self, mints: Iterable[str]) -> int:
        """Hard-delete ``mints`` and everything attached to them."""
        targets = sorted({m for m in mints if m})
        if not targets:
            return 0

        async def _op(session: AsyncSession) -> int:
            ids = list(
                (await session.scalars(select(Token.id).where(Token.mint.in_(targets)))).all()
            )
            if ids:
                await session.execute(delete(MarketSnapshot).where(MarketSnapshot.token_id.in_(ids)))
            await session.execute(delete(TokenHolder).where(TokenHolder.mint.in_(targets)))
            await session.execute(delete(HolderSummary).where(HolderSummary.mint.in_(targets)))
            await session.execute(delete(Token).where(Token.mint.in_(targets)))
            return len(ids)

        removed = await self._run(_op, label="discard_tokens")
        if removed:
            logger.info("Discarded %d token(s): %s", removed, ", ".join(targets[:10]))
        return removed

    async def purge_denied(self) -> int:
        """Remove tokens whose mint, name or symbol falls in a denied category."""

        async def _op(session: AsyncSession) -> List[Tuple[str, str | None, str | None]]:
            result = await session.execute(select(Token.mint, Token.name, Token.symbol))
            return [tuple(row) for row in result.all()]

        rows = await self._run(_op, label="purge_scan")
        denied: List[str] = []
        for mint, name, symbol in rows:
            verdict = classify_mint(mint)
            if verdict.accepted:
                verdict = classify_metadata(name, symbol)
            if not verdict.accepted:
                logger.debug("Purging %s: %s", mint, verdict.reason)
                denied.append(mint)
        return await self.discard_tokens(denied)

    async def status_counts(self) -> Mapping[str, int]:
        async def _op(session: AsyncSession) -> Mapping[str, int]:
            result = await session.execute(
                select(Token.status, func.count(Token.id)).group_by(Token.status)
            )
            return {status: int(count) for status, count in result.all()}

        return await self._run(_op, label="status_counts")


class _ConcurrentInsert(Exception):
    """Internal signal that a concurrent writer created the same mint."""


__all__ = [
    "Base",
    "Token",
    "MarketSnapshot",
    "TokenHolder",
    "HolderSummary",
    "HolderBalance",
    "TokenCatalog",
    "STATUS_FRESH",
    "STATUS_CURVE",
    "STATUS_ACTIVE",
    "STATUS_RANK",
    "utcnow",
    "to_utc_datetime",
]
