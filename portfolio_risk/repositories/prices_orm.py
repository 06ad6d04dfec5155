"""Price points and instrument classification repository - SQLAlchemy ORM version."""

from __future__ import annotations

from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Sequence

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert

from portfolio_risk.database.connection import get_session
from portfolio_risk.database.orm import Instrument, PortfolioPosition, PricePoint
from portfolio_risk.domain.classification import AssetClass
from portfolio_risk.domain.price import PriceSeries


class SqlPriceStore:
    """``PriceStore`` backed by the ``price_points`` table."""

    async def get_series(self, ticker: str, start: date, end: date) -> PriceSeries:
        async with get_session() as session:
            result = await session.execute(
                select(PricePoint.date, PricePoint.close_price)
                .where(
                    PricePoint.ticker == ticker.upper(),
                    PricePoint.date >= start,
                    PricePoint.date <= end,
                )
                .order_by(PricePoint.date)
            )
            pairs = [(row.date, float(row.close_price)) for row in result.all()]
        return PriceSeries.from_pairs(ticker.upper(), pairs, source="store")

    async def get_many(
        self, tickers: Sequence[str], start: date, end: date
    ) -> dict[str, PriceSeries]:
        """Batch lookup, ``ticker = ANY(:tickers)`` over the (ticker, date) index."""
        wanted = sorted({t.upper() for t in tickers})
        if not wanted:
            return {}
        async with get_session() as session:
            result = await session.execute(
                select(PricePoint.ticker, PricePoint.date, PricePoint.close_price)
                .where(
                    PricePoint.ticker.in_(wanted),
                    PricePoint.date >= start,
                    PricePoint.date <= end,
                )
                .order_by(PricePoint.ticker, PricePoint.date)
            )
            grouped: dict[str, list[tuple[date, float]]] = defaultdict(list)
            for row in result.all():
                grouped[row.ticker].append((row.date, float(row.close_price)))
        return {t: PriceSeries.from_pairs(t, grouped.get(t, []), source="store") for t in wanted}

    async def upsert_series(self, ticker: str, series: PriceSeries) -> int:
        """Insert closes, updating the close on (ticker, date) conflicts."""
        if series.is_empty:
            return 0
        rows = [
            {
                "ticker": ticker.upper(),
                "date": p.date,
                "close_price": Decimal(str(p.close)),
                "source": series.source,
            }
            for p in series.points
        ]
        async with get_session() as session:
            stmt = insert(PricePoint).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=["ticker", "date"],
                set_={"close_price": stmt.excluded.close_price, "source": stmt.excluded.source},
            )
            await session.execute(stmt)
            await session.commit()
        return len(rows)

    async def latest_dates(self, tickers: Sequence[str]) -> dict[str, date]:
        async with get_session() as session:
            result = await session.execute(
                select(PricePoint.ticker, func.max(PricePoint.date))
                .where(PricePoint.ticker.in_([t.upper() for t in tickers]))
                .group_by(PricePoint.ticker)
            )
            return {ticker: latest for ticker, latest in result.all()}


# =============================================================================
# Instruments
# =============================================================================


async def get_asset_class(ticker: str) -> AssetClass | None:
    async with get_session() as session:
        row = await session.get(Instrument, ticker.upper())
        return AssetClass(row.asset_class) if row else None


async def get_asset_classes(tickers: Sequence[str]) -> dict[str, AssetClass]:
    async with get_session() as session:
        result = await session.execute(
            select(Instrument.ticker, Instrument.asset_class).where(
                Instrument.ticker.in_([t.upper() for t in tickers])
            )
        )
        return {t: AssetClass(c) for t, c in result.all()}


async def upsert_instrument(
    ticker: str,
    asset_class: AssetClass,
    name: str | None = None,
    resolved_symbol: str | None = None,
    source: str | None = None,
) -> None:
    async with get_session() as session:
        stmt = insert(Instrument).values(
            ticker=ticker.upper(),
            asset_class=asset_class.value,
            name=name,
            resolved_symbol=resolved_symbol,
            source=source,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["ticker"],
            set_={
                "asset_class": stmt.excluded.asset_class,
                "name": func.coalesce(stmt.excluded.name, Instrument.name),
                "resolved_symbol": func.coalesce(stmt.excluded.resolved_symbol, Instrument.resolved_symbol),
                "source": func.coalesce(stmt.excluded.source, Instrument.source),
                "updated_at": func.now(),
            },
        )
        await session.execute(stmt)
        await session.commit()


async def list_tracked_tickers() -> list[str]:
    """Tickers held in any portfolio plus everything with stored prices."""
    async with get_session() as session:
        held = await session.execute(select(PortfolioPosition.ticker).distinct())
        priced = await session.execute(select(PricePoint.ticker).distinct())
        return sorted({t.upper() for (t,) in held.all()} | {t for (t,) in priced.all()})


# =============================================================================
# Portfolio holdings (read-only)
# =============================================================================


async def get_positions(portfolio_id: str) -> list[dict]:
    async with get_session() as session:
        result = await session.execute(
            select(PortfolioPosition).where(PortfolioPosition.portfolio_id == portfolio_id)
        )
        return [
            {
                "ticker": p.ticker.upper(),
                "quantity": float(p.quantity),
                "market_value": float(p.market_value) if p.market_value is not None else None,
                "asset_category": p.asset_category,
            }
            for p in result.scalars().all()
        ]


async def list_portfolio_ids() -> list[str]:
    async with get_session() as session:
        result = await session.execute(select(PortfolioPosition.portfolio_id).distinct())
        return sorted(pid for (pid,) in result.all())


async def get_price_change(ticker: str) -> float | None:
    """Percent change between the two latest stored closes."""
    async with get_session() as session:
        result = await session.execute(
            select(PricePoint.close_price)
            .where(PricePoint.ticker == ticker.upper())
            .order_by(PricePoint.date.desc())
            .limit(2)
        )
        closes = [float(c) for (c,) in result.all()]
    if len(closes) < 2 or closes[1] <= 0:
        return None
    return (closes[0] - closes[1]) / closes[1] * 100
