from __future__ import annotations

import asyncio
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable

from loguru import logger

from adapters.base import BrokerAdapter, MarketDataProvider
from data.store import BaseStore
from engine.errors import ConfigurationError, ValidationError
from engine.execution import ExecutionEngine
from engine.matcher import match_rules
from engine.models import Order, PassSummary, Signal, new_id
from engine.monitor import PositionMonitor
from engine.validation import MAX_PRICE, validate_positive_number
from risk.manager import RiskManager
from services.config_service import ConfigService, EngineSettings, SignalRule, TradingSettings, WatchlistItem
from services.scheduler import utc_now
from strategies.base import Strategy
from strategies.bollinger_vwap import BollingerVwapStrategy

Unit = tuple[dict[str, Any], Callable[[], Awaitable[None]]]


class TradingEngine:
    def __init__(
        self,
        store: BaseStore | None,
        config_service: ConfigService | None,
        market_data: MarketDataProvider | None,
        broker: BrokerAdapter | None,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
        strategy: Strategy | None = None,
    ) -> None:
        missing = [
            name
            for name, value in (
                ("store", store),
                ("config_service", config_service),
                ("market_data", market_data),
                ("broker", broker),
            )
            if value is None
        ]
        if missing:
            raise ConfigurationError(f"Missing collaborators: {', '.join(missing)}")
        self.store = store
        self.config_service = config_service
        self.market_data = market_data
        self.broker = broker
        self.settings = settings or EngineSettings()
        self.clock = clock
        self.strategy = strategy or BollingerVwapStrategy()
        self.risk = RiskManager(store)
        self.execution = ExecutionEngine(store, broker)
        self.monitor = PositionMonitor(store, market_data, self.execution, auto_close=self.settings.AUTO_CLOSE_POSITIONS)

    async def _run_units(self, summary: PassSummary, units: list[Unit]) -> None:
        semaphore = asyncio.Semaphore(max(1, self.settings.MAX_CONCURRENCY))
        timeout = self.settings.UNIT_TIMEOUT_SECONDS

        async def _guarded(context: dict[str, Any], factory: Callable[[], Awaitable[None]]) -> None:
            async with semaphore:
                try:
                    await asyncio.wait_for(factory(), timeout=timeout)
                except ValidationError as exc:
                    logger.warning("Skipping {}: {}", context, exc)
                    summary.skip(str(exc), **context)
                except asyncio.TimeoutError:
                    logger.error("Unit {} timed out after {}s", context, timeout)
                    summary.error(f"timed out after {timeout}s", **context)
                except Exception as exc:
                    logger.exception("Unit {} failed: {}", context, exc)
                    summary.error(str(exc), **context)

        await asyncio.gather(*(_guarded(context, factory) for context, factory in units))

    async def run_signal_scan(self, now: datetime | None = None) -> PassSummary:
        now = now or self.clock()
        summary = PassSummary("signal_scan")
        active = self.config_service.load_active_settings()
        user_ids = [s.user_id for s in active]
        items, rejected = self.config_service.load_watchlist(user_ids)
        for entry in rejected:
            summary.skip(
                entry["reason"],
                user_id=entry["user_id"],
                watchlist_id=entry["watchlist_id"],
                symbol=entry["symbol"],
            )
        rules = self.config_service.load_rules(user_ids)

        await self._run_units(
            summary,
            [
                ({"user_id": item.user_id, "symbol": item.symbol}, partial(self._scan_item, item, rules, now, summary))
                for item in items
            ],
        )
        await self._run_units(
            summary,
            [({"user_id": s.user_id}, partial(self._execute_user, s, now, summary)) for s in active],
        )
        logger.info("Signal scan for {} users: {}", len(active), _counts(summary))
        return summary

    async def _scan_item(self, item: WatchlistItem, rules: list[SignalRule], now: datetime, summary: PassSummary) -> None:
        bars = await self.market_data.get_bars(item.symbol, self.settings.BAR_LIMIT)
        detected = self.strategy.generate(bars, item.indicators())
        triggered_at = int(now.timestamp())
        for candidate in detected:
            validate_positive_number(candidate.price, f"price for {item.symbol}", MAX_PRICE)
            context = {"user_id": item.user_id, "symbol": item.symbol, "signal_type": candidate.signal_type}
            matched = match_rules(item.user_id, candidate.signal_type, rules)
            if not matched:
                summary.skip("no matching rule", **context)
                continue
            for rule in matched:
                signal = Signal(
                    id=new_id(),
                    user_id=item.user_id,
                    symbol=item.symbol,
                    signal_type=candidate.signal_type,
                    price_at_signal=candidate.price,
                    bb_upper=candidate.bands.upper,
                    bb_lower=candidate.bands.lower,
                    bb_middle=candidate.bands.middle,
                    vwap=candidate.vwap or None,
                    volume=candidate.volume,
                    triggered_at=triggered_at,
                    watchlist_id=item.id,
                    signal_rule_id=rule.id,
                    bar_ts=candidate.bar_ts,
                )
                if not self.store.add_signal(signal):
                    summary.skip("signal already recorded for this bar", signal_rule_id=rule.id, **context)
                    continue
                logger.info("Signal {} {} @ {} for user {}", candidate.signal_type, item.symbol, candidate.price, item.user_id)
                summary.details.append(
                    {"signal_id": signal.id, "signal_rule_id": rule.id, "price": candidate.price, **context}
                )

    async def _execute_user(self, settings: TradingSettings, now: datetime, summary: PassSummary) -> None:
        pending = self.store.list_pending_signals(settings.user_id)
        if not pending:
            return
        decision = self.risk.evaluate_session(settings, now)
        if not decision.allowed:
            logger.info("Risk gate blocked user {}: {}", settings.user_id, decision.reason)
            self.risk.record_rejection(settings.user_id, decision.reason, now)
            for signal in pending:
                summary.skip(decision.reason, user_id=settings.user_id, signal_id=signal.id, symbol=signal.symbol)
            return

        account_value = await self.broker.get_account_value(settings.user_id)
        remaining = decision.trades_remaining
        for signal in pending:
            context = {"user_id": settings.user_id, "signal_id": signal.id, "symbol": signal.symbol}
            if remaining <= 0:
                summary.skip("max daily trades reached", **context)
                continue
            rule = self.config_service.load_rule(signal.signal_rule_id)
            if rule is None or not rule.enabled:
                summary.skip("rule disabled or missing", **context)
                continue
            sizing = self.risk.size_position(settings, rule, signal.price_at_signal, account_value)
            if not sizing.allowed:
                reason = sizing.reason or "position size too small"
                self.risk.record_rejection(settings.user_id, reason, now)
                summary.skip(reason, **context)
                continue
            result = await self.execution.execute(signal, rule, sizing.quantity, now)
            if result.status == "executed":
                remaining -= 1
                summary.executed.append(result.to_dict())
            elif result.status == "skipped":
                summary.skip(result.reason or "skipped", **context)
            else:
                summary.error(result.reason or "execution failed", **context)

    async def run_risk_check(self, now: datetime | None = None) -> PassSummary:
        now = now or self.clock()
        summary = PassSummary("risk_check")

        async def _check(settings: TradingSettings) -> None:
            status = self.risk.risk_status(settings, now)
            if not status.within_limits:
                logger.warning("User {} outside risk limits: {}", settings.user_id, status.to_dict())
            summary.details.append(status.to_dict())

        await self._run_units(
            summary,
            [({"user_id": s.user_id}, partial(_check, s)) for s in self.config_service.load_active_settings()],
        )
        logger.info("Risk check: {}", _counts(summary))
        return summary

    async def run_trailing_stop_update(self, now: datetime | None = None) -> PassSummary:
        now = now or self.clock()
        summary = PassSummary("trailing_stop_update")

        async def _process(position_id: str) -> None:
            position = self.store.get_position(position_id)
            if position is None or not position.is_open:
                summary.skip("position closed", position_id=position_id)
                return
            outcome = await self.monitor.process(position, now)
            if outcome["action"] == "closed":
                summary.executed.append(outcome)
            else:
                summary.details.append(outcome)

        await self._run_units(
            summary,
            [
                ({"position_id": p.id, "user_id": p.user_id, "symbol": p.symbol}, partial(_process, p.id))
                for p in self.store.list_open_positions()
            ],
        )
        logger.info("Trailing stop update: {}", _counts(summary))
        return summary

    async def close_position(self, position_id: str, reason: str = "manual", now: datetime | None = None) -> Order:
        now = now or self.clock()
        position = self.store.get_position(position_id)
        if position is None:
            raise ValidationError(f"Unknown position: {position_id}")
        quote = await self.market_data.get_quote(position.symbol)
        price = validate_positive_number(quote, f"quote for {position.symbol}", MAX_PRICE)
        return await self.execution.close_position(position, price, reason, now)

    async def cancel_order(self, order_id: str, now: datetime | None = None) -> Order:
        return await self.execution.cancel_order(order_id, now or self.clock())

    async def modify_order(self, order_id: str, now: datetime | None = None, **changes: float | None) -> Order:
        return await self.execution.modify_order(order_id, now or self.clock(), **changes)

    def apply_order_update(
        self, order_id: str, status: str, filled_price: float | None = None, now: datetime | None = None
    ) -> Order:
        return self.execution.apply_order_update(order_id, status, now or self.clock(), filled_price)


def _counts(summary: PassSummary) -> str:
    return f"{len(summary.executed)} executed, {len(summary.skipped)} skipped, {len(summary.errored)} errored"
