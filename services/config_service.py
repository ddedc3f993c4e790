from __future__ import annotations

from datetime import time
from typing import Annotated, Any, Literal, Union

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from data.store import BaseStore
from engine.models import SignalType
from engine.validation import validate_symbol


class EngineSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_PATH: str = "./signals.db"
    DATABASE_URL: str = ""
    MARKET_DATA: str = "simulated"
    MARKET_DATA_URL: str = ""
    MARKET_DATA_CSV_DIR: str = "./bars"
    BROKER: str = "paper"
    BROKER_URL: str = ""
    ACCOUNT_VALUE: float = 100000.0
    SIMULATION_SEED: int = 7
    BAR_LIMIT: int = 101
    MAX_CONCURRENCY: int = 8
    UNIT_TIMEOUT_SECONDS: float = 30.0
    AUTO_CLOSE_POSITIONS: bool = True
    SCAN_INTERVAL: str = "1m"


class BollingerConfig(BaseModel):
    kind: Literal["bollinger"] = "bollinger"
    period: int = Field(20, ge=2, le=200)
    std_dev: float = Field(2.0, gt=0, le=5)


class VwapConfig(BaseModel):
    kind: Literal["vwap"] = "vwap"


IndicatorConfig = Annotated[Union[BollingerConfig, VwapConfig], Field(discriminator="kind")]


class WatchlistItem(BaseModel):
    id: str
    user_id: str
    symbol: str
    enabled: bool = True
    bb_period: int = Field(20, ge=2, le=200)
    bb_std_dev: float = Field(2.0, gt=0, le=5)
    vwap_enabled: bool = True

    @field_validator("symbol")
    @classmethod
    def _symbol(cls, value: str) -> str:
        return validate_symbol(value)

    def indicators(self) -> list[IndicatorConfig]:
        configs: list[IndicatorConfig] = [BollingerConfig(period=self.bb_period, std_dev=self.bb_std_dev)]
        if self.vwap_enabled:
            configs.append(VwapConfig())
        return configs


class SignalRule(BaseModel):
    id: str
    user_id: str
    name: str = ""
    signal_type: SignalType
    enabled: bool = True
    option_strategy: str = "buy_call"
    position_size_percent: float = Field(5.0, gt=0, le=100)
    max_position_value: float = Field(10000.0, gt=0)
    trailing_stop_percent: float | None = None
    stop_loss_percent: float | None = None
    take_profit_percent: float | None = None


class TradingSettings(BaseModel):
    user_id: str
    auto_trade_enabled: bool = False
    max_daily_trades: int = 10
    max_daily_loss: float = 1000.0
    max_position_size: float = 10000.0
    trading_hours_start: time = time(9, 30)
    trading_hours_end: time = time(16, 0)
    timezone: str = "America/New_York"


class ConfigService:
    def __init__(self, store: BaseStore) -> None:
        self.store = store

    def load_settings(self, user_id: str) -> TradingSettings | None:
        row = self.store.get_trading_settings(user_id)
        if not row:
            return None
        return TradingSettings.model_validate(row)

    def load_active_settings(self) -> list[TradingSettings]:
        settings = []
        for row in self.store.list_trading_settings(auto_trade_only=True):
            try:
                settings.append(TradingSettings.model_validate(row))
            except ValidationError as exc:
                logger.warning("Invalid trading settings for user {}: {}", row.get("user_id"), exc)
        return settings

    def load_watchlist(self, user_ids: list[str]) -> tuple[list[WatchlistItem], list[dict[str, Any]]]:
        items: list[WatchlistItem] = []
        rejected: list[dict[str, Any]] = []
        for row in self.store.list_watchlist(user_ids):
            try:
                items.append(WatchlistItem.model_validate(row))
            except ValidationError as exc:
                reason = "; ".join(err["msg"] for err in exc.errors())
                logger.warning("Rejected watchlist item {} ({}): {}", row.get("id"), row.get("symbol"), reason)
                rejected.append(
                    {"user_id": row.get("user_id"), "watchlist_id": row.get("id"), "symbol": row.get("symbol"), "reason": reason}
                )
        return items, rejected

    def load_rules(self, user_ids: list[str]) -> list[SignalRule]:
        rules = []
        for row in self.store.list_signal_rules(user_ids):
            try:
                rules.append(SignalRule.model_validate(row))
            except ValidationError as exc:
                logger.warning("Rejected signal rule {}: {}", row.get("id"), exc)
        return rules

    def load_rule(self, rule_id: str | None) -> SignalRule | None:
        if not rule_id:
            return None
        row = self.store.get_signal_rule(rule_id)
        if not row:
            return None
        try:
            return SignalRule.model_validate(row)
        except ValidationError as exc:
            logger.warning("Rejected signal rule {}: {}", rule_id, exc)
            return None

    def update_for_user(self, user_id: str, **fields: Any) -> TradingSettings:
        current = self.load_settings(user_id) or TradingSettings(user_id=user_id)
        updated = TradingSettings.model_validate({**current.model_dump(), **fields, "user_id": user_id})
        self.store.save_trading_settings(
            user_id,
            auto_trade_enabled=updated.auto_trade_enabled,
            max_daily_trades=updated.max_daily_trades,
            max_daily_loss=updated.max_daily_loss,
            max_position_size=updated.max_position_size,
            trading_hours_start=updated.trading_hours_start.isoformat(),
            trading_hours_end=updated.trading_hours_end.isoformat(),
            timezone=updated.timezone,
        )
        return updated
