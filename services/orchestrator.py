from __future__ import annotations

from loguru import logger

from adapters.base import BrokerAdapter, MarketDataProvider
from adapters.http_bridge import HttpBroker, HttpMarketData
from adapters.market_data import CsvMarketData, SimulatedMarketData
from adapters.paper import PaperBroker
from data.store import BaseStore, create_store
from engine.core import TradingEngine
from engine.errors import ConfigurationError
from services.config_service import ConfigService, EngineSettings


class EngineOrchestrator:
    """Builds the store and collaborators named by the settings and hands them to the engine."""

    def __init__(self, settings: EngineSettings, store: BaseStore | None = None) -> None:
        self.settings = settings
        self._store = store

    @property
    def store(self) -> BaseStore:
        if self._store is None:
            self._store = create_store(self.settings.DATABASE_URL, self.settings.DATABASE_PATH)
        return self._store

    def _build_market_data(self) -> MarketDataProvider:
        kind = self.settings.MARKET_DATA
        if kind == "simulated":
            return SimulatedMarketData(seed=self.settings.SIMULATION_SEED)
        if kind == "csv":
            return CsvMarketData(self.settings.MARKET_DATA_CSV_DIR)
        if kind == "http":
            if not self.settings.MARKET_DATA_URL:
                raise ConfigurationError("MARKET_DATA_URL is required for http market data")
            return HttpMarketData(self.settings.MARKET_DATA_URL)
        raise ConfigurationError(f"Unknown market data provider: {kind}")

    def _build_broker(self) -> BrokerAdapter:
        kind = self.settings.BROKER
        if kind == "paper":
            return PaperBroker(account_value=self.settings.ACCOUNT_VALUE)
        if kind == "http":
            if not self.settings.BROKER_URL:
                raise ConfigurationError("BROKER_URL is required for the http broker")
            return HttpBroker(self.settings.BROKER_URL)
        raise ConfigurationError(f"Unknown broker: {kind}")

    def build_engine(self) -> TradingEngine:
        market_data = self._build_market_data()
        broker = self._build_broker()
        store = self.store
        logger.info("Engine using {} market data and {} broker", self.settings.MARKET_DATA, self.settings.BROKER)
        return TradingEngine(store, ConfigService(store), market_data, broker, settings=self.settings)
