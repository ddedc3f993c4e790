from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from engine.models import Bar, DetectedSignal
from services.config_service import IndicatorConfig


class Strategy(ABC):
    @abstractmethod
    def generate(self, bars: list[Bar], indicators: Sequence[IndicatorConfig]) -> list[DetectedSignal]:
        raise NotImplementedError
