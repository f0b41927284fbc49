"""Brokerage gateway interface."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

from .models import Account, Bar, OrderRequest, OrderResult, Position, Quote


class BrokerGateway(ABC):
    """Abstract async brokerage boundary.

    Implementations return validated records and raise ``BrokerResponseError``
    for failed calls or malformed payloads.
    """

    @abstractmethod
    async def get_account(self) -> Account:
        """Account equity, cash and buying power."""

    @abstractmethod
    async def get_positions(self) -> List[Position]:
        """Open positions."""

    @abstractmethod
    async def create_order(self, request: OrderRequest) -> OrderResult:
        """Submit an order."""

    @abstractmethod
    async def get_bars(self, symbol: str, timeframe: str, limit: int) -> List[Bar]:
        """Most recent ``limit`` bars, oldest first."""

    @abstractmethod
    async def get_latest_quote(self, symbol: str) -> Quote:
        """Top-of-book quote."""
