"""
Shared fixtures and in-memory fakes for the engine tests.
"""

import random
import time
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from auto_trader import AutoTrader
from config import BotConfig
from events import EngineEvent, EventBus
from models import RiskReport, SwapDirection, SwapResult, TokenMetadata
from position_manager import PositionManager


def make_config(**overrides) -> BotConfig:
    values = dict(
        mode="simulation",
        log_level="DEBUG",
        data_dir="data",
        telegram_bot_token="",
        telegram_chat_id=None,
        wallet_private_key=None,
        rpc_url="http://localhost:8899",
        flintr_api_key="",
        jupiter_api_url="https://lite-api.jup.ag",
        dexscreener_api_url="https://api.dexscreener.com/latest/dex",
        price_timeout_sec=1.0,
        database_url=None,
        health_port=0,
        # ticks are driven by hand in tests
        position_check_interval_sec=3600.0,
        scan_interval_sec=3600.0,
        trade_interval_sec=3600.0,
        buy_slippage_percent=5.0,
        sell_slippage_percent=2.0,
        stop_loss_slippage_percent=5.0,
        simulate_prices=False,
        sim_swap_failure_rate=0.0,
    )
    values.update(overrides)
    return BotConfig(**values)


# =============================================================================
# Fakes
# =============================================================================


class MemoryStore:
    def __init__(self, items: Optional[list] = None, fail: bool = False) -> None:
        self.items = list(items or [])
        self.fail = fail
        self.saves = 0

    def load(self) -> list:
        return list(self.items)

    def save(self, items) -> bool:
        self.saves += 1
        if self.fail:
            return False
        self.items = list(items)
        return True


class FakeOracle:
    """Fixed price per token; None means the source failed."""

    def __init__(self) -> None:
        self.prices: Dict[str, Optional[float]] = {}
        self.calls: List[str] = []
        self.error: Optional[Exception] = None

    def set_price(self, token: str, price: Optional[float]) -> None:
        self.prices[token] = price

    async def get_price(self, token_address, reference_price=None):
        self.calls.append(token_address)
        if self.error is not None:
            raise self.error
        return self.prices.get(token_address)


class FakeSwap:
    def __init__(self, price: float = 0.001) -> None:
        self.price = price
        self.calls: List[tuple] = []
        self.fail_next = 0
        self.error = "swap failed"

    async def swap(self, direction, token_address, amount, slippage_percent, *, price_hint=None):
        self.calls.append((direction, token_address, amount, slippage_percent))
        if self.fail_next > 0:
            self.fail_next -= 1
            return SwapResult.failure(self.error)
        price = price_hint or self.price
        if direction == SwapDirection.BUY:
            out_amount = amount / price
        else:
            out_amount = amount * price
        return SwapResult(
            success=True,
            in_amount=amount,
            out_amount=out_amount,
            tx_reference=f"tx-{len(self.calls)}",
        )


class FakeFeed:
    def __init__(self, candidates: Optional[List[TokenMetadata]] = None) -> None:
        self.candidates = list(candidates or [])

    async def fetch_candidates(self) -> List[TokenMetadata]:
        batch, self.candidates = self.candidates, []
        return batch


class FakeScorer:
    def __init__(self, default: float = 20.0) -> None:
        self.default = default
        self.levels: Dict[str, float] = {}
        self.calls: List[str] = []

    async def score(self, token_address: str) -> RiskReport:
        self.calls.append(token_address)
        return RiskReport(risk_level=self.levels.get(token_address, self.default))


class EventRecorder:
    def __init__(self, bus: EventBus) -> None:
        self.events: List[EngineEvent] = []
        bus.subscribe(EngineEvent, self.events.append)

    def names(self) -> List[str]:
        return [e.name for e in self.events]

    def of_type(self, event_type) -> list:
        return [e for e in self.events if isinstance(e, event_type)]


def make_token(address: str = "TokenAAA", **overrides) -> TokenMetadata:
    values = dict(
        address=address,
        name="MoonInu",
        symbol="MOON",
        created_at=time.time() - 120,
        liquidity_sol=25.0,
        holder_count=100,
        risk_level=20.0,
        price_sol=0.001,
    )
    values.update(overrides)
    return TokenMetadata(**values)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def config() -> BotConfig:
    return make_config()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def swap() -> FakeSwap:
    return FakeSwap()


@pytest.fixture
def position_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def strategy_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def feed() -> FakeFeed:
    return FakeFeed()


@pytest_asyncio.fixture
async def manager(config, oracle, swap, position_store, bus):
    pm = PositionManager(config, oracle, swap, position_store, bus)
    yield pm
    await pm.stop()


@pytest_asyncio.fixture
async def trader(config, manager, swap, feed, strategy_store, bus):
    at = AutoTrader(
        config,
        manager,
        swap,
        feed,
        None,
        strategy_store,
        bus,
        rng=random.Random(7),
    )
    yield at
    await at.aclose()
