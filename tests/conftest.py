"""Shared fixtures: singleton reset, a FakeExchange and a TradingContext over it."""
import pytest

from infra.metrics import MetricsRecorder
from tests.helpers import FakeExchange, make_context


@pytest.fixture(autouse=True)
def isolate_process_state():
    """Fresh metrics registry for every test."""
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def exchange():
    return FakeExchange(prices={"BTC": 100.0, "ETH": 50.0})


@pytest.fixture
def ctx(exchange):
    context = make_context(exchange)
    yield context
    context.ledger.close()
