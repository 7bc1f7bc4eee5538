"""
Tests for the bounded retry combinator.
"""

from unittest.mock import Mock, patch

import pytest

from core.exceptions import ExchangeRequestError, TransientExchangeError
from core.retry import NO_RETRY, Backoff, RetryPolicy, retry_call


class TestDelays:
    def test_linear(self):
        policy = RetryPolicy(base_delay=1.0, backoff=Backoff.LINEAR)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]

    def test_exponential_with_cap(self):
        policy = RetryPolicy(base_delay=1.0, backoff=Backoff.EXPONENTIAL, max_delay=3.0)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]


class TestRetryCall:
    def test_returns_first_success(self):
        fn = Mock(return_value=42)
        assert retry_call(fn, policy=RetryPolicy(base_delay=0)) == 42
        assert fn.call_count == 1

    def test_retries_transient_then_succeeds(self):
        fn = Mock(side_effect=[TransientExchangeError("timeout"), TransientExchangeError("timeout"), "ok"])
        with patch("time.sleep") as mock_sleep:
            assert retry_call(fn, "BTC", policy=RetryPolicy(attempts=3, base_delay=1.0)) == "ok"
        assert fn.call_count == 3
        fn.assert_called_with("BTC")
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    def test_reraises_after_budget(self):
        fn = Mock(side_effect=TransientExchangeError("down"))
        with patch("time.sleep"):
            with pytest.raises(TransientExchangeError):
                retry_call(fn, policy=RetryPolicy(attempts=3, base_delay=1.0))
        assert fn.call_count == 3

    def test_non_retryable_propagates_immediately(self):
        fn = Mock(side_effect=ExchangeRequestError("bad request", status_code=400))
        with patch("time.sleep") as mock_sleep:
            with pytest.raises(ExchangeRequestError):
                retry_call(fn, policy=RetryPolicy(attempts=5))
        assert fn.call_count == 1
        mock_sleep.assert_not_called()

    def test_no_retry_policy(self):
        fn = Mock(side_effect=TransientExchangeError("timeout"))
        with pytest.raises(TransientExchangeError):
            retry_call(fn, policy=NO_RETRY)
        assert fn.call_count == 1

    def test_custom_retryable_classes(self):
        fn = Mock(side_effect=[ValueError("flaky"), "ok"])
        policy = RetryPolicy(attempts=2, base_delay=0.0, retry_on=(ValueError,))
        assert retry_call(fn, policy=policy) == "ok"
