"""Tests for the bounded retry helpers."""

from unittest.mock import Mock, patch

import pytest

from backroom.exceptions import RetryExhaustedError
from backroom.retry import Err, Ok, RetryConfig, calculate_delay, retry_call, with_retry


class TestCalculateDelay:
    """Tests for exponential backoff delays."""

    def test_exponential_growth(self):
        config = RetryConfig(initial_delay=1.0, exponential_base=2.0, jitter=False)

        assert calculate_delay(0, config) == 1.0
        assert calculate_delay(1, config) == 2.0
        assert calculate_delay(3, config) == 8.0

    def test_capped_at_max_delay(self):
        config = RetryConfig(initial_delay=1.0, max_delay=5.0, jitter=False)
        assert calculate_delay(10, config) == 5.0

    def test_jitter_adds_at_most_a_quarter(self):
        config = RetryConfig(initial_delay=4.0, jitter=True)
        for _ in range(20):
            delay = calculate_delay(0, config)
            assert 4.0 <= delay <= 5.0


class TestRetryCall:
    """Tests for retry_call."""

    def test_success_first_attempt(self):
        func = Mock(return_value=0.8)

        result = retry_call(func, max_attempts=3)

        assert result == Ok(0.8)
        assert result.is_ok
        assert func.call_count == 1

    def test_success_after_failures(self):
        func = Mock(side_effect=[ValueError("bad"), TimeoutError("slow"), 0.4])

        result = retry_call(func, max_attempts=3)

        assert isinstance(result, Ok)
        assert result.value == 0.4
        assert func.call_count == 3

    def test_exhausted_returns_err(self):
        error = ValueError("still bad")
        func = Mock(side_effect=error)

        result = retry_call(func, max_attempts=3, label="pair")

        assert isinstance(result, Err)
        assert not result.is_ok
        assert isinstance(result.error, RetryExhaustedError)
        assert result.error.attempts == 3
        assert result.error.last_error is error
        assert func.call_count == 3

    def test_never_exceeds_max_attempts(self):
        func = Mock(side_effect=ValueError("bad"))
        retry_call(func, max_attempts=5)
        assert func.call_count == 5

    def test_non_retryable_propagates(self):
        func = Mock(side_effect=KeyError("boom"))

        with pytest.raises(KeyError):
            retry_call(func, max_attempts=3, retry_on=(ValueError,))
        assert func.call_count == 1

    @patch("backroom.retry.time.sleep")
    def test_no_sleep_without_backoff(self, mock_sleep):
        retry_call(Mock(side_effect=ValueError("bad")), max_attempts=3)
        mock_sleep.assert_not_called()

    @patch("backroom.retry.time.sleep")
    def test_backoff_sleeps_between_attempts(self, mock_sleep):
        backoff = RetryConfig(initial_delay=0.1, jitter=False)
        retry_call(Mock(side_effect=ValueError("bad")), max_attempts=3, backoff=backoff)
        assert mock_sleep.call_count == 2


class TestWithRetry:
    """Tests for the with_retry decorator."""

    @patch("backroom.retry.time.sleep")
    def test_retries_then_succeeds(self, mock_sleep):
        calls = {"count": 0}

        @with_retry(RetryConfig(max_retries=2, jitter=False), retry_on=(ConnectionError,))
        def flaky():
            calls["count"] += 1
            if calls["count"] < 3:
                raise ConnectionError("down")
            return "ok"

        assert flaky() == "ok"
        assert calls["count"] == 3
        assert mock_sleep.call_count == 2

    @patch("backroom.retry.time.sleep")
    def test_reraises_after_max_retries(self, mock_sleep):
        @with_retry(RetryConfig(max_retries=1), retry_on=(ConnectionError,))
        def broken():
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            broken()

    def test_other_errors_not_retried(self):
        calls = {"count": 0}

        @with_retry(RetryConfig(max_retries=3), retry_on=(ConnectionError,))
        def invalid():
            calls["count"] += 1
            raise ValueError("bad")

        with pytest.raises(ValueError):
            invalid()
        assert calls["count"] == 1
