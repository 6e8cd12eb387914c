from __future__ import annotations

import unittest
from unittest.mock import Mock

from sqlalchemy.exc import OperationalError

from palletflow.errors import StoreUnavailableError, ValidationError
from palletflow.services.retry_service import (
    RetryPolicy,
    constant_backoff,
    exponential_backoff,
    run_in_transaction,
)


def _policy(max_attempts: int, sleeps: list[float]) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        backoff=constant_backoff(0.5),
        is_retryable=lambda exc: isinstance(exc, StoreUnavailableError),
        sleep=sleeps.append,
    )


class RetryPolicyTests(unittest.TestCase):
    def test_exponential_backoff_doubles_and_caps(self) -> None:
        backoff = exponential_backoff(1.0, cap_seconds=5.0)
        self.assertEqual([backoff(attempt) for attempt in range(1, 6)], [1.0, 2.0, 4.0, 5.0, 5.0])

    def test_retries_until_success(self) -> None:
        sleeps: list[float] = []
        fn = Mock(side_effect=[StoreUnavailableError('slow'), 'ok'])

        self.assertEqual(_policy(3, sleeps).call(fn), 'ok')
        self.assertEqual(fn.call_count, 2)
        self.assertEqual(sleeps, [0.5])

    def test_non_retryable_error_is_raised_immediately(self) -> None:
        sleeps: list[float] = []
        fn = Mock(side_effect=ValidationError('bad'))

        with self.assertRaises(ValidationError):
            _policy(3, sleeps).call(fn)
        self.assertEqual(fn.call_count, 1)
        self.assertEqual(sleeps, [])

    def test_gives_up_after_max_attempts(self) -> None:
        sleeps: list[float] = []
        fn = Mock(side_effect=StoreUnavailableError('down'))

        with self.assertRaises(StoreUnavailableError):
            _policy(2, sleeps).call(fn)
        self.assertEqual(fn.call_count, 2)


class RunInTransactionTests(unittest.TestCase):
    def test_commits_on_success(self) -> None:
        db = Mock()
        self.assertEqual(run_in_transaction(db, lambda: 42, policy=_policy(1, [])), 42)
        db.commit.assert_called_once_with()
        db.rollback.assert_not_called()

    def test_rolls_back_domain_errors_without_retry(self) -> None:
        db = Mock()
        operation = Mock(side_effect=ValidationError('bad'))

        with self.assertRaises(ValidationError):
            run_in_transaction(db, operation, policy=_policy(3, []))
        db.rollback.assert_called_once_with()
        db.commit.assert_not_called()
        self.assertEqual(operation.call_count, 1)

    def test_store_timeout_is_retried_then_reported(self) -> None:
        db = Mock()
        operation = Mock(side_effect=OperationalError('SELECT 1', {}, Exception('statement timeout')))

        with self.assertRaises(StoreUnavailableError):
            run_in_transaction(db, operation, policy=_policy(2, []))
        self.assertEqual(operation.call_count, 2)
        self.assertEqual(db.rollback.call_count, 2)


if __name__ == '__main__':
    unittest.main()
