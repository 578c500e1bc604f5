"""
Tests for concurrency control utilities.

Tests the RunLease that keeps overlapping billing runs apart and the
lock_row helper used for installment updates.
"""

import pytest
from django.db import transaction

from billing.exceptions import LockAcquisitionError
from billing.locks import RunLease, lock_row
from billing.models import Installment
from billing.tests.factories import InstallmentFactory
from core.exceptions import NotFoundError


class TestRunLease:
    """Tests for RunLease class."""

    def test_acquire_sets_key_with_expiry(self, mock_redis):
        lease = RunLease("billing:installment-job", ttl=1800)
        lease.acquire()

        call_args = mock_redis.set.call_args
        assert call_args[0][0] == "lock:billing:installment-job"
        assert call_args[1]["nx"] is True
        assert call_args[1]["ex"] == 1800

    def test_each_holder_gets_its_own_token(self, mock_redis):
        first = RunLease("billing:installment-job", ttl=30)
        second = RunLease("billing:installment-job", ttl=30)

        first.acquire()
        second.acquire()

        assert mock_redis.set.call_args_list[0][0][1] != mock_redis.set.call_args_list[1][0][1]

    def test_acquire_raises_when_held(self, mock_redis):
        """A second billing run must be rejected immediately."""
        mock_redis.set.return_value = False

        lease = RunLease("billing:installment-job", ttl=1800)

        with pytest.raises(LockAcquisitionError) as exc_info:
            lease.acquire()

        assert "already held" in str(exc_info.value)
        assert exc_info.value.details["key"] == "lock:billing:installment-job"
        assert mock_redis.set.call_count == 1
        assert lease.release() is False

    def test_release_only_if_owned(self, mock_redis):
        """The lease may have expired and been taken by another run."""
        mock_redis.eval.return_value = 0

        lease = RunLease("billing:installment-job", ttl=30)
        lease.acquire()

        assert lease.release() is False

    def test_release_without_acquire_returns_false(self, mock_redis):
        lease = RunLease("billing:installment-job", ttl=30)

        assert lease.release() is False
        mock_redis.eval.assert_not_called()

    def test_context_manager_releases_on_exception(self, mock_redis):
        with pytest.raises(ValueError, match="charge blew up"):
            with RunLease("billing:installment-job", ttl=30):
                raise ValueError("charge blew up")

        mock_redis.eval.assert_called_once()
        token = mock_redis.set.call_args[0][1]
        assert mock_redis.eval.call_args[0][3] == token


@pytest.mark.django_db
class TestLockRow:
    """Tests for lock_row."""

    def test_returns_fresh_row(self):
        installment = InstallmentFactory()
        Installment.objects.filter(pk=installment.pk).update(attempt_count=2)

        with transaction.atomic():
            locked = lock_row(Installment, installment.pk, select_related=("plan",))

        assert locked.pk == installment.pk
        assert locked.attempt_count == 2

    def test_missing_row_raises(self):
        with transaction.atomic():
            with pytest.raises(NotFoundError) as exc_info:
                lock_row(Installment, "00000000-0000-0000-0000-000000000000")

        assert exc_info.value.error_code == "INSTALLMENT_NOT_FOUND"
