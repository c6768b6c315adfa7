"""
Tests for lifecycle.py
"""

from datetime import timedelta

import pytest

from envcontroller.exceptions import (
    EnvironmentExistsError,
    InvalidTransitionError,
    TeardownInProgressError,
    TTLExpiredWithActiveLock,
)
from envcontroller.models import EnvironmentStatus


def test_register_starts_provisioning(make_environment, now):
    environment = make_environment()

    assert environment.status == EnvironmentStatus.PROVISIONING
    assert environment.created_at == now
    assert environment.expires_at == now + timedelta(hours=72)


def test_register_rejects_second_live_environment(make_environment):
    make_environment()

    with pytest.raises(EnvironmentExistsError, match="orders-feature456 already exists"):
        make_environment()


def test_register_after_destroy_is_allowed(lifecycle, make_environment):
    environment = make_environment()
    lifecycle.begin_drain(environment, "closed")
    lifecycle.mark_deletion_started(environment)
    lifecycle.mark_destroyed(environment)

    assert make_environment().status == EnvironmentStatus.PROVISIONING


def test_full_lifecycle(lifecycle, make_environment):
    environment = make_environment()

    lifecycle.mark_active(environment)
    assert lifecycle.begin_drain(environment, "merged") is True
    lifecycle.mark_deletion_started(environment)
    lifecycle.mark_destroyed(environment)

    assert environment.status == EnvironmentStatus.DESTROYED
    assert environment.drain_reason == "merged"


@pytest.mark.parametrize(
    "path",
    [
        [EnvironmentStatus.DESTROYED],
        [EnvironmentStatus.ACTIVE, EnvironmentStatus.PROVISIONING],
        [EnvironmentStatus.ACTIVE, EnvironmentStatus.DESTROYED],
    ],
)
def test_invalid_transitions(lifecycle, make_environment, path):
    environment = make_environment()

    with pytest.raises(InvalidTransitionError):
        for status in path:
            lifecycle.transition(environment, status)


def test_destroyed_is_terminal(lifecycle, make_environment):
    environment = make_environment()
    lifecycle.begin_drain(environment, "failed")
    lifecycle.mark_deletion_started(environment)
    lifecycle.mark_destroyed(environment)

    for status in EnvironmentStatus:
        with pytest.raises(InvalidTransitionError):
            lifecycle.transition(environment, status)


def test_mark_destroyed_requires_deletion_started(lifecycle, make_environment):
    environment = make_environment()
    lifecycle.begin_drain(environment, "closed")

    with pytest.raises(InvalidTransitionError, match="before deletion has started"):
        lifecycle.mark_destroyed(environment)


def test_mark_deletion_started_requires_draining(lifecycle, make_environment):
    environment = make_environment()
    lifecycle.mark_active(environment)

    with pytest.raises(InvalidTransitionError, match="deletion requires Draining"):
        lifecycle.mark_deletion_started(environment)


def test_begin_drain_twice(lifecycle, make_environment):
    environment = make_environment()
    lifecycle.mark_active(environment)

    assert lifecycle.begin_drain(environment, "ttl-expired") is True
    assert lifecycle.begin_drain(environment, "merged") is False
    assert environment.drain_reason == "ttl-expired"


# ============================================================================
# CANCELLATION TESTS
# ============================================================================


def test_cancel_teardown_before_deletion(lifecycle, make_environment):
    environment = make_environment()
    lifecycle.mark_active(environment)
    lifecycle.begin_drain(environment, "ttl-expired")

    lifecycle.cancel_teardown(environment)

    assert environment.status == EnvironmentStatus.ACTIVE
    assert environment.drain_reason is None


def test_cancel_teardown_after_deletion_started(lifecycle, make_environment):
    environment = make_environment()
    lifecycle.mark_active(environment)
    lifecycle.begin_drain(environment, "ttl-expired")
    lifecycle.mark_deletion_started(environment)

    with pytest.raises(TeardownInProgressError):
        lifecycle.cancel_teardown(environment)

    assert environment.status == EnvironmentStatus.DRAINING


def test_cancel_teardown_when_not_draining(lifecycle, make_environment):
    environment = make_environment()
    lifecycle.mark_active(environment)

    with pytest.raises(InvalidTransitionError, match="nothing to cancel"):
        lifecycle.cancel_teardown(environment)


# ============================================================================
# TTL TESTS
# ============================================================================


def test_check_ttl_before_expiry(lifecycle, make_environment, now):
    environment = make_environment()
    lifecycle.mark_active(environment)

    assert lifecycle.check_ttl(environment, now + timedelta(hours=71)) is False


def test_check_ttl_after_expiry(lifecycle, make_environment, now):
    environment = make_environment()
    lifecycle.mark_active(environment)

    assert lifecycle.check_ttl(environment, now + timedelta(hours=72)) is True
    assert lifecycle.expired(now + timedelta(hours=72)) == [environment]


def test_check_ttl_locked_environment_is_delayed_once(lifecycle, make_environment, now):
    """A locked environment gets one grace period, then drains even if still locked."""
    environment = make_environment()
    lifecycle.mark_active(environment)
    lifecycle.set_locked(environment, True)

    with pytest.raises(TTLExpiredWithActiveLock, match="teardown delayed"):
        lifecycle.check_ttl(environment, now + timedelta(hours=73))

    assert environment.ttl_extended is True
    assert environment.expires_at == now + timedelta(hours=96)
    assert lifecycle.check_ttl(environment, now + timedelta(hours=80)) is False
    assert lifecycle.check_ttl(environment, now + timedelta(hours=96)) is True


def test_restored_extension_is_not_granted_again(lifecycle, make_environment, now):
    environment = make_environment()
    lifecycle.mark_active(environment)
    lifecycle.set_locked(environment, True)

    lifecycle.restore_extension(environment, now + timedelta(hours=96))

    assert environment.expires_at == now + timedelta(hours=96)
    assert lifecycle.check_ttl(environment, now + timedelta(hours=80)) is False
    assert lifecycle.check_ttl(environment, now + timedelta(hours=96)) is True


def test_restored_extension_never_shortens_ttl(lifecycle, make_environment, now):
    environment = make_environment()

    lifecycle.restore_extension(environment, now + timedelta(hours=1))

    assert environment.expires_at == now + timedelta(hours=72)
    assert environment.ttl_extended is True


def test_check_ttl_ignores_draining_environments(lifecycle, make_environment, now):
    environment = make_environment()
    lifecycle.begin_drain(environment, "closed")

    assert lifecycle.check_ttl(environment, now + timedelta(days=30)) is False


def test_custom_ttl_and_grace(make_environment, lifecycle, now):
    lifecycle.ttl = timedelta(hours=1)
    lifecycle.grace = timedelta(minutes=30)
    environment = make_environment()
    lifecycle.set_locked(environment, True)

    with pytest.raises(TTLExpiredWithActiveLock):
        lifecycle.check_ttl(environment, now + timedelta(hours=1))

    assert environment.expires_at == now + timedelta(hours=1, minutes=30)


def test_list_and_find(lifecycle, make_environment):
    orders = make_environment("orders", "456")
    billing = make_environment("billing", "456", team="finance")
    other = make_environment("orders", "789")
    lifecycle.mark_active(orders)

    assert lifecycle.get("orders", "456") is orders
    assert lifecycle.find_by_feature("456") == [orders, billing]
    assert lifecycle.list(EnvironmentStatus.ACTIVE) == [orders]
    assert lifecycle.list() == [billing, orders, other]
