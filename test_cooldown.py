from datetime import timedelta

from conftest import T0, make_call
from tracking.cooldown import CooldownGuard
from tracking.models import Caller, PremiumEntitlement


def _guard(store, clock, admins=()):
    return CooldownGuard(store, window_hours=24, admin_ids=admins, clock=clock)


def test_first_call_allowed(store, clock):
    decision = _guard(store, clock).may_create_call("42")
    assert decision.allowed
    assert decision.max_in_window == 1
    assert decision.window_start == T0 - timedelta(hours=24)


def test_second_call_inside_window_denied(store, clock):
    store.insert_call(make_call(created_at=T0 - timedelta(hours=3)))
    decision = _guard(store, clock).may_create_call("42")
    assert not decision.allowed
    assert decision.retry_after == T0 + timedelta(hours=21)
    assert "try again later" in decision.reason.lower()


def test_any_status_counts(store, clock):
    call = store.insert_call(make_call(created_at=T0 - timedelta(hours=1)))
    store.update(call.id, {"status": "cancelled"})
    assert not _guard(store, clock).may_create_call("42").allowed


def test_window_rolls_over(store, clock):
    store.insert_call(make_call(created_at=T0 - timedelta(hours=3)))
    clock.advance(hours=21, seconds=1)
    assert _guard(store, clock).may_create_call("42").allowed


def test_other_callers_unaffected(store, clock):
    store.insert_call(make_call(created_at=T0))
    assert _guard(store, clock).may_create_call("someone-else").allowed


def test_admin_is_unlimited(store, clock):
    for _ in range(5):
        store.insert_call(make_call(created_at=T0))
    decision = _guard(store, clock, admins={"42"}).may_create_call("42")
    assert decision.allowed
    assert decision.max_in_window is None


def test_explicit_privilege_flag(store, clock):
    store.insert_call(make_call(created_at=T0))
    guard = _guard(store, clock)
    assert guard.may_create_call("42", is_privileged=True).allowed
    assert not guard.may_create_call("42", is_privileged=False).allowed


def test_premium_allowance(store, clock):
    store.set_premium(PremiumEntitlement(caller_id="42", calls_per_day=3))
    guard = _guard(store, clock)
    for _ in range(2):
        store.insert_call(make_call(created_at=T0))
    decision = guard.may_create_call("42")
    assert decision.allowed
    assert decision.max_in_window == 3

    store.insert_call(make_call(created_at=T0))
    assert not guard.may_create_call("42").allowed


def test_expired_premium_falls_back_to_one(store, clock):
    store.set_premium(PremiumEntitlement(caller_id="42", calls_per_day=5, expires_at=T0 - timedelta(days=1)))
    store.insert_call(make_call(created_at=T0))
    assert not _guard(store, clock).may_create_call("42").allowed


def test_race_loser_is_rejected_by_store(store, clock):
    guard = _guard(store, clock)
    caller = Caller(external_id="77")
    a = guard.may_create_call("77")
    b = guard.may_create_call("77")
    assert a.allowed and b.allowed

    won = store.insert_call(make_call(caller=caller), a.window_start, a.max_in_window)
    lost = store.insert_call(make_call(caller=caller), b.window_start, b.max_in_window)
    assert won is not None
    assert lost is None
