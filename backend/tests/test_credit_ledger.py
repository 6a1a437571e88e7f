"""Credit ledger arithmetic tests"""
import pytest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from promoreel.core.exceptions import InsufficientCreditsError
from promoreel.services import credit_ledger
from promoreel.services.credit_ledger import PRIMARY_POOL, SECONDARY_POOL

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def make_account(**overrides):
    values = {
        "credits_allowed": 0,
        "credits_used": 0,
        "carryover": 0,
        "carryover_expiry": None,
        "credits_allowed_veo": 0,
        "credits_used_veo": 0,
        "carryover_veo": 0,
        "carryover_expiry_veo": None,
        "next_credit_reset": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.mark.critical
class TestAvailableCredits:
    """Availability per pool"""

    def test_base_only(self):
        account = make_account(credits_allowed=40, credits_used=15)
        credits = credit_ledger.available_credits(account, PRIMARY_POOL, NOW)
        assert credits.available == 25
        assert credits.has_carryover is False

    def test_overused_base_never_goes_negative(self):
        account = make_account(credits_allowed=10, credits_used=14, carryover=5, carryover_expiry=NOW + timedelta(days=1))
        credits = credit_ledger.available_credits(account, PRIMARY_POOL, NOW)
        assert credits.available == 5
        assert credits.has_carryover is True

    def test_live_carryover_counts(self):
        account = make_account(credits_allowed_veo=20, credits_used_veo=20, carryover_veo=7,
                               carryover_expiry_veo=NOW + timedelta(hours=1))
        assert credit_ledger.available_credits(account, SECONDARY_POOL, NOW).available == 7

    def test_carryover_expiring_exactly_now_does_not_count(self):
        account = make_account(credits_allowed=10, carryover=5, carryover_expiry=NOW)
        credits = credit_ledger.available_credits(account, PRIMARY_POOL, NOW)
        assert credits.available == 10
        assert credits.has_carryover is False

    def test_carryover_without_expiry_does_not_count(self):
        account = make_account(credits_allowed=10, carryover=5, carryover_expiry=None)
        assert credit_ledger.available_credits(account, PRIMARY_POOL, NOW).available == 10

    def test_naive_expiry_is_treated_as_utc(self):
        account = make_account(carryover=3, carryover_expiry=(NOW + timedelta(minutes=5)).replace(tzinfo=None))
        assert credit_ledger.available_credits(account, PRIMARY_POOL, NOW).available == 3

    def test_pools_are_independent(self):
        account = make_account(credits_allowed=40, credits_used=40, credits_allowed_veo=20)
        assert credit_ledger.available_credits(account, PRIMARY_POOL, NOW).available == 0
        assert credit_ledger.available_credits(account, SECONDARY_POOL, NOW).available == 20

    def test_unknown_pool_raises(self):
        with pytest.raises(ValueError):
            credit_ledger.available_credits(make_account(), "gold", NOW)


@pytest.mark.critical
class TestAdmission:
    """Admission gate"""

    def test_admits_when_enough(self):
        account = make_account(credits_allowed_veo=20, credits_used_veo=18)
        credit_ledger.ensure_can_admit(account, SECONDARY_POOL, 2, NOW)

    def test_rejects_when_short(self):
        account = make_account(credits_allowed_veo=20, credits_used_veo=19)
        with pytest.raises(InsufficientCreditsError) as exc_info:
            credit_ledger.ensure_can_admit(account, SECONDARY_POOL, 2, NOW)
        assert exc_info.value.required == 2
        assert exc_info.value.available == 1
        assert exc_info.value.status_code == 402

    def test_rejects_when_nothing_available(self):
        with pytest.raises(InsufficientCreditsError):
            credit_ledger.ensure_can_admit(make_account(), PRIMARY_POOL, 0, NOW)


@pytest.mark.critical
class TestPlanCharge:
    """Charge split between base, carryover and overuse"""

    def test_base_first(self):
        account = make_account(credits_allowed=40, credits_used=10, carryover=5, carryover_expiry=NOW + timedelta(days=3))
        plan = credit_ledger.plan_charge(account, PRIMARY_POOL, 4, NOW)
        assert (plan.from_base, plan.from_carryover, plan.overuse) == (4, 0, 0)
        assert plan.used_delta == 4
        assert plan.carryover_delta == 0

    def test_carryover_covers_excess_over_base(self):
        account = make_account(credits_allowed=10, credits_used=8, carryover=5, carryover_expiry=NOW + timedelta(days=3))
        plan = credit_ledger.plan_charge(account, PRIMARY_POOL, 5, NOW)
        assert (plan.from_base, plan.from_carryover, plan.overuse) == (2, 3, 0)
        assert plan.used_delta == 2
        assert plan.carryover_delta == -3

    def test_overuse_is_added_to_used(self):
        account = make_account(credits_allowed=10, credits_used=9, carryover=1, carryover_expiry=NOW + timedelta(days=3))
        plan = credit_ledger.plan_charge(account, PRIMARY_POOL, 5, NOW)
        assert (plan.from_base, plan.from_carryover, plan.overuse) == (1, 1, 3)
        assert plan.used_delta == 4
        assert plan.carryover_delta == -1

    def test_expired_carryover_is_not_consumed(self):
        account = make_account(credits_allowed=10, credits_used=10, carryover=5, carryover_expiry=NOW - timedelta(seconds=1))
        plan = credit_ledger.plan_charge(account, PRIMARY_POOL, 2, NOW)
        assert plan.carryover_delta == 0
        assert plan.overuse == 2

    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError):
            credit_ledger.plan_charge(make_account(), PRIMARY_POOL, -1, NOW)


@pytest.mark.high
class TestCostAndUpsell:
    """Job cost and plan purchase gate"""

    @pytest.mark.parametrize("seconds, expected", [(1, 1), (15, 1), (16, 2), (30, 2), (45, 3)])
    def test_credits_for_duration(self, seconds, expected):
        assert credit_ledger.credits_for_duration(seconds, 15) == expected

    def test_zero_length_still_costs_one(self):
        assert credit_ledger.credits_for_duration(0, 15) == 1

    def test_purchase_allowed_at_threshold(self):
        account = make_account(credits_allowed=40, credits_used=30)
        assert credit_ledger.can_purchase_plan(account, threshold=10, now=NOW) is True

    def test_purchase_blocked_above_threshold(self):
        account = make_account(credits_allowed=40, credits_used=29)
        assert credit_ledger.can_purchase_plan(account, threshold=10, now=NOW) is False


@pytest.mark.high
class TestPeriods:
    """Billing period arithmetic"""

    def test_next_reset_date_regular_month(self):
        assert credit_ledger.next_reset_date(NOW, 15) == datetime(2026, 4, 15, tzinfo=timezone.utc)

    def test_next_reset_date_clamps_to_month_end(self):
        jan = datetime(2026, 1, 31, 9, 30, tzinfo=timezone.utc)
        assert credit_ledger.next_reset_date(jan, 31) == datetime(2026, 2, 28, tzinfo=timezone.utc)

    def test_next_reset_date_december_rolls_year(self):
        dec = datetime(2026, 12, 5, tzinfo=timezone.utc)
        assert credit_ledger.next_reset_date(dec, 5) == datetime(2027, 1, 5, tzinfo=timezone.utc)

    def test_should_reset_on_reset_day(self):
        account = make_account(next_credit_reset=datetime(2026, 3, 15, 23, 0, tzinfo=timezone.utc))
        assert credit_ledger.should_reset(account, NOW) is True

    def test_should_not_reset_before_day(self):
        account = make_account(next_credit_reset=datetime(2026, 3, 16, tzinfo=timezone.utc))
        assert credit_ledger.should_reset(account, NOW) is False

    def test_should_not_reset_without_date(self):
        assert credit_ledger.should_reset(make_account(), NOW) is False

    def test_roll_period_keeps_live_carryover(self):
        expiry = NOW + timedelta(days=2)
        account = make_account(credits_used=33, carryover=6, carryover_expiry=expiry)
        rollover = credit_ledger.roll_period(account, PRIMARY_POOL, NOW)
        assert rollover.used == 0
        assert rollover.carryover == 6
        assert rollover.carryover_expiry == expiry

    def test_roll_period_drops_expired_carryover(self):
        account = make_account(credits_used=33, carryover=6, carryover_expiry=NOW - timedelta(days=1))
        rollover = credit_ledger.roll_period(account, PRIMARY_POOL, NOW)
        assert rollover.carryover == 0
        assert rollover.carryover_expiry is None


@pytest.mark.high
class TestCarryoverOnPlanChange:
    """Carryover granted when switching plans"""

    def test_unused_base_is_carried(self):
        old_reset = NOW + timedelta(days=10)
        result = credit_ledger.calculate_carryover(40, 15, old_reset, now=NOW)
        assert result.amount == 25
        assert result.expiry == old_reset

    def test_valid_existing_carryover_is_added(self):
        old_reset = NOW + timedelta(days=10)
        existing_expiry = NOW + timedelta(days=20)
        result = credit_ledger.calculate_carryover(40, 40, old_reset, 8, existing_expiry, NOW)
        assert result.amount == 8
        assert result.expiry == existing_expiry

    def test_expired_existing_carryover_is_dropped(self):
        old_reset = NOW + timedelta(days=10)
        result = credit_ledger.calculate_carryover(40, 30, old_reset, 8, NOW - timedelta(days=1), NOW)
        assert result.amount == 10
        assert result.expiry == old_reset

    def test_plan_limits_unknown_tier_is_free(self):
        assert credit_ledger.plan_limits("platinum") == credit_ledger.PLAN_LIMITS["free"]
