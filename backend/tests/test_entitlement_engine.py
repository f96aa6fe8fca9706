"""
Tests for the pure entitlement engine: quota rules and transitions.
"""
from datetime import datetime, timedelta, timezone

import pytest

from ideaverse.core.errors import InvalidPurchaseError
from ideaverse.services.entitlement_engine import (
    EntitlementRecord, SubscriptionStatus, SubscriptionTier, add_months, apply_purchase,
    can_generate, carried_balance, consume_generation, deactivate, effective_tier, expire, is_lapsed,
    is_unlimited, new_record, promote_for_top_up, remaining_credits, to_dict
)
from ideaverse.services.plan_catalog import UNLIMITED

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def record(**fields) -> EntitlementRecord:
    return EntitlementRecord(**fields)


@pytest.mark.critical
class TestRemainingCredits:
    """Quota rules, first match wins"""

    def test_new_record_has_one_free_generation(self):
        rec = new_record()
        assert rec.subscription_tier == SubscriptionTier.FREE
        assert rec.subscription_status == SubscriptionStatus.INACTIVE
        assert remaining_credits(rec) == 1
        assert can_generate(rec)

    def test_free_used_has_nothing_left(self):
        assert remaining_credits(record(has_used_free_generation=True)) == 0

    def test_inactive_paid_tier_falls_back_to_free_rule(self):
        rec = record(subscription_tier="creator", subscription_status="inactive",
                     has_used_free_generation=True, generations_remaining=10)
        assert remaining_credits(rec) == 0
        assert not can_generate(rec)

    def test_inactive_paid_tier_with_unused_free_credit(self):
        rec = record(subscription_tier="spark", subscription_status="inactive", generations_remaining=4)
        assert remaining_credits(rec) == 1

    def test_expired_behaves_as_inactive(self):
        rec = record(subscription_tier="spark", subscription_status="expired",
                     has_used_free_generation=True, generations_remaining=4)
        assert remaining_credits(rec) == 0
        assert effective_tier(rec) == SubscriptionTier.FREE

    def test_universe_active_is_unlimited(self):
        rec = record(subscription_tier="universe", subscription_status="active", generations_remaining=0)
        assert remaining_credits(rec) == UNLIMITED
        assert is_unlimited(rec)

    @pytest.mark.parametrize("tier", ["one_shot", "spark", "creator"])
    def test_bucket_tiers_report_stored_balance(self, tier):
        rec = record(subscription_tier=tier, subscription_status="active", generations_remaining=3)
        assert remaining_credits(rec) == 3
        assert not is_unlimited(rec)

    def test_active_free_tier_uses_free_rule(self):
        rec = record(subscription_status="active", generations_remaining=50)
        assert remaining_credits(rec) == 1


@pytest.mark.critical
class TestConsumeGeneration:
    """Debit rules"""

    def test_free_generation_is_used_once(self):
        rec = new_record()
        assert can_generate(rec)

        once = consume_generation(rec, now=NOW)
        assert once.has_used_free_generation is True
        assert not can_generate(once)
        assert once.total_generations == 1
        assert once.last_generation_date == NOW

        # A second debit without a re-check must not undo the flag or go negative
        twice = consume_generation(once, now=NOW)
        assert twice.has_used_free_generation is True
        assert twice.generations_remaining >= 0
        assert remaining_credits(twice) == 0

    def test_one_shot_bucket_never_goes_negative(self):
        rec = record(subscription_tier="one_shot", subscription_status="active", generations_remaining=3)
        assert remaining_credits(rec) == 3

        for _ in range(3):
            rec = consume_generation(rec)
        assert remaining_credits(rec) == 0

        rec = consume_generation(rec)
        assert rec.generations_remaining == 0
        assert rec.total_generations == 4

    def test_universe_stays_unlimited(self):
        rec = record(subscription_tier="universe", subscription_status="active", generations_remaining=7)
        for _ in range(25):
            rec = consume_generation(rec)
        assert remaining_credits(rec) == UNLIMITED
        assert rec.generations_remaining == 7
        assert rec.total_generations == 25

    def test_spark_allotment_is_not_metered(self):
        rec = record(subscription_tier="spark", subscription_status="active",
                     generations_remaining=4, total_generations=10)
        result = consume_generation(rec)
        assert result.generations_remaining == 4
        assert result.total_generations == 11

    def test_paid_tier_does_not_touch_free_flag(self):
        rec = record(subscription_tier="creator", subscription_status="active", generations_remaining=10)
        assert consume_generation(rec).has_used_free_generation is False

    def test_input_record_is_not_mutated(self):
        rec = new_record()
        consume_generation(rec)
        assert rec.total_generations == 0
        assert rec.has_used_free_generation is False


@pytest.mark.critical
class TestApplyPurchase:
    """Purchase transitions"""

    def test_one_shot_top_up_is_additive(self):
        rec = record(subscription_tier="spark", subscription_status="active", generations_remaining=2)
        result = apply_purchase(rec, "one-shot", 5)
        assert result.generations_remaining == 7
        assert result.subscription_tier == SubscriptionTier.SPARK
        assert result.subscription_status == SubscriptionStatus.ACTIVE

    def test_one_shot_leaves_free_record_tier_alone(self):
        rec = record(generations_remaining=2)
        result = apply_purchase(rec, "one_shot", 5)
        assert result.generations_remaining == 7
        assert result.subscription_tier == SubscriptionTier.FREE
        assert result.subscription_status == SubscriptionStatus.INACTIVE

    def test_creator_replaces_allotment(self):
        rec = record(subscription_tier="one_shot", subscription_status="active",
                     generations_remaining=3, total_generations=12)
        result = apply_purchase(rec, "creator", 10, now=NOW)
        assert result.subscription_tier == SubscriptionTier.CREATOR
        assert result.subscription_status == SubscriptionStatus.ACTIVE
        assert result.generations_remaining == 10
        assert result.total_generations == 12
        assert result.subscription_start_date == NOW
        assert timedelta(days=28) <= result.subscription_end_date - NOW <= timedelta(days=31)

    def test_universe_has_no_end_date(self):
        result = apply_purchase(new_record(), "universe", now=NOW)
        assert result.subscription_end_date is None
        assert is_unlimited(result)

    def test_grant_defaults_to_catalog(self):
        assert apply_purchase(new_record(), "spark").generations_remaining == 4
        assert apply_purchase(new_record(), "one_shot").generations_remaining == 2

    def test_purchase_reactivates_expired_record(self):
        rec = record(subscription_tier="spark", subscription_status="expired", generations_remaining=1)
        result = apply_purchase(rec, "spark")
        assert result.subscription_status == SubscriptionStatus.ACTIVE
        assert result.generations_remaining == 4

    @pytest.mark.parametrize("plan", ["", "platinum", None])
    def test_unknown_plan_rejected(self, plan):
        with pytest.raises(InvalidPurchaseError):
            apply_purchase(new_record(), plan)

    @pytest.mark.parametrize("granted", [-1, True, "5", 2.5])
    def test_invalid_grant_rejected(self, granted):
        with pytest.raises(InvalidPurchaseError):
            apply_purchase(new_record(), "one_shot", granted)


@pytest.mark.high
class TestTopUpPromotion:
    """Preparing records without an active plan for a one-shot top-up"""

    def test_free_record_with_unused_credit_keeps_it(self):
        promoted = promote_for_top_up(new_record())
        assert promoted.subscription_tier == SubscriptionTier.ONE_SHOT
        assert promoted.subscription_status == SubscriptionStatus.ACTIVE
        assert promoted.generations_remaining == 1
        assert promoted.has_used_free_generation is True
        assert remaining_credits(apply_purchase(promoted, "one_shot", 1)) == 2

    def test_used_free_record_starts_empty(self):
        promoted = promote_for_top_up(record(has_used_free_generation=True))
        assert remaining_credits(apply_purchase(promoted, "one_shot", 1)) == 1

    def test_lapsed_record_keeps_leftover_allotment(self):
        rec = record(subscription_tier="creator", subscription_status="expired",
                     has_used_free_generation=True, generations_remaining=6,
                     subscription_start_date=NOW - timedelta(days=40))
        promoted = promote_for_top_up(rec, NOW)
        assert promoted.subscription_tier == SubscriptionTier.ONE_SHOT
        assert promoted.generations_remaining == 6
        assert promoted.subscription_start_date == rec.subscription_start_date

    def test_unsubscribed_buyer_keeps_balance(self):
        bought = apply_purchase(promote_for_top_up(new_record(), NOW), "one_shot", 3)
        assert bought.generations_remaining == 4

        unsubscribed = deactivate(bought)
        assert remaining_credits(unsubscribed) == 0

        topped_up = apply_purchase(promote_for_top_up(unsubscribed, NOW), "one_shot", 1)
        assert remaining_credits(topped_up) == 5

    def test_universe_sentinel_is_not_carried(self):
        rec = deactivate(record(subscription_tier="universe", subscription_status="active",
                                has_used_free_generation=True, generations_remaining=UNLIMITED,
                                subscription_start_date=NOW))
        assert carried_balance(rec) == 0
        assert promote_for_top_up(rec, NOW).generations_remaining == 0

    def test_never_paid_placeholder_is_not_carried(self):
        rec = record(has_used_free_generation=True, generations_remaining=1)
        assert carried_balance(rec) == 0
        promoted = promote_for_top_up(rec, NOW)
        assert promoted.generations_remaining == 0
        assert promoted.subscription_start_date == NOW

    def test_active_plan_is_unchanged(self):
        rec = record(subscription_tier="creator", subscription_status="active", generations_remaining=6)
        assert promote_for_top_up(rec) == rec


@pytest.mark.high
class TestLifecycle:
    """Unsubscribe and expiry"""

    def test_deactivate_preserves_balances(self):
        rec = record(subscription_tier="creator", subscription_status="active",
                     generations_remaining=6, total_generations=4)
        result = deactivate(rec)
        assert result.subscription_tier == SubscriptionTier.FREE
        assert result.subscription_status == SubscriptionStatus.INACTIVE
        assert result.generations_remaining == 6
        assert result.total_generations == 4

    def test_expire_sets_status_only(self):
        rec = record(subscription_tier="spark", subscription_status="active", generations_remaining=2)
        result = expire(rec)
        assert result.subscription_status == SubscriptionStatus.EXPIRED
        assert result.subscription_tier == SubscriptionTier.SPARK

    def test_is_lapsed_respects_grace(self):
        rec = record(subscription_tier="spark", subscription_status="active",
                     subscription_end_date=NOW - timedelta(hours=10))
        assert is_lapsed(rec, NOW)
        assert not is_lapsed(rec, NOW, grace=timedelta(hours=72))

    def test_universe_never_lapses(self):
        rec = record(subscription_tier="universe", subscription_status="active",
                     subscription_end_date=NOW - timedelta(days=90))
        assert not is_lapsed(rec, NOW)


@pytest.mark.high
class TestSerialization:
    """Wire format"""

    def test_accepts_camel_case_and_wire_tier(self):
        rec = EntitlementRecord.model_validate({
            "subscriptionTier": "one-shot",
            "subscriptionStatus": "active",
            "hasUsedFreeGeneration": True,
            "generationsRemaining": 2,
            "totalGenerations": 5,
        })
        assert rec.subscription_tier == SubscriptionTier.ONE_SHOT
        assert remaining_credits(rec) == 2

    def test_dict_round_trip(self):
        rec = apply_purchase(new_record(), "creator", now=NOW)
        assert EntitlementRecord.model_validate(to_dict(rec)) == rec

    def test_naive_dates_are_utc(self):
        rec = record(subscription_end_date=datetime(2026, 1, 1))
        assert rec.subscription_end_date.tzinfo == timezone.utc

    def test_negative_balance_rejected(self):
        with pytest.raises(ValueError):
            record(generations_remaining=-1)

    def test_add_months_clamps_short_months(self):
        assert add_months(datetime(2026, 1, 31, tzinfo=timezone.utc)) == datetime(2026, 2, 28, tzinfo=timezone.utc)
        assert add_months(datetime(2026, 12, 5, tzinfo=timezone.utc)).year == 2027
