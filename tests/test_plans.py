"""
Tests for the plan registry.
"""

import unittest
from decimal import Decimal

from metering.exceptions import ConfigurationError, ErrorCode
from metering.types.usage import UNLIMITED, PlanTier
from metering.usage.plans import (
    additional_seat_cost,
    additional_seats,
    get_all_plans,
    get_plan,
)


class TestGetPlan(unittest.TestCase):
    """Tests for tier lookup."""

    def test_tier_table(self):
        expected = {
            "free": (5, UNLIMITED, Decimal("0.12")),
            "basic": (60, 2, Decimal("0.10")),
            "pro": (150, 5, Decimal("0.08")),
            "agency": (450, UNLIMITED, Decimal("0.06")),
        }
        for tier_id, (monthly, daily, rate) in expected.items():
            with self.subTest(tier=tier_id):
                plan = get_plan(tier_id)
                self.assertEqual(plan.id, tier_id)
                self.assertEqual(plan.monthly_limit, monthly)
                self.assertEqual(plan.daily_limit, daily)
                self.assertEqual(plan.overage_rate_per_unit, rate)

    def test_accepts_enum_member(self):
        self.assertEqual(get_plan(PlanTier.PRO).id, "pro")

    def test_unknown_tier_raises_configuration_error(self):
        with self.assertRaises(ConfigurationError) as ctx:
            get_plan("platinum")
        self.assertEqual(ctx.exception.error_code, ErrorCode.UNKNOWN_TIER)
        self.assertEqual(ctx.exception.details["tier_id"], "platinum")
        self.assertEqual(ctx.exception.status_code, 500)

    def test_lookup_is_deterministic(self):
        self.assertIs(get_plan("basic"), get_plan("basic"))

    def test_plans_are_immutable(self):
        plan = get_plan("free")
        with self.assertRaises(Exception):
            plan.monthly_limit = 1000

    def test_unlimited_flags(self):
        self.assertFalse(get_plan("agency").has_daily_limit)
        self.assertTrue(get_plan("agency").has_monthly_limit)
        self.assertTrue(get_plan("pro").has_daily_limit)

    def test_get_all_plans_in_tier_order(self):
        self.assertEqual([p.id for p in get_all_plans()], ["free", "basic", "pro", "agency"])


class TestSeatPricing(unittest.TestCase):
    """Tests for team seat billing helpers."""

    def test_agency_includes_three_seats(self):
        self.assertEqual(additional_seats("agency", 3), 0)
        self.assertEqual(additional_seat_cost("agency", 3), Decimal("0"))

    def test_agency_extra_seats_are_priced(self):
        self.assertEqual(additional_seats("agency", 5), 2)
        self.assertEqual(additional_seat_cost("agency", 5), Decimal("13.98"))

    def test_fewer_seats_than_included(self):
        self.assertEqual(additional_seats("agency", 1), 0)


if __name__ == "__main__":
    unittest.main()
