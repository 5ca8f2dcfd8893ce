import datetime as dt
import unittest
from decimal import Decimal
from types import SimpleNamespace

from group_service import pricing


def tier(count, price):
    return SimpleNamespace(participant_count=count, final_price=Decimal(price))


def product(tiers=(), original="10.00"):
    return SimpleNamespace(original_price=Decimal(original), discount_tiers=list(tiers))


def group(current=0, target=5, price="10.00", status="active", end_in_hours=24):
    return SimpleNamespace(
        current_participants=current,
        target_participants=target,
        current_price=Decimal(price),
        status=status,
        end_time=dt.datetime.now(dt.timezone.utc) + dt.timedelta(hours=end_in_hours),
    )


class TestDisplayPrice(unittest.TestCase):
    def test_first_tier_is_shown_before_any_participant(self):
        p = product([tier(10, "6.00"), tier(5, "8.00")])
        self.assertEqual(pricing.current_discount_price(p, group(current=0)), Decimal("8.00"))

    def test_falls_back_to_group_price_without_tiers(self):
        self.assertEqual(pricing.current_discount_price(product(), group(price="9.50")), Decimal("9.50"))

    def test_savings_never_negative(self):
        p = product([tier(5, "8.00")], original="7.00")
        self.assertEqual(pricing.savings(p, group()), Decimal("0.00"))


class TestTrackedPrice(unittest.TestCase):
    def setUp(self):
        self.tiers = [tier(5, "8.00"), tier(10, "6.00")]
        self.product = product(self.tiers)

    def test_original_price_below_first_threshold(self):
        self.assertEqual(pricing.tracked_price(self.product, self.tiers, 4), Decimal("10.00"))

    def test_highest_reached_tier_applies(self):
        self.assertEqual(pricing.tracked_price(self.product, self.tiers, 5), Decimal("8.00"))
        self.assertEqual(pricing.tracked_price(self.product, self.tiers, 9), Decimal("8.00"))
        self.assertEqual(pricing.tracked_price(self.product, self.tiers, 250), Decimal("6.00"))

    def test_participants_to_next_tier(self):
        self.assertEqual(pricing.participants_to_next_tier(self.tiers, 0), 5)
        self.assertEqual(pricing.participants_to_next_tier(self.tiers, 7), 3)
        self.assertEqual(pricing.participants_to_next_tier(self.tiers, 10), 0)


class TestProgress(unittest.TestCase):
    def test_is_complete_matches_count_against_target(self):
        for current, target in [(0, 1), (4, 5), (5, 5), (6, 5), (1000, 10)]:
            g = group(current=current, target=target)
            self.assertEqual(pricing.is_complete(g), current >= target, (current, target))

    def test_remaining_participants_floors_at_zero(self):
        self.assertEqual(pricing.remaining_participants(group(current=2, target=5)), 3)
        self.assertEqual(pricing.remaining_participants(group(current=7, target=5)), 0)

    def test_progress_percent_is_capped(self):
        self.assertEqual(pricing.progress_percent(group(current=1, target=4)), 25.0)
        self.assertEqual(pricing.progress_percent(group(current=8, target=4)), 100.0)


class TestDeriveStatus(unittest.TestCase):
    def test_past_end_time_is_ended(self):
        self.assertEqual(pricing.derive_status(group(end_in_hours=-1)), "ended")

    def test_stored_ended_wins_over_future_end_time(self):
        self.assertEqual(pricing.derive_status(group(status="ended")), "ended")

    def test_naive_end_time_is_treated_as_utc(self):
        g = group()
        g.end_time = (dt.datetime.now(dt.timezone.utc) + dt.timedelta(hours=1)).replace(tzinfo=None)
        self.assertEqual(pricing.derive_status(g), "active")

    def test_seconds_until_end(self):
        now = dt.datetime.now(dt.timezone.utc)
        g = group()
        g.end_time = now + dt.timedelta(seconds=90)
        self.assertAlmostEqual(pricing.seconds_until_end(g, now), 90.0)
        self.assertEqual(pricing.seconds_until_end(group(end_in_hours=-1)), 0.0)


class TestSummarize(unittest.TestCase):
    def test_display_and_tracked_prices_may_differ(self):
        p = product([tier(5, "8.00"), tier(10, "6.00")])
        summary = pricing.summarize(p, group(current=0, price="10.00"))
        self.assertEqual(summary["display_price"], Decimal("8.00"))
        self.assertEqual(summary["current_price"], Decimal("10.00"))
        self.assertEqual(summary["savings"], Decimal("2.00"))
        self.assertFalse(summary["is_complete"])
        self.assertEqual(summary["participants_to_next_tier"], 5)


if __name__ == "__main__":
    unittest.main()
