from decimal import Decimal

from django.test import SimpleTestCase, override_settings

from execution.sizing import (
    LONG,
    SHORT,
    build_trade_configuration,
    floor_to_tick,
    ladder_legs,
    ladder_price,
    leg_quantity,
    max_leverage_for_notional,
    profit_price,
    round_quantity,
    weighted_average,
)


class LeverageCapTest(SimpleTestCase):
    def test_largest_bracket_whose_cap_holds_the_notional(self):
        brackets = [
            {"initialLeverage": 20, "notionalCap": 50000},
            {"initialLeverage": 10, "notionalCap": 100000},
        ]
        # 20 x 6000 = 120000 > 50000; 10 x 6000 = 60000 <= 100000
        self.assertEqual(max_leverage_for_notional(brackets, 6000), 10)

    def test_small_trade_gets_top_leverage(self):
        brackets = [
            {"initialLeverage": 125, "notionalCap": 50000},
            {"initialLeverage": 100, "notionalCap": 250000},
        ]
        self.assertEqual(max_leverage_for_notional(brackets, 100), 125)

    def test_no_bracket_fits_defaults_to_one(self):
        self.assertEqual(max_leverage_for_notional([{"initialLeverage": 5, "notionalCap": 10}], 1000), 1)
        self.assertEqual(max_leverage_for_notional([], 1000), 1)


class LadderPricingTest(SimpleTestCase):
    def test_entries_sit_below_mark_for_long_and_above_for_short(self):
        self.assertEqual(ladder_price(100, 2, LONG), Decimal("98"))
        self.assertEqual(ladder_price(100, 2, SHORT), Decimal("102"))

    def test_exit_sits_on_the_other_side(self):
        self.assertEqual(ladder_price(100, 5, LONG, is_exit=True), Decimal("105"))
        self.assertEqual(ladder_price(100, 5, SHORT, is_exit=True), Decimal("95"))

    def test_prices_are_floored_to_tick(self):
        self.assertEqual(floor_to_tick(Decimal("98.129"), "0.01"), Decimal("98.12"))
        self.assertEqual(floor_to_tick(Decimal("98.129"), "0.5"), Decimal("98"))
        self.assertEqual(floor_to_tick(Decimal("98.129"), 0, precision=1), Decimal("98.1"))

    def test_leg_quantity_divides_amount_by_divider_and_mark(self):
        self.assertEqual(leg_quantity(1000, 2, 100, 3), Decimal("5"))
        self.assertEqual(leg_quantity(1000, 4, 64000, 3), Decimal("0.004"))
        self.assertEqual(round_quantity(Decimal("0.0046"), 3), Decimal("0.005"))

    def test_leg_quantity_rejects_non_positive_inputs(self):
        with self.assertRaises(ValueError):
            leg_quantity(1000, 0, 100, 3)
        with self.assertRaises(ValueError):
            leg_quantity(1000, 2, 0, 3)


class WeightedAverageTest(SimpleTestCase):
    def test_average_and_profit_target(self):
        total, avg = weighted_average([(2, 10), (3, 20)])
        self.assertEqual(total, Decimal("5"))
        self.assertEqual(avg, Decimal("16"))
        self.assertEqual(profit_price(avg, 5, LONG, "0.01"), Decimal("16.8"))
        self.assertEqual(profit_price(avg, 5, SHORT, "0.01"), Decimal("15.2"))

    def test_profit_price_is_floored_to_tick(self):
        self.assertEqual(profit_price(Decimal("16.33"), 5, LONG, "0.1"), Decimal("17.1"))

    def test_nothing_filled_has_no_average(self):
        self.assertEqual(weighted_average([]), (Decimal("0"), None))
        self.assertEqual(weighted_average([(0, 10)]), (Decimal("0"), None))


class TradeConfigurationTest(SimpleTestCase):
    @override_settings(
        POSITION_LIMIT_LADDER=[{"price_ratio_percentage": 1.5, "amount_divider": 4}, {"price_ratio_percentage": 3, "amount_divider": 4}],
        POSITION_MARKET_AMOUNT_DIVIDER=4,
        POSITION_PROFIT_PERCENTAGE=0.36,
    )
    def test_ladder_legs_are_ordered_limits_market_profit(self):
        legs = ladder_legs(build_trade_configuration())

        self.assertEqual([leg["type"] for leg in legs], ["LIMIT", "LIMIT", "MARKET", "PROFIT"])
        self.assertEqual(legs[0]["price_ratio_percentage"], Decimal("1.5"))
        self.assertEqual(legs[2]["amount_divider"], Decimal("4"))
        self.assertEqual(legs[3]["price_ratio_percentage"], Decimal("0.36"))
