from __future__ import annotations

import unittest

from order_board.models import LabelCategory
from order_board.services.classification_rules import (
    DEFAULT_RULES,
    ClassificationRule,
    ItemKind,
    LineItemContext,
    TimeWindow,
    best_label,
    classify_line_item,
    consolidated_display_title,
    extract_time_slot,
    is_pickup_order,
    is_wedding_product,
    parse_clock_range,
    time_window_for,
)
from order_board.services.label_index import ProductLabel


class ClassifyLineItemTests(unittest.TestCase):
    def test_express_title_wins_over_other_rules(self) -> None:
        context = LineItemContext('Express Delivery Corsage', None, (ProductLabel('Add-On', 'productType'),))
        self.assertEqual(classify_line_item(context), ItemKind.EXPRESS)

    def test_consolidated_by_keyword_in_variant_title(self) -> None:
        context = LineItemContext('Wrist Flowers', 'Boutonniere - White', ())
        self.assertEqual(classify_line_item(context), ItemKind.CONSOLIDATED)

    def test_consolidated_by_top_up_label(self) -> None:
        context = LineItemContext('Extra Stems', None, (ProductLabel('Top-Up', 'productType'),))
        self.assertEqual(classify_line_item(context), ItemKind.CONSOLIDATED)

    def test_add_on_by_label_name_or_category(self) -> None:
        by_name = LineItemContext('Greeting Card', None, (ProductLabel('Add-On', 'productType'),))
        by_category = LineItemContext('Balloon', None, (ProductLabel('Balloons', 'addon'),))
        self.assertEqual(classify_line_item(by_name), ItemKind.ADD_ON)
        self.assertEqual(classify_line_item(by_category), ItemKind.ADD_ON)

    def test_everything_else_is_main(self) -> None:
        context = LineItemContext('Rose Bouquet', 'Large', (ProductLabel('Hard', 'difficulty', priority=1),))
        self.assertEqual(classify_line_item(context), ItemKind.MAIN)

    def test_custom_rule_table_is_evaluated_in_order(self) -> None:
        vase_rule = ClassificationRule('vase', ItemKind.ADD_ON, lambda context: 'vase' in context.title.lower())
        context = LineItemContext('Glass Vase', None, ())
        self.assertEqual(classify_line_item(context), ItemKind.MAIN)
        self.assertEqual(classify_line_item(context, (vase_rule, *DEFAULT_RULES)), ItemKind.ADD_ON)


class ConsolidatedTitleTests(unittest.TestCase):
    def test_prefers_field_containing_keyword(self) -> None:
        self.assertEqual(consolidated_display_title('Wedding Extras', 'Corsage - Ivory'), 'Corsage - Ivory')

    def test_title_wins_ties(self) -> None:
        self.assertEqual(consolidated_display_title('Boutonniere - Groomsman', 'Boutonniere Blue'), 'Boutonniere - Groomsman')

    def test_label_only_match_uses_title(self) -> None:
        self.assertEqual(consolidated_display_title('Extra Stems', 'Pink'), 'Extra Stems')


class SignalTests(unittest.TestCase):
    def test_extract_time_slot_prefers_first_text(self) -> None:
        self.assertEqual(extract_time_slot('10:00AM - 12:00PM', 'Express 2:00PM - 4:00PM'), '10:00AM - 12:00PM')
        self.assertEqual(extract_time_slot(None, 'Express 14:00 - 16:00'), '14:00 - 16:00')
        self.assertIsNone(extract_time_slot('Same day', 'Express Delivery'))

    def test_pickup_is_case_insensitive(self) -> None:
        self.assertTrue(is_pickup_order(['22/06/2025', 'Store PICKUP']))
        self.assertFalse(is_pickup_order(['22/06/2025']))

    def test_wedding_needs_product_type_category(self) -> None:
        self.assertTrue(is_wedding_product([ProductLabel('Weddings', 'productType')]))
        self.assertFalse(is_wedding_product([ProductLabel('Weddings', 'custom')]))

    def test_best_label_picks_lowest_priority(self) -> None:
        labels = [ProductLabel('Medium', 'difficulty', priority=5), ProductLabel('Hard', 'difficulty', priority=2)]
        self.assertEqual(best_label(labels, LabelCategory.DIFFICULTY).name, 'Hard')
        self.assertIsNone(best_label(labels, LabelCategory.PRODUCT_TYPE))


class TimeWindowTests(unittest.TestCase):
    def test_parse_clock_range_handles_meridiem(self) -> None:
        self.assertEqual(parse_clock_range('2:00PM - 6:00PM'), (14, 18))
        self.assertEqual(parse_clock_range('12:00AM - 1:00AM'), (0, 1))
        self.assertIsNone(parse_clock_range('22/06/2025'))

    def test_tags_map_to_fixed_ranges(self) -> None:
        self.assertEqual(time_window_for(['22/06/2025', '10:00-13:00']), TimeWindow.MORNING)
        self.assertEqual(time_window_for(['11:00 - 15:00']), TimeWindow.MIDDAY)
        self.assertEqual(time_window_for(['2:00PM - 6:00PM']), TimeWindow.AFTERNOON)
        self.assertEqual(time_window_for(['18:00-22:00']), TimeWindow.NIGHT)

    def test_named_tag_matches_window(self) -> None:
        self.assertEqual(time_window_for(['Night Delivery']), TimeWindow.NIGHT)

    def test_express_slot_is_fallback(self) -> None:
        self.assertEqual(time_window_for(['22/06/2025'], '10:00AM - 12:00PM'), TimeWindow.MORNING)
        self.assertEqual(time_window_for(['22/06/2025'], '3:00PM - 5:00PM'), TimeWindow.AFTERNOON)

    def test_unmatched_is_unscheduled(self) -> None:
        self.assertEqual(time_window_for(['22/06/2025', '09:00-09:30']), TimeWindow.UNSCHEDULED)
        self.assertEqual(time_window_for([]), TimeWindow.UNSCHEDULED)


if __name__ == '__main__':
    unittest.main()
