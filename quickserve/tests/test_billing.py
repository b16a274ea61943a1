from decimal import Decimal

from quickserve.app.billing import calculate_bill, line_amount, split_tax, to_decimal


def test_inclusive_bill_with_discount():
    q = calculate_bill([{"price": 94, "quantity": 2}], discount=12, tax_rate=5, tax_mode="inclusive")
    assert q.gross_total == Decimal("188.00")
    assert q.discount == Decimal("12.00")
    assert q.net_payable == Decimal("176.00")
    assert q.taxable_value == Decimal("167.62")
    assert q.tax_amount == Decimal("8.38")
    assert (q.tax_part_a, q.tax_part_b) == (Decimal("4.19"), Decimal("4.19"))
    assert q.total == Decimal("176.00")
    assert q.tax_mode == "inclusive"


def test_exclusive_bill_with_discount():
    q = calculate_bill([{"price": 94, "quantity": 2}], discount=12, tax_rate=5, tax_mode="exclusive")
    assert q.taxable_value == Decimal("176.00")
    assert q.tax_amount == Decimal("8.80")
    assert (q.tax_part_a, q.tax_part_b) == (Decimal("4.40"), Decimal("4.40"))
    assert q.total == Decimal("184.80")
    assert q.net_payable is None


def test_defaults_are_five_percent_inclusive():
    q = calculate_bill([{"price": "105", "quantity": 1}])
    assert q.tax_rate == Decimal("5")
    assert q.tax_mode == "inclusive"
    assert q.taxable_value == Decimal("100.00")
    assert q.tax_amount == Decimal("5.00")


def test_discount_is_clamped_to_gross():
    q = calculate_bill([{"price": 10, "quantity": 1}], discount=50, tax_rate=5, tax_mode="exclusive")
    assert q.discount == Decimal("10.00")
    assert q.taxable_value == Decimal("0.00")
    assert q.total == Decimal("0.00")

    q = calculate_bill([{"price": 10, "quantity": 1}], discount=-5, tax_rate=5, tax_mode="exclusive")
    assert q.discount == Decimal("0.00")
    assert q.total == Decimal("10.50")


def test_malformed_input_never_raises():
    q = calculate_bill(
        [
            {"price": "abc", "quantity": 2},
            {"price": 5, "quantity": -3},
            {"price": float("nan"), "quantity": 1},
            {"price": "1e20", "quantity": 1},
            None,
        ],
        discount="lots",
        tax_rate="nan",
        tax_mode="sideways",
    )
    assert q.gross_total == Decimal("0.00")
    assert q.tax_rate == Decimal("0")
    assert q.tax_mode == "inclusive"
    assert q.total == Decimal("0.00")

    empty = calculate_bill(None)
    assert empty.total == Decimal("0.00")
    assert empty.tax_part_a + empty.tax_part_b == empty.tax_amount


def test_line_amount_falls_back_to_menu_price_and_truncates_quantity():
    assert line_amount({"price": 0, "menu_item_price": "12.50", "quantity": 2}) == Decimal("25.00")
    assert line_amount({"price": 3, "quantity": 2.7}) == Decimal("6")
    assert line_amount({"quantity": 4}) == Decimal("0")


def test_split_tax_gives_odd_cent_to_first_half():
    assert split_tax(Decimal("0.05")) == (Decimal("0.03"), Decimal("0.02"))
    assert split_tax(Decimal("8.38")) == (Decimal("4.19"), Decimal("4.19"))


def test_tax_parts_always_sum_to_tax_amount():
    carts = [
        ([{"price": "19.99", "quantity": 3}], "2.5", "12", "inclusive"),
        ([{"price": "7.33", "quantity": 7}], "0", "18", "exclusive"),
        ([{"price": "0.01", "quantity": 1}], "0", "5", "exclusive"),
        ([{"price": "999.99", "quantity": 11}, {"price": "0.37", "quantity": 9}], "10", "28", "inclusive"),
    ]
    for items, discount, rate, mode in carts:
        q = calculate_bill(items, discount, rate, mode)
        assert q.tax_part_a + q.tax_part_b == q.tax_amount
        assert q.tax_part_a >= q.tax_part_b
        if mode == "inclusive":
            assert q.total == q.net_payable
        else:
            assert q.total == q.taxable_value + q.tax_amount


def test_accepts_objects_as_well_as_dicts():
    class Line:
        price = Decimal("94")
        quantity = 2

    q = calculate_bill([Line()], discount=12, tax_rate=5, tax_mode="inclusive")
    assert q.total == Decimal("176.00")


def test_to_decimal_rejects_bool_and_inf():
    assert to_decimal(True) == Decimal("0")
    assert to_decimal("inf") == Decimal("0")
    assert to_decimal(" 4.5 ") == Decimal("4.5")
