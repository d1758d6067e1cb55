from fulfillment.services.pricing import calculate_totals, percent_of, platform_fee


def test_percent_of_rounds_half_up():
    assert percent_of(2900, 2.5) == 73  # 72.5
    assert percent_of(1000, 7.7) == 77
    assert percent_of(150, 3.0) == 5  # 4.5
    assert percent_of(0, 3.0) == 0


def test_vat_is_summed_per_rate_group():
    totals = calculate_totals([(2900, 2.5), (650, 2.5), (1000, 7.7)], default_vat_rate=2.5)

    assert totals.subtotal == 4550
    assert totals.vat_amount == percent_of(3550, 2.5) + percent_of(1000, 7.7)
    assert totals.vat_rate == 2.5


def test_total_includes_discount_and_tip():
    totals = calculate_totals([(2000, 2.5)], default_vat_rate=2.5, discount=300, tip=200)

    assert totals.total == 2000 + 50 - 300 + 200
    assert totals.as_dict()["discount"] == 300


def test_platform_fee_covers_the_tip():
    assert platform_fee(2000, 100, 3.0) == 63
    assert platform_fee(2000, 100, 0.0) == 0
