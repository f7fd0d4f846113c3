from __future__ import annotations

import pytest

from src.hybridsim.units import (
    expression_to_stored,
    rescale_concentration,
    species_conversion,
    stored_to_expression,
)


def test_species_conversion_covers_storage_and_unit_combinations() -> None:
    assert species_conversion(stored_as_amount=True, has_only_substance_units=False) == "to_concentration"
    assert species_conversion(stored_as_amount=True, has_only_substance_units=True) == "identity"
    assert species_conversion(stored_as_amount=False, has_only_substance_units=True) == "to_amount"
    assert species_conversion(stored_as_amount=False, has_only_substance_units=False) == "identity"


def test_stored_and_expression_values_are_inverse() -> None:
    assert stored_to_expression(6.0, 2.0, "to_concentration") == pytest.approx(3.0)
    assert expression_to_stored(3.0, 2.0, "to_concentration") == pytest.approx(6.0)
    assert stored_to_expression(6.0, 2.0, "to_amount") == pytest.approx(12.0)
    assert expression_to_stored(12.0, 2.0, "to_amount") == pytest.approx(6.0)
    assert stored_to_expression(6.0, 2.0, "identity") == 6.0


def test_zero_volume_reads_raw_value() -> None:
    assert stored_to_expression(6.0, 0.0, "to_concentration") == 6.0
    assert expression_to_stored(6.0, 0.0, "to_amount") == 6.0


def test_rescale_concentration_keeps_amount() -> None:
    assert rescale_concentration(4.0, 1.0, 2.0) == pytest.approx(2.0)
    assert rescale_concentration(4.0, 1.0, 0.0) == 4.0
