"""Amount/concentration conversion helpers for species values."""

from __future__ import annotations

from typing import Literal

Conversion = Literal["identity", "to_concentration", "to_amount"]


def species_conversion(
    *,
    stored_as_amount: bool,
    has_only_substance_units: bool,
) -> Conversion:
    """Return how a stored species value maps onto the units math expects.

    Amount-stored species read in concentration unless they carry only
    substance units; concentration-stored species read in amount when they do.
    """

    if stored_as_amount and not has_only_substance_units:
        return "to_concentration"
    if not stored_as_amount and has_only_substance_units:
        return "to_amount"
    return "identity"


def stored_to_expression(raw: float, volume: float, conversion: Conversion) -> float:
    if volume == 0.0:
        return raw
    if conversion == "to_concentration":
        return raw / volume
    if conversion == "to_amount":
        return raw * volume
    return raw


def expression_to_stored(value: float, volume: float, conversion: Conversion) -> float:
    """Inverse of :func:`stored_to_expression` used when rules write species."""

    if volume == 0.0:
        return value
    if conversion == "to_concentration":
        return value * volume
    if conversion == "to_amount":
        return value / volume
    return value


def rescale_concentration(value: float, old_volume: float, new_volume: float) -> float:
    """Keep the amount of a concentration-stored species when its compartment resizes."""

    if new_volume == 0.0:
        return value
    return value * old_volume / new_volume


__all__ = [
    "Conversion",
    "expression_to_stored",
    "rescale_concentration",
    "species_conversion",
    "stored_to_expression",
]
