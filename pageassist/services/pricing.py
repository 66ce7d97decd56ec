"""
Pricing - token usage to currency cost.

All arithmetic is Decimal; rounding happens only when presenting amounts.
"""

from decimal import ROUND_HALF_UP, Decimal

from pageassist.config import Settings
from pageassist.models.domain import PriceTable

ONE_MILLION = Decimal(1_000_000)
PRESENTATION_QUANTUM = Decimal("0.0001")


def price_table_from_settings(settings: Settings) -> PriceTable:
    """Build the price table from configuration."""
    return PriceTable(
        input_per_million=settings.price_input_per_million,
        output_per_million=settings.price_output_per_million,
        multiplier=settings.price_multiplier,
    )


def compute_cost(input_tokens: int, output_tokens: int, prices: PriceTable) -> Decimal:
    """
    Cost of one LLM call.

    cost = in/1e6 * price_in * multiplier + out/1e6 * price_out * multiplier
    """
    if input_tokens < 0 or output_tokens < 0:
        raise ValueError("Token counts cannot be negative")

    input_cost = Decimal(input_tokens) / ONE_MILLION * prices.input_per_million
    output_cost = Decimal(output_tokens) / ONE_MILLION * prices.output_per_million
    return (input_cost + output_cost) * prices.multiplier


def present_amount(amount: Decimal) -> float:
    """Round a money amount to 4 places for API responses."""
    return float(amount.quantize(PRESENTATION_QUANTUM, rounding=ROUND_HALF_UP))
