"""
Decimal utilities for safe financial calculations
Ensures precision in monetary operations
"""
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, InvalidOperation
from typing import Any, Optional, Union
import logging

logger = logging.getLogger(__name__)

# Fallback precision when the exchange publishes no LOT_SIZE rule
DEFAULT_QUANTITY_PRECISION = 8


def safe_decimal(
    value: Any,
    default: Optional[Decimal] = Decimal('0'),
    field_name: str = "value",
) -> Optional[Decimal]:
    """
    Safely convert any value to Decimal with error handling

    Handles all edge cases: None, invalid strings, NaN, Infinity, etc.

    Args:
        value: Value to convert (any type)
        default: Default value if conversion fails
        field_name: Field name for logging (helps debug)

    Returns:
        Decimal value or default if conversion fails

    Example:
        >>> safe_decimal("123.45")
        Decimal('123.45')
        >>> safe_decimal(float('nan'), default=None) is None
        True
    """
    if value is None:
        return default

    if isinstance(value, Decimal):
        return default if (value.is_nan() or value.is_infinite()) else value

    try:
        # Convert to string first to avoid float precision issues
        str_value = str(value).strip()

        if not str_value or str_value.lower() in ('none', 'null', 'nan'):
            return default

        decimal_value = Decimal(str_value)

        if decimal_value.is_infinite() or decimal_value.is_nan():
            logger.warning(f"Non-finite value for {field_name}: {value}")
            return default

        return decimal_value

    except (InvalidOperation, ValueError, TypeError, ArithmeticError) as e:
        logger.warning(f"Failed to convert {field_name}='{value}' to Decimal: {e}")
        return default


def to_decimal(value: Union[str, int, float, Decimal, None]) -> Decimal:
    """
    Convert any numeric type to Decimal through its string form

    Floats go through str() so 0.1 stays Decimal('0.1') instead of the
    binary expansion.
    """
    if value is None:
        return Decimal('0')

    if isinstance(value, Decimal):
        return value

    return Decimal(str(value))


def round_decimal(value: Decimal, precision: int = 8, rounding=ROUND_DOWN) -> Decimal:
    """
    Round decimal to specified precision

    Args:
        value: Decimal value to round
        precision: Number of decimal places
        rounding: Rounding mode (default ROUND_DOWN for safety)

    Returns:
        Rounded decimal value
    """
    if precision == 0:
        return value.quantize(Decimal('1'), rounding=rounding)

    quantizer = Decimal('0.1') ** precision
    return value.quantize(quantizer, rounding=rounding)


def step_precision(step_size: Decimal) -> int:
    """
    Number of decimal places implied by an exchange step size

    0.001 -> 3, 0.1 -> 1, 1 -> 0, 10 -> 0
    """
    return max(0, -step_size.normalize().adjusted())


def format_quantity(quantity: Decimal, step_size: Optional[Decimal] = None) -> Decimal:
    """
    Format order quantity to the symbol's LOT_SIZE step

    Truncates (never rounds up) so the submitted quantity can never exceed
    what the account holds.

    Args:
        quantity: Raw quantity
        step_size: Exchange step size, None when no rule is known

    Returns:
        Quantity ready to submit

    Example:
        >>> format_quantity(Decimal('1.23456'), Decimal('0.01'))
        Decimal('1.23')
        >>> format_quantity(Decimal('7.9'), Decimal('1'))
        Decimal('7')
    """
    quantity = to_decimal(quantity)

    if step_size is None or step_size <= 0:
        return round_decimal(quantity, DEFAULT_QUANTITY_PRECISION, ROUND_HALF_UP)

    if step_size == 1:
        return round_decimal(quantity, 0, ROUND_DOWN)

    return round_decimal(quantity, step_precision(step_size), ROUND_DOWN)


def safe_divide(numerator: Decimal, denominator: Decimal, default: Decimal = Decimal('0')) -> Decimal:
    """
    Safe division with zero check

    Args:
        numerator: Dividend
        denominator: Divisor
        default: Default value if division by zero

    Returns:
        Result or default if division by zero
    """
    if denominator == 0:
        return default
    return numerator / denominator
