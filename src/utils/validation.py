"""Input validation utilities for services and settings.

Reusable checks that raise clear ValueError or TypeError exceptions
for invalid inputs.
"""


def validate_not_empty(value: str | None, param_name: str) -> None:
    """Validate that a string parameter is not None or empty.

    Args:
        value: The string value to validate
        param_name: Name of the parameter for error messages

    Raises:
        ValueError: If value is None, empty string, or only whitespace
        TypeError: If value is not a string
    """
    if value is None:
        raise ValueError(f"Parameter '{param_name}' cannot be None")
    if not isinstance(value, str):
        raise TypeError(f"Parameter '{param_name}' must be a string, got {type(value).__name__}")
    if not value.strip():
        raise ValueError(f"Parameter '{param_name}' cannot be empty")


def validate_in_range(
    value: int | float | None,
    param_name: str,
    min_val: int | float | None = None,
    max_val: int | float | None = None,
) -> None:
    """Validate that a numeric parameter is within an inclusive range.

    Raises:
        ValueError: If value is None or outside the range
        TypeError: If value is not int or float (bool is rejected)
    """
    if value is None:
        raise ValueError(f"Parameter '{param_name}' cannot be None")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"Parameter '{param_name}' must be numeric, got {type(value).__name__}")

    if min_val is not None and value < min_val:
        raise ValueError(f"Parameter '{param_name}' must be >= {min_val}, got {value}")
    if max_val is not None and value > max_val:
        raise ValueError(f"Parameter '{param_name}' must be <= {max_val}, got {value}")


def validate_string_in_choices(value: str | None, param_name: str, choices: list[str]) -> None:
    """Ensure the string parameter is one of the allowed choices.

    Raises:
        ValueError: If value is empty or not one of choices.
    """
    validate_not_empty(value, param_name)
    if value not in choices:
        raise ValueError(f"Parameter '{param_name}' must be one of {choices}, got '{value}'")
