"""Helpers for parsing configuration values."""


def parse_seconds(value: int | float | str) -> float:
    """Parse a duration from a number or unit-suffixed string.

    Supported string units (case-insensitive):
        s, m, h

    Args:
        value: Raw duration as a number of seconds or a string with an
            optional unit suffix.

    Returns:
        The parsed duration in seconds.

    Raises:
        ValueError: If the input cannot be parsed or contains an unknown unit.
    """
    if isinstance(value, (int, float)):
        return float(value)

    normalized_value = str(value).strip().lower()

    try:
        return float(normalized_value)
    except ValueError:
        pass

    numeric_part = normalized_value[:-1]
    unit_suffix = normalized_value[-1:]
    if not numeric_part or not unit_suffix:
        raise ValueError(f"Invalid duration value: {value!r}")

    try:
        base_value = float(numeric_part)
    except ValueError as exc:
        raise ValueError(f"Invalid duration value: {value!r}") from exc

    if unit_suffix == "s":
        multiplier = 1
    elif unit_suffix == "m":
        multiplier = 60
    elif unit_suffix == "h":
        multiplier = 3600
    else:
        raise ValueError(f"Unknown duration unit in value: {value!r}")

    return base_value * multiplier
