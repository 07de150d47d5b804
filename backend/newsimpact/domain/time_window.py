"""
Symbolic prediction horizons ("1H", "4H", "1D") resolved to concrete deadlines.
"""

import re
from datetime import datetime, timedelta

from newsimpact.utils.errors import InvalidTimeWindowError

TIME_WINDOW_PATTERN = re.compile(r"(\d+)([HD])")

_UNIT_HOURS = {"H": 1, "D": 24}


def parse_time_window(token: str) -> timedelta:
    """
    Parse a symbolic window token into a duration.

    Raises:
        InvalidTimeWindowError: token is not `<n>H` / `<n>D` with n > 0
    """
    if not isinstance(token, str):
        raise InvalidTimeWindowError(
            f"Time window must be a string, got {type(token).__name__}",
            details={"time_window": repr(token)},
        )

    match = TIME_WINDOW_PATTERN.fullmatch(token)
    if not match:
        raise InvalidTimeWindowError(
            f"Invalid time window '{token}'. Expected a token like 1H, 4H or 1D",
            details={"time_window": token},
        )

    amount = int(match.group(1))
    if amount == 0:
        raise InvalidTimeWindowError(
            f"Time window '{token}' has zero length",
            details={"time_window": token},
        )

    return timedelta(hours=amount * _UNIT_HOURS[match.group(2)])


def resolve_due_at(anchor: datetime, token: str) -> datetime:
    """Evaluation deadline: anchor + parsed window."""
    return anchor + parse_time_window(token)
