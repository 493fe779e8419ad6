"""
Human-readable rendering of sizes and ages.
"""

from datetime import timedelta
from typing import Union


def format_size(num_bytes: int) -> str:
    """
    Format a byte count in binary units.

    Examples: '512 B', '1.5 KiB', '2.0 MiB'
    """
    unit = 1024
    if num_bytes < unit:
        return f"{num_bytes} B"

    div, exp = unit, 0
    n = num_bytes // unit
    while n >= unit and exp < 5:
        div *= unit
        exp += 1
        n //= unit

    return f"{num_bytes / div:.1f} {'KMGTPE'[exp]}iB"


def format_age(age: Union[timedelta, float]) -> str:
    """
    Format an age as 'XdYh', 'Xh' or 'Xm'.

    Args:
        age: timedelta or number of seconds
    """
    seconds = age.total_seconds() if isinstance(age, timedelta) else float(age)
    seconds = max(seconds, 0)

    hours_total = int(seconds // 3600)
    days, hours = divmod(hours_total, 24)

    if days > 0:
        return f"{days}d{hours}h"
    if hours > 0:
        return f"{hours}h"
    return f"{int(seconds // 60)}m"
