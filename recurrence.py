from typing import Optional

from periods import is_valid_month_key, months_between
from schemas import LineItem


def window_offset(item: LineItem, month_key: str) -> Optional[int]:
    """Months from the item's ``start_month`` to ``month_key``.

    None when the recurrence is not fully configured or a key is malformed.
    """
    if not item.start_month or not item.recurring_months:
        return None
    if not is_valid_month_key(item.start_month) or not is_valid_month_key(month_key):
        return None
    return months_between(item.start_month, month_key)


def is_active_in(item: LineItem, month_key: str) -> bool:
    if not item.is_recurring:
        return True
    offset = window_offset(item, month_key)
    if offset is None:
        return False
    return 0 <= offset < item.recurring_months

