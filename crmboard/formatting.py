"""Display helpers for phone numbers, dates, and file sizes."""
import re
from datetime import datetime
from typing import Union

from .schema import parse_dt


def format_phone_number(phone: str) -> str:
    """Format US numbers; anything else is returned as given."""
    cleaned = re.sub(r"\D", "", phone or "")

    if len(cleaned) == 10:
        # (555) 555-5555
        return f"({cleaned[:3]}) {cleaned[3:6]}-{cleaned[6:]}"
    if len(cleaned) == 11 and cleaned[0] == "1":
        # +1 (555) 555-5555
        return f"+1 ({cleaned[1:4]}) {cleaned[4:7]}-{cleaned[7:]}"
    return phone


def format_date(value: Union[str, datetime]) -> str:
    """e.g. 'Mar 5, 2025'."""
    dt = parse_dt(value)
    return f"{dt.strftime('%b')} {dt.day}, {dt.year}"


def format_file_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"
