"""UNIX-style directory listing lines for ftpmon.

Parses "ls -l" style LIST output into DirEntry records and renders
DirEntry records back into listing lines.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ftpmon.ftp.exceptions import FTPProtocolError

logger = logging.getLogger("ftpmon.direntry")

# Example:
#   drwxr-x---  35 ftp      ftp          8192 Mar 11 22:14 ..
DIR_LINE_PATTERN = re.compile(
    r"(\S{10,11}) +\d+ +(\S+) +(\S+) +(\d+) +([A-Za-z]{3}) +(\d+) +"
    r"(?:(\d+):(\d+)|(\d{4})) +(.*)"
)

# Listings use English month names whatever the locale.
MONTH_NAMES = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)
MONTH_NUMBERS = {name.lower(): number for number, name in enumerate(MONTH_NAMES, start=1)}

NAME_WIDTH = 8


@dataclass(frozen=True)
class DirEntry:
    """One entry of a directory listing."""
    is_dir: bool
    user: str
    group: str
    length: int
    mtime: datetime
    name: str


def parse_dir_entry(line: str, now: Optional[datetime] = None) -> DirEntry:
    """
    Parse one listing line.

    Entries modified within the last year show a clock time instead of a
    year; those are assigned the current year.

    Args:
        line: Listing line without terminator
        now: Reference time for the current year (default: now)

    Returns:
        DirEntry for the line

    Raises:
        FTPProtocolError: If the line does not match the listing grammar
    """
    logger.debug(f"Parsing listing line '{line}'")

    match = DIR_LINE_PATTERN.fullmatch(line)
    if not match:
        raise FTPProtocolError(f"Unrecognized listing line format '{line}'")

    (permissions, user, group, length, month_name,
     day, hour, minute, year, name) = match.groups()

    month = MONTH_NUMBERS.get(month_name.lower())
    if month is None:
        raise FTPProtocolError(f"Unknown month '{month_name}' in listing line '{line}'")

    if year is None:
        year = (now or datetime.now()).year

    try:
        mtime = datetime(
            int(year),
            month,
            int(day),
            int(hour) if hour is not None else 0,
            int(minute) if minute is not None else 0,
        )
    except ValueError as e:
        raise FTPProtocolError(f"Invalid date in listing line '{line}'", e)

    return DirEntry(
        is_dir=permissions.startswith("d"),
        user=user,
        group=group,
        length=int(length),
        mtime=mtime,
        name=name,
    )


def serialize_dir_entry(entry: DirEntry, now: Optional[datetime] = None) -> str:
    """
    Render a DirEntry as a fixed-column listing line.

    The time of day is shown for entries from the current year, the year
    otherwise, so an entry from another year loses its time when parsed back.
    """
    current_year = (now or datetime.now()).year
    mtime = entry.mtime

    if mtime.year == current_year:
        time_or_year = f"{mtime.hour}:{mtime.minute:02d}"
    else:
        time_or_year = str(mtime.year)

    return "%srwxr-x---   1 %-8s %-8s %8d %s %2d %5s %s" % (
        "d" if entry.is_dir else "-",
        entry.user[:NAME_WIDTH],
        entry.group[:NAME_WIDTH],
        entry.length,
        MONTH_NAMES[mtime.month - 1],
        mtime.day,
        time_or_year,
        entry.name,
    )
