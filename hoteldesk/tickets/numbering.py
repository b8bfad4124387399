"""Human readable ticket numbers of the form ``TKT-<year>-<seq>``."""

from __future__ import annotations

import re

TICKET_NUMBER_RE = re.compile(r"^TKT-(?P<year>\d{4})-(?P<seq>\d{3,})$")


def ticket_number_prefix(year: int) -> str:
    return f"TKT-{year:04d}-"


def format_ticket_number(year: int, sequence: int) -> str:
    if sequence < 1:
        raise ValueError("Ticket sequence starts at 1")
    return f"{ticket_number_prefix(year)}{sequence:03d}"


def parse_ticket_number(number: str) -> tuple[int, int]:
    match = TICKET_NUMBER_RE.match(number)
    if match is None:
        raise ValueError(f"Malformed ticket number: {number!r}")
    return int(match.group("year")), int(match.group("seq"))


def next_ticket_number(year: int, latest: str | None) -> str:
    """Derive the number following ``latest`` within ``year``.

    The counter restarts at 001 when no ticket exists yet for the year.
    """

    if latest is None:
        return format_ticket_number(year, 1)
    latest_year, sequence = parse_ticket_number(latest)
    if latest_year != year:
        return format_ticket_number(year, 1)
    return format_ticket_number(year, sequence + 1)
