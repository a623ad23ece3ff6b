"""PPID decoding.

A PPID is the factory-printed identifier on a system's label:

    CC DDDDD FFFFF YMD SSSS RR…
    0  3     8     13  16   20

  [3:8]    part number (DPN)
  [8:13]   factory code, matched against Factory.ppid_code
  [13:16]  date code: year digit (2020 + n), month and day as 0-9 / A-Z
  [16:20]  serial
  [20:]    revision
"""

from dataclasses import dataclass
from datetime import date

from app.middleware.exceptions import InvalidInputError

PPID_MIN_LENGTH = 21
# Width of units.ppid
PPID_MAX_LENGTH = 40


@dataclass(frozen=True)
class ParsedPPID:
    ppid: str
    part_number: str
    factory_code: str
    manufactured_date: date | None
    serial: str
    rev: str


def _decode_char(c: str) -> int:
    if c.isdigit():
        return int(c)
    return ord(c.upper()) - ord("A") + 10


def decode_date_code(code: str) -> date | None:
    """'54I' → 2025-04-18. Returns None for codes that are not a real date."""
    if not code or len(code) != 3 or not code[0].isdigit():
        return None
    try:
        return date(2020 + int(code[0]), _decode_char(code[1]), _decode_char(code[2]))
    except ValueError:
        return None


def parse_ppid(raw: str | None) -> ParsedPPID:
    ppid = (raw or "").strip().upper()
    if not PPID_MIN_LENGTH <= len(ppid) <= PPID_MAX_LENGTH:
        raise InvalidInputError(
            "Invalid PPID format",
            details={
                "ppid": raw,
                "min_length": PPID_MIN_LENGTH,
                "max_length": PPID_MAX_LENGTH,
            },
        )
    return ParsedPPID(
        ppid=ppid,
        part_number=ppid[3:8],
        factory_code=ppid[8:13],
        manufactured_date=decode_date_code(ppid[13:16]),
        serial=ppid[16:20],
        rev=ppid[20:],
    )
