"""
Parser for the PHP-FPM plain text status page.

Example input::

    pool:                 www
    process manager:      dynamic
    start time:           07/Dec/2016:00:13:21 +0000
    accepted conn:        1
    listen queue:         0
    idle processes:       0
    active processes:     1
    slow requests:        0

Every ``<field name>: <value>`` line whose value is a base-10 integer
becomes one Sample. Anything else is skipped without error.
"""

import re
from typing import Iterator, NamedTuple, Union


# Field name is everything before the first colon followed by blanks, the
# value is the rest of the line minus surrounding blanks.
STATUS_LINE_RE = re.compile(r'^([^\n]*?):[ \t]+([^\n]*?)[ \t\r]*$', re.MULTILINE)

_INTEGER_RE = re.compile(r'[0-9]+')


class Sample(NamedTuple):
    """One integer field of the status page."""
    key: str
    value: int


def parse_status(raw: Union[bytes, str]) -> Iterator[Sample]:
    """
    Lazily parse a status page into samples, in line order.

    Args:
        raw: Status page body, bytes are decoded as UTF-8

    Yields:
        Sample: One per well-formed integer line
    """
    if isinstance(raw, bytes):
        raw = raw.decode('utf-8', errors='replace')

    for match in STATUS_LINE_RE.finditer(raw):
        key, value = match.group(1), match.group(2)
        if not _INTEGER_RE.fullmatch(value):
            continue
        yield Sample(key, int(value))
