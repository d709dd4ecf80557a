"""Semantic version parsing and ordering."""

import re

_NUMERIC_PREFIX = re.compile(r"^(\d+)")


def parse_version(version: str) -> tuple[int, int, int]:
    """Parse ``major.minor.patch`` into a tuple of ints.

    A leading ``v`` and any pre-release/build suffix are ignored; missing
    fields count as zero, so ``"2.1"`` parses as ``(2, 1, 0)``.

    Raises:
        ValueError: If the major field is not numeric
    """
    text = version.strip().lstrip("vV")
    text = re.split(r"[-+]", text, maxsplit=1)[0]
    fields = text.split(".")

    numbers: list[int] = []
    for field in fields[:3]:
        match = _NUMERIC_PREFIX.match(field)
        if match is None:
            if not numbers:
                raise ValueError(f"Not a semantic version: {version!r}")
            break
        numbers.append(int(match.group(1)))

    while len(numbers) < 3:
        numbers.append(0)
    return numbers[0], numbers[1], numbers[2]


def compare_versions(left: str, right: str) -> int:
    """Return -1, 0 or 1 as ``left`` is older than, equal to or newer than ``right``."""
    a, b = parse_version(left), parse_version(right)
    return (a > b) - (a < b)


def is_newer(candidate: str, current: str) -> bool:
    """Whether ``candidate`` is a strictly newer version than ``current``."""
    return compare_versions(candidate, current) > 0
