"""Matching host names against dotted wildcard patterns.

``*`` matches exactly one label and ``**`` matches one or more leading labels.
"""

from __future__ import annotations

import enum
import string

_ASCII_LOWER = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)


def _ascii_lower(text: str) -> str:
    return text.translate(_ASCII_LOWER)


class _Wildcard(enum.Enum):
    SUPERWILD = "**"
    WILD = "*"


def _pattern_part(part: str) -> _Wildcard | str:
    if part == _Wildcard.SUPERWILD.value:
        return _Wildcard.SUPERWILD
    if part == _Wildcard.WILD.value:
        return _Wildcard.WILD
    return _ascii_lower(part)


class Domain:
    """A domain name split into lower-cased labels, most significant first."""

    def __init__(self, dom: str) -> None:
        self.parts: tuple[str, ...] = tuple(
            _ascii_lower(part) for part in reversed(dom.split("."))
        )

    def __repr__(self) -> str:
        return f"Domain({'.'.join(reversed(self.parts))!r})"


class Pattern:
    """A domain pattern that may contain ``*`` and ``**`` labels."""

    def __init__(self, pat: str) -> None:
        self.parts: tuple[_Wildcard | str, ...] = tuple(
            _pattern_part(part) for part in reversed(pat.split("."))
        )

    def matches(self, query: Domain) -> bool:
        labels = iter(query.parts)
        for part in self.parts:
            label = next(labels, None)
            if label is None:
                return False
            if part is _Wildcard.SUPERWILD:
                return True
            if part is _Wildcard.WILD:
                continue
            if part != label:
                return False
        # The pattern is exhausted; the domain must be as well.
        return next(labels, None) is None


class DomainFilter:
    """A set of domain patterns; a name matches if any pattern does."""

    def __init__(self) -> None:
        self._patterns: list[Pattern] = []

    @classmethod
    def allow_all(cls) -> DomainFilter:
        domain_filter = cls()
        domain_filter.add("**")
        return domain_filter

    def add(self, pattern: str) -> None:
        self._patterns.append(Pattern(pattern))

    def matches(self, domain: str) -> bool:
        dom = Domain(domain)
        return any(pattern.matches(dom) for pattern in self._patterns)