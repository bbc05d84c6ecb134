"""
Gift-card identifiers.

An identifier is ``<slug>_<index>``: the company name with spaces, hyphens and
underscores removed and lower-cased, followed by the member's position in the
company's member list. The format is visible to external card-lookup callers
and must not change.
"""

import re
from typing import NamedTuple, Optional

_STRIPPED = re.compile(r"[ \-_]")
_INDEX = re.compile(r"[0-9]+")


class ParsedIdentifier(NamedTuple):
    slug: str
    index: int


def slugify_company_name(company_name: str) -> str:
    return _STRIPPED.sub("", company_name).lower()


def build_identifier(company_name: str, member_index: int) -> str:
    if member_index < 0:
        raise ValueError(f"member index must be >= 0, got {member_index}")
    return f"{slugify_company_name(company_name)}_{member_index}"


def parse_identifier(identifier: str) -> Optional[ParsedIdentifier]:
    """Split ``identifier`` into slug and member index.

    Returns None when there is not exactly one underscore, the slug is empty,
    or the suffix is not a non-negative integer.
    """
    parts = identifier.split("_")
    if len(parts) != 2:
        return None
    slug, suffix = parts
    if not slug or not _INDEX.fullmatch(suffix):
        return None
    return ParsedIdentifier(slug=slug, index=int(suffix))
