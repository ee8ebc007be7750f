"""
Group identifier parsing.

Group identifiers are opaque strings (usually directory distinguished names
such as ``CN=EMEA-Senior-Managers,OU=Groups,DC=corp,DC=com``). Market, role
and function hints are found by case-sensitive substring matching against a
fixed vocabulary; environments are matched on whole tokens. Every function
here is pure and total: an identifier that matches nothing yields a sentinel
or ``None``, never an error.
"""

import hashlib
import re
from typing import Iterable, List, Optional, Sequence, Tuple

from .models import GroupAttributes, Market

# Checked in this order within a single identifier.
MARKET_TOKENS: Tuple[Tuple[str, Market], ...] = (
    ("EMEA", Market.EMEA),
    ("UK", Market.UK),
    ("US", Market.US),
    ("APAC", Market.APAC),
)

# "Senior-Managers" must be tested before "Managers".
ROLE_HINTS: Tuple[Tuple[str, str], ...] = (
    ("Senior-Managers", "SENIOR_MANAGER"),
    ("Managers", "MANAGER"),
    ("Analysts", "ANALYST"),
)

FUNCTION_HINTS: Tuple[Tuple[str, str], ...] = (
    ("Managers", "MANAGEMENT"),
    ("Supervisors", "SUPERVISION"),
    ("Analysts", "ANALYTICS"),
    ("Agents", "OPERATIONS"),
    ("Compliance", "COMPLIANCE"),
    ("Support", "SUPPORT"),
)

ENVIRONMENT_TOKENS = {
    "PROD": "PRODUCTION",
    "PRD": "PRODUCTION",
    "PRODUCTION": "PRODUCTION",
    "UAT": "UAT",
    "SIT": "TEST",
    "QA": "TEST",
    "TEST": "TEST",
    "DEV": "DEVELOPMENT",
}

DEFAULT_ENVIRONMENT = "PRODUCTION"

_TOKEN_SPLIT = re.compile(r"[^A-Za-z0-9]+")


def extract_market(identifier: str) -> Optional[str]:
    """Market literal embedded in one identifier, if any."""
    for token, market in MARKET_TOKENS:
        if token in identifier:
            return market.value
    return None


def resolve_market(identifiers: Sequence[str]) -> str:
    """First market found scanning identifiers in list order, else GLOBAL."""
    for identifier in identifiers:
        market = extract_market(identifier)
        if market:
            return market
    return Market.GLOBAL.value


def extract_role_hint(identifier: str) -> Optional[str]:
    """Role name suggested by an identifier, or None."""
    for token, role in ROLE_HINTS:
        if token in identifier:
            return role
    return None


def extract_function(identifier: str) -> Optional[str]:
    for token, function in FUNCTION_HINTS:
        if token in identifier:
            return function
    return None


def extract_environment(identifier: str) -> str:
    for token in _TOKEN_SPLIT.split(identifier.upper()):
        if token in ENVIRONMENT_TOKENS:
            return ENVIRONMENT_TOKENS[token]
    return DEFAULT_ENVIRONMENT


def parse_group(identifier: str) -> GroupAttributes:
    """Structured attributes of a single group identifier."""
    return GroupAttributes(
        identifier=identifier,
        market=extract_market(identifier) or Market.GLOBAL.value,
        function=extract_function(identifier),
        environment=extract_environment(identifier),
        role_hint=extract_role_hint(identifier),
    )


def role_candidates(identifiers: Iterable[str]) -> List[str]:
    """Role hints in identifier order, without duplicates."""
    candidates: List[str] = []
    for identifier in identifiers:
        role = extract_role_hint(identifier)
        if role and role not in candidates:
            candidates.append(role)
    return candidates


def group_hash(identifier: str) -> str:
    """Stable primary key for a group identifier (SHA-256 hex)."""
    return hashlib.sha256(identifier.encode("utf-8")).hexdigest()
