"""
Universe refresh: turn a provider's candidate list into the stored universe
for a given index tag.

Candidates that carry S&P membership (the Wikipedia lists) are selected by
that membership. Untagged lists (FMP's screener) arrive largest company
first, so the S&P tags fall back to positional slices: sp500 is the first
500 names, sp400 the next 400, sp600 the next 600.
"""

import logging
from typing import List

from config_loader import UNIVERSE_TAGS
from errors import ConfigurationError, ProviderError
from metrics import SymbolMeta

logger = logging.getLogger(__name__)

TAG_SLICES = {
    "sp500": slice(0, 500),
    "sp400": slice(500, 900),
    "sp600": slice(900, 1500),
    "sp1500": slice(0, 1500),
    # Russell 2000 = ranks 1001-3000 of the broad cap-ordered market
    "russell2000": slice(1000, 3000),
    "all": slice(None),
}

TAG_MEMBERSHIP = {
    "sp500": {"sp500"},
    "sp400": {"sp400"},
    "sp600": {"sp600"},
    "sp1500": {"sp500", "sp400", "sp600"},
}


def validate_universe_tag(tag: str) -> str:
    if tag not in UNIVERSE_TAGS:
        raise ConfigurationError(f"Unknown universe tag: {tag}. Expected one of {UNIVERSE_TAGS}")
    return tag


def select_universe(candidates: List[SymbolMeta], tag: str) -> List[SymbolMeta]:
    """Apply a universe tag to a candidate list"""
    validate_universe_tag(tag)
    if tag == "nasdaq":
        return [m for m in candidates if m.exchange.upper().startswith("NASDAQ")]

    members = TAG_MEMBERSHIP.get(tag)
    if members and any(m.index for m in candidates):
        return [m for m in candidates if m.index in members]

    return list(candidates[TAG_SLICES[tag]])


def refresh_universe(provider, store, tag: str) -> int:
    """Fetch candidates, select by tag and replace the stored universe"""
    validate_universe_tag(tag)

    candidates = provider.get_universe()
    if not candidates:
        raise ProviderError(f"Provider {provider.name} returned an empty universe")

    selected = select_universe(candidates, tag)
    if not selected:
        raise ProviderError(f"No {tag} symbols in the {len(candidates)} candidates from {provider.name}")

    count = store.replace_symbols(selected)
    logger.info(f"Universe refreshed: {count} symbols for {tag} from {provider.name}")
    return count
