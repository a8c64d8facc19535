"""
Universe Constituents Module

Builds the S&P Composite 1500 from Wikipedia's constituent tables:
- S&P 500 (large cap)
- S&P MidCap 400
- S&P SmallCap 600

Each constituent is tagged with the index it came from, so universe tags
select by membership rather than by position.
"""

import logging
from dataclasses import replace
from typing import List, Optional

import requests
from bs4 import BeautifulSoup

from metrics import SymbolMeta

logger = logging.getLogger(__name__)

WIKIPEDIA_PAGES = {
    "sp500": "https://en.wikipedia.org/wiki/List_of_S%26P_500_companies",
    "sp400": "https://en.wikipedia.org/wiki/List_of_S%26P_400_companies",
    "sp600": "https://en.wikipedia.org/wiki/List_of_S%26P_600_companies",
}
REQUEST_HEADERS = {"User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"}

SYMBOL_HEADERS = ("symbol", "ticker symbol", "ticker")
NAME_HEADERS = ("security", "company")
SECTOR_HEADERS = ("gics sector",)
INDUSTRY_HEADERS = ("gics sub-industry", "gics sub industry")


def _column(headers: List[str], candidates) -> Optional[int]:
    for i, header in enumerate(headers):
        if header in candidates:
            return i
    return None


def parse_constituents_table(html: str) -> List[SymbolMeta]:
    """
    Parse a Wikipedia constituents table into SymbolMeta rows.
    Columns are located by header text since the three pages differ.
    """
    soup = BeautifulSoup(html, 'html.parser')
    table = soup.find('table', {'id': 'constituents'})
    if table is None:
        table = soup.find('table', {'class': 'wikitable'})
    if table is None:
        return []

    rows = table.find_all('tr')
    if not rows:
        return []

    headers = [th.get_text(strip=True).lower() for th in rows[0].find_all(['th', 'td'])]
    symbol_col = _column(headers, SYMBOL_HEADERS)
    if symbol_col is None:
        symbol_col = 0
    name_col = _column(headers, NAME_HEADERS)
    sector_col = _column(headers, SECTOR_HEADERS)
    industry_col = _column(headers, INDUSTRY_HEADERS)

    constituents = []
    seen = set()
    for row in rows[1:]:
        cells = row.find_all('td')
        if len(cells) <= symbol_col:
            continue

        def cell(index):
            if index is None or index >= len(cells):
                return ""
            return cells[index].get_text(strip=True)

        symbol = cell(symbol_col).replace('.', '-')  # BRK.B -> BRK-B
        if not symbol or symbol in seen:
            continue
        seen.add(symbol)

        constituents.append(SymbolMeta(
            symbol=symbol,
            name=cell(name_col) or symbol,
            sector=cell(sector_col) or "Unknown",
            industry=cell(industry_col) or "Unknown",
        ))

    return constituents


def fetch_index_constituents(index: str, session: Optional[requests.Session] = None,
                             timeout: int = 15) -> List[SymbolMeta]:
    """Fetch one index from Wikipedia; falls back to a short static list on failure"""
    url = WIKIPEDIA_PAGES[index]
    http = session or requests

    try:
        response = http.get(url, headers=REQUEST_HEADERS, timeout=timeout)
        response.raise_for_status()
        constituents = parse_constituents_table(response.text)
        if constituents:
            logger.info(f"Fetched {len(constituents)} {index} constituents from Wikipedia")
            return constituents
        logger.warning(f"No constituents parsed for {index}")
    except Exception as e:
        logger.warning(f"Wikipedia {index} fetch failed: {e}")

    return get_fallback_constituents(index)


def get_sp1500_constituents(session: Optional[requests.Session] = None) -> List[SymbolMeta]:
    """S&P 500, then MidCap 400, then SmallCap 600, de-duplicated in that order.
    A symbol listed twice keeps its first index."""
    combined = []
    seen = set()
    for index in ("sp500", "sp400", "sp600"):
        for meta in fetch_index_constituents(index, session=session):
            if meta.symbol not in seen:
                seen.add(meta.symbol)
                combined.append(replace(meta, index=index))
    return combined


FALLBACK_TICKERS = {
    "sp500": [
        "AAPL", "MSFT", "NVDA", "AMZN", "GOOGL", "META", "BRK-B", "AVGO", "LLY", "JPM",
        "V", "UNH", "XOM", "MA", "COST", "HD", "PG", "JNJ", "NFLX", "ABBV",
        "CRM", "BAC", "ORCL", "CVX", "KO", "MRK", "AMD", "PEP", "ADBE", "TMO",
        "LIN", "ACN", "MCD", "CSCO", "ABT", "WMT", "GE", "CAT", "ISRG", "NOW",
    ],
    "sp400": [
        "DECK", "WSM", "EME", "RS", "CSL", "FIX", "MUSA", "TOL", "ELS", "LII",
        "SAIA", "CELH", "RPM", "GGG", "OC", "WSO", "ITT", "CASY", "CHE", "SKX",
    ],
    "sp600": [
        "ANF", "AAON", "ATI", "BOOT", "CRVL", "ENSG", "FN", "IBP", "MTH", "SPSC",
        "AEIS", "ALKS", "BMI", "CALM", "DY", "GPI", "LBRT", "MLI", "SIG", "WIRE",
    ],
}


def get_fallback_constituents(index: str) -> List[SymbolMeta]:
    """Static list used when Wikipedia is unreachable"""
    tickers = FALLBACK_TICKERS.get(index, [])
    logger.info(f"Using fallback list of {len(tickers)} {index} tickers")
    return [SymbolMeta(symbol=t, name=t) for t in tickers]
