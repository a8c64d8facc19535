"""
Tests for universe tags and refresh
"""

import pytest
import requests
from unittest.mock import MagicMock

from conftest import FakeProvider
from backend.universe import refresh_universe, select_universe
from errors import ConfigurationError, ProviderError
from metrics import SymbolMeta
from sp500_tickers import get_sp1500_constituents


@pytest.fixture
def candidates():
    return [
        SymbolMeta(symbol=f"S{i:04d}", exchange="NASDAQ" if i % 3 == 0 else "NYSE")
        for i in range(2000)
    ]


class TestSelectUniverse:

    def test_sp500(self, candidates):
        selected = select_universe(candidates, "sp500")
        assert len(selected) == 500
        assert selected[0].symbol == "S0000"

    def test_sp400_and_sp600_follow_sp500(self, candidates):
        assert select_universe(candidates, "sp400")[0].symbol == "S0500"
        assert len(select_universe(candidates, "sp400")) == 400
        assert select_universe(candidates, "sp600")[-1].symbol == "S1499"

    def test_sp1500(self, candidates):
        assert len(select_universe(candidates, "sp1500")) == 1500

    def test_russell2000_skips_largest_thousand(self, candidates):
        selected = select_universe(candidates, "russell2000")
        assert selected[0].symbol == "S1000"
        assert len(selected) == 1000

    def test_nasdaq_by_exchange(self, candidates):
        selected = select_universe(candidates, "nasdaq")
        assert selected
        assert all(m.exchange == "NASDAQ" for m in selected)

    def test_all(self, candidates):
        assert len(select_universe(candidates, "all")) == 2000

    def test_unknown_tag(self, candidates):
        with pytest.raises(ConfigurationError):
            select_universe(candidates, "ftse100")


class TestRefreshUniverse:

    def test_replaces_stored_universe(self, store, candidates):
        provider = FakeProvider(universe=candidates)
        assert refresh_universe(provider, store, "sp500") == 500
        assert store.list_symbols()[0].symbol == "S0000"

    def test_empty_provider(self, store):
        with pytest.raises(ProviderError):
            refresh_universe(FakeProvider(), store, "sp500")

    def test_empty_selection(self, store):
        provider = FakeProvider(universe=[SymbolMeta("AAA", exchange="NYSE")])
        with pytest.raises(ProviderError):
            refresh_universe(provider, store, "russell2000")

    def test_unknown_tag_checked_before_fetch(self, store):
        with pytest.raises(ConfigurationError):
            refresh_universe(FakeProvider(), store, "bogus")


def _tagged(prefix, count, index):
    return [SymbolMeta(symbol=f"{prefix}{i:03d}", index=index) for i in range(count)]


class TestIndexMembership:
    """S&P lists from Wikipedia are selected by membership, not position"""

    @pytest.fixture
    def uneven(self):
        return _tagged("L", 503, "sp500") + _tagged("M", 401, "sp400") + _tagged("S", 603, "sp600")

    def test_sp500_keeps_all_large_caps(self, uneven):
        selected = select_universe(uneven, "sp500")
        assert len(selected) == 503
        assert selected[-1].symbol == "L502"

    def test_sp400_has_no_large_caps(self, uneven):
        selected = select_universe(uneven, "sp400")
        assert len(selected) == 401
        assert [m for m in selected if m.symbol.startswith("L")] == []

    def test_sp600_and_sp1500(self, uneven):
        assert len(select_universe(uneven, "sp600")) == 603
        assert len(select_universe(uneven, "sp1500")) == 1507

    def test_fallback_lists_fill_every_tag(self, store):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("offline")
        provider = FakeProvider(universe=get_sp1500_constituents(session=session))

        assert refresh_universe(provider, store, "sp400") == 20
        assert refresh_universe(provider, store, "sp600") == 20
        assert refresh_universe(provider, store, "sp500") == 40
