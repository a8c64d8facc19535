"""
Tests for the market data providers, with HTTP mocked out
"""

import pytest
from datetime import date, datetime, timezone
from unittest.mock import MagicMock, patch

import pandas as pd
import requests

from data_fetcher import FMPProvider, YahooProvider, get_provider, parse_chart_response
from errors import ConfigurationError
from sp500_tickers import get_sp1500_constituents, parse_constituents_table


def _response(payload, status_code=200):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    return resp


def _session(handler):
    """Session whose get() is answered by handler(url, params)"""
    session = MagicMock()
    session.get.side_effect = lambda url, params=None, **kwargs: handler(url, params or {})
    return session


def _chart_payload(days):
    timestamps = [int(datetime(d.year, d.month, d.day, 14, 30, tzinfo=timezone.utc).timestamp()) for d in days]
    n = len(days)
    return {"chart": {"result": [{
        "timestamp": timestamps,
        "indicators": {"quote": [{
            "open": [10.0 + i for i in range(n)],
            "high": [11.0 + i for i in range(n)],
            "low": [9.0 + i for i in range(n)],
            "close": [10.5 + i for i in range(n)],
            "volume": [1000 * (i + 1) for i in range(n)],
        }]},
    }]}}


@pytest.fixture
def fmp_clock():
    return lambda: datetime(2024, 6, 3, tzinfo=timezone.utc)


class TestFMPProvider:

    def test_requires_api_key(self):
        with pytest.raises(ConfigurationError):
            FMPProvider(api_key="")

    def test_ohlcv_skips_failed_symbols(self):
        def handler(url, params):
            assert params["apikey"] == "key"
            if params["symbol"] == "BAD":
                raise requests.ConnectionError("reset")
            return _response([
                {"date": "2024-05-31", "open": 10, "high": 11, "low": 9, "close": 10.5, "volume": 1000},
                {"date": "2024-05-30", "open": 9, "high": 10, "low": 8, "close": 9.5, "volume": 900},
            ])

        provider = FMPProvider("key", request_delay=0, session=_session(handler))
        bars = provider.get_ohlcv(["AAA", "BAD"], date(2024, 5, 1), date(2024, 5, 31))

        assert set(bars) == {"AAA"}
        assert bars["AAA"]["date"].tolist() == [date(2024, 5, 30), date(2024, 5, 31)]
        assert provider.stats["total_requests"] == 1

    def test_quarterly_eps(self):
        def handler(url, params):
            assert url.endswith("/income-statement")
            assert params["period"] == "quarter"
            return _response([
                {"date": "2024-03-31", "eps": 1.5},
                {"date": "2023-12-31", "epsDiluted": 1.2},
                {"date": "2023-09-30"},
            ])

        provider = FMPProvider("key", request_delay=0, session=_session(handler))
        records = provider.get_quarterly_eps(["AAA"])["AAA"]

        assert [(r.quarter_end, r.eps) for r in records] == [
            (date(2024, 3, 31), 1.5), (date(2023, 12, 31), 1.2),
        ]

    def test_ownership_falls_back_to_previous_quarter(self, fmp_clock):
        calls = []

        def handler(url, params):
            calls.append((params["year"], params["quarter"]))
            if params["quarter"] == "2":
                return _response([])
            return _response([{
                "date": "2024-03-31",
                "ownershipPercent": 65.0,
                "lastOwnershipPercent": 60.0,
                "investorsHoldingChange": 14,
            }])

        provider = FMPProvider("key", request_delay=0, session=_session(handler), clock=fmp_clock)
        records = provider.get_ownership(["AAA"])["AAA"]

        assert calls == [("2024", "2"), ("2024", "1")]
        assert records[0].date == date(2024, 3, 31)
        assert records[0].inst_pct == pytest.approx(0.65)
        assert records[0].filers_added == 14
        assert records[1].date == date(2023, 12, 31)
        assert records[1].inst_pct == pytest.approx(0.60)

    def test_rate_limit_counted(self):
        provider = FMPProvider("key", request_delay=0, session=_session(lambda u, p: _response({}, 429)))
        assert provider.get_ohlcv(["AAA"], date(2024, 5, 1), date(2024, 5, 31)) == {}
        assert provider.stats["errors_429"] == 1

    def test_index_bars_from_light_endpoint(self):
        def handler(url, params):
            assert url.endswith("/historical-price-eod/light")
            return _response([{"date": "2024-05-31", "price": 530.0, "volume": 5}])

        provider = FMPProvider("key", request_delay=0, session=_session(handler))
        bars = provider.get_index_bars("SPY", date(2024, 5, 1), date(2024, 5, 31))

        assert bars["close"].tolist() == [530.0]
        assert bars["high"].tolist() == [530.0]

    def test_connection(self):
        ok = FMPProvider("key", session=_session(lambda u, p: _response([{"symbol": "AAPL"}])))
        down = FMPProvider("key", session=_session(lambda u, p: _response({}, 401)))
        assert ok.test_connection() is True
        assert down.test_connection() is False


class TestYahooProvider:

    def test_parse_chart_response(self):
        bars = parse_chart_response(_chart_payload([date(2024, 5, 30), date(2024, 5, 31)]))
        assert bars["date"].tolist() == [date(2024, 5, 30), date(2024, 5, 31)]
        assert bars["close"].tolist() == [10.5, 11.5]

    def test_parse_empty_chart(self):
        assert parse_chart_response({"chart": {"result": None}}).empty

    def test_ohlcv_trims_to_range(self):
        payload = _chart_payload([date(2024, 5, 29), date(2024, 5, 30), date(2024, 5, 31)])
        provider = YahooProvider(request_delay=0, session=_session(lambda u, p: _response(payload)))

        bars = provider.get_ohlcv(["AAA"], date(2024, 5, 30), date(2024, 5, 31))

        assert bars["AAA"]["date"].tolist() == [date(2024, 5, 30), date(2024, 5, 31)]

    def test_ohlcv_failure_is_partial(self):
        def handler(url, params):
            if "BAD" in url:
                return _response({}, 404)
            return _response(_chart_payload([date(2024, 5, 31)]))

        provider = YahooProvider(request_delay=0, session=_session(handler))
        assert set(provider.get_ohlcv(["AAA", "BAD"], date(2024, 5, 1), date(2024, 5, 31))) == {"AAA"}

    def test_quarterly_eps_from_yfinance(self):
        stmt = pd.DataFrame(
            {pd.Timestamp("2024-03-31"): [1.5, 1.6], pd.Timestamp("2023-12-31"): [1.2, float("nan")]},
            index=["Diluted EPS", "Basic EPS"],
        )
        ticker = MagicMock()
        ticker.quarterly_income_stmt = stmt

        with patch("data_fetcher.yf.Ticker", return_value=ticker):
            records = YahooProvider(request_delay=0).get_quarterly_eps(["AAA"])["AAA"]

        assert [(r.quarter_end, r.eps) for r in records] == [
            (date(2024, 3, 31), 1.5), (date(2023, 12, 31), 1.2),
        ]

    def test_no_ownership_capability(self):
        assert YahooProvider.supports_ownership is False
        assert YahooProvider().get_ownership(["AAA"]) == {}


class TestGetProvider:

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError):
            get_provider("bloomberg")

    def test_fmp_without_key(self):
        with pytest.raises(ConfigurationError):
            get_provider("fmp", settings=None)

    def test_yahoo_uses_api_config(self):
        provider = get_provider("yahoo", api_config={"yahoo": {"request_delay": 0, "timeout": 5}})
        assert provider.name == "yahoo"
        assert provider.timeout == 5


WIKI_HTML = """
<table id="constituents">
  <tr><th>Symbol</th><th>Security</th><th>GICS Sector</th><th>GICS Sub-Industry</th></tr>
  <tr><td>AAPL</td><td>Apple Inc.</td><td>Information Technology</td><td>Technology Hardware</td></tr>
  <tr><td>BRK.B</td><td>Berkshire Hathaway</td><td>Financials</td><td>Multi-Sector Holdings</td></tr>
  <tr><td>AAPL</td><td>Apple Inc.</td><td>Information Technology</td><td>Technology Hardware</td></tr>
</table>
"""


class TestConstituents:

    def test_parse_table(self):
        metas = parse_constituents_table(WIKI_HTML)

        assert [m.symbol for m in metas] == ["AAPL", "BRK-B"]
        assert metas[0].name == "Apple Inc."
        assert metas[1].sector == "Financials"
        assert metas[1].industry == "Multi-Sector Holdings"

    def test_missing_table(self):
        assert parse_constituents_table("<html><body>nothing</body></html>") == []

    def test_sp1500_order(self):
        pages = {
            "S%26P_500": '<table id="constituents"><tr><th>Symbol</th></tr><tr><td>AAA</td></tr></table>',
            "S%26P_400": '<table id="constituents"><tr><th>Symbol</th></tr><tr><td>MMM</td></tr>'
                         '<tr><td>AAA</td></tr></table>',
            "S%26P_600": '<table id="constituents"><tr><th>Ticker symbol</th></tr><tr><td>SSS</td></tr></table>',
        }

        def handler(url, params):
            resp = _response(None)
            resp.text = next(html for key, html in pages.items() if key in url)
            return resp

        metas = get_sp1500_constituents(session=_session(handler))
        assert [m.symbol for m in metas] == ["AAA", "MMM", "SSS"]
        assert [m.index for m in metas] == ["sp500", "sp400", "sp600"]
