"""
Exceptions raised by the CANSLIM screener core.

Insufficient data is never an exception here: the metric functions return
neutral values instead. These cover the cases that reject an operation.
"""


class CanslimError(Exception):
    """Base class for screener errors"""
    reason_code = "error"


class ConfigurationError(CanslimError, ValueError):
    """Unknown universe tag, provider, export format, scan mode or bad weights"""
    reason_code = "configuration-error"


class ScanInProgressError(CanslimError):
    """A scan is already running; the new request is refused, not queued"""
    reason_code = "scan-in-progress"

    def __init__(self, run_id=None):
        self.run_id = run_id
        super().__init__(f"Scan already in progress (run {run_id})" if run_id else "Scan already in progress")


class NotFoundError(CanslimError, LookupError):
    reason_code = "not-found"


class BacktestDataError(CanslimError):
    """No historical price data exists anywhere, so the backtest cannot run"""
    reason_code = "no-data"


class ProviderError(CanslimError):
    """The market data provider returned nothing usable for a required call"""
    reason_code = "provider-unavailable"
