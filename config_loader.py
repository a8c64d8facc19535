"""
Configuration Loader for the CANSLIM Screener
Loads YAML configuration files based on environment and exposes an
immutable ScanConfig snapshot for each scan or backtest.
"""

import logging
import os
from dataclasses import dataclass, asdict, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(__file__).parent / "config"

UNIVERSE_TAGS = ("sp500", "sp400", "sp600", "sp1500", "nasdaq", "russell2000", "all")
AD_LETTERS = ("A", "B", "C", "D", "E")


@dataclass(frozen=True)
class LiquidityConfig:
    min_dollar_vol_50d: float = 200_000
    min_price: float = 2.0


@dataclass(frozen=True)
class FactorWeights:
    C: float = 2.0
    A: float = 2.0
    N: float = 1.5
    S: float = 1.5
    L: float = 1.5
    I: float = 1.0

    @property
    def total(self) -> float:
        return self.C + self.A + self.N + self.S + self.L + self.I


@dataclass(frozen=True)
class FactorThresholds:
    c_yoy: float = 0.25
    a_cagr: float = 0.25
    n_pct52w: float = 0.85
    rs_pct: float = 80.0
    s_vol_spike: float = 1.5


@dataclass(frozen=True)
class IBDFilterConfig:
    enabled: bool = False
    min_rs_rating: int = 80
    min_up_down_ratio: float = 1.0
    min_ad_rating: str = "C"
    min_composite: int = 70


@dataclass(frozen=True)
class MarketGateConfig:
    use: bool = True
    symbol: str = "SPY"
    ma_short: int = 50
    ma_long: int = 200
    lookback_days: int = 300


@dataclass(frozen=True)
class ScannerConfig:
    batch_size: int = 40
    batch_delay_seconds: float = 1.0
    daily_max_age_days: int = 7
    intraday_max_age_days: int = 1
    history_days: int = 400


@dataclass(frozen=True)
class UniverseConfig:
    tag: str = "sp1500"
    provider: str = "yahoo"


@dataclass(frozen=True)
class ScanConfig:
    """Everything a scan reads, captured once at scan start"""
    version: int = 1
    liquidity: LiquidityConfig = field(default_factory=LiquidityConfig)
    weights: FactorWeights = field(default_factory=FactorWeights)
    thresholds: FactorThresholds = field(default_factory=FactorThresholds)
    ibd_filters: IBDFilterConfig = field(default_factory=IBDFilterConfig)
    market_gate: MarketGateConfig = field(default_factory=MarketGateConfig)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    universe: UniverseConfig = field(default_factory=UniverseConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ScanConfig":
        data = data or {}
        scan_config = cls(
            version=int(data.get("version", 1)),
            liquidity=_section(LiquidityConfig, data.get("liquidity")),
            weights=_section(FactorWeights, data.get("weights")),
            thresholds=_section(FactorThresholds, data.get("thresholds")),
            ibd_filters=_section(IBDFilterConfig, data.get("ibd_filters")),
            market_gate=_section(MarketGateConfig, data.get("market_gate")),
            scanner=_section(ScannerConfig, data.get("scanner")),
            universe=_section(UniverseConfig, data.get("universe")),
        )
        validate_scan_config(scan_config)
        return scan_config


def _section(cls, values: Optional[Dict[str, Any]]):
    """Build a config dataclass, ignoring keys it does not know"""
    if values is None:
        return cls()
    if not isinstance(values, dict):
        raise ConfigurationError(f"{cls.__name__} must be a mapping, got {type(values).__name__}")

    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**{k: v for k, v in values.items() if k in known})


def validate_scan_config(scan_config: ScanConfig):
    """Reject configurations the scorer cannot work with"""
    weights = asdict(scan_config.weights)
    for name, value in weights.items():
        if not isinstance(value, (int, float)) or value < 0:
            raise ConfigurationError(f"Weight {name} must be a non-negative number, got {value!r}")
    if scan_config.weights.total <= 0:
        raise ConfigurationError("At least one factor weight must be positive")

    for name, value in asdict(scan_config.thresholds).items():
        if not isinstance(value, (int, float)):
            raise ConfigurationError(f"Threshold {name} must be numeric, got {value!r}")

    if scan_config.ibd_filters.min_ad_rating not in AD_LETTERS:
        raise ConfigurationError(f"ibd_filters.min_ad_rating must be one of {AD_LETTERS}")

    gate = scan_config.market_gate
    if gate.ma_short <= 0 or gate.ma_long <= 0 or gate.ma_short >= gate.ma_long:
        raise ConfigurationError("market_gate requires 0 < ma_short < ma_long")

    if scan_config.scanner.batch_size <= 0:
        raise ConfigurationError("scanner.batch_size must be positive")

    if scan_config.universe.tag not in UNIVERSE_TAGS:
        raise ConfigurationError(f"Unknown universe tag: {scan_config.universe.tag}")


class Config:
    """Loads and merges YAML configs: default.yaml, then {env}.yaml"""

    def __init__(self, config_dir: Optional[Path] = None, env: Optional[str] = None,
                 overrides: Optional[Dict[str, Any]] = None):
        self.config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        self.env = env or os.getenv("CANSLIM_ENV", "development")
        self._overrides = overrides or {}
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self):
        """Load configuration from YAML files"""
        default_path = self.config_dir / "default.yaml"
        if default_path.exists():
            with open(default_path, 'r') as f:
                self._config = yaml.safe_load(f) or {}

        env_path = self.config_dir / f"{self.env}.yaml"
        if env_path.exists():
            with open(env_path, 'r') as f:
                env_config = yaml.safe_load(f) or {}
                self._deep_merge(self._config, env_config)

        if self._overrides:
            self._deep_merge(self._config, self._overrides)

        logger.info(f"Loaded configuration for environment: {self.env}")

    def _deep_merge(self, base: dict, override: dict):
        """Recursively merge override into base"""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def get(self, path: str, default=None) -> Any:
        """
        Get config value using dot notation.
        Example: config.get('scanner.batch_size', 40)
        """
        keys = path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get entire configuration section"""
        return self.get(section, {})

    def update(self, values: Dict[str, Any]):
        """Apply settings changes in memory; the next scan_config() sees them"""
        self._deep_merge(self._config, values)

    def reload(self):
        """Reload configuration from files"""
        self._config = {}
        self._load_config()

    def scan_config(self) -> ScanConfig:
        """Immutable snapshot of the scan-related sections"""
        return ScanConfig.from_dict(self._config)

    @property
    def scanner(self) -> Dict[str, Any]:
        return self.get_section('scanner')

    @property
    def backtest(self) -> Dict[str, Any]:
        return self.get_section('backtest')

    @property
    def api(self) -> Dict[str, Any]:
        return self.get_section('api')

