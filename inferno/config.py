"""
Runtime configuration.

Settings come from the process environment, with a `.env` file loaded
first via python-dotenv (never overriding variables already set). The
default milestone schedule can be replaced by a JSON file pointed to by
BURN_SCHEDULE_PATH.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv

from inferno.errors import ConfigurationError

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[1]

LAMPORTS_PER_SOL = 1_000_000_000
DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"

# (market cap USD, burn amount in whole tokens, percent of initial supply)
BURN_SCHEDULE: List[Dict[str, float]] = [
    {"market_cap": 10_000, "burn_amount": 10_000_000, "percent": 1.00},
    {"market_cap": 50_000, "burn_amount": 15_000_000, "percent": 1.50},
    {"market_cap": 100_000, "burn_amount": 25_000_000, "percent": 2.50},
    {"market_cap": 200_000, "burn_amount": 20_000_000, "percent": 2.00},
    {"market_cap": 300_000, "burn_amount": 17_500_000, "percent": 1.75},
    {"market_cap": 500_000, "burn_amount": 17_500_000, "percent": 1.75},
    {"market_cap": 750_000, "burn_amount": 15_000_000, "percent": 1.50},
    {"market_cap": 1_000_000, "burn_amount": 15_000_000, "percent": 1.50},
    {"market_cap": 1_500_000, "burn_amount": 10_000_000, "percent": 1.00},
    {"market_cap": 2_500_000, "burn_amount": 10_000_000, "percent": 1.00},
    {"market_cap": 3_500_000, "burn_amount": 7_500_000, "percent": 0.75},
    {"market_cap": 5_000_000, "burn_amount": 7_500_000, "percent": 0.75},
    {"market_cap": 7_500_000, "burn_amount": 7_500_000, "percent": 0.75},
    {"market_cap": 10_000_000, "burn_amount": 7_500_000, "percent": 0.75},
    {"market_cap": 15_000_000, "burn_amount": 5_000_000, "percent": 0.50},
    {"market_cap": 25_000_000, "burn_amount": 5_000_000, "percent": 0.50},
    {"market_cap": 35_000_000, "burn_amount": 5_000_000, "percent": 0.50},
    {"market_cap": 50_000_000, "burn_amount": 5_000_000, "percent": 0.50},
    {"market_cap": 75_000_000, "burn_amount": 7_500_000, "percent": 0.75},
    {"market_cap": 90_000_000, "burn_amount": 7_500_000, "percent": 0.75},
    {"market_cap": 100_000_000, "burn_amount": 30_000_000, "percent": 3.00},
]


def _load_json(path: Path) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return json.load(handle)
    except FileNotFoundError:
        raise ConfigurationError(f"Burn schedule file not found: {path}")
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Burn schedule file is not valid JSON: {path}: {exc}")


def load_schedule(path: Optional[str]) -> List[Dict[str, float]]:
    """Return the milestone schedule, sorted ascending by market cap."""
    if not path:
        return [dict(entry) for entry in BURN_SCHEDULE]

    data = _load_json(Path(path))
    if isinstance(data, dict):
        data = data.get("milestones")
    if not isinstance(data, list) or not data:
        raise ConfigurationError(f"Burn schedule must be a non-empty list: {path}")

    schedule = []
    for entry in data:
        try:
            schedule.append({
                "market_cap": float(entry["market_cap"]),
                "burn_amount": float(entry["burn_amount"]),
                "percent": float(entry.get("percent", 0.0)),
            })
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid burn schedule entry {entry!r}: {exc}")

    caps = [entry["market_cap"] for entry in schedule]
    if len(set(caps)) != len(caps):
        raise ConfigurationError("Burn schedule market caps must be unique")
    return sorted(schedule, key=lambda e: e["market_cap"])


def _env(name: str, default: Any, cast: Callable[[str], Any]) -> Any:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}")


@dataclass
class Settings:
    """Everything the pipeline needs to run. Quantities are in smallest units."""

    token_address: str
    wallet_private_key: str = field(repr=False)
    rpc_url: str = DEFAULT_RPC_URL
    database_path: str = "data/inferno.db"

    rewards_claim_threshold_lamports: int = int(0.001 * LAMPORTS_PER_SOL)
    gas_buffer_lamports: int = int(0.005 * LAMPORTS_PER_SOL)
    buyback_interval_minutes: float = 15
    milestone_check_interval_minutes: float = 5
    max_slippage_bps: int = 1000
    finalize_margin_bps: int = 100

    price_cache_ttl_seconds: float = 30.0
    quote_timeout_seconds: float = 10.0
    quote_grace_multiplier: float = 10.0
    fallback_sol_price_usd: float = 200.0

    initial_supply: int = 1_000_000_000
    token_decimals: int = 6

    milestone_cooldown_seconds: float = 5.0
    settle_delay_seconds: float = 3.0
    rpc_timeout_seconds: float = 30.0
    send_max_retries: int = 3

    burn_schedule: List[Dict[str, float]] = field(
        default_factory=lambda: [dict(entry) for entry in BURN_SCHEDULE]
    )

    log_dir: str = "logs"
    log_level: str = "INFO"

    @property
    def token_unit(self) -> int:
        """Smallest units per whole token."""
        return 10 ** self.token_decimals

    @property
    def initial_supply_units(self) -> int:
        return self.initial_supply * self.token_unit

    @property
    def quote_grace_seconds(self) -> float:
        return self.price_cache_ttl_seconds * self.quote_grace_multiplier

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        """Build settings from the environment, loading `.env` first."""
        load_dotenv(env_file or ROOT / ".env", override=False)

        missing = [
            name for name in ("TOKEN_ADDRESS", "WALLET_PRIVATE_KEY")
            if not os.environ.get(name, "").strip()
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}",
                {"missing": missing},
            )

        rpc_url = (
            os.environ.get("HELIUS_RPC_URL")
            or os.environ.get("SOLANA_RPC_URL")
            or DEFAULT_RPC_URL
        )

        settings = cls(
            token_address=os.environ["TOKEN_ADDRESS"].strip(),
            wallet_private_key=os.environ["WALLET_PRIVATE_KEY"].strip(),
            rpc_url=rpc_url,
            database_path=_env("DATABASE_PATH", "data/inferno.db", str),
            rewards_claim_threshold_lamports=int(
                _env("REWARDS_CLAIM_THRESHOLD", 0.001, float) * LAMPORTS_PER_SOL
            ),
            gas_buffer_lamports=int(_env("GAS_BUFFER_SOL", 0.005, float) * LAMPORTS_PER_SOL),
            buyback_interval_minutes=_env("BUYBACK_INTERVAL_MINUTES", 15, float),
            milestone_check_interval_minutes=_env("MILESTONE_CHECK_INTERVAL_MINUTES", 5, float),
            max_slippage_bps=int(_env("MAX_SLIPPAGE_PERCENT", 10, float) * 100),
            finalize_margin_bps=int(_env("FINALIZE_MARGIN_PERCENT", 1, float) * 100),
            price_cache_ttl_seconds=_env("PRICE_CACHE_TTL_SECONDS", 30.0, float),
            quote_timeout_seconds=_env("QUOTE_TIMEOUT_SECONDS", 10.0, float),
            quote_grace_multiplier=_env("QUOTE_GRACE_MULTIPLIER", 10.0, float),
            fallback_sol_price_usd=_env("FALLBACK_SOL_PRICE_USD", 200.0, float),
            initial_supply=_env("INITIAL_SUPPLY", 1_000_000_000, int),
            token_decimals=_env("TOKEN_DECIMALS", 6, int),
            milestone_cooldown_seconds=_env("MILESTONE_COOLDOWN_SECONDS", 5.0, float),
            settle_delay_seconds=_env("SETTLE_DELAY_SECONDS", 3.0, float),
            rpc_timeout_seconds=_env("RPC_TIMEOUT_SECONDS", 30.0, float),
            send_max_retries=_env("SEND_MAX_RETRIES", 3, int),
            burn_schedule=load_schedule(os.environ.get("BURN_SCHEDULE_PATH")),
            log_dir=_env("LOG_DIR", "logs", str),
            log_level=_env("LOG_LEVEL", "INFO", str),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        problems = []
        if not 0 <= self.finalize_margin_bps < 10_000:
            problems.append("FINALIZE_MARGIN_PERCENT must be in [0, 100)")
        if not 0 < self.max_slippage_bps <= 10_000:
            problems.append("MAX_SLIPPAGE_PERCENT must be in (0, 100]")
        if self.buyback_interval_minutes <= 0 or self.milestone_check_interval_minutes <= 0:
            problems.append("Intervals must be positive")
        if self.price_cache_ttl_seconds <= 0:
            problems.append("PRICE_CACHE_TTL_SECONDS must be positive")
        if self.initial_supply <= 0:
            problems.append("INITIAL_SUPPLY must be positive")
        if problems:
            raise ConfigurationError("; ".join(problems), {"problems": problems})


def format_market_cap(value: float) -> str:
    if value >= 1_000_000:
        return f"${value / 1_000_000:.1f}M"
    if value >= 1_000:
        return f"${value / 1_000:.0f}K"
    return f"${value:.0f}"


def format_token_amount(units: int, decimals: int = 6) -> str:
    whole = units / (10 ** decimals)
    if whole >= 1_000_000:
        return f"{whole / 1_000_000:.2f}M"
    if whole >= 1_000:
        return f"{whole / 1_000:.2f}K"
    return f"{whole:,.2f}"
