"""
Tests for settings loading.

Tests cover:
- Required variables and defaults
- Unit conversion of SOL and percent values
- RPC URL precedence
- Custom burn schedules
"""

import json

import pytest

from inferno.config import (
    BURN_SCHEDULE,
    DEFAULT_RPC_URL,
    Settings,
    format_market_cap,
    format_token_amount,
    load_schedule,
)
from inferno.errors import ConfigurationError

ENV_VARS = [
    "TOKEN_ADDRESS", "WALLET_PRIVATE_KEY", "HELIUS_RPC_URL", "SOLANA_RPC_URL",
    "DATABASE_PATH", "REWARDS_CLAIM_THRESHOLD", "GAS_BUFFER_SOL", "BUYBACK_INTERVAL_MINUTES",
    "MILESTONE_CHECK_INTERVAL_MINUTES", "MAX_SLIPPAGE_PERCENT", "FINALIZE_MARGIN_PERCENT",
    "PRICE_CACHE_TTL_SECONDS", "QUOTE_TIMEOUT_SECONDS", "QUOTE_GRACE_MULTIPLIER",
    "FALLBACK_SOL_PRICE_USD", "INITIAL_SUPPLY", "TOKEN_DECIMALS", "MILESTONE_COOLDOWN_SECONDS",
    "SETTLE_DELAY_SECONDS", "RPC_TIMEOUT_SECONDS", "SEND_MAX_RETRIES", "BURN_SCHEDULE_PATH",
    "LOG_DIR", "LOG_LEVEL",
]


@pytest.fixture
def env(monkeypatch, tmp_path):
    # setenv first so monkeypatch also undoes anything load_dotenv writes
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.setenv("TOKEN_ADDRESS", "Mint111")
    monkeypatch.setenv("WALLET_PRIVATE_KEY", "secret")
    # Point at a .env that does not exist so a developer's file is never read
    return tmp_path / "missing.env"


class TestFromEnv:
    """Test Settings.from_env."""

    def test_defaults(self, env):
        """Should fill every optional value with its default."""
        settings = Settings.from_env(env)

        assert settings.token_address == "Mint111"
        assert settings.rpc_url == DEFAULT_RPC_URL
        assert settings.rewards_claim_threshold_lamports == 1_000_000
        assert settings.gas_buffer_lamports == 5_000_000
        assert settings.max_slippage_bps == 1000
        assert settings.finalize_margin_bps == 100
        assert settings.buyback_interval_minutes == 15
        assert settings.milestone_check_interval_minutes == 5
        assert settings.quote_grace_seconds == 300
        assert len(settings.burn_schedule) == len(BURN_SCHEDULE)

    def test_missing_required(self, env, monkeypatch):
        """Should name every missing required variable."""
        monkeypatch.delenv("WALLET_PRIVATE_KEY")
        monkeypatch.setenv("TOKEN_ADDRESS", "  ")

        with pytest.raises(ConfigurationError) as exc_info:
            Settings.from_env(env)
        assert exc_info.value.details["missing"] == ["TOKEN_ADDRESS", "WALLET_PRIVATE_KEY"]

    def test_overrides_and_units(self, env, monkeypatch):
        """SOL amounts become lamports and percents become basis points."""
        monkeypatch.setenv("REWARDS_CLAIM_THRESHOLD", "0.05")
        monkeypatch.setenv("GAS_BUFFER_SOL", "0.01")
        monkeypatch.setenv("MAX_SLIPPAGE_PERCENT", "5")
        monkeypatch.setenv("FINALIZE_MARGIN_PERCENT", "2.5")
        monkeypatch.setenv("BUYBACK_INTERVAL_MINUTES", "30")

        settings = Settings.from_env(env)

        assert settings.rewards_claim_threshold_lamports == 50_000_000
        assert settings.gas_buffer_lamports == 10_000_000
        assert settings.max_slippage_bps == 500
        assert settings.finalize_margin_bps == 250
        assert settings.buyback_interval_minutes == 30

    def test_rpc_precedence(self, env, monkeypatch):
        """HELIUS_RPC_URL wins over SOLANA_RPC_URL."""
        monkeypatch.setenv("SOLANA_RPC_URL", "https://solana.example")
        assert Settings.from_env(env).rpc_url == "https://solana.example"

        monkeypatch.setenv("HELIUS_RPC_URL", "https://helius.example")
        assert Settings.from_env(env).rpc_url == "https://helius.example"

    def test_invalid_number(self, env, monkeypatch):
        """A non-numeric value is a configuration error."""
        monkeypatch.setenv("GAS_BUFFER_SOL", "lots")
        with pytest.raises(ConfigurationError):
            Settings.from_env(env)

    def test_invalid_margin(self, env, monkeypatch):
        """A margin of 100 percent or more is rejected."""
        monkeypatch.setenv("FINALIZE_MARGIN_PERCENT", "100")
        with pytest.raises(ConfigurationError):
            Settings.from_env(env)

    def test_dotenv_does_not_override(self, env, monkeypatch, tmp_path):
        """Values already in the environment win over the .env file."""
        dotenv = tmp_path / ".env"
        dotenv.write_text("TOKEN_ADDRESS=FromFile\nLOG_LEVEL=DEBUG\n")

        settings = Settings.from_env(dotenv)

        assert settings.token_address == "Mint111"
        assert settings.log_level == "DEBUG"

    def test_private_key_not_in_repr(self, env):
        """The wallet key never appears in repr."""
        assert "secret" not in repr(Settings.from_env(env))


class TestSchedule:
    """Test custom burn schedules."""

    def test_schedule_file_sorted(self, env, monkeypatch, tmp_path):
        """A schedule file replaces the default and is sorted by market cap."""
        path = tmp_path / "schedule.json"
        path.write_text(json.dumps({"milestones": [
            {"market_cap": 50_000, "burn_amount": 5},
            {"market_cap": 20_000, "burn_amount": 2, "percent": 0.2},
        ]}))
        monkeypatch.setenv("BURN_SCHEDULE_PATH", str(path))

        schedule = Settings.from_env(env).burn_schedule

        assert [e["market_cap"] for e in schedule] == [20_000, 50_000]
        assert schedule[1]["percent"] == 0.0

    def test_duplicate_caps_rejected(self, tmp_path):
        """Market caps must be unique."""
        path = tmp_path / "schedule.json"
        path.write_text(json.dumps([
            {"market_cap": 1, "burn_amount": 1},
            {"market_cap": 1, "burn_amount": 2},
        ]))
        with pytest.raises(ConfigurationError):
            load_schedule(str(path))

    def test_missing_file(self, tmp_path):
        """A missing schedule file is a configuration error."""
        with pytest.raises(ConfigurationError):
            load_schedule(str(tmp_path / "nope.json"))

    def test_default_schedule_is_ascending(self):
        """The built-in schedule is strictly ascending."""
        caps = [e["market_cap"] for e in BURN_SCHEDULE]
        assert caps == sorted(set(caps))


class TestFormatting:
    def test_market_cap(self):
        """Should abbreviate market caps."""
        assert format_market_cap(1_500_000) == "$1.5M"
        assert format_market_cap(120_000) == "$120K"
        assert format_market_cap(500) == "$500"

    def test_token_amount(self):
        """Should render smallest units as whole tokens."""
        assert format_token_amount(10_000_000 * 10**6) == "10.00M"
        assert format_token_amount(1_500 * 10**6) == "1.50K"
        assert format_token_amount(12_500_000, 6) == "12.50"
