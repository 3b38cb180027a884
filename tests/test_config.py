from pathlib import Path

import pytest
from pydantic import ValidationError

from futures_agent.config import LogFormat, Settings


def test_defaults() -> None:
    settings = Settings(_env_file=None)
    assert settings.exchange == "bybit"
    assert settings.base_capital_usdt == 15.0
    assert settings.max_leverage == 10
    assert settings.log_format == LogFormat.CONSOLE
    assert settings.journal_dir == Path("data/journal")
    assert "BTCUSDT" in settings.target_symbols
    assert not settings.telegram_enabled


def test_target_symbols_from_comma_string() -> None:
    settings = Settings(_env_file=None, target_symbols=" btcusdt, ethusdt ,,")
    assert settings.target_symbols == ["BTCUSDT", "ETHUSDT"]


def test_target_symbols_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("TARGET_SYMBOLS", "solusdt,xrpusdt")
    monkeypatch.setenv("EXCHANGE", "mexc")
    settings = Settings(_env_file=None)
    assert settings.target_symbols == ["SOLUSDT", "XRPUSDT"]
    assert settings.exchange == "mexc"


def test_fees_follow_exchange() -> None:
    assert Settings(_env_file=None).taker_fee == pytest.approx(0.00055)
    mexc = Settings(_env_file=None, exchange="mexc")
    assert mexc.taker_fee == pytest.approx(0.001)
    assert mexc.maker_fee == pytest.approx(0.001)


def test_validate_config_lists_problems() -> None:
    settings = Settings(
        _env_file=None,
        telegram_bot_token="t",
        target_symbols=" , ",
    )
    problems = settings.validate_config()
    assert "BYBIT_API_KEY" in problems
    assert "TELEGRAM_CHAT_ID" in problems
    assert "TARGET_SYMBOLS" in problems

    ready = Settings(_env_file=None, bybit_api_key="k", bybit_api_secret="s")
    assert ready.validate_config() == []
    assert ready.credentials_for("bybit") == ("k", "s")


def test_bounds_are_enforced() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, max_leverage=0)
    with pytest.raises(ValidationError):
        Settings(_env_file=None, base_capital_usdt=-1)


def test_ensure_directories(tmp_path) -> None:
    settings = Settings(_env_file=None, journal_dir=str(tmp_path / "a" / "b"))
    settings.ensure_directories()
    assert (tmp_path / "a" / "b").is_dir()
