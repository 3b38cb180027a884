"""配置加载模块 - 从环境变量和 .env 文件加载配置。"""

from enum import Enum
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from futures_agent.types import ExchangeName


DEFAULT_TARGET_SYMBOLS = [
    "BTCUSDT",
    "ETHUSDT",
    "SOLUSDT",
    "XRPUSDT",
    "DOGEUSDT",
    "ADAUSDT",
    "AVAXUSDT",
    "LINKUSDT",
    "DOTUSDT",
    "MATICUSDT",
    "ATOMUSDT",
    "LTCUSDT",
    "BNBUSDT",
    "ARBUSDT",
    "OPUSDT",
]


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


class Settings(BaseSettings):
    """系统配置设置。

    从环境变量和 .env 文件加载配置，进程生命周期内视为不可变快照。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== 交易所 ====================
    exchange: ExchangeName = Field(default="bybit", description="默认交易所: bybit 或 mexc")
    testnet: bool = Field(default=False, description="是否使用测试网")
    bybit_api_key: str = Field(default="", description="Bybit API Key")
    bybit_api_secret: str = Field(default="", description="Bybit API Secret")
    mexc_api_key: str = Field(default="", description="MEXC API Key")
    mexc_api_secret: str = Field(default="", description="MEXC API Secret")
    http_timeout_sec: float = Field(default=10.0, gt=0, le=120, description="HTTP 请求超时（秒）")

    # ==================== Telegram ====================
    telegram_bot_token: str = Field(default="", description="Telegram Bot Token")
    telegram_chat_id: str = Field(default="", description="Telegram Chat ID")

    # ==================== 资金与杠杆 ====================
    base_capital_usdt: float = Field(
        default=15.0,
        gt=0,
        le=1_000_000,
        description="单笔最大占用资金（USDT）",
    )
    max_leverage: int = Field(default=10, ge=1, le=125, description="允许的最大杠杆")
    min_risk_reward: float = Field(default=1.5, ge=0, le=10.0, description="最低盈亏比（仅告警）")
    min_capital_required: float = Field(
        default=5.0,
        ge=0,
        description="下单名义价值下限（USDT）",
    )

    # ==================== 风控参数 ====================
    tp_atr_multiplier: float = Field(default=2.0, gt=0, le=10.0, description="止盈 ATR 倍数")
    sl_atr_multiplier: float = Field(default=1.5, gt=0, le=10.0, description="止损 ATR 倍数")
    slippage_buffer_pct: float = Field(default=0.05, ge=0, le=1.0, description="滑点缓冲（百分比）")

    # ==================== 手续费 ====================
    bybit_maker_fee: float = Field(default=0.0002, ge=0, le=0.01)
    bybit_taker_fee: float = Field(default=0.00055, ge=0, le=0.01)
    mexc_maker_fee: float = Field(default=0.001, ge=0, le=0.01)
    mexc_taker_fee: float = Field(default=0.001, ge=0, le=0.01)

    # ==================== 信号参数 ====================
    min_ev_score: float = Field(default=0.02, description="最低期望值")
    min_kelly_score: float = Field(default=0.0, ge=0, le=0.25, description="最低 Kelly 分数")
    whale_threshold_usd: float = Field(default=50_000.0, gt=0, description="鲸鱼单名义价值阈值")
    target_symbols: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_TARGET_SYMBOLS),
        description="交易标的列表（逗号分隔）",
    )
    kline_interval: str = Field(default="15m", description="K 线周期")
    kline_limit: int = Field(default=100, ge=20, le=1000, description="K 线数量")
    orderbook_depth: int = Field(default=10, ge=1, le=200, description="盘口深度")
    signal_workers: int = Field(default=4, ge=1, le=32, description="信号采集并发数")

    # ==================== 循环控制 ====================
    max_open_positions: int = Field(default=3, ge=1, le=50, description="最大持仓数")
    signal_interval_sec: float = Field(default=60.0, gt=0, description="循环间隔（秒）")
    loop_error_backoff_sec: float = Field(default=5.0, ge=0, description="循环异常退避（秒）")

    # ==================== 关机协议 ====================
    shutdown_max_retries: int = Field(default=3, ge=1, le=10, description="关机协议重试次数")
    shutdown_retry_delay_sec: float = Field(default=1.0, ge=0, le=30, description="重试间隔（秒）")

    # ==================== 日志配置 ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="日志级别",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="日志输出格式",
    )

    # ==================== 数据存储 ====================
    journal_dir: Path = Field(
        default=Path("data/journal"),
        description="活动日志存储目录",
    )

    @field_validator("journal_dir", mode="before")
    @classmethod
    def parse_journal_dir(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    @field_validator("target_symbols", mode="before")
    @classmethod
    def parse_target_symbols(cls, v: str | list[str]) -> list[str]:
        """支持逗号分隔的标的字符串。"""
        if isinstance(v, str):
            return [item.strip().upper() for item in v.split(",") if item.strip()]
        return [str(item).upper() for item in v]

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        self.journal_dir.mkdir(parents=True, exist_ok=True)

    @property
    def taker_fee(self) -> float:
        """当前交易所的吃单费率。"""
        return self.mexc_taker_fee if self.exchange == "mexc" else self.bybit_taker_fee

    @property
    def maker_fee(self) -> float:
        """当前交易所的挂单费率。"""
        return self.mexc_maker_fee if self.exchange == "mexc" else self.bybit_maker_fee

    @property
    def telegram_enabled(self) -> bool:
        """Telegram 通知是否可用。"""
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    def credentials_for(self, exchange: ExchangeName) -> tuple[str, str]:
        """返回指定交易所的 (api_key, api_secret)。"""
        if exchange == "mexc":
            return self.mexc_api_key, self.mexc_api_secret
        return self.bybit_api_key, self.bybit_api_secret

    def validate_config(self) -> list[str]:
        """验证运行所需配置，返回问题列表。"""
        errors: list[str] = []
        api_key, _ = self.credentials_for(self.exchange)
        if not api_key:
            errors.append(f"{self.exchange.upper()}_API_KEY")
        if self.bybit_api_key and not self.bybit_api_secret:
            errors.append("BYBIT_API_SECRET")
        if self.mexc_api_key and not self.mexc_api_secret:
            errors.append("MEXC_API_SECRET")
        if self.telegram_bot_token and not self.telegram_chat_id:
            errors.append("TELEGRAM_CHAT_ID")
        if not self.target_symbols:
            errors.append("TARGET_SYMBOLS")
        return errors


# 全局配置实例（延迟初始化）
_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例。"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """重新加载配置。"""
    global _settings
    _settings = Settings()
    return _settings
