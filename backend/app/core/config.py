from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,  # 环境变量名不区分大小写
        populate_by_name=True,
    )

    # 数据库配置（可选，默认使用 SQLite）
    database_url: str = "sqlite+aiosqlite:///./dca_automation.db"

    # 报价服务配置（按顺序尝试，第一个可用的报价生效）
    quote_api_base_url: str = "http://localhost:8081"
    quote_providers: list[str] = Field(
        default_factory=lambda: ["openocean", "aerodrome", "uniswap"],
        description="报价提供方列表，按优先级排列",
    )

    # 结算网络配置
    settlement_api_base_url: str = "http://localhost:8082"
    settlement_api_key: str | None = None
    http_timeout_seconds: float = 30.0

    # 可信的兑换路由合约（报价返回的目标必须在此列表中）
    trusted_targets: list[str] = Field(default_factory=list)

    # 平台手续费
    fee_recipient: str | None = None  # 手续费接收地址，未配置时手续费留在执行账户
    default_fee_basis_points: int = 10  # 10 = 0.10%

    # 订单创建后首次执行的延迟（秒）
    first_execution_delay_seconds: int = 60

    # 结算确认超时（秒）
    settlement_approval_timeout_seconds: float = 30.0
    settlement_swap_timeout_seconds: float = 120.0
    settlement_transfer_timeout_seconds: float = 60.0
    settlement_poll_interval_seconds: float = 2.0

    # 单个订单执行租约有效期（秒），需大于一次完整执行的最长耗时
    lease_ttl_seconds: int = 600

    # 定时扫描配置
    scheduler_enabled: bool = True
    sweep_interval_seconds: int = 60
    sweep_max_concurrency: int = 4

    # 乐观锁冲突时提交结果的最大重试次数
    commit_conflict_retries: int = 3

    # 定时触发接口的鉴权密钥
    cron_secret: str | None = Field(
        default=None,
        validation_alias="CRON_SECRET_KEY",  # 显式指定环境变量名
    )

    # 委托凭证签名与加密
    credential_signing_secret: str = "change-me-signing-secret"
    credential_encryption_secret: str = "change-me-encryption-secret"
    credential_kdf_iterations: int = 480000

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        """
        自定义设置源优先级
        确保环境变量和 .env 文件都能正确读取
        """
        return (
            init_settings,
            env_settings,
            dotenv_settings,  # .env 文件
            file_secret_settings,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
