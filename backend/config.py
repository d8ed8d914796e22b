"""
Configuration & Logging
=======================
Environment-driven settings for the storefront backend and the single
structlog setup shared by every component.

Every value can be overridden through the environment. Tests build isolated
configs with ``ShopConfig.from_env({...})``.
"""

import logging
import os
from typing import List, Mapping, Optional

import structlog


def _int_or_none(raw: Optional[str]) -> Optional[int]:
    if raw is None or raw.strip() == "":
        return None
    return int(raw)


class ShopConfig:
    """Storefront configuration from environment"""

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    ENV: str = "development"
    CORS_ORIGINS: List[str] = ["*"]

    # Persistence (empty DATA_DIR keeps everything in memory)
    DATA_DIR: str = ""
    CATALOG_SEED_PATH: str = ""

    # Payment gateway
    GATEWAY_API: str = "https://paymentgate.bilee.ru/api"
    SHOP_ID: Optional[int] = None
    GATEWAY_PASSWORD: str = ""
    GATEWAY_TIMEOUT: float = 15.0
    PUBLIC_URL: str = "http://localhost:8000"
    SUCCESS_URL: str = "http://localhost:3000/success-pay.html?order={order_id}"
    FAIL_URL: str = "http://localhost:3000/fail.html?order={order_id}"
    PAYMENT_DESCRIPTION: str = "Order {order_id}"

    # Notification relay
    NOTIFY_URL: str = ""
    NOTIFY_SECRET: str = ""
    NOTIFY_TIMEOUT: float = 10.0

    # Admin
    ADMIN_SECRET: str = ""

    # Business rules (None or 0 disables the ceiling)
    CART_CEILING: Optional[int] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ShopConfig":
        env = os.environ if env is None else env
        cfg = cls()
        cfg.HOST = env.get("HOST", cls.HOST)
        cfg.PORT = int(env.get("PORT", str(cls.PORT)))
        cfg.ENV = env.get("ENV", cls.ENV)
        cfg.CORS_ORIGINS = env.get("CORS_ORIGINS", "*").split(",")

        cfg.DATA_DIR = env.get("DATA_DIR", cls.DATA_DIR)
        cfg.CATALOG_SEED_PATH = env.get("CATALOG_SEED_PATH", cls.CATALOG_SEED_PATH)

        cfg.GATEWAY_API = env.get("GATEWAY_API", cls.GATEWAY_API).rstrip("/")
        cfg.SHOP_ID = _int_or_none(env.get("SHOP_ID"))
        cfg.GATEWAY_PASSWORD = env.get("GATEWAY_PASSWORD", cls.GATEWAY_PASSWORD)
        cfg.GATEWAY_TIMEOUT = float(env.get("GATEWAY_TIMEOUT", str(cls.GATEWAY_TIMEOUT)))
        cfg.PUBLIC_URL = env.get("PUBLIC_URL", cls.PUBLIC_URL).rstrip("/")
        cfg.SUCCESS_URL = env.get("SUCCESS_URL", cls.SUCCESS_URL)
        cfg.FAIL_URL = env.get("FAIL_URL", cls.FAIL_URL)
        cfg.PAYMENT_DESCRIPTION = env.get("PAYMENT_DESCRIPTION", cls.PAYMENT_DESCRIPTION)

        cfg.NOTIFY_URL = env.get("NOTIFY_URL", cls.NOTIFY_URL)
        cfg.NOTIFY_SECRET = env.get("NOTIFY_SECRET", cls.NOTIFY_SECRET)
        cfg.NOTIFY_TIMEOUT = float(env.get("NOTIFY_TIMEOUT", str(cls.NOTIFY_TIMEOUT)))

        cfg.ADMIN_SECRET = env.get("ADMIN_SECRET", cls.ADMIN_SECRET)
        cfg.CART_CEILING = _int_or_none(env.get("CART_CEILING"))
        return cfg

    @property
    def debug(self) -> bool:
        return self.ENV == "development"

    @property
    def payment_configured(self) -> bool:
        return self.SHOP_ID is not None and bool(self.GATEWAY_PASSWORD)

    @property
    def notify_path(self) -> str:
        return f"{self.PUBLIC_URL}/gateway/notify"


config = ShopConfig.from_env()


def configure_logging(cfg: Optional[ShopConfig] = None, level: int = logging.INFO) -> None:
    """Configure structlog once for the whole process."""
    cfg = cfg or config
    renderer = (
        structlog.dev.ConsoleRenderer(colors=False)
        if cfg.debug
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
