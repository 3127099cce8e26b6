import os
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def get_database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")
    return database_url


def sql_echo() -> bool:
    return os.getenv("SQL_ECHO", "false").lower() in ("1", "true", "yes")


def public_url(path: str) -> str:
    base = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")
    return base.rstrip("/") + path


@dataclass(frozen=True)
class PayPalConfig:
    user: str
    password: str
    signature: str
    nvp_url: str
    checkout_url: str
    version: str = "204.0"

    @classmethod
    def from_env(cls) -> "PayPalConfig":
        return cls(
            user=os.getenv("PAYPAL_USER", ""),
            password=os.getenv("PAYPAL_PASSWORD", ""),
            signature=os.getenv("PAYPAL_SIGNATURE", ""),
            nvp_url=os.getenv("PAYPAL_NVP_URL", "https://api-3t.sandbox.paypal.com/nvp"),
            checkout_url=os.getenv(
                "PAYPAL_CHECKOUT_URL", "https://www.sandbox.paypal.com/cgi-bin/webscr"
            ),
        )


@dataclass(frozen=True)
class AlipayConfig:
    pid: str
    key: str
    seller_email: str
    gateway_url: str
    service: str

    @classmethod
    def from_env(cls) -> "AlipayConfig":
        return cls(
            pid=os.getenv("ALIPAY_PID", ""),
            key=os.getenv("ALIPAY_KEY", ""),
            seller_email=os.getenv("ALIPAY_SELLER_EMAIL", ""),
            gateway_url=os.getenv("ALIPAY_GATEWAY_URL", "https://mapi.alipay.com/gateway.do"),
            service=os.getenv("ALIPAY_SERVICE", "create_direct_pay_by_user"),
        )
