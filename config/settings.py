import os
from dataclasses import dataclass, field
from typing import FrozenSet, List


DEFAULT_CURRENCIES = (
    "USD,EUR,GBP,JPY,CHF,CAD,AUD,NZD,CNY,HKD,SGD,SEK,NOK,DKK,PLN,CZK,"
    "HUF,RUB,INR,BRL,MXN,ZAR,TRY,KRW,AED,SAR,ILS,THB,IDR,MYR,PHP"
)


def _parse_currencies(raw: str) -> FrozenSet[str]:
    return frozenset(code.strip().upper() for code in raw.split(",") if code.strip())


def _parse_list(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    DB_PATH: str = os.getenv("DB_PATH", "./ledger.db")
    DB_TIMEOUT_SECONDS: float = float(os.getenv("DB_TIMEOUT_SECONDS", "5"))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = os.getenv("LOG_FORMAT", "standard")  # standard | json

    SUPPORTED_CURRENCIES: FrozenSet[str] = field(
        default_factory=lambda: _parse_currencies(os.getenv("SUPPORTED_CURRENCIES", DEFAULT_CURRENCIES))
    )

    CORS_ORIGINS: List[str] = field(
        default_factory=lambda: _parse_list(os.getenv("CORS_ORIGINS", "http://localhost:8000"))
    )

    # stub settlement provider: approve every transfer unless switched off
    SETTLEMENT_APPROVE: bool = os.getenv("SETTLEMENT_APPROVE", "true").lower() == "true"

settings = Settings()
