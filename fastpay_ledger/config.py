"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from pydantic_settings import BaseSettings
from typing import List


class FastPayConfig(BaseSettings):
    """FastPay ledger configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # memory or sqlite
    storage_path: str = "fastpay.db"
    database_url: str = ""  # postgresql://... enables remote mode
    database_pool_size: int = 10

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Ledger rules
    base_currency: str = "USD"
    allow_overdraft: bool = False
    guest_opening_balance: str = "1000.00"

    # Loan policy
    loan_interest_rate: str = "0.15"  # Annual, fixed
    min_loan_amount: str = "100.00"
    max_loan_amount: str = "10000.00"
    max_active_loans: int = 2
    loan_terms_months: List[int] = [6, 12, 24, 36]

    # Payments
    airtime_min_amount: str = "5.00"
    airtime_max_amount: str = "500.00"
    bill_cashback_rate: str = "0.01"
    airtime_cashback_rate: str = "0.02"

    # Exchange rates
    rate_cache_ttl_seconds: int = 3600  # 1 hour
    rate_api_key: str = "demo-key"
    rate_api_timeout: float = 5.0
    rate_primary_url: str = "https://v6.exchangerate-api.com/v6/{api_key}/latest/{base}"
    rate_fallback_url: str = "https://api.exchangerate.host/latest?base={base}"
    rate_backup_url: str = "https://api.exchangerate-api.com/v4/latest/{base}"

    # Demo behaviour
    simulate_latency: bool = False

    class Config:
        env_prefix = "FASTPAY_"
        env_file = ".env"
        case_sensitive = False

    @property
    def loan_rate(self) -> Decimal:
        return Decimal(self.loan_interest_rate)

    @property
    def loan_amount_range(self) -> tuple:
        return Decimal(self.min_loan_amount), Decimal(self.max_loan_amount)

    @property
    def airtime_amount_range(self) -> tuple:
        return Decimal(self.airtime_min_amount), Decimal(self.airtime_max_amount)

    def rate_source_urls(self, base: str) -> List[str]:
        """Rate source URLs in the order they should be tried"""
        return [
            url.format(api_key=self.rate_api_key, base=base)
            for url in (self.rate_primary_url, self.rate_fallback_url, self.rate_backup_url)
            if url
        ]


# Global configuration instance
config = FastPayConfig()


def get_config() -> FastPayConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> FastPayConfig:
    """Reload configuration from environment"""
    global config
    config = FastPayConfig()
    return config
