import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from dotenv import load_dotenv

from einvoice.models import Address, Party

GATEWAY = "https://gw-fatoora.zatca.gov.sa/e-invoicing"


class Environment(Enum):
    SANDBOX = "sandbox"
    SIMULATION = "simulation"
    PRODUCTION = "production"

    @property
    def base_url(self) -> str:
        return {
            Environment.SANDBOX: f"{GATEWAY}/developer-portal",
            Environment.SIMULATION: f"{GATEWAY}/simulation",
            Environment.PRODUCTION: f"{GATEWAY}/core",
        }[self]

    @classmethod
    def parse(cls, value: str) -> "Environment":
        value = (value or "sandbox").lower()
        if value == "prod":
            return cls.PRODUCTION
        return cls(value)


env_file_map = {
    Environment.SANDBOX: ".env.sandbox",
    Environment.SIMULATION: ".env.simulation",
    Environment.PRODUCTION: ".env.prod",
}


@dataclass(frozen=True)
class Settings:
    environment: Environment = Environment.SANDBOX
    api_base_url: str = Environment.SANDBOX.base_url
    api_version: str = "V2"
    language: str = "en"
    http_timeout: float = 30.0
    currency: str = "SAR"
    home_country: str = "SA"
    seller: Optional[Party] = None
    debug_enabled: bool = False
    debug_path: str = "debug"
    log_dir: str = "logs"
    log_level: str = "INFO"


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def load_settings(env_file: str = ".env") -> Settings:
    """
    Build settings from the process environment.

    The base ".env" is loaded first, then the environment specific file
    selected by APP_ENV overrides it.
    """
    load_dotenv(env_file)
    environment = Environment.parse(os.getenv("APP_ENV", "sandbox"))
    specific_env_file = env_file_map.get(environment)
    if specific_env_file:
        load_dotenv(specific_env_file, override=True)

    seller = None
    if os.getenv("SELLER_VAT_NUMBER"):
        seller = Party(
            name=os.getenv("SELLER_NAME"),
            name_ar=os.getenv("SELLER_NAME_AR"),
            vat_number=os.getenv("SELLER_VAT_NUMBER"),
            registration_number=os.getenv("SELLER_REGISTRATION_NUMBER"),
            address=Address(
                street=os.getenv("SELLER_STREET"),
                building=os.getenv("SELLER_BUILDING"),
                city=os.getenv("SELLER_CITY"),
                postal_code=os.getenv("SELLER_POSTAL_CODE"),
                district=os.getenv("SELLER_DISTRICT"),
                country=os.getenv("SELLER_COUNTRY", "SA"),
            ),
        )

    return Settings(
        environment=environment,
        api_base_url=os.getenv("EINVOICING_API") or environment.base_url,
        api_version=os.getenv("API_VERSION", "V2"),
        language=os.getenv("API_LANGUAGE", "en"),
        http_timeout=float(os.getenv("HTTP_TIMEOUT", "30")),
        currency=os.getenv("INVOICE_CURRENCY", "SAR"),
        home_country=os.getenv("HOME_COUNTRY", "SA"),
        seller=seller,
        debug_enabled=_flag(os.getenv("EINVOICE_DEBUG")),
        debug_path=os.getenv("EINVOICE_DEBUG_PATH", "debug"),
        log_dir=os.getenv("LOG_DIR", "logs"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
