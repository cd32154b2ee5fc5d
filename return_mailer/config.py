from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from return_mailer.domain.models import Address


_SERA_SIGNIN_HOSTS = {
    "production": "https://signin.stampsendicia.com",
    "staging": "https://signin.testing.stampsendicia.com",
}


class Settings(BaseSettings):
    sera_env: Literal["staging", "production"] = "staging"
    sera_signin_base: str | None = None
    sera_api_base: str = "https://api.stampsendicia.com/sera"
    sera_client_id: str | None = None
    sera_client_secret: str | None = None
    sera_refresh_token: str | None = None
    sera_redirect_uri: str | None = None
    sera_token_body_encoding: Literal["json", "form"] = "json"
    sera_token_refresh_margin_seconds: int = 60

    label_service_type: str = "usps_ground_advantage"
    label_accepted_weights_oz: list[int] = []  # empty accepts any positive weight
    label_default_weight_oz: int | None = 32
    label_idempotency_mode: Literal["per_call", "content"] = "per_call"
    label_is_test: bool = False

    return_to_name: str = "Return Warehouse"
    return_to_company: str = "Connect America"
    return_to_address1: str = "816 Parkway Drive"
    return_to_address2: str = ""
    return_to_city: str = "Broomall"
    return_to_state: str = "PA"
    return_to_zip: str = "19008"
    return_to_country: str = "US"
    return_to_phone: str = "8002862622"

    lob_api_key: str | None = None
    lob_api_base: str = "https://api.lob.com"
    lob_color: bool = True
    lob_use_type: str = "operational"
    lob_from_name: str = "Connect America Returns"
    lob_from_address1: str = "3 Bala Plaza West"
    lob_from_address2: str = ""
    lob_from_city: str = "Bala Cynwyd"
    lob_from_state: str = "PA"
    lob_from_zip: str = "19004"

    instructions_pdf_path: str | None = "power-off-instructions.pdf"

    audit_webhook_url: str | None = None
    audit_source_mail: str = "return-mail"
    audit_source_label: str = "return-label"
    audit_timeout_seconds: float = 5.0

    inbound_auth_mode: Literal["basic", "access_code"] = "basic"
    mail_user: str | None = None
    mail_pass: str | None = None
    access_code: str | None = None

    http_timeout_seconds: float = 15.0

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        frozen=True,
    )

    @property
    def sera_signin_url(self) -> str:
        return (self.sera_signin_base or _SERA_SIGNIN_HOSTS[self.sera_env]).rstrip("/")

    @property
    def sera_token_url(self) -> str:
        return f"{self.sera_signin_url}/oauth/token"

    def return_to_address(self) -> Address:
        return Address(
            name=self.return_to_name,
            company=self.return_to_company,
            line1=self.return_to_address1,
            line2=self.return_to_address2,
            city=self.return_to_city,
            state=self.return_to_state,
            postal_code=self.return_to_zip,
            country_code=self.return_to_country,
            phone=self.return_to_phone,
        )

    def default_sender_address(self) -> Address:
        return Address(
            name=self.lob_from_name,
            line1=self.lob_from_address1,
            line2=self.lob_from_address2,
            city=self.lob_from_city,
            state=self.lob_from_state,
            postal_code=self.lob_from_zip,
        )

    def missing_carrier_settings(self) -> list[str]:
        required = {
            "SERA_CLIENT_ID": self.sera_client_id,
            "SERA_CLIENT_SECRET": self.sera_client_secret,
            "SERA_REFRESH_TOKEN": self.sera_refresh_token,
        }
        missing = [name for name, value in required.items() if not value]
        missing.extend(_address_setting_names("RETURN_TO", self.return_to_address()))
        return missing

    def missing_mail_settings(self) -> list[str]:
        missing = [] if self.lob_api_key else ["LOB_API_KEY"]
        missing.extend(_address_setting_names("LOB_FROM", self.default_sender_address()))
        return missing


_ADDRESS_SETTING_SUFFIXES = {
    "name": "NAME",
    "line1": "ADDRESS1",
    "city": "CITY",
    "state": "STATE",
    "postal_code": "ZIP",
}


def _address_setting_names(prefix: str, address: Address) -> list[str]:
    return [f"{prefix}_{_ADDRESS_SETTING_SUFFIXES[field]}" for field in address.missing_required()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
