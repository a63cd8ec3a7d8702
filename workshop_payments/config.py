from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    env: str = "development"
    log_level: str = "INFO"
    cors_origins: List[str] = ["*"]

    database_url: str
    service_api_key: str

    # SumUp credentials; all three must be set for payment links to be generated
    sumup_client_id: Optional[str] = None
    sumup_client_secret: Optional[str] = None
    sumup_merchant_code: Optional[str] = None
    sumup_api_base: str = "https://api.sumup.com"
    sumup_redirect_url: str = "https://your-frontend.com/payments/success"
    sumup_timeout: float = 10.0
    sumup_max_retries: int = 1

    payment_link_ttl_hours: int = 24

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @property
    def sumup_configured(self) -> bool:
        return bool(self.sumup_client_id and self.sumup_client_secret and self.sumup_merchant_code)

settings = Settings()
