from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    port: int = 3000
    host: str = "0.0.0.0"

    scratch_dir: str = "./scratch"
    database_url: Optional[str] = None

    dwn_endpoints: List[str] = ["https://dwn.gcda.xyz"]
    did_dht_gateway: str = "https://diddht.tbddev.org"
    auth_base_url: str = "https://vc-to-dwn.tbddev.org/authorize"
    http_timeout: Optional[float] = None

    log_level: str = "INFO"
    strict_errors: bool = False

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def authorization_url(self, did: Optional[str]) -> str:
        return f"{self.auth_base_url}?issuerDid={did}"

    def http_client_options(self) -> dict:
        if self.http_timeout is None:
            return {}
        return {"timeout": self.http_timeout}


@lru_cache
def get_settings() -> Settings:
    return Settings()
