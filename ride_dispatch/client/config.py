import re

from pydantic_settings import BaseSettings


def derive_ws_url(api_url: str) -> str:
    """http(s)://host/api -> ws(s)://host/ws"""
    base = re.sub(r"^http", "ws", api_url.rstrip("/"))
    base = re.sub(r"/api$", "", base)
    return f"{base}/ws"


class ClientSettings(BaseSettings):
    api_url: str = "http://localhost:8002/api"

    # Reconnect backoff (seconds)
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    connect_timeout: float = 10.0

    # Status reconciliation
    poll_interval: float = 5.0
    request_timeout: float = 10.0

    class Config:
        env_prefix = "DISPATCH_CLIENT_"
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    @property
    def ws_url(self) -> str:
        return derive_ws_url(self.api_url)
