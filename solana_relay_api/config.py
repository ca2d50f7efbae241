import os
from dotenv import load_dotenv

load_dotenv()


def build_upstream_url(base_url: str, api_key: str = None) -> str:
    """Append the Helius api-key query parameter to an upstream URL."""
    if not api_key or "api-key=" in base_url:
        return base_url
    sep = "&" if "?" in base_url else "?"
    return f"{base_url}{sep}api-key={api_key}"


class Config:
    # Helius
    HELIUS_API_KEY = os.getenv("HELIUS_API_KEY")
    UPSTREAM_WS_URL = os.getenv("UPSTREAM_WS_URL", "wss://mainnet.helius-rpc.com/")
    UPSTREAM_HTTP_URL = os.getenv("UPSTREAM_HTTP_URL", "https://mainnet.helius-rpc.com/")

    # Relay reconnect policy
    RELAY_BASE_DELAY = float(os.getenv("RELAY_BASE_DELAY", "1.0"))  # seconds
    RELAY_MAX_DELAY = float(os.getenv("RELAY_MAX_DELAY", "30.0"))  # seconds
    RELAY_MAX_RECONNECT_ATTEMPTS = int(os.getenv("RELAY_MAX_RECONNECT_ATTEMPTS", "5"))

    # HTTP RPC proxy
    RPC_PROXY_TIMEOUT = float(os.getenv("RPC_PROXY_TIMEOUT", "10.0"))

    # Web App
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "3001"))
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    @property
    def upstream_ws_url(self) -> str:
        return build_upstream_url(self.UPSTREAM_WS_URL, self.HELIUS_API_KEY)

    @property
    def upstream_http_url(self) -> str:
        return build_upstream_url(self.UPSTREAM_HTTP_URL, self.HELIUS_API_KEY)

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


config = Config()
