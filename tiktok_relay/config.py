import os
from pathlib import Path


def _env_list(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [part.strip() for part in raw.split(",") if part.strip()]


def default_provider_priority(json_endpoints: dict[str, str]) -> list[str]:
    """JSON backends with an endpoint, in the given order, then yt-dlp and the page scrape."""
    return [name for name, endpoint in json_endpoints.items() if endpoint] + ["ytdlp", "page"]


# -------------------------
# Limits
# -------------------------
MAX_BOT_FILE_BYTES = int(os.getenv("MAX_BOT_FILE_BYTES", str(50 * 1024 * 1024)))
ALBUM_ITEM_CAP = int(os.getenv("ALBUM_ITEM_CAP", "10"))

# -------------------------
# Providers
# -------------------------
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "30"))
# JSON backends take a {URL} template, e.g. https://api.example/tiktok?url={URL}
TIKTOK_API_URL = os.getenv("TIKTOK_API_URL", "").strip()
SSSTIK_API_URL = os.getenv("SSSTIK_API_URL", "").strip()
MUSICALDOWN_API_URL = os.getenv("MUSICALDOWN_API_URL", "").strip()
PROVIDER_PRIORITY = _env_list(
    "PROVIDER_PRIORITY",
    ",".join(
        default_provider_priority(
            {"tiktok_api": TIKTOK_API_URL, "ssstik": SSSTIK_API_URL, "musicaldown": MUSICALDOWN_API_URL}
        )
    ),
)
TIKTOK_COOKIES = Path(os.getenv("TIKTOK_COOKIES", "cookies/tiktok.txt"))

# -------------------------
# Fetching
# -------------------------
DOWNLOAD_RETRY_ATTEMPTS = int(os.getenv("DOWNLOAD_RETRY_ATTEMPTS", "3"))
RETRY_PAUSE_SECONDS = float(os.getenv("RETRY_PAUSE_SECONDS", "1"))
FETCH_TIMEOUT_SECONDS = float(os.getenv("FETCH_TIMEOUT_SECONDS", "20"))
GENERIC_PROXY_URL = os.getenv("GENERIC_PROXY_URL", "https://api.allorigins.win/raw?url={URL}").strip()
CDN_PROXY_URLS = _env_list(
    "CDN_PROXY_URLS",
    "https://corsproxy.io/?url={URL},https://api.codetabs.com/v1/proxy?quest={URL}",
)
CDN_HOST_SUFFIXES = _env_list(
    "CDN_HOST_SUFFIXES",
    "tiktokcdn.com,tiktokcdn-us.com,tiktokcdn-eu.com,tiktokv.com,tiktokv.us,ibytedtos.com,byteoversea.com,muscdn.com",
)

CHROME_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)
PLATFORM_ORIGIN = "https://www.tiktok.com"
