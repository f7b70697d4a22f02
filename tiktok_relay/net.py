from urllib.parse import quote, urlparse

import requests

from . import config

BROWSER_HEADERS = {
    "User-Agent": config.CHROME_USER_AGENT,
    "Accept": "application/json, text/plain, */*",
    "Accept-Language": "en-US,en;q=0.9",
    "Referer": f"{config.PLATFORM_ORIGIN}/",
}


def build_http_session() -> requests.Session:
    """Create the one HTTP client shared by providers and the fetcher."""
    session = requests.Session()
    session.headers.update(BROWSER_HEADERS)
    return session


def fill_url_template(template: str, target_url: str) -> str:
    return template.replace("{URL}", quote(target_url, safe=""))


def url_host(url: str) -> str:
    return urlparse(url).netloc.lower().split(":")[0]


def host_matches(url: str, suffixes: list[str]) -> bool:
    host = url_host(url)
    return any(host == suffix or host.endswith(f".{suffix}") for suffix in suffixes)
