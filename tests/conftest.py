"""Shared pytest fixtures for tiktok-relay tests."""

import json
import sys
from pathlib import Path

import pytest
import requests

# Make bot.py and tiktok_relay importable without an install
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))


class FakeResponse:
    """Just enough of requests.Response for the code under test."""

    def __init__(self, status_code=200, body=b"", text=None, headers=None, chunks=None):
        self.status_code = status_code
        self.body = body
        self.text = text if text is not None else body.decode("utf-8", "replace")
        self.headers = headers or {}
        self.chunks = chunks

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def json(self):
        return json.loads(self.text)

    def iter_content(self, chunk_size=1):
        yield from (self.chunks if self.chunks is not None else [self.body])


class FakeSession:
    """Routes GET requests by exact URL; unknown URLs answer 404.

    A route may be a response, an exception to raise, a list consumed one
    entry per call, or a callable producing one of those.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self.sent_headers = []
        self.headers = {"User-Agent": "test-agent"}

    def get(self, url, headers=None, timeout=None, stream=False, allow_redirects=True):
        self.calls.append(url)
        self.sent_headers.append(dict(headers or {}))
        outcome = self.routes.get(url)
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if outcome else None
        if callable(outcome):
            outcome = outcome()
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            return FakeResponse(status_code=404)
        return outcome


@pytest.fixture
def fake_response():
    return FakeResponse


@pytest.fixture
def fake_session():
    return FakeSession


def json_response(payload) -> FakeResponse:
    return FakeResponse(text=json.dumps(payload))


@pytest.fixture
def make_json_response():
    return json_response


@pytest.fixture
def tiktok_api_result():
    """A result object in the shape of the structured TikTok API backend."""
    return {
        "type": "video",
        "id": "7301",
        "desc": "beach day",
        "author": {"nickname": "Sandy", "username": "sandy"},
        "cover": ["https://p16.tiktokcdn.com/cover.jpeg"],
        "video": {
            "playAddr": ["https://v16.tiktokcdn.com/play.mp4"],
            "downloadAddr": ["https://v16.tiktokcdn.com/wm.mp4"],
            "cover": ["https://p16.tiktokcdn.com/video-cover.jpeg"],
            "duration": 15,
        },
        "images": [
            "https://p16.tiktokcdn.com/img1.jpeg",
            "https://p16.tiktokcdn.com/img2.jpeg",
            "https://p16.tiktokcdn.com/img3.jpeg",
        ],
        "music": {"playUrl": ["https://sf16.tiktokcdn.com/music.mp3"], "title": "original sound"},
    }


@pytest.fixture
def ssstik_result():
    return {
        "type": "video",
        "desc": "cat jumps",
        "author": {"avatar": "https://p16.tiktokcdn.com/avatar.jpeg", "nickname": "Whiskers"},
        "direct": "https://tikcdn.io/ssstik/direct.mp4",
        "video": "https://tikcdn.io/ssstik/wm.mp4",
        "images": ["https://tikcdn.io/ssstik/a.jpeg", "https://tikcdn.io/ssstik/b.jpeg"],
        "music": "https://tikcdn.io/ssstik/music.mp3",
    }


@pytest.fixture
def musicaldown_result():
    return {
        "type": "video",
        "desc": "",
        "author": {"nickname": "Dancer"},
        "videoHD": "https://muscdn.example/hd.mp4",
        "videoWatermark": "https://muscdn.example/wm.mp4",
        "images": ["https://muscdn.example/1.jpeg", "https://muscdn.example/2.jpeg", "https://muscdn.example/3.jpeg"],
        "music": "https://muscdn.example/music.mp3",
    }
