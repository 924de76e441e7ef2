"""Shared fixtures and configuration for integration tests.

The whole stack runs for real: FastAPI routes, the pipeline, the TTL cache
on SQLite and the OpenSubtitles client. Only the network is replaced, by an
httpx MockTransport that plays the OpenSubtitles service.
"""

import json
import xmlrpc.client

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from tests.conftest import KNOWN_TITLES
from uploader.clients.opensubtitles import OpenSubtitlesClient
from uploader.main import app
from uploader.services.cache_service import TTLCache
from uploader.services.pipeline import PipelineContext, PipelineOrchestrator

# Test database URL for integration tests
INTEGRATION_DB_URL = "sqlite+aiosqlite:///:memory:"

REST_URL = "https://rest.integration.test/api/v1"
XMLRPC_URL = "https://xmlrpc.integration.test/xml-rpc"


class FakeOpenSubtitles:
    """In-process stand-in for the OpenSubtitles XML-RPC and REST endpoints.

    Knows the titles in KNOWN_TITLES, stores uploaded subtitles by MD5 and
    answers CheckSubHash from that store.
    """

    def __init__(self):
        self.stored: dict[str, int] = {}
        self.calls: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url).startswith(XMLRPC_URL):
            params, method = xmlrpc.client.loads(request.content)
            self.calls.append(method)
            result = getattr(self, f"rpc_{method}")(*params)
            body = xmlrpc.client.dumps((result,), methodresponse=True)
            return httpx.Response(200, text=body, headers={"Content-Type": "text/xml"})

        self.calls.append(request.url.path)
        if request.url.path.endswith("/language/detect/file"):
            payload = {
                "data": {
                    "file_kind": "SubRip subtitle",
                    "languages": [{"language_code": "en", "confidence": 0.97}],
                }
            }
            return httpx.Response(200, text=json.dumps(payload), headers={"Content-Type": "application/json"})
        return httpx.Response(404)

    def rpc_GuessMovieFromString(self, token, names):
        data = {}
        for name in names:
            for needle, (imdb_id, title, year) in KNOWN_TITLES.items():
                if needle in name.lower():
                    data[name] = {
                        "BestGuess": {
                            "IDMovieIMDB": imdb_id,
                            "MovieName": title,
                            "MovieYear": str(year),
                            "MovieKind": "movie",
                        }
                    }
        return {"status": "200 OK", "data": data}

    def rpc_CheckSubHash(self, token, hashes):
        return {"status": "200 OK", "data": {h: str(self.stored.get(h, 0)) for h in hashes}}

    def rpc_TryUploadSubtitles(self, token, payload):
        subtitle_hash = payload["cd1"]["subhash"]
        if subtitle_hash in self.stored:
            return {
                "status": "200 OK",
                "alreadyindb": 1,
                "data": [{"IDSubtitleFile": str(self.stored[subtitle_hash])}],
            }
        return {"status": "200 OK", "alreadyindb": 0}

    def rpc_UploadSubtitles(self, token, payload):
        subtitle_id = 1000 + len(self.stored)
        self.stored[payload["cd1"]["subhash"]] = subtitle_id
        return {"status": "200 OK", "data": f"https://www.opensubtitles.org/subtitles/{subtitle_id}"}


@pytest.fixture
async def integration_session_factory(monkeypatch):
    """Fresh in-memory cache database patched over async_session."""
    engine = create_async_engine(
        INTEGRATION_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    import uploader.database as _db_mod
    import uploader.services.cache_service as _cache_mod

    monkeypatch.setattr(_db_mod, "async_session", factory)
    monkeypatch.setattr(_cache_mod, "async_session", factory)

    yield factory

    await engine.dispose()


@pytest.fixture
def fake_service():
    return FakeOpenSubtitles()


@pytest.fixture
async def integration_pipeline(integration_session_factory, fake_service, fast_settings, stub_ffprobe):
    """Pipeline over the real client, talking to the fake service."""
    client = OpenSubtitlesClient(
        api_key="integration-key",
        session_token="integration-token",
        rest_base_url=REST_URL,
        xmlrpc_url=XMLRPC_URL,
        timeout=5,
        request_delay=0,
        transport=httpx.MockTransport(fake_service),
    )
    context = PipelineContext(client=client, cache=TTLCache(version=1), config=fast_settings)
    pipeline = PipelineOrchestrator(context)
    yield pipeline
    await context.aclose()


@pytest.fixture
async def integration_client(integration_pipeline):
    """Provide async HTTP client for integration tests."""
    app.state.pipeline = integration_pipeline

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.state.pipeline = None
