"""OpenSubtitles API client.

Movie guessing, duplicate checks and uploads go through the legacy
XML-RPC endpoint (encoded with the standard library's xmlrpc codec and
sent over httpx). Language detection, tag parsing and feature lookups use
the REST API.

Every call carries a fixed timeout. Transport failures, timeouts, 429s
and 5xx responses raise NetworkError so callers can retry them; explicit
refusals (XML-RPC faults, non-200 statuses, 4xx) raise ServerRejection.
"""

import asyncio
import xmlrpc.client
from typing import Any
from xml.parsers.expat import ExpatError

import httpx
from loguru import logger

from uploader.config import settings
from uploader.core.errors import ConfigurationError, NetworkError, ServerRejection


def _stringify(struct: dict[str, Any]) -> dict[str, str]:
    """XML-RPC upload structs carry every value as a string; drop Nones."""
    return {k: str(v) for k, v in struct.items() if v is not None}


class OpenSubtitlesClient:
    """Async client for the OpenSubtitles XML-RPC and REST APIs."""

    LANGUAGE_DETECT_PATH = "/utilities/fasttext/language/detect/file"
    GUESSIT_PATH = "/utilities/guessit"
    FEATURES_PATH = "/features"

    def __init__(
        self,
        api_key: str | None = None,
        session_token: str | None = None,
        *,
        rest_base_url: str | None = None,
        xmlrpc_url: str | None = None,
        user_agent: str | None = None,
        timeout: float | None = None,
        request_delay: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = settings.api_key if api_key is None else api_key
        self.session_token = settings.session_token if session_token is None else session_token
        self.rest_base_url = (rest_base_url or settings.rest_base_url).rstrip("/")
        self.xmlrpc_url = xmlrpc_url or settings.xmlrpc_url
        self.user_agent = user_agent or settings.user_agent
        self.timeout = settings.request_timeout if timeout is None else timeout
        self.request_delay = settings.network_request_delay if request_delay is None else request_delay
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    # --- Lifecycle ---

    def _http(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={"User-Agent": self.user_agent, "X-User-Agent": self.user_agent},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "OpenSubtitlesClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # --- Transport ---

    def _require_api_key(self) -> None:
        if not self.api_key:
            raise ConfigurationError("OpenSubtitles API key is not configured")

    def _require_session(self) -> None:
        self._require_api_key()
        if not self.session_token:
            raise ConfigurationError("Uploading requires a logged-in OpenSubtitles session token")

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        self._require_api_key()
        if self.request_delay > 0:
            await asyncio.sleep(self.request_delay)

        headers = {"Api-Key": self.api_key, **kwargs.pop("headers", {})}
        logger.debug(f"{method} {url}")
        try:
            response = await self._http().request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"{method} {url} timed out after {self.timeout:.0f}s") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {url} failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise NetworkError(f"{method} {url} returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise ServerRejection(f"{method} {url} returned HTTP {response.status_code}")
        return response

    async def _rest_get(self, path: str, params: dict[str, Any]) -> dict:
        response = await self._request("GET", f"{self.rest_base_url}{path}", params=params)
        return self._json(response, path)

    @staticmethod
    def _json(response: httpx.Response, label: str) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            raise NetworkError(f"{label}: response is not JSON") from e
        return data if isinstance(data, dict) else {"data": data}

    async def _xmlrpc(self, method: str, *params: Any) -> Any:
        """Call an XML-RPC method and return its single result value."""
        body = xmlrpc.client.dumps(params, methodname=method, encoding="utf-8")
        response = await self._request(
            "POST",
            self.xmlrpc_url,
            content=body.encode("utf-8"),
            headers={"Content-Type": "text/xml"},
        )
        try:
            (result,), _ = xmlrpc.client.loads(response.text)
        except xmlrpc.client.Fault as e:
            raise ServerRejection(f"{method} fault {e.faultCode}: {e.faultString}") from e
        except (ExpatError, ValueError) as e:
            raise NetworkError(f"{method}: malformed XML-RPC response") from e

        if isinstance(result, dict):
            status = str(result.get("status") or "")
            if status and not status.startswith("200"):
                if status.startswith(("5", "429")):
                    raise NetworkError(f"{method}: {status}")
                raise ServerRejection(f"{method}: {status}")
        return result

    # --- XML-RPC methods ---

    async def guess_movie(self, name: str) -> dict:
        """GuessMovieFromString for one name.

        Returns the per-name entry (``BestGuess``, ``GuessIt``, ...) or an
        empty dict when the service has nothing for it.
        """
        result = await self._xmlrpc("GuessMovieFromString", self.session_token or "", [name])
        data = result.get("data") if isinstance(result, dict) else None
        if not isinstance(data, dict):
            return {}
        entry = data.get(name)
        if entry is None and len(data) == 1:
            entry = next(iter(data.values()))
        return entry if isinstance(entry, dict) else {}

    async def search_movies(self, query: str) -> list[dict]:
        """SearchMoviesOnIMDB: candidate movies for manual selection."""
        result = await self._xmlrpc("SearchMoviesOnIMDB", self.session_token or "", query)
        data = result.get("data") if isinstance(result, dict) else None
        if isinstance(data, list):
            return [d for d in data if isinstance(d, dict)]
        if isinstance(data, dict):
            return [data]
        return []

    async def check_sub_hashes(self, hashes: list[str]) -> dict[str, int]:
        """CheckSubHash: map each MD5 to its subtitle id (0 when absent)."""
        if not hashes:
            return {}
        result = await self._xmlrpc("CheckSubHash", self.session_token or "", list(hashes))
        data = result.get("data") if isinstance(result, dict) else None
        found: dict[str, int] = {}
        for subtitle_hash in hashes:
            raw = data.get(subtitle_hash) if isinstance(data, dict) else None
            try:
                found[subtitle_hash] = int(raw or 0)
            except (TypeError, ValueError):
                found[subtitle_hash] = 0
        return found

    async def try_upload(self, cd1: dict[str, Any]) -> dict:
        """TryUploadSubtitles: ask whether the subtitle is already stored."""
        self._require_session()
        return await self._xmlrpc("TryUploadSubtitles", self.session_token, {"cd1": _stringify(cd1)})

    async def upload_subtitles(self, baseinfo: dict[str, Any], cd1: dict[str, Any]) -> dict:
        """UploadSubtitles: submit content plus identity and options."""
        self._require_session()
        payload = {"baseinfo": _stringify(baseinfo), "cd1": _stringify(cd1)}
        return await self._xmlrpc("UploadSubtitles", self.session_token, payload)

    # --- REST methods ---

    async def detect_language(self, sample: bytes, filename: str) -> dict:
        """Content-based language detection on a subtitle sample."""
        response = await self._request(
            "POST",
            f"{self.rest_base_url}{self.LANGUAGE_DETECT_PATH}",
            files={"text_file": (filename, sample, "text/plain")},
        )
        return self._json(response, "language detection")

    async def guessit(self, filename: str) -> dict:
        """Remote guessit parse (fallback for the offline parser)."""
        return await self._rest_get(self.GUESSIT_PATH, {"filename": filename})

    async def features(self, imdb_id: str) -> dict:
        """Feature (movie/show) details for an IMDb id."""
        return await self._rest_get(self.FEATURES_PATH, {"imdb_id": imdb_id})
