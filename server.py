"""
Broadster-Live - real-time talk transcription relay.

Backend server that:
1. Receives live microphone audio (raw PCM16) from the browser via WebSocket
2. Relays it to a Gemini Live API session on Vertex AI, one session per browser
3. Streams the recognised transcript back to the browser as it arrives
4. Suggests the next talk topics for a transcript via POST /api/suggest
"""

import asyncio
import base64
import enum
import json
import logging
import os
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import openai
import uvicorn
import websockets
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.requests import HTTPConnection
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account
from openai import AsyncOpenAI
from starlette.websockets import WebSocketState
from websockets.protocol import State as WsState

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("broadster")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_LOCATION = "asia-northeast1"

# Models
LIVE_MODEL = "gemini-live-2.5-flash"
SUGGESTION_MODEL = "gemini-2.5-flash"

# Browser audio: little-endian 16-bit mono PCM
DEFAULT_SAMPLE_RATE = 16000

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
LIVE_SETUP_TIMEOUT_SECONDS = 10

REQUIRED_KEY_FIELDS = ("type", "client_email", "private_key", "token_uri")

SUGGESTION_PROMPT_TEMPLATE = (
    "あなたは優秀なラジオ番組の放送作家です。以下のトーク内容を踏まえ、"
    "次に盛り上がる話題のアイデアを3つ提案してください。"
    "# トーク内容: \"{transcript}\" # 次の話題の提案:"
)

STATIC_DIR = Path(__file__).parent / "static"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ConfigurationError(Exception):
    """Required settings are missing or unusable; the process must not serve."""


class BackendError(Exception):
    """A call to the generative AI backend failed."""


class BackendUnavailable(BackendError):
    pass


class BackendQuotaExceeded(BackendError):
    pass


class ValidationError(Exception):
    """Client input was rejected before any backend call."""


class TransportError(Exception):
    """WebSocket or live stream I/O failed mid-session."""


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServiceAccountKey:
    """Typed view of a Google service account JSON key."""
    client_email: str
    private_key: str
    token_uri: str
    project_id: str | None = None
    private_key_id: str | None = None

    @classmethod
    def from_json(cls, raw: str) -> "ServiceAccountKey":
        try:
            info = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"GOOGLE_CREDENTIALS_JSON is not valid JSON: {e}") from e
        if not isinstance(info, dict):
            raise ConfigurationError("GOOGLE_CREDENTIALS_JSON must be a JSON object")

        missing = [
            name for name in REQUIRED_KEY_FIELDS
            if not isinstance(info.get(name), str) or not info[name]
        ]
        if missing:
            raise ConfigurationError(
                f"GOOGLE_CREDENTIALS_JSON is missing required fields: {', '.join(missing)}"
            )
        if info["type"] != "service_account":
            raise ConfigurationError(
                f"GOOGLE_CREDENTIALS_JSON has type '{info['type']}', expected 'service_account'"
            )

        return cls(
            client_email=info["client_email"],
            private_key=info["private_key"],
            token_uri=info["token_uri"],
            project_id=info.get("project_id"),
            private_key_id=info.get("private_key_id"),
        )

    def to_info(self) -> dict:
        info = {
            "type": "service_account",
            "client_email": self.client_email,
            "private_key": self.private_key,
            "token_uri": self.token_uri,
        }
        if self.project_id:
            info["project_id"] = self.project_id
        if self.private_key_id:
            info["private_key_id"] = self.private_key_id
        return info


@dataclass(frozen=True)
class BackendConfig:
    """Vertex AI settings, read once at startup."""
    project_id: str
    credentials: ServiceAccountKey
    location: str = DEFAULT_LOCATION
    live_model: str = LIVE_MODEL
    suggestion_model: str = SUGGESTION_MODEL
    sample_rate: int = DEFAULT_SAMPLE_RATE
    idle_timeout: float | None = None

    @property
    def api_host(self) -> str:
        if self.location == "global":
            return "aiplatform.googleapis.com"
        return f"{self.location}-aiplatform.googleapis.com"

    @classmethod
    def from_environment(cls, environ=None) -> "BackendConfig":
        """Create config from environment variables."""
        env = os.environ if environ is None else environ

        project_id = env.get("GOOGLE_PROJECT_ID", "")
        credentials_json = env.get("GOOGLE_CREDENTIALS_JSON", "")
        missing = [
            name for name, value in (
                ("GOOGLE_PROJECT_ID", project_id),
                ("GOOGLE_CREDENTIALS_JSON", credentials_json),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Environment variables not set: {', '.join(missing)}")

        try:
            sample_rate = int(env.get("AUDIO_SAMPLE_RATE") or DEFAULT_SAMPLE_RATE)
            idle_timeout = float(env.get("SESSION_IDLE_TIMEOUT_SECONDS") or 0)
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e
        if sample_rate <= 0:
            raise ConfigurationError(f"AUDIO_SAMPLE_RATE must be positive, got {sample_rate}")

        return cls(
            project_id=project_id,
            credentials=ServiceAccountKey.from_json(credentials_json),
            location=env.get("GOOGLE_LOCATION") or DEFAULT_LOCATION,
            live_model=env.get("LIVE_MODEL") or LIVE_MODEL,
            suggestion_model=env.get("SUGGESTION_MODEL") or SUGGESTION_MODEL,
            sample_rate=sample_rate,
            idle_timeout=idle_timeout if idle_timeout > 0 else None,
        )


def load_backend_config() -> BackendConfig:
    """Read and validate the process configuration; called once at startup."""
    config = BackendConfig.from_environment()
    logger.info(
        f"Configuration loaded (project={config.project_id}, location={config.location}, "
        f"sample_rate={config.sample_rate})"
    )
    return config


# ---------------------------------------------------------------------------
# Gemini Live connection
# ---------------------------------------------------------------------------

def encode_audio_chunk(pcm_bytes: bytes, sample_rate: int = DEFAULT_SAMPLE_RATE) -> str:
    """Wrap raw PCM16 audio as a Live API realtimeInput frame (base64 in JSON)."""
    return json.dumps({
        "realtimeInput": {
            "audio": {
                "mimeType": f"audio/pcm;rate={sample_rate}",
                "data": base64.b64encode(pcm_bytes).decode("ascii"),
            },
        },
    })


def extract_transcript(message: dict) -> str | None:
    server_content = message.get("serverContent") or {}
    transcription = server_content.get("inputTranscription") or {}
    return transcription.get("text") or None


class VertexLiveConnection:
    """
    Manages a single Gemini Live API WebSocket session on Vertex AI.

    Protocol:
      1. Connect to the LlmBidiService BidiGenerateContent socket with a bearer token
      2. Send setup: model resource, TEXT responses, input audio transcription on
      3. Wait for setupComplete
      4. Stream audio as base64-encoded pcm16 via realtimeInput.audio
      5. Receive serverContent.inputTranscription text as speech is recognised
    """

    def __init__(self, url: str, token: str, model: str, sample_rate: int = DEFAULT_SAMPLE_RATE):
        self.url = url
        self.model = model
        self.sample_rate = sample_rate
        self._token = token
        self.ws = None

    def _is_open(self) -> bool:
        return self.ws is not None and self.ws.state == WsState.OPEN

    def _setup_message(self) -> dict:
        return {
            "setup": {
                "model": self.model,
                "generationConfig": {"responseModalities": ["TEXT"]},
                "inputAudioTranscription": {},
            },
        }

    async def connect(self):
        try:
            t0 = time.time()
            self.ws = await websockets.connect(
                self.url,
                additional_headers={"Authorization": f"Bearer {self._token}"},
                ping_interval=5,
                ping_timeout=20,
            )
            t1 = time.time()
            logger.info(f"Live API WebSocket handshake: {(t1-t0)*1000:.0f}ms")

            await self.ws.send(json.dumps(self._setup_message()))
            reply = json.loads(
                await asyncio.wait_for(self.ws.recv(), LIVE_SETUP_TIMEOUT_SECONDS)
            )
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException, ValueError) as e:
            logger.error(f"Live API connection failed: {e}")
            await self.close()
            raise BackendUnavailable(f"Live API connection failed: {e}") from e

        if "setupComplete" not in reply:
            await self.close()
            raise BackendUnavailable(f"Live API rejected setup: {reply}")
        logger.info(f"Live API session configured for {self.model}")

    async def send_audio(self, pcm_bytes: bytes):
        if not pcm_bytes:
            return
        if not self._is_open():
            raise TransportError("Live API session is not open")
        try:
            await self.ws.send(encode_audio_chunk(pcm_bytes, self.sample_rate))
        except websockets.WebSocketException as e:
            raise TransportError(f"Live API send error: {e}") from e

    async def transcripts(self):
        """Yield transcript text in arrival order until the session ends."""
        try:
            async for raw in self.ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Live API sent a non-JSON frame, skipped")
                    continue

                if "goAway" in message:
                    logger.warning(f"Live API going away: {message['goAway']}")
                    continue

                if "error" in message:
                    raise TransportError(f"Live API error: {message['error']}")

                text = extract_transcript(message)
                if text:
                    yield text

        except websockets.ConnectionClosedError as e:
            raise TransportError(f"Live API stream closed abnormally: {e}") from e
        logger.info("Live API stream ended")

    async def close(self):
        if self.ws is not None and self.ws.state not in (WsState.CLOSING, WsState.CLOSED):
            await self.ws.close()


# ---------------------------------------------------------------------------
# Backend client
# ---------------------------------------------------------------------------

class BackendClient:
    """Authenticated entry point to Vertex AI, shared by every session and request."""

    def __init__(self, config: BackendConfig):
        self.config = config
        try:
            self._credentials = service_account.Credentials.from_service_account_info(
                config.credentials.to_info(),
                scopes=[CLOUD_PLATFORM_SCOPE],
            )
        except ValueError as e:
            raise ConfigurationError(f"Service account key rejected: {e}") from e
        self._token_lock = asyncio.Lock()

    @property
    def live_url(self) -> str:
        return (
            f"wss://{self.config.api_host}"
            "/ws/google.cloud.aiplatform.v1.LlmBidiService/BidiGenerateContent"
        )

    @property
    def completions_base_url(self) -> str:
        return (
            f"https://{self.config.api_host}/v1/projects/{self.config.project_id}"
            f"/locations/{self.config.location}/endpoints/openapi"
        )

    def model_resource(self, model: str) -> str:
        return (
            f"projects/{self.config.project_id}/locations/{self.config.location}"
            f"/publishers/google/models/{model}"
        )

    async def _access_token(self) -> str:
        async with self._token_lock:
            if not self._credentials.valid:
                try:
                    await asyncio.to_thread(self._credentials.refresh, GoogleAuthRequest())
                except google_auth_exceptions.GoogleAuthError as e:
                    logger.error(f"Credential refresh failed: {e}")
                    raise BackendUnavailable(f"Credential refresh failed: {e}") from e
        return self._credentials.token

    async def start_streaming_conversation(self) -> VertexLiveConnection:
        token = await self._access_token()
        conn = VertexLiveConnection(
            url=self.live_url,
            token=token,
            model=self.model_resource(self.config.live_model),
            sample_rate=self.config.sample_rate,
        )
        await conn.connect()
        return conn

    async def generate_completion(self, prompt: str) -> str:
        token = await self._access_token()
        client = AsyncOpenAI(base_url=self.completions_base_url, api_key=token)
        try:
            response = await client.chat.completions.create(
                model=f"google/{self.config.suggestion_model}",
                messages=[{"role": "user", "content": prompt}],
            )
        except openai.RateLimitError as e:
            raise BackendQuotaExceeded(str(e)) from e
        except openai.OpenAIError as e:
            raise BackendUnavailable(str(e)) from e
        finally:
            await client.close()

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise BackendUnavailable("Empty response from suggestion model")
        return content


# ---------------------------------------------------------------------------
# Session: relays one browser WebSocket to one live stream
# ---------------------------------------------------------------------------

class SessionState(enum.Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class RelaySession:
    """
    Manages the lifecycle of a single browser session:
    - Opens one live stream when the browser connects
    - Forwards browser audio frames upstream and transcripts downstream, concurrently
    - Whichever side ends first closes the other
    """

    def __init__(self, browser_ws: WebSocket, backend: BackendClient, idle_timeout: float | None = None):
        self.browser_ws = browser_ws
        self.backend = backend
        self.idle_timeout = idle_timeout
        self.stream: VertexLiveConnection | None = None
        self.state = SessionState.CONNECTING

        self._session_start_time: float = time.time()
        self._chunks_relayed: int = 0
        self._transcripts_relayed: int = 0

    def _browser_connected(self) -> bool:
        return (
            self.browser_ws.client_state == WebSocketState.CONNECTED
            and self.browser_ws.application_state == WebSocketState.CONNECTED
        )

    async def run(self):
        try:
            self.stream = await self.backend.start_streaming_conversation()
        except BackendError as e:
            logger.error(f"Could not open live stream: {e}")
            await self.close(code=1011)
            return

        elapsed = (time.time() - self._session_start_time) * 1000
        logger.info(f"Live stream open: {elapsed:.0f}ms after browser connect")
        self.state = SessionState.ACTIVE

        upstream = asyncio.create_task(self._relay_audio())
        downstream = asyncio.create_task(self._relay_transcripts())
        close_code = 1000
        try:
            await asyncio.wait({upstream, downstream}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self.state = SessionState.CLOSING
            upstream.cancel()
            downstream.cancel()
            results = await asyncio.gather(upstream, downstream, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Relay error: {result}", exc_info=result)
                    close_code = 1011
            await self.close(code=close_code)

    # -- Upstream: browser audio -> live stream ------------------------------

    async def _receive_from_browser(self) -> dict:
        if self.idle_timeout:
            return await asyncio.wait_for(self.browser_ws.receive(), self.idle_timeout)
        return await self.browser_ws.receive()

    async def _relay_audio(self):
        while True:
            try:
                message = await self._receive_from_browser()
            except asyncio.TimeoutError:
                logger.info(f"No audio for {self.idle_timeout}s, ending session")
                return

            if message["type"] == "websocket.disconnect":
                logger.info("Browser disconnected")
                return

            chunk = message.get("bytes")
            if chunk is None:
                logger.debug("Ignoring text frame from browser")
                continue
            await self.stream.send_audio(chunk)
            self._chunks_relayed += 1

    # -- Downstream: live stream transcripts -> browser ----------------------

    async def _relay_transcripts(self):
        async for text in self.stream.transcripts():
            if self.state is not SessionState.ACTIVE or not self._browser_connected():
                break
            try:
                await self.browser_ws.send_json({"type": "transcript", "data": text})
            except (WebSocketDisconnect, RuntimeError) as e:
                raise TransportError(f"Transcript send failed: {e}") from e
            self._transcripts_relayed += 1

    # -- Cleanup -----------------------------------------------------------

    async def close(self, code: int = 1000):
        if self.stream is not None:
            await self.stream.close()
        if self._browser_connected():
            await self.browser_ws.close(code=code)
        self.state = SessionState.CLOSED
        logger.info(
            f"Session closed ({self._chunks_relayed} audio chunks in, "
            f"{self._transcripts_relayed} transcripts out)"
        )


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    # main() builds the client before serving; `uvicorn server:app` lands here instead
    if getattr(app.state, "backend", None) is None:
        app.state.backend = BackendClient(load_backend_config())
    config = app.state.backend.config
    logger.info(f"Vertex AI backend ready (project={config.project_id}, location={config.location})")
    yield


app = FastAPI(title="Broadster-Live", lifespan=lifespan)


def get_backend(connection: HTTPConnection) -> BackendClient:
    return connection.app.state.backend


@app.middleware("http")
async def no_cache_pages(request, call_next):
    response = await call_next(request)
    if request.url.path == "/" or request.url.path.endswith(".html"):
        response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    return response


@app.get("/health")
async def health(backend: BackendClient = Depends(get_backend)):
    config = backend.config
    return {
        "status": "ok",
        "project": config.project_id,
        "location": config.location,
        "sample_rate": config.sample_rate,
    }


# ---------------------------------------------------------------------------
# Topic suggestion API
# ---------------------------------------------------------------------------

def parse_suggestion_text(payload) -> str:
    text = payload.get("text") if isinstance(payload, dict) else None
    if not isinstance(text, str) or not text:
        raise ValidationError("No text")
    return text


def build_suggestion_prompt(transcript: str) -> str:
    return SUGGESTION_PROMPT_TEMPLATE.format(transcript=transcript)


@app.post("/api/suggest")
async def suggest_topics(request: Request, backend: BackendClient = Depends(get_backend)):
    """Suggest three next talk topics for the posted transcript."""
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    try:
        transcript = parse_suggestion_text(payload)
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})

    t0 = time.time()
    try:
        suggestion = await backend.generate_completion(build_suggestion_prompt(transcript))
    except BackendError as e:
        logger.error(f"Topic suggestion error: {e}")
        return JSONResponse(status_code=500, content={"error": str(e)})

    logger.info(f"Topic suggestion generated in {(time.time()-t0)*1000:.0f}ms ({len(transcript)} chars in)")
    return {"suggestion": suggestion.strip()}


# ---------------------------------------------------------------------------
# WebSocket endpoint
# ---------------------------------------------------------------------------

@app.websocket("/ws/audio")
async def audio_websocket(websocket: WebSocket, backend: BackendClient = Depends(get_backend)):
    """
    Live transcription relay.

    Protocol:
      Browser -> Server:
        - Binary audio: raw PCM int16 mono at the configured sample rate

      Server -> Browser:
        - { type: "transcript", data }
    """
    await websocket.accept()
    logger.info("Browser WebSocket connected")

    session = RelaySession(websocket, backend, idle_timeout=backend.config.idle_timeout)
    await session.run()


# Static client, mounted last so the API routes above take precedence
app.mount("/", StaticFiles(directory=str(STATIC_DIR), html=True), name="static")


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------

def main():
    try:
        app.state.backend = BackendClient(load_backend_config())
    except ConfigurationError as e:
        logger.critical(f"Cannot start: {e}")
        sys.exit(1)

    port = int(os.getenv("PORT", "3000"))
    logger.info(f"Broadster-Live server starting (port {port})")
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
