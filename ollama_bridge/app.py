import logging
import time
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError
from starlette.requests import ClientDisconnect

from .config import BridgeConfig, load_config
from .errors import (
    BadRequestBody,
    BridgeError,
    MethodNotAllowed,
    MissingAuthorization,
    UpstreamProtocolError,
)
from .gateway_logic import (
    fetch_models,
    fetch_reply,
    normalize_reply,
    open_stream,
    to_tags,
    translate_request,
)
from .models import LocalChatRequest, LocalVersionResponse
from .stream_bridge import NDJSON_MEDIA_TYPE, StreamBridge

logger = logging.getLogger(__name__)

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

NOT_IMPLEMENTED_PATHS = (
    "/api/generate",
    "/api/pull",
    "/api/push",
    "/api/create",
    "/api/ps",
    "/api/copy",
    "/api/delete",
    "/api/show",
    "/api/embed",
    "/api/embeddings",
)


def describe_authorization(header: str | None) -> str:
    """Summarize a credential for logs without revealing it."""
    if not header:
        return "NotPresent"
    if header[:7].lower() == "bearer " and len(header) > 7:
        return "BearerPresent"
    return "PresentNotBearer"


def require_authorization(request: Request) -> str:
    """Return the caller's Authorization header, untouched."""
    authorization = request.headers.get("Authorization", "")
    if not authorization:
        raise MissingAuthorization()
    return authorization


def require_method(request: Request, method: str) -> None:
    if request.method != method:
        raise MethodNotAllowed()


async def read_chat_request(request: Request) -> LocalChatRequest:
    try:
        body = await request.body()
    except ClientDisconnect as e:
        raise BadRequestBody("Bad request: Could not read body") from e
    try:
        return LocalChatRequest.model_validate_json(body)
    except ValidationError as e:
        first = e.errors()[0]
        raise BadRequestBody(f"Bad request: Could not decode JSON: {first['msg']}") from e


def create_app(config: BridgeConfig, client: httpx.AsyncClient | None = None) -> FastAPI:
    """Build the bridge application.

    ``client`` replaces the shared outbound client, which is otherwise
    created on startup and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan: create and cleanup httpx client."""
        owned = client is None
        if owned:
            app.state.client = httpx.AsyncClient(
                timeout=httpx.Timeout(config.request_timeout, connect=config.connect_timeout)
            )
        yield
        if owned:
            await app.state.client.aclose()

    app = FastAPI(title="Ollama Bridge", version=config.version, lifespan=lifespan)
    app.state.config = config
    if client is not None:
        app.state.client = client

    @app.exception_handler(BridgeError)
    async def bridge_error_handler(request: Request, exc: BridgeError) -> Response:
        if isinstance(exc, UpstreamProtocolError) and exc.body is not None:
            return Response(content=exc.body, status_code=exc.status_code, media_type="application/json")
        return PlainTextResponse(exc.message, status_code=exc.status_code)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        logger.info(
            "Incoming request: method=%s url=%s remote=%s user_agent=%s authorization=%s",
            request.method,
            request.url.path,
            request.client.host if request.client else "-",
            request.headers.get("User-Agent", "-"),
            describe_authorization(request.headers.get("Authorization")),
        )
        response = await call_next(request)
        # Streamed bodies are still being produced here; StreamBridge logs their end.
        streamed = response.headers.get("content-type", "").startswith(NDJSON_MEDIA_TYPE)
        logger.info(
            "%s: method=%s url=%s status=%d duration=%.3fs",
            "Stream started" if streamed else "Request handled",
            request.method,
            request.url.path,
            response.status_code,
            time.perf_counter() - start,
        )
        return response

    @app.api_route("/", methods=ALL_METHODS)
    async def healthz(request: Request):
        """Health check endpoint (HEAD only)."""
        require_method(request, "HEAD")
        return Response(status_code=200)

    @app.api_route("/api/version", methods=ALL_METHODS)
    async def version(request: Request):
        require_authorization(request)
        require_method(request, "GET")
        return JSONResponse(content=LocalVersionResponse(version=config.version).model_dump())

    @app.api_route("/api/tags", methods=ALL_METHODS)
    async def tags(request: Request):
        """List backend models in Ollama form, filtered by the allow-list."""
        authorization = require_authorization(request)
        require_method(request, "GET")
        models = await fetch_models(request.app.state.client, config, authorization)
        return JSONResponse(content=to_tags(models, config.allowed_models).model_dump())

    @app.api_route("/api/chat", methods=ALL_METHODS)
    async def chat(request: Request):
        """
        Handle Ollama chat requests.
        Translates to an OpenAI chat completion and translates the reply back,
        as one JSON document or as an NDJSON stream.
        """
        authorization = require_authorization(request)
        require_method(request, "POST")
        local_request = await read_chat_request(request)
        remote_request = translate_request(local_request)
        http_client = request.app.state.client

        logger.debug(
            "Chat request: model=%s messages=%d stream=%s",
            local_request.model, len(local_request.messages), local_request.stream,
        )

        # Errors up to here still get a clean status; after this the body is committed.
        if local_request.stream:
            upstream = await open_stream(http_client, config, remote_request, authorization)
            return StreamBridge(local_request.model, upstream).to_response()

        reply = await fetch_reply(http_client, config, remote_request, authorization)
        response = normalize_reply(reply, local_request.model)
        return JSONResponse(content=response.model_dump())

    async def not_implemented():
        return Response(status_code=501)

    for path in NOT_IMPLEMENTED_PATHS:
        app.add_api_route(path, not_implemented, methods=ALL_METHODS, include_in_schema=False)

    return app


def main() -> None:
    import uvicorn
    from dotenv import load_dotenv

    load_dotenv()
    config = load_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Server starting on %s:%d, backend %s", config.host, config.port, config.openai_base_url)
    uvicorn.run(create_app(config), host=config.host, port=config.port)


if __name__ == "__main__":
    main()
