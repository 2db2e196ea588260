import json
import logging
from datetime import datetime, timezone

import httpx
from pydantic import ValidationError

from .config import BridgeConfig
from .errors import (
    EmptyUpstreamChoices,
    UpstreamDecodeError,
    UpstreamProtocolError,
    UpstreamTimeout,
    UpstreamUnreachable,
)
from .models import (
    LocalChatReply,
    LocalChatRequest,
    LocalModel,
    LocalReplyMessage,
    LocalTagsResponse,
    RemoteChatReply,
    RemoteChatRequest,
    RemoteMessage,
    RemoteModelList,
)

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "assistant"
_LOG_BODY_LIMIT = 500


def utc_now_rfc3339() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def epoch_to_rfc3339(epoch: int) -> str:
    """Format a unix timestamp as an RFC3339 UTC string.

    Epochs a datetime cannot hold (e.g. milliseconds) fall back to now.
    """
    try:
        moment = datetime.fromtimestamp(epoch, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        logger.warning("Unrepresentable created timestamp %r, using current time", epoch)
        return utc_now_rfc3339()
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def translate_request(request: LocalChatRequest) -> RemoteChatRequest:
    """Map an Ollama chat request onto an OpenAI one. Image attachments are dropped."""
    return RemoteChatRequest(
        model=request.model,
        messages=[RemoteMessage(role=msg.role, content=msg.content) for msg in request.messages],
        stream=request.stream,
    )


def _protocol_error(response: httpx.Response, body: bytes, prefix: str) -> UpstreamProtocolError:
    logger.warning(
        "OpenAI API error: status=%d body=%s",
        response.status_code,
        body[:_LOG_BODY_LIMIT].decode("utf-8", errors="replace"),
    )
    try:
        document = json.loads(body)
    except ValueError:
        document = None
    status_line = f"{response.status_code} {response.reason_phrase}".strip()
    return UpstreamProtocolError(
        status_code=response.status_code,
        message=f"{prefix}: {status_line}",
        body=body if isinstance(document, dict) else None,
    )


async def _send_chat(
    client: httpx.AsyncClient,
    config: BridgeConfig,
    request: RemoteChatRequest,
    authorization: str,
    timeout: httpx.Timeout,
) -> httpx.Response:
    """Issue the chat call and return the response with its body still unread.

    Non-success responses are drained, closed and raised as
    :class:`UpstreamProtocolError`.
    """
    headers = {"Authorization": authorization, "Content-Type": "application/json"}
    if request.stream:
        headers["Accept"] = "text/event-stream"

    outbound = client.build_request(
        "POST",
        config.chat_completions_url,
        json=request.model_dump(),
        headers=headers,
        timeout=timeout,
    )
    try:
        response = await client.send(outbound, stream=True)
    except httpx.TimeoutException as e:
        logger.error("Timed out calling OpenAI API: %s", e)
        raise UpstreamTimeout() from e
    except httpx.TransportError as e:
        logger.error("Error making request to OpenAI: %s", e)
        raise UpstreamUnreachable() from e

    if response.is_success:
        return response

    try:
        body = await _read_body(response)
    finally:
        await response.aclose()
    raise _protocol_error(response, body, "OpenAI API request failed")


async def _read_body(response: httpx.Response) -> bytes:
    try:
        return await response.aread()
    except httpx.TimeoutException as e:
        logger.error("Timed out reading OpenAI response body: %s", e)
        raise UpstreamTimeout() from e
    except httpx.TransportError as e:
        logger.error("Error reading OpenAI response body: %s", e)
        raise UpstreamUnreachable("Failed to read response from OpenAI") from e


async def fetch_reply(
    client: httpx.AsyncClient,
    config: BridgeConfig,
    request: RemoteChatRequest,
    authorization: str,
) -> RemoteChatReply:
    """Non-streaming call: buffer and decode the whole OpenAI reply."""
    timeout = httpx.Timeout(config.request_timeout, connect=config.connect_timeout)
    response = await _send_chat(client, config, request, authorization, timeout)
    try:
        body = await _read_body(response)
    finally:
        await response.aclose()

    try:
        return RemoteChatReply.model_validate_json(body)
    except ValidationError as e:
        logger.error(
            "Error decoding OpenAI non-stream response: %s. Body: %s",
            e,
            body[:_LOG_BODY_LIMIT].decode("utf-8", errors="replace"),
        )
        raise UpstreamDecodeError() from e


async def open_stream(
    client: httpx.AsyncClient,
    config: BridgeConfig,
    request: RemoteChatRequest,
    authorization: str,
) -> httpx.Response:
    """Streaming call: return the live response once the status is known to be 2xx.

    The caller owns the response and must close it. Reads are bounded by
    ``stream_idle_timeout``, so a backend that goes quiet mid-stream raises
    ``httpx.ReadTimeout`` from the line iterator.
    """
    timeout = httpx.Timeout(
        config.request_timeout,
        connect=config.connect_timeout,
        read=config.stream_idle_timeout,
    )
    return await _send_chat(client, config, request, authorization, timeout)


def normalize_reply(reply: RemoteChatReply, request_model: str) -> LocalChatReply:
    """Build the Ollama reply from the first OpenAI choice."""
    if not reply.choices:
        logger.error("No choices found in OpenAI non-stream response: id=%s", reply.id)
        raise EmptyUpstreamChoices()

    first = reply.choices[0].message
    return LocalChatReply(
        model=reply.model or request_model,
        created_at=epoch_to_rfc3339(reply.created) if reply.created > 0 else utc_now_rfc3339(),
        message=LocalReplyMessage(
            role=first.role or DEFAULT_ROLE,
            content=first.content or "",
        ),
        done=True,
    )


async def fetch_models(
    client: httpx.AsyncClient,
    config: BridgeConfig,
    authorization: str,
) -> RemoteModelList:
    """Fetch the OpenAI model list."""
    prefix = "Failed to fetch models from OpenAI"
    try:
        response = await client.get(
            config.models_url,
            headers={"Authorization": authorization},
            timeout=httpx.Timeout(config.models_timeout, connect=config.connect_timeout),
        )
    except httpx.TransportError as e:
        logger.error("Error fetching models from OpenAI: %s", e)
        raise UpstreamUnreachable(prefix) from e

    if response.status_code != 200:
        logger.warning("OpenAI API error: %s", response.status_code)
        raise UpstreamProtocolError(
            status_code=response.status_code,
            message=f"{prefix}: {response.status_code} {response.reason_phrase}".strip(),
        )

    try:
        return RemoteModelList.model_validate_json(response.content)
    except ValidationError as e:
        logger.error("Error decoding OpenAI models response: %s", e)
        raise UpstreamDecodeError("Failed to decode response from OpenAI") from e


def to_tags(models: RemoteModelList, allowed_models: tuple[str, ...]) -> LocalTagsResponse:
    """Filter by the allow-list (when set) and reshape as an Ollama tag list."""
    remote = models.data
    if allowed_models:
        allowed = set(allowed_models)
        remote = [m for m in remote if m.id in allowed]

    return LocalTagsResponse(
        models=[
            LocalModel(name=m.id, model=m.id, modified_at=epoch_to_rfc3339(m.created))
            for m in remote
        ]
    )
