"""Real-time translation of an OpenAI SSE stream into Ollama NDJSON.

One :class:`StreamBridge` lives for exactly one streamed ``/api/chat``
request. It walks the states::

    OPEN -> STREAMING -> CLOSED
                 \\
                  +-> ERROR

``OPEN`` is left as soon as the body starts being produced (the response
headers are already committed by then). In ``STREAMING`` every upstream line
is inspected; event-data lines become Ollama units, everything else is SSE
scaffolding and ignored. A malformed event is a named, non-fatal transition
(:meth:`StreamBridge._skip_malformed`) that stays in ``STREAMING``, because
units already flushed to the client cannot be taken back.

``CLOSED`` is reached only through the ``[DONE]`` sentinel, which produces
the single ``done=true`` unit. If the upstream body simply ends, the bridge
stops in ``STREAMING`` without a terminal unit and the client sees a
truncated stream. ``ERROR`` absorbs upstream read failures (including the
idle timeout) and client disconnects; nothing more is read or written.
"""

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator

import httpx
from pydantic import ValidationError
from starlette.background import BackgroundTask
from starlette.responses import StreamingResponse

from .errors import BridgeError, UpstreamTimeout, UpstreamUnreachable
from .gateway_logic import DEFAULT_ROLE, epoch_to_rfc3339, utc_now_rfc3339
from .models import LocalReplyMessage, LocalStreamUnit, RemoteStreamEvent

logger = logging.getLogger(__name__)

DATA_FIELD = "data:"
DONE_SENTINEL = "[DONE]"
NDJSON_MEDIA_TYPE = "application/x-ndjson"


class StreamState(str, Enum):
    """Streaming bridge state."""
    OPEN = "open"
    STREAMING = "streaming"
    CLOSED = "closed"
    ERROR = "error"


def event_data(line: str) -> str | None:
    """Return the payload of an SSE ``data:`` line, or None for any other line."""
    if not line.startswith(DATA_FIELD):
        return None
    payload = line[len(DATA_FIELD):]
    if payload.startswith(" "):
        payload = payload[1:]
    return payload


def encode_unit(unit: LocalStreamUnit) -> bytes:
    return (unit.model_dump_json() + "\n").encode("utf-8")


class StreamBridge:
    """Consume one upstream SSE response and yield encoded Ollama units."""

    def __init__(self, model: str, upstream: httpx.Response):
        self.model = model
        self.upstream = upstream
        self.state = StreamState.OPEN
        self.emitted = 0
        self.skipped = 0
        self.error: BridgeError | None = None

    def translate_event(self, event: RemoteStreamEvent) -> LocalStreamUnit | None:
        """Build the unit for one decoded event; None when it carries nothing to show."""
        if not event.choices:
            return None
        delta = event.choices[0].delta
        if not delta.content and not delta.role:
            return None
        return LocalStreamUnit(
            model=event.model or self.model,
            created_at=epoch_to_rfc3339(event.created) if event.created > 0 else utc_now_rfc3339(),
            message=LocalReplyMessage(
                role=delta.role or DEFAULT_ROLE,
                content=delta.content or "",
            ),
            done=False,
        )

    def terminal_unit(self) -> LocalStreamUnit:
        return LocalStreamUnit(
            model=self.model,
            created_at=utc_now_rfc3339(),
            message=LocalReplyMessage(role=DEFAULT_ROLE, content=""),
            done=True,
        )

    def to_response(self) -> StreamingResponse:
        """Wrap :meth:`run` as the NDJSON response.

        The background close covers a client that leaves before the body
        generator ever starts, when its own cleanup never runs.
        """
        return StreamingResponse(
            self.run(),
            media_type=NDJSON_MEDIA_TYPE,
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
            background=BackgroundTask(self.upstream.aclose),
        )

    def _skip_malformed(self, payload: str, exc: ValidationError) -> None:
        self.skipped += 1
        logger.warning("Skipping malformed OpenAI stream event %r: %s", payload[:200], exc)

    def _fail(self, error: BridgeError, cause: Exception) -> None:
        self.state = StreamState.ERROR
        self.error = error
        logger.error(
            "Stream for model %s aborted after %d units: %s (%s)",
            self.model, self.emitted, error.message, cause,
        )

    async def run(self) -> AsyncIterator[bytes]:
        """Yield one encoded unit per client-visible event, in arrival order.

        Each yielded chunk is written and flushed by the server before the
        next upstream line is read.
        """
        self.state = StreamState.STREAMING
        try:
            async for line in self.upstream.aiter_lines():
                payload = event_data(line)
                if payload is None:
                    continue

                if payload.strip() == DONE_SENTINEL:
                    yield encode_unit(self.terminal_unit())
                    self.state = StreamState.CLOSED
                    logger.info(
                        "Stream for model %s completed: units=%d skipped=%d",
                        self.model, self.emitted, self.skipped,
                    )
                    return

                try:
                    event = RemoteStreamEvent.model_validate_json(payload)
                except ValidationError as e:
                    self._skip_malformed(payload, e)
                    continue

                unit = self.translate_event(event)
                if unit is not None:
                    yield encode_unit(unit)
                    self.emitted += 1
        except httpx.TimeoutException as e:
            self._fail(UpstreamTimeout("OpenAI stream went idle"), e)
        except httpx.TransportError as e:
            self._fail(UpstreamUnreachable("Error reading stream from OpenAI"), e)
        except (GeneratorExit, asyncio.CancelledError):
            self.state = StreamState.ERROR
            logger.info("Client disconnected from stream for model %s after %d units", self.model, self.emitted)
            raise
        else:
            logger.warning(
                "OpenAI stream for model %s ended without %s after %d units; not terminating",
                self.model, DONE_SENTINEL, self.emitted,
            )
        finally:
            await self.upstream.aclose()
