import asyncio
import json
import os
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .models import (
    AssistantMessage,
    Choice,
    RemoteChatReply,
    RemoteChatRequest,
    RemoteModel,
    RemoteModelList,
)

app = FastAPI(title="Mock OpenAI backend")

MOCK_PORT = int(os.getenv("MOCK_PORT", "8081"))
MOCK_TEXT = "Hello from mock"
MOCK_MODELS = ("gpt-4o", "gpt-4o-mini", "gpt-3.5-turbo")
MOCK_CREATED = 1694268190


def _unauthorized() -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={
            "error": {
                "message": "Incorrect API key provided.",
                "type": "invalid_request_error",
                "code": "invalid_api_key",
            }
        },
    )


@app.get("/v1/models")
async def list_models(request: Request):
    if not request.headers.get("Authorization"):
        return _unauthorized()
    return RemoteModelList(
        data=[RemoteModel(id=name, created=MOCK_CREATED, owned_by="mock") for name in MOCK_MODELS]
    )


async def word_stream(text: str, model: str, req_id: str):
    """Generate SSE chunks: a role event, one event per word, a finish event, then [DONE]."""

    def chunk(delta: dict, finish_reason: str | None = None) -> str:
        payload = {
            "id": req_id,
            "object": "chat.completion.chunk",
            "created": MOCK_CREATED,
            "model": model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
        return f"data: {json.dumps(payload)}\n\n"

    yield chunk({"role": "assistant"})
    words = text.split(" ")
    for i, word in enumerate(words):
        yield chunk({"content": word if i == 0 else f" {word}"})
        await asyncio.sleep(0)  # yield to event loop
    yield chunk({}, finish_reason="stop")
    yield "data: [DONE]\n\n"


@app.post("/v1/chat/completions")
async def chat_completions(request: RemoteChatRequest, http_request: Request):
    """
    Mock backend endpoint that answers MOCK_TEXT for the requested model.
    Supports streaming when stream=True.
    """
    if not http_request.headers.get("Authorization"):
        return _unauthorized()

    req_id = f"chatcmpl-{uuid.uuid4().hex[:12]}"
    if request.stream:
        return StreamingResponse(
            word_stream(MOCK_TEXT, request.model, req_id),
            media_type="text/event-stream",
        )
    return RemoteChatReply(
        id=req_id,
        created=int(time.time()),
        model=request.model,
        choices=[Choice(message=AssistantMessage(role="assistant", content=MOCK_TEXT), finish_reason="stop")],
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=MOCK_PORT)
