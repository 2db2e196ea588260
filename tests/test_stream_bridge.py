"""Tests for the SSE to NDJSON streaming state machine."""

from __future__ import annotations

import json

import httpx
import pytest

from conftest import delta_event, sse
from ollama_bridge.errors import UpstreamTimeout, UpstreamUnreachable
from ollama_bridge.stream_bridge import StreamBridge, StreamState, event_data


async def collect(bridge: StreamBridge) -> list[dict]:
    return [json.loads(chunk) async for chunk in bridge.run()]


def upstream(body) -> httpx.Response:
    return httpx.Response(200, content=body, headers={"Content-Type": "text/event-stream"})


class TestEventData:
    def test_data_line_with_space(self):
        assert event_data('data: {"a": 1}') == '{"a": 1}'

    def test_data_line_without_space(self):
        assert event_data("data:[DONE]") == "[DONE]"

    @pytest.mark.parametrize("line", ["", ": keep-alive", "event: message", "id: 7", "retry: 10"])
    def test_scaffolding_is_ignored(self, line):
        assert event_data(line) is None


class TestStreamBridge:
    @pytest.mark.anyio
    async def test_three_deltas_then_done(self):
        body = sse(
            delta_event({"role": "assistant"}),
            delta_event({"content": "Hello"}),
            delta_event({"content": " world"}),
            delta_event({}, finish_reason="stop"),
            "[DONE]",
        )
        bridge = StreamBridge("m", upstream(body))
        units = await collect(bridge)

        assert [u["message"] for u in units] == [
            {"role": "assistant", "content": ""},
            {"role": "assistant", "content": "Hello"},
            {"role": "assistant", "content": " world"},
            {"role": "assistant", "content": ""},
        ]
        assert [u["done"] for u in units] == [False, False, False, True]
        assert units[-1]["model"] == "m"
        assert bridge.state is StreamState.CLOSED
        assert bridge.emitted == 3

    @pytest.mark.anyio
    async def test_finish_reason_only_event_is_silent(self):
        body = sse(delta_event({}, finish_reason="stop"), "[DONE]")
        units = await collect(StreamBridge("m", upstream(body)))
        assert len(units) == 1
        assert units[0]["done"] is True

    @pytest.mark.anyio
    async def test_event_without_choices_is_silent(self):
        body = sse({"id": "x", "model": "m", "choices": []}, "[DONE]")
        units = await collect(StreamBridge("m", upstream(body)))
        assert [u["done"] for u in units] == [True]

    @pytest.mark.anyio
    async def test_model_and_role_defaults(self):
        event = {"choices": [{"index": 0, "delta": {"content": "hi"}}]}
        units = await collect(StreamBridge("requested", upstream(sse(event, "[DONE]"))))
        assert units[0]["model"] == "requested"
        assert units[0]["message"]["role"] == "assistant"

    @pytest.mark.anyio
    async def test_upstream_model_is_kept(self):
        body = sse(delta_event({"content": "hi"}, model="gpt-4o-2024"), "[DONE]")
        units = await collect(StreamBridge("gpt-4o", upstream(body)))
        assert units[0]["model"] == "gpt-4o-2024"
        assert units[1]["model"] == "gpt-4o"

    @pytest.mark.anyio
    async def test_created_epoch_is_converted(self):
        body = sse(delta_event({"content": "hi"}), "[DONE]")
        units = await collect(StreamBridge("m", upstream(body)))
        assert units[0]["created_at"] == "2023-09-09T14:03:10Z"
        assert isinstance(units[1]["created_at"], str)

    @pytest.mark.anyio
    async def test_malformed_event_is_skipped(self):
        body = sse(
            delta_event({"content": "before"}),
            "{not json",
            delta_event({"content": "after"}),
            "[DONE]",
        )
        bridge = StreamBridge("m", upstream(body))
        units = await collect(bridge)
        assert [u["message"]["content"] for u in units] == ["before", "after", ""]
        assert bridge.skipped == 1
        assert bridge.state is StreamState.CLOSED

    @pytest.mark.anyio
    async def test_input_after_done_is_not_read(self):
        body = sse(delta_event({"content": "a"}), "[DONE]", delta_event({"content": "late"}))
        units = await collect(StreamBridge("m", upstream(body)))
        assert [u["message"]["content"] for u in units] == ["a", ""]

    @pytest.mark.anyio
    async def test_eof_without_done_truncates(self):
        body = sse(delta_event({"role": "assistant"}), delta_event({"content": "partial"}))
        bridge = StreamBridge("m", upstream(body))
        units = await collect(bridge)
        assert len(units) == 2
        assert all(u["done"] is False for u in units)
        assert bridge.state is StreamState.STREAMING

    @pytest.mark.anyio
    async def test_idle_timeout_aborts_without_terminal_unit(self):
        async def body():
            yield sse(delta_event({"content": "first"}))
            raise httpx.ReadTimeout("no data")

        bridge = StreamBridge("m", upstream(body()))
        units = await collect(bridge)
        assert [u["message"]["content"] for u in units] == ["first"]
        assert bridge.state is StreamState.ERROR
        assert isinstance(bridge.error, UpstreamTimeout)

    @pytest.mark.anyio
    async def test_transport_error_aborts(self):
        async def body():
            yield sse(delta_event({"content": "first"}))
            raise httpx.ReadError("connection reset")

        bridge = StreamBridge("m", upstream(body()))
        units = await collect(bridge)
        assert len(units) == 1
        assert bridge.state is StreamState.ERROR
        assert isinstance(bridge.error, UpstreamUnreachable)

    @pytest.mark.anyio
    async def test_client_disconnect_aborts_and_closes_upstream(self):
        body = sse(delta_event({"content": "a"}), delta_event({"content": "b"}), "[DONE]")
        response = upstream(body)
        bridge = StreamBridge("m", response)
        stream = bridge.run()

        first = await stream.__anext__()
        assert json.loads(first)["message"]["content"] == "a"
        await stream.aclose()

        assert bridge.state is StreamState.ERROR
        assert response.is_closed

    @pytest.mark.anyio
    async def test_each_unit_is_one_ndjson_line(self):
        body = sse(delta_event({"content": "x"}), "[DONE]")
        chunks = [chunk async for chunk in StreamBridge("m", upstream(body)).run()]
        assert all(chunk.endswith(b"\n") and chunk.count(b"\n") == 1 for chunk in chunks)

    @pytest.mark.anyio
    async def test_out_of_range_created_still_terminates(self):
        body = sse(
            delta_event({"content": "first"}),
            {**delta_event({"content": "millis"}), "created": 1694268190000},
            delta_event({"content": "b"}),
            "[DONE]",
        )
        bridge = StreamBridge("m", upstream(body))
        units = await collect(bridge)

        assert [u["message"]["content"] for u in units] == ["first", "millis", "b", ""]
        assert units[1]["created_at"].endswith("Z")
        assert units[-1]["done"] is True
        assert bridge.state is StreamState.CLOSED

    @pytest.mark.anyio
    async def test_completion_is_logged(self, caplog):
        body = sse(delta_event({"content": "x"}), "[DONE]")
        with caplog.at_level("INFO", logger="ollama_bridge.stream_bridge"):
            await collect(StreamBridge("m", upstream(body)))
        assert "completed: units=1 skipped=0" in caplog.text


class TestStreamResponse:
    @pytest.mark.anyio
    async def test_headers(self):
        response = StreamBridge("m", upstream(sse("[DONE]"))).to_response()
        assert response.media_type == "application/x-ndjson"
        assert response.headers["cache-control"] == "no-cache"

    @pytest.mark.anyio
    async def test_background_closes_upstream_when_body_never_started(self):
        async def body():
            yield sse(delta_event({"content": "never read"}), "[DONE]")

        response_upstream = upstream(body())
        response = StreamBridge("m", response_upstream).to_response()

        # Server cancelled before the first chunk: the generator's cleanup never runs.
        await response.body_iterator.aclose()
        assert not response_upstream.is_closed

        await response.background()
        assert response_upstream.is_closed
