"""
Ollama to OpenAI bridge

Serves the Ollama chat API and forwards each call to an
OpenAI-compatible backend, translating requests and replies
(including streamed ones) on the fly.

Components:
- gateway_logic: request translation, upstream calls, reply translation
- stream_bridge: SSE to NDJSON streaming state machine
- app: FastAPI application and CLI entry point
- config: startup configuration
- mock_backend: OpenAI-shaped backend for development and tests
"""

__version__ = "0.1.0"
