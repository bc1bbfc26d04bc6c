"""FastAPI service exposing the conversation runner."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, AsyncIterator, Iterable
from typing import Final

import litellm
import orjson
import structlog
import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from convo_agent.agent.client import LiteLLMChatClient, retry_after_seconds
from convo_agent.agent.errors import ConversationError
from convo_agent.agent.history import MessageHistory
from convo_agent.agent.runner import ConversationRunner
from convo_agent.agent.types import ResponseChunk
from convo_agent.infra.config import AppSettings, load_app_settings
from convo_agent.infra.logging import configure_logging
from convo_agent.tools.base import Tool
from convo_agent.tools.registry import ToolRegistry

LOGGER: Final = structlog.get_logger(__name__)


class QueryRequest(BaseModel):
    user_input: str = Field(..., min_length=1)
    model: str | None = None
    max_tool_calls: int | None = Field(default=None, ge=0)


class QueryResponse(BaseModel):
    response: str
    total_requests: int
    total_tool_calls: int
    total_tokens: int


def build_runner(settings: AppSettings, tools: Iterable[Tool] = ()) -> ConversationRunner:
    """Build a runner with a fresh history; each HTTP request is its own conversation."""
    registry = ToolRegistry()
    registry.register_all(tools)
    client = LiteLLMChatClient(
        model=settings.llm.model,
        temperature=settings.llm.temperature,
        timeout_seconds=settings.llm.timeout_seconds,
        rate_limit_retry_delay_seconds=settings.llm.rate_limit_retry_delay_seconds,
        max_rate_limit_retries=settings.llm.max_rate_limit_retries,
        strict_tool_schemas=settings.llm.strict_tool_schemas,
    )
    history = MessageHistory(
        max_messages=settings.conversation.max_history_messages,
        max_age_seconds=settings.conversation.max_history_age_seconds,
    )
    return ConversationRunner(
        client=client,
        registry=registry,
        history=history,
        model=settings.llm.model,
        max_tool_calls=settings.conversation.max_tool_calls,
        enforce_limits=settings.conversation.enforce_limits,
        token_limit=settings.conversation.token_limit,
    )


def create_app(settings: AppSettings, tools: Iterable[Tool] = ()) -> FastAPI:
    """Instantiate the FastAPI application."""

    app = FastAPI(
        title=settings.title,
        description=settings.description,
        version=settings.version,
        default_response_class=ORJSONResponse,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.tools = list(tools)
    register_routes(app, settings)
    return app


def register_routes(app: FastAPI, settings: AppSettings) -> None:
    @app.get("/", include_in_schema=False)
    def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    router = APIRouter(prefix=settings.api_prefix, tags=["convo_agent"])

    @router.get("/ping")
    def ping() -> dict[str, str]:
        return {"message": "pong", "service": settings.service_name}

    @router.post("/query", response_model=QueryResponse)
    async def query(payload: QueryRequest) -> QueryResponse:
        runner = build_runner(settings, app.state.tools)
        try:
            result = await runner.generate_response(
                [payload.user_input],
                model=payload.model,
                max_tool_calls=payload.max_tool_calls,
            )
        except litellm.RateLimitError as exc:
            LOGGER.warning("convo_agent.rate_limited", error=str(exc))
            detail, headers = _rate_limit_response(exc)
            raise HTTPException(status_code=429, detail=detail, headers=headers) from exc
        except ConversationError as exc:
            LOGGER.warning("convo_agent.conversation_failed", error=str(exc))
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        except Exception as exc:
            LOGGER.exception("convo_agent.query_failed", error=str(exc))
            raise HTTPException(status_code=502, detail="Model request failed") from exc

        return QueryResponse(
            response=result.message,
            total_requests=result.usage.total_requests,
            total_tool_calls=result.usage.total_tool_calls,
            total_tokens=result.usage.total_usage.total_tokens,
        )

    @router.post("/query/stream")
    async def query_stream(payload: QueryRequest) -> StreamingResponse:
        runner = build_runner(settings, app.state.tools)
        chunks = runner.generate_streaming_response(
            [payload.user_input],
            model=payload.model,
            max_tool_calls=payload.max_tool_calls,
        )
        return StreamingResponse(_ndjson(chunks), media_type="application/x-ndjson")

    app.include_router(router)


async def _ndjson(chunks: AsyncGenerator[ResponseChunk, None]) -> AsyncIterator[bytes]:
    try:
        async for chunk in chunks:
            yield orjson.dumps(chunk.to_dict()) + b"\n"
    except Exception as exc:
        LOGGER.exception("convo_agent.stream_failed", error=str(exc))
        yield orjson.dumps({"error": str(exc)}) + b"\n"
    finally:
        await chunks.aclose()


def serve(settings_path: str | None = None) -> None:
    """Run the service; settings come from ``settings_path`` or the environment."""
    settings: AppSettings = load_app_settings(AppSettings, settings_path)
    configure_logging(settings.logging)

    LOGGER.info(
        "convo_agent.startup",
        host=settings.host,
        port=settings.port,
        model=settings.llm.model,
        max_tool_calls=settings.conversation.max_tool_calls,
        enforce_limits=settings.conversation.enforce_limits,
        api_prefix=settings.api_prefix,
    )

    server = uvicorn.Server(
        config=uvicorn.Config(
            app=create_app(settings),
            host=settings.host,
            port=settings.port,
            reload=settings.reload,
            log_config=None,
        )
    )
    asyncio.run(server.serve())


def _rate_limit_response(exc: Exception) -> tuple[str, dict[str, str]]:
    detail = "Model rate limit exceeded. Please retry later."
    retry_after = retry_after_seconds(exc)
    if retry_after is None:
        return detail, {}
    return f"{detail} Retry after {retry_after} seconds.", {"Retry-After": str(retry_after)}


if __name__ == "__main__":  # pragma: no cover - import-time guard
    serve()
