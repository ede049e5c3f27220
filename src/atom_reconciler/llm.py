from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_DEFAULT_MAX_RETRIES = 2


class SupportsInvoke(Protocol):
    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(frozen=True, slots=True)
class StructuredReply(Generic[ModelT]):
    parsed: ModelT
    total_tokens: int = 0


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Invoke a ``with_structured_output(include_raw=True)`` runnable and validate its reply."""

    schema: type[ModelT]
    runnable: SupportsInvoke

    def invoke(self, messages: Any) -> StructuredReply[ModelT]:
        raw_output = self.runnable.invoke(messages)
        parsed = normalize_structured_output(raw_output=raw_output, schema=self.schema)
        return StructuredReply(parsed=parsed, total_tokens=_usage_tokens(raw_output))


def _usage_tokens(raw_output: Any) -> int:
    if not isinstance(raw_output, dict):
        return 0
    usage = getattr(raw_output.get("raw"), "usage_metadata", None) or {}
    return int(usage.get("total_tokens", 0))


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Return OPENAI_API_KEY from the environment, loading ``<repo_root>/.env`` first if present.

    Raises:
        RuntimeError: If the key is unavailable after all sources are checked.
    """
    env_path = (repo_root if repo_root is not None else Path.cwd()) / ".env"
    if env_path.is_file():
        load_dotenv(env_path)
    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for atom inference")
    return key


def get_chat_model(
    *,
    model_name: str,
    timeout: int,
    temperature: float = 0.0,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    return ChatOpenAI(model=model_name, temperature=temperature, timeout=timeout, max_retries=max_retries)


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Coerce structured LLM output into ``schema``.

    Accepts the ``include_raw=True`` envelope, a model instance, or a plain dict.

    Raises:
        RuntimeError: If the output cannot be parsed or validated against the schema.
    """
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        parsing_error = payload.get("parsing_error")
        if parsing_error is not None:
            raise RuntimeError(f"Structured output parsing failed for {schema.__name__}: {parsing_error!r}")
        payload = payload.get("parsed")
        if payload is None:
            raise RuntimeError(f"Structured output returned no parsed payload for {schema.__name__}")

    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    if not isinstance(payload, dict):
        raise RuntimeError(
            f"Structured output for {schema.__name__} returned unsupported payload type {type(payload).__name__}"
        )
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise RuntimeError(f"Structured output validation failed for {schema.__name__}: {exc}") from exc


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    timeout: int,
    chat_model: ChatOpenAI | None = None,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    model = chat_model if chat_model is not None else get_chat_model(
        model_name=model_name, timeout=timeout, repo_root=repo_root
    )
    runnable = model.with_structured_output(schema, method="function_calling", include_raw=True)
    return StructuredOutputAdapter(schema=schema, runnable=runnable)
