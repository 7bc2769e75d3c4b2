from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Literal, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
StructuredOutputMethod = Literal["function_calling", "json_mode", "json_schema"]

_REQUEST_TIMEOUT_SECONDS = 120
_MAX_RETRIES = 3


class SupportsInvoke(Protocol):
    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(slots=True)
class StructuredPlanner(Generic[ModelT]):
    """Runs a structured-output runnable over a (system, user) prompt pair.

    The reply is validated into ``schema``; both bare payloads and
    ``include_raw=True`` envelopes are accepted.
    """

    schema: type[ModelT]
    runnable: SupportsInvoke

    def invoke(self, *, system_prompt: str, user_prompt: str) -> ModelT:
        messages = [("system", system_prompt), ("human", user_prompt)]
        raw_output = self.runnable.invoke(messages)
        return coerce_structured_output(raw_output=raw_output, schema=self.schema)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Return OPENAI_API_KEY, loading ``<repo_root>/.env`` first when present.

    Raises:
        RuntimeError: If the key is still unavailable.
    """
    env_path = (repo_root if repo_root is not None else Path.cwd()) / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for LLM plan generation")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float,
    timeout: int = _REQUEST_TIMEOUT_SECONDS,
    max_retries: int = _MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    logger.debug("Creating chat model %s (temperature=%s)", model_name, temperature)
    return ChatOpenAI(
        model=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
    )


def _unwrap_envelope(raw_output: Any, schema_name: str) -> Any:
    if not (isinstance(raw_output, dict) and {"parsed", "parsing_error"} <= raw_output.keys()):
        return raw_output
    if raw_output["parsing_error"] is not None:
        raise RuntimeError(f"{schema_name} reply could not be parsed: {raw_output['parsing_error']!r}")
    if raw_output["parsed"] is None:
        raise RuntimeError(f"{schema_name} reply was empty")
    return raw_output["parsed"]


def coerce_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Validate raw LLM structured output into ``schema``.

    Accepts an ``include_raw=True`` envelope, any pydantic model or a plain dict.

    Raises:
        RuntimeError: If the output cannot be parsed or validated.
    """
    payload = _unwrap_envelope(raw_output, schema.__name__)
    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    if not isinstance(payload, dict):
        raise RuntimeError(f"{schema.__name__} reply has unsupported type {type(payload).__name__}")
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise RuntimeError(f"{schema.__name__} reply failed validation: {exc}") from exc


def get_structured_planner(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float,
    method: StructuredOutputMethod = "json_mode",
    include_raw: bool = True,
    repo_root: Path | None = None,
) -> StructuredPlanner[ModelT]:
    """Bind ``schema`` to a chat model with ``with_structured_output``.

    ``json_mode`` is the default because generator replies are normalized
    afterwards; strict schema enforcement is only applied to the other methods.
    """
    model = get_chat_model(model_name=model_name, temperature=temperature, repo_root=repo_root)
    runnable = model.with_structured_output(
        schema,
        method=method,
        include_raw=include_raw,
        strict=None if method == "json_mode" else True,
    )
    return StructuredPlanner(schema=schema, runnable=runnable)
