import logging
import os
from pathlib import Path
from typing import Any, Optional, Type, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from db import APP_DIR

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_DEFAULT_MODEL = "gpt-4o-mini"
_DEFAULT_TIMEOUT = 60
_DEFAULT_MAX_RETRIES = 2


def ensure_openai_api_key(repo_root: Optional[Path] = None) -> str:
    """Load OPENAI_API_KEY from the environment or a .env file at repo_root."""
    env_path = (repo_root or APP_DIR) / ".env"
    if env_path.is_file():
        load_dotenv(env_path)
    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for research advice")
    return key


def advisor_model_name() -> str:
    return os.environ.get("ADVISOR_MODEL", _DEFAULT_MODEL).strip() or _DEFAULT_MODEL


def get_chat_model(
    *,
    model_name: Optional[str] = None,
    temperature: Optional[float] = None,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
) -> ChatOpenAI:
    ensure_openai_api_key()
    if temperature is None:
        temperature = float(os.environ.get("ADVISOR_TEMPERATURE", "0.2"))
    return ChatOpenAI(
        model=model_name or advisor_model_name(),
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
    )


def normalize_structured_output(raw_output: Any, schema: Type[ModelT]) -> ModelT:
    """Coerce a structured-output reply (model, dict or include_raw envelope) into schema."""
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        if payload.get("parsing_error") is not None:
            raise RuntimeError(f"Structured output parsing failed for {schema.__name__}: {payload['parsing_error']!r}")
        payload = payload.get("parsed")

    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    if not isinstance(payload, dict):
        raise RuntimeError(f"Structured output for {schema.__name__} returned {type(payload).__name__}")

    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise RuntimeError(f"Structured output validation failed for {schema.__name__}: {exc}") from exc
