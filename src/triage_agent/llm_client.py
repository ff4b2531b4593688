"""
Language-model client.

A thin client for an OpenAI-compatible /chat/completions endpoint, used by every
stage that talks to the model: classification, decision, memory generation and
wrapup reports.

Two layers:
    - complete() sends a system + user prompt and returns the text content,
      optionally constraining the output with a strict JSON schema. Transient
      failures (429, 5xx, network) are retried with exponential backoff and
      jitter before surfacing as TransientProviderError.
    - decode_structured() is the strict decode-and-validate step for schema
      responses: it returns a tagged StructuredResult (ok/value/error) and never
      a partially trusted structure. complete_structured() raises
      MalformedModelResponse when decoding fails.

Configuration comes from the injected LLMConfig, or lazily from the settings
facade when none is given.

Usage:
    >>> client = LLMClient()
    >>> text = client.complete("You are terse.", "Say hi")
    >>> analysis = client.complete_structured(system, user, AnalysisPayload,
    ...                                       schema_name='email_analysis',
    ...                                       schema=ANALYSIS_SCHEMA)
"""
import json
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, Type, TypeVar

import requests
from pydantic import BaseModel, ValidationError

from triage_agent.config_schema import LLMConfig
from triage_agent.error_handling import (
    MalformedModelResponse,
    TransientProviderError,
    TriageError,
    is_transient_status,
)

logger = logging.getLogger(__name__)

T = TypeVar('T', bound=BaseModel)


class LLMClientError(TriageError):
    """Base exception for language-model client errors."""
    pass


class LLMAPIError(LLMClientError):
    """
    The API call failed with a non-retryable error (bad request, auth, ...).

    Attributes:
        status_code: HTTP status, when the server answered
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class StructuredResult(Generic[T]):
    """Outcome of decoding a schema-constrained response."""
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    raw: Optional[str] = None


def _strip_code_fences(content: str) -> str:
    content_clean = content.strip()
    if content_clean.startswith("```"):
        lines = content_clean.split("\n")
        if len(lines) > 2 and lines[-1].strip().startswith("```"):
            content_clean = "\n".join(lines[1:-1])
    return content_clean.strip()


def decode_structured(content: Optional[str], model_cls: Type[T]) -> StructuredResult[T]:
    """
    Decode model output as JSON and validate it against a pydantic model.

    Args:
        content: Raw text returned by the model
        model_cls: Pydantic model describing the expected object

    Returns:
        StructuredResult with ok=True and the validated value, or ok=False and
        a description of what was wrong
    """
    if content is None or not content.strip():
        return StructuredResult(ok=False, error="Empty response content", raw=content)

    try:
        parsed = json.loads(_strip_code_fences(content))
    except json.JSONDecodeError as e:
        return StructuredResult(ok=False, error=f"Response is not valid JSON: {e}", raw=content)

    if not isinstance(parsed, dict):
        return StructuredResult(
            ok=False, error=f"Response is not a JSON object: {type(parsed).__name__}", raw=content
        )

    try:
        value = model_cls.model_validate(parsed)
    except ValidationError as e:
        problems = '; '.join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
        )
        return StructuredResult(ok=False, error=f"Response failed validation: {problems}", raw=content)

    return StructuredResult(ok=True, value=value, raw=content)


class LLMClient:
    """
    Client for an OpenAI-compatible chat completion API.

    Args:
        config: LLM settings; loaded from the settings facade when omitted
        api_key: API key; read from config.api_key_env when omitted
    """

    def __init__(self, config: Optional[LLMConfig] = None, api_key: Optional[str] = None):
        self._config = config
        self._api_key = api_key

    def _load_config(self) -> LLMConfig:
        """Resolve configuration and API key lazily."""
        if self._config is None or self._api_key is None:
            from triage_agent.settings import settings
            if self._config is None:
                self._config = settings.get_llm_config()
            if self._api_key is None:
                from triage_agent.config import require_env
                self._api_key = require_env(self._config.api_key_env)
        return self._config

    @property
    def model(self) -> str:
        return self._load_config().model

    def _build_payload(
        self,
        system_prompt: str,
        user_prompt: str,
        response_schema: Optional[Dict[str, Any]],
        schema_name: str,
        max_tokens: Optional[int]
    ) -> Dict[str, Any]:
        config = self._load_config()
        payload: Dict[str, Any] = {
            "model": config.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_completion_tokens": max_tokens or config.max_completion_tokens,
        }
        if config.temperature is not None:
            payload["temperature"] = config.temperature
        if response_schema is not None:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": schema_name,
                    "strict": True,
                    "schema": response_schema,
                },
            }
        return payload

    def _make_api_request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Make a single API request.

        Raises:
            TransientProviderError: 429/5xx responses and network failures
            LLMAPIError: Other HTTP errors or an undecodable response body
        """
        config = self._load_config()
        url = f"{config.api_url.rstrip('/')}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        logger.debug(f"Making API request to {url} (model={config.model})")

        try:
            response = requests.post(url, json=payload, headers=headers, timeout=config.timeout_seconds)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            body = e.response.text[:500] if e.response is not None else str(e)
            error_msg = f"HTTP {status_code} error from LLM API: {body}"
            if is_transient_status(status_code):
                raise TransientProviderError(error_msg, status=status_code) from e
            raise LLMAPIError(error_msg, status_code=status_code) from e
        except (requests.exceptions.JSONDecodeError, ValueError) as e:
            raise LLMAPIError(f"Invalid JSON in LLM API response: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransientProviderError(f"Network error during LLM API request: {e}") from e

    @staticmethod
    def _extract_content(api_response: Dict[str, Any]) -> str:
        choices = api_response.get("choices") or [{}]
        message = choices[0].get("message") or {}
        content = message.get("content") or ""
        if not content.strip():
            raise MalformedModelResponse("Empty response content from LLM")
        return content

    def _calculate_backoff_delay(self, attempt: int) -> float:
        """Exponential backoff (base * 2^(attempt-1)) plus up to 25% jitter."""
        base_delay = self._load_config().retry_delay_seconds
        exponential_delay = base_delay * (2 ** (attempt - 1))
        jitter = exponential_delay * 0.25 * random.random()
        return exponential_delay + jitter

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        response_schema: Optional[Dict[str, Any]] = None,
        schema_name: str = 'response',
        max_tokens: Optional[int] = None
    ) -> str:
        """
        Run one chat completion and return the text content.

        Args:
            system_prompt: Instructions
            user_prompt: The material to work on
            response_schema: Optional JSON schema the response must follow
            schema_name: Name sent with the schema
            max_tokens: Completion token cap (defaults to config.max_completion_tokens)

        Returns:
            Non-empty response text

        Raises:
            TransientProviderError: Transient failures persisted through all attempts
            LLMAPIError: Non-retryable API failure
            MalformedModelResponse: The model returned no content
        """
        config = self._load_config()
        payload = self._build_payload(system_prompt, user_prompt, response_schema, schema_name, max_tokens)

        last_error: Optional[Exception] = None
        for attempt in range(1, config.retry_attempts + 1):
            try:
                logger.debug(f"LLM API call attempt {attempt}/{config.retry_attempts}")
                api_response = self._make_api_request(payload)
                return self._extract_content(api_response)
            except TransientProviderError as e:
                last_error = e
                logger.warning(f"LLM attempt {attempt} failed: {e}")
                if attempt < config.retry_attempts:
                    delay = self._calculate_backoff_delay(attempt)
                    logger.info(f"Retrying LLM request in {delay:.2f} seconds...")
                    time.sleep(delay)

        logger.error(f"All {config.retry_attempts} LLM attempts failed")
        raise TransientProviderError(
            f"LLM request failed after {config.retry_attempts} attempts. Last error: {last_error}",
            status=getattr(last_error, 'status', None),
        ) from last_error

    def complete_structured(
        self,
        system_prompt: str,
        user_prompt: str,
        model_cls: Type[T],
        schema: Dict[str, Any],
        schema_name: str,
        max_tokens: Optional[int] = None
    ) -> T:
        """
        Run a schema-constrained completion and return the validated object.

        Raises:
            MalformedModelResponse: The response is empty or fails validation
            TransientProviderError, LLMAPIError: As for complete()
        """
        content = self.complete(
            system_prompt, user_prompt,
            response_schema=schema, schema_name=schema_name, max_tokens=max_tokens,
        )
        result = decode_structured(content, model_cls)
        if not result.ok:
            logger.warning(f"Malformed {schema_name} response: {result.error}")
            raise MalformedModelResponse(f"{schema_name}: {result.error}")
        return result.value
