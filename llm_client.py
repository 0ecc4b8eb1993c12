#!/usr/bin/env python3
"""Summarizer backed by an OpenAI-compatible chat completions endpoint.

Prompts come from `prompt.yaml`. Provider failures are translated into
`CollaboratorError` kinds so the pipeline can tell broken credentials apart
from transient trouble; content filtering raises `ContentFilterError`.
"""
from __future__ import annotations
from typing import List, Dict, Any, Optional, Tuple

import yaml
from openai import (
    AsyncOpenAI,
    OpenAIError,
    APITimeoutError,
    APIConnectionError,
    AuthenticationError,
    PermissionDeniedError,
    RateLimitError,
    InternalServerError,
)

from config import config, get_logger
from errors import CollaboratorError, ContentFilterError, ErrorKind
from telemetry import trace_span
from utils import estimate_tokens, estimate_max_tokens

logger = get_logger("llm_client")

TRUNCATED_PLACEHOLDER = "[Truncated output: no content returned]"


def load_prompts(prompt_path: Optional[str] = None) -> Dict[str, str]:
    """Load prompts from the prompt.yaml configuration file."""
    prompt_path = prompt_path or config.PROMPT_CONFIG_PATH
    try:
        with open(prompt_path, 'r', encoding='utf-8') as f:
            prompts = yaml.safe_load(f)
        return prompts or {}
    except FileNotFoundError:
        logger.error(f"Prompt configuration file not found at {prompt_path}")
        return {}
    except PermissionError:
        logger.error(f"No permission to read prompt configuration file at {prompt_path}")
        return {}
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in prompt configuration file: {e}")
        return {}
    except OSError as e:
        logger.error(f"OS error reading prompt configuration file: {e}")
        return {}


def _content_filter_details(error: Exception) -> Optional[Dict[str, Any]]:
    """Return the provider error object when it signals content filtering."""
    body = getattr(error, "body", None)
    if not isinstance(body, dict):
        return None
    error_obj = body.get("error") if isinstance(body.get("error"), dict) else body
    code = error_obj.get("code")
    inner = error_obj.get("innererror")
    inner_code = inner.get("code") if isinstance(inner, dict) else None
    if code == "content_filter" or inner_code == "ResponsibleAIPolicyViolation":
        return error_obj
    return None


def translate_error(error: Exception) -> CollaboratorError:
    """Map an OpenAI client exception onto a CollaboratorError kind."""
    details = _content_filter_details(error)
    if details is not None:
        return ContentFilterError(message=details.get("message", "Content filtered"), details=details)
    if isinstance(error, (AuthenticationError, PermissionDeniedError)):
        kind = ErrorKind.AUTHENTICATION
    elif isinstance(error, RateLimitError):
        kind = ErrorKind.RATE_LIMITED
    # APITimeoutError is a subclass of APIConnectionError
    elif isinstance(error, APITimeoutError):
        kind = ErrorKind.TIMEOUT
    elif isinstance(error, (APIConnectionError, InternalServerError)):
        kind = ErrorKind.SERVICE_UNAVAILABLE
    else:
        kind = ErrorKind.UNKNOWN
    return CollaboratorError(f"{error.__class__.__name__}: {error}", kind, "summarizer")


def _extract_text(choice: Any) -> str:
    message = getattr(choice, "message", {}) or {}
    if isinstance(message, dict) and message.get("refusal"):
        return ""
    content = getattr(message, "content", None) if not isinstance(message, dict) else message.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        texts: List[str] = []
        for part in content:
            if isinstance(part, dict):
                ptype = part.get("type")
                txt = part.get("text")
                if isinstance(txt, str) and txt.strip():
                    texts.append(txt.strip())
                elif ptype not in ("text", "output_text", None):
                    logger.debug("Ignoring non-text part type=%s keys=%s", ptype, list(part.keys()))
        return "\n".join(texts).strip()
    return ""


def extract_completion_text(resp: Any) -> str:
    """Join the text of all choices in a chat completion response.

    Raises CollaboratorError when nothing usable came back.
    """
    choices = getattr(resp, "choices", None) or []
    if not choices:
        raise CollaboratorError("No choices in summarizer response", ErrorKind.UNKNOWN, "summarizer")

    fragments: List[str] = []
    refusal_detected = False
    for ch in choices:
        msg_obj = getattr(ch, "message", {}) or {}
        refusal_flag = msg_obj.get("refusal") if isinstance(msg_obj, dict) else getattr(msg_obj, "refusal", None)
        if refusal_flag:
            refusal_detected = True
            logger.warning("Refusal detected in summarizer response: %s", refusal_flag)
        txt = _extract_text(ch)
        if txt:
            fragments.append(txt)

    if refusal_detected and not fragments:
        raise ContentFilterError("All choices refused by the model")

    raw = "\n".join(fragments).strip()
    if raw:
        return raw

    finish_reasons = {getattr(c, "finish_reason", None) for c in choices if getattr(c, "finish_reason", None)}
    if "content_filter" in finish_reasons:
        raise ContentFilterError("Response stopped by content filter", details={"finish_reasons": sorted(finish_reasons)})
    if "length" in finish_reasons:
        logger.warning("Truncated output with empty content; returning placeholder")
        return TRUNCATED_PLACEHOLDER
    raise CollaboratorError(
        f"Empty content in summarizer response (finish_reasons={finish_reasons})", ErrorKind.UNKNOWN, "summarizer"
    )


class Summarizer:
    """Produces link summaries through the configured AI provider.

    One client is kept per API key, so a key rotation picks up a fresh client
    without restarting.
    """

    def __init__(
        self,
        prompts: Optional[Dict[str, str]] = None,
        *,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        max_summary_length: Optional[int] = None,
        client_override: Optional[Any] = None,
    ):
        self.prompts = prompts if prompts is not None else load_prompts()
        self.model = model or config.AI_MODEL
        self.base_url = base_url or config.AI_BASE_URL
        self.max_summary_length = max_summary_length or config.MAX_SUMMARY_LENGTH
        self.client_override = client_override
        self._clients: Dict[str, Any] = {}

    def _client_for(self, api_key: str) -> Any:
        if self.client_override is not None:
            return self.client_override
        client = self._clients.get(api_key)
        if client is None:
            # Retries are owned by the pipeline's retry ledger
            client = AsyncOpenAI(api_key=api_key, base_url=self.base_url, timeout=config.AI_TIMEOUT, max_retries=0)
            self._clients[api_key] = client
        return client

    @property
    def system_prompt(self) -> str:
        return self.prompts.get("summaries", "")

    def build_messages(self, url: str, title: str, body: str) -> List[Dict[str, str]]:
        template = self.prompts.get("summarize_request") or 'Summarize the following web content from {url}:\nTitle: """{title}"""\nText: """{content}"""'
        user_prompt = template.format(url=url, title=title or "", content=body or "")
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": user_prompt})
        return messages

    def estimate_reservation(self, url: str, title: str, body: str) -> Tuple[int, int]:
        """Worst-case token need for one call: (input estimate, maximum output)."""
        input_tokens = sum(estimate_tokens(m["content"]) for m in self.build_messages(url, title, body))
        return input_tokens, estimate_max_tokens(self.max_summary_length)

    @trace_span(
        "summarizer.summarize",
        tracer_name="summarizer",
        attr_from_args=lambda self, url, title, body, api_key, temperature=None: {
            "link.url": url,
            "content.length": len(body or ""),
        },
    )
    async def summarize(self, url: str, title: str, body: str, api_key: str,
                        temperature: Optional[float] = None) -> str:
        """Summarize linked content and return the summary text."""
        if not api_key:
            raise CollaboratorError("No API key configured", ErrorKind.AUTHENTICATION, "summarizer")
        client = self._client_for(api_key)
        params: Dict[str, Any] = {
            "model": self.model,
            "messages": self.build_messages(url, title, body),
            "temperature": config.AI_TEMPERATURE if temperature is None else float(temperature),
            "max_tokens": estimate_max_tokens(self.max_summary_length),
        }
        try:
            resp = await client.chat.completions.create(**params)
        except OpenAIError as e:
            raise translate_error(e) from e
        except Exception as e:
            # Non-SDK clients may still carry a provider error body
            if _content_filter_details(e) is not None:
                raise translate_error(e) from e
            raise

        summary = extract_completion_text(resp)
        logger.debug(f"Received summary of {len(summary)} characters for {url}")
        return summary

    async def validate_api_key(self, api_key: str) -> Optional[bool]:
        """Check a key against the provider's model listing.

        Returns False when the provider rejects the key, True when it accepts it
        and None when the check itself could not be completed.
        """
        if not api_key:
            return False
        try:
            await self._client_for(api_key).models.list()
            return True
        except (AuthenticationError, PermissionDeniedError):
            return False
        except OpenAIError as e:
            logger.warning(f"Could not validate API key: {e}")
            return None


__all__ = ["Summarizer", "load_prompts", "translate_error", "extract_completion_text", "TRUNCATED_PLACEHOLDER"]
