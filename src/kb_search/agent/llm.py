"""Chat-model helpers shared by the intent, decomposition and evaluation steps."""

from __future__ import annotations

import json
import re
from typing import Any

from langchain_core.prompts import ChatPromptTemplate

from kb_search.config import Settings
from kb_search.errors import ProviderError
from kb_search.obs.observability import get_logger

logger = get_logger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", flags=re.DOTALL)


def create_llm(settings: Settings) -> Any:
    """Return a LangChain chat model when an OpenAI key is configured, else None."""

    if not settings.openai_api_key:
        return None

    from langchain_openai import ChatOpenAI

    return ChatOpenAI(model=settings.llm_model, temperature=0, api_key=settings.openai_api_key)


def extract_json(text: str) -> Any | None:
    """Parse a JSON value from model output, tolerating markdown fences and prose."""

    candidates = [match.group(1) for match in _FENCED_JSON.finditer(text)]
    candidates.append(text)
    for candidate in candidates:
        candidate = candidate.strip()
        for opener, closer in (("{", "}"), ("[", "]")):
            start = candidate.find(opener)
            end = candidate.rfind(closer)
            if start == -1 or end <= start:
                continue
            try:
                return json.loads(candidate[start : end + 1])
            except json.JSONDecodeError:
                continue
    return None


async def invoke_json(llm: Any, prompt: ChatPromptTemplate, **variables: Any) -> Any | None:
    """Run `prompt` through `llm` and parse its JSON answer.

    Transport or model failures raise `ProviderError`; an answer that is not
    valid JSON returns None so callers can fall back to heuristics.
    """

    messages = prompt.format_messages(**variables)
    try:
        response = await llm.ainvoke(messages)
    except Exception as exc:  # noqa: BLE001 - normalised into the provider error type
        raise ProviderError(f"LLM call failed: {exc}", provider="llm") from exc

    content = getattr(response, "content", response)
    if isinstance(content, list):
        content = "".join(
            part.get("text", "") if isinstance(part, dict) else str(part) for part in content
        )
    parsed = extract_json(str(content))
    if parsed is None:
        logger.warning("llm.invalid_json", preview=str(content)[:200])
    return parsed
