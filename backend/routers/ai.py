# routers/ai.py — Task description summarisation over pluggable LLM providers
import os
import re
import html
import logging
from typing import Dict

import httpx
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from auth import require_permission, CurrentUser
from errors import SummaryUnavailable, ValidationFailure

logger = logging.getLogger("taskwise.ai")

router = APIRouter(prefix="/api/v1/ai", tags=["AI Summaries"])

MIN_DESCRIPTION_LENGTH = 20
SUMMARY_PROMPT = "Summarize the following task description in a concise manner:\n\n{description}"
LLM_TIMEOUT_SECONDS = 30

LLM_PROVIDERS = {
    "groq": {"base_url": "https://api.groq.com/openai/v1", "env_key": "GROQ_API_KEY", "default_model": "llama-3.1-8b-instant"},
    "openai": {"base_url": "https://api.openai.com/v1", "env_key": "OPENAI_API_KEY", "default_model": "gpt-4o-mini"},
    "local": {"base_url": os.getenv("LOCAL_LLM_URL", "http://localhost:11434/v1"), "env_key": None, "default_model": "llama3.1:8b"},
}
PREFERRED_PROVIDER = os.getenv("LLM_PROVIDER", "").lower()

_TAG = re.compile(r"<[^>]+>")


# --- Schemas ---

class SummarizeRequest(BaseModel):
    description: str = Field(..., max_length=50000)


class SummarizeResponse(BaseModel):
    summary: str
    model_used: str
    comment_html: str


# --- Helpers ---

def plain_text(markup: str) -> str:
    """Comments are rich text; measure and prompt with the text only."""
    return html.unescape(_TAG.sub(" ", markup or "")).strip()


def _resolve_provider():
    """Preferred provider if configured, else the first one with credentials."""
    order = [PREFERRED_PROVIDER] if PREFERRED_PROVIDER in LLM_PROVIDERS else []
    order += [p for p in ("groq", "openai") if p not in order]
    if PREFERRED_PROVIDER == "local":
        return "local", LLM_PROVIDERS["local"], None
    for key in order:
        cfg = LLM_PROVIDERS[key]
        api_key = os.getenv(cfg["env_key"]) if cfg["env_key"] else None
        if api_key:
            return key, cfg, api_key
    return "stub", {}, None


async def _call_llm(prompt: str) -> Dict[str, str]:
    provider, cfg, api_key = _resolve_provider()
    if provider == "stub":
        excerpt = prompt.split("\n\n", 1)[-1][:200]
        return {"content": f"[Stub] {excerpt}", "model_used": "stub-model"}

    model = cfg["default_model"]
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    try:
        async with httpx.AsyncClient(timeout=LLM_TIMEOUT_SECONDS) as client:
            resp = await client.post(
                f"{cfg['base_url']}/chat/completions",
                headers=headers,
                json={
                    "model": model,
                    "messages": [{"role": "user", "content": prompt}],
                    "max_tokens": 512,
                    "temperature": 0.3,
                },
            )
            resp.raise_for_status()
            data = resp.json()
        content = data.get("choices", [{}])[0].get("message", {}).get("content", "")
    except (httpx.HTTPError, ValueError, IndexError) as e:
        logger.warning(f"LLM call failed ({provider}/{model}): {e}")
        raise SummaryUnavailable("Could not generate summary.") from e

    if not content.strip():
        raise SummaryUnavailable("The summarisation provider returned an empty summary.")
    return {"content": content.strip(), "model_used": f"{provider}/{model}"}


def summary_comment(summary: str) -> str:
    """HTML block appended to a task's comments"""
    return f"<hr><p><b>AI Summary:</b></p><p>{html.escape(summary)}</p>"


# --- Endpoints ---

@router.post("/summarize", response_model=SummarizeResponse)
async def summarize(
    request: SummarizeRequest,
    user: CurrentUser = Depends(require_permission("ai:summarize")),
):
    """Summarise a task description"""
    text = plain_text(request.description)
    if len(text) < MIN_DESCRIPTION_LENGTH:
        raise ValidationFailure("Please provide a longer description to summarize.")

    result = await _call_llm(SUMMARY_PROMPT.format(description=text))
    logger.info(f"Summary generated for {user.id} with {result['model_used']}")
    return SummarizeResponse(
        summary=result["content"],
        model_used=result["model_used"],
        comment_html=summary_comment(result["content"]),
    )


@router.get("/providers")
async def list_providers(user: CurrentUser = Depends(require_permission("ai:summarize"))):
    """Configured providers and the one that would serve the next request"""
    active, _, _ = _resolve_provider()
    return {
        "active": active,
        "providers": [
            {
                "id": key,
                "default_model": cfg["default_model"],
                "configured": (key == "local" and PREFERRED_PROVIDER == "local") or bool(os.getenv(cfg["env_key"] or "")),
            }
            for key, cfg in LLM_PROVIDERS.items()
        ],
    }
