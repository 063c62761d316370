"""Per-model quota from the Cloud Code private API.

Two calls per account:
1. loadCodeAssist -> the account's ``cloudaicompanionProject``
2. fetchAvailableModels(project) -> ``models.<name>.quotaInfo``

A response without a project id is an error. Substituting a shared
fallback project would report (and consume) someone else's quota.
"""

import logging
import re
from typing import Optional

import httpx
from pydantic import BaseModel

from agswitch.errors import QuotaFetchFailed

logger = logging.getLogger("agswitch.quota")

CLOUD_CODE_BASE = "https://cloudcode-pa.googleapis.com/v1internal"
LOAD_CODE_ASSIST_URL = f"{CLOUD_CODE_BASE}:loadCodeAssist"
FETCH_MODELS_URL = f"{CLOUD_CODE_BASE}:fetchAvailableModels"

_ACRONYMS = {"gpt", "oss", "api", "llm"}


class ModelQuota(BaseModel):
    name: str
    display_name: str
    percentage: int
    reset_time: Optional[str] = None


class QuotaInfo(BaseModel):
    models: list[ModelQuota] = []
    error: Optional[str] = None


def classify_model(name: str) -> tuple[str, str, int]:
    """Map a raw model name to ``(model_id, display_name, priority)``.

    >>> classify_model("models/claude-sonnet-4-5")
    ('claude-sonnet', 'Claude Sonnet', 1)
    >>> classify_model("gemini-3-flash")
    ('gemini-flash', 'Gemini Flash', 3)
    >>> classify_model("models/gpt-oss-120b")
    ('models/gpt-oss-120b', 'GPT OSS 120b', 100)
    """
    lower = name.lower()
    if "claude" in lower and "sonnet" in lower and "thinking" not in lower:
        return "claude-sonnet", "Claude Sonnet", 1
    if "gemini" in lower and "pro" in lower:
        return "gemini-pro", "Gemini Pro", 2
    if "gemini" in lower and "flash" in lower:
        return "gemini-flash", "Gemini Flash", 3
    if "thinking" in lower:
        return "claude-thinking", "4.5 Thinking", 4

    clean = name.split("/")[-1]
    if re.fullmatch(r"chat_\d+", clean, re.IGNORECASE):
        return name, f"Experimental {clean.replace('_', ' ', 1)}", 90

    def _word(match: re.Match) -> str:
        word = match.group(0)
        if word.lower() in _ACRONYMS:
            return word.upper()
        return word[:1].upper() + word[1:].lower()

    return name, re.sub(r"\w+", _word, re.sub(r"[-_]", " ", clean)), 100


def _json_object(resp: httpx.Response, context: str) -> dict:
    try:
        data = resp.json()
    except ValueError:
        raise QuotaFetchFailed(f"{context}: response was not JSON") from None
    if not isinstance(data, dict):
        raise QuotaFetchFailed(f"{context}: unexpected response body")
    return data


def parse_models(data: dict) -> list[ModelQuota]:
    """Build a sorted, de-duplicated quota list from fetchAvailableModels.

    Variants of the same family collapse to the lowest remaining fraction.
    Raises QuotaFetchFailed on a malformed ``models`` map.

    >>> parse_models({"models": ["gemini-pro"]})
    Traceback (most recent call last):
    ...
    agswitch.errors.QuotaFetchFailed: Unexpected models list in quota response
    """
    models = data.get("models") or {}
    if not isinstance(models, dict):
        raise QuotaFetchFailed("Unexpected models list in quota response")

    grouped: dict[str, tuple[float, int, ModelQuota]] = {}
    for name, info in models.items():
        quota = info.get("quotaInfo") if isinstance(info, dict) else None
        if not isinstance(quota, dict) or not quota:
            continue
        model_id, display_name, priority = classify_model(name)
        try:
            fraction = float(quota.get("remainingFraction") or 0)
        except (TypeError, ValueError):
            raise QuotaFetchFailed(f"Bad remainingFraction for {name}") from None
        reset_time = quota.get("resetTime")
        if not isinstance(reset_time, str):
            reset_time = None

        existing = grouped.get(model_id)
        if existing is not None:
            if fraction < existing[0]:
                entry = existing[2].model_copy(
                    update={
                        "percentage": round(fraction * 100),
                        "reset_time": reset_time or existing[2].reset_time,
                    }
                )
                grouped[model_id] = (fraction, priority, entry)
            continue

        grouped[model_id] = (
            fraction,
            priority,
            ModelQuota(
                name=model_id,
                display_name=display_name,
                percentage=round(fraction * 100),
                reset_time=reset_time,
            ),
        )

    ordered = sorted(grouped.values(), key=lambda g: (g[1], g[2].display_name))
    return [entry for _, _, entry in ordered]


async def fetch_project_id(client: httpx.AsyncClient, access_token: str) -> str:
    resp = await client.post(
        LOAD_CODE_ASSIST_URL,
        headers={"Authorization": f"Bearer {access_token}"},
        json={"metadata": {"ideType": "ANTIGRAVITY"}},
    )
    if resp.status_code == 403:
        raise QuotaFetchFailed("Access forbidden - check your permissions")
    if resp.status_code != 200:
        raise QuotaFetchFailed(f"Failed to fetch project ID: HTTP {resp.status_code}")

    data = _json_object(resp, "Failed to fetch project ID")
    project_id = data.get("cloudaicompanionProject") or data.get("cloudaicompanion_project")
    if isinstance(project_id, dict):
        project_id = project_id.get("id")
    if not project_id:
        raise QuotaFetchFailed("Provider response did not include a project id")
    return project_id


async def fetch_quota(access_token: str) -> QuotaInfo:
    """Fetch quota for one access token. Raises QuotaFetchFailed."""
    try:
        async with httpx.AsyncClient(timeout=15.0) as client:
            project_id = await fetch_project_id(client, access_token)
            resp = await client.post(
                FETCH_MODELS_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                json={"project": project_id},
            )
    except httpx.HTTPError as e:
        raise QuotaFetchFailed(f"Quota request failed: {e}") from e

    if resp.status_code == 403:
        raise QuotaFetchFailed("forbidden")
    if resp.status_code != 200:
        raise QuotaFetchFailed(f"Failed to fetch models: HTTP {resp.status_code}")

    return QuotaInfo(models=parse_models(_json_object(resp, "Failed to fetch models")))
