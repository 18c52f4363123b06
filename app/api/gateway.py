"""
AI Proxy Callables

Authenticated callables that forward one request to an AI vendor:
- proxyOpenAI / proxyOpenAIV2: OpenAI chat (V2 accepts an endpoint path)
- proxyVision: Google Cloud Vision images:annotate
- proxyDeepSeekV2: DeepSeek chat with JSON repair, never fails the caller
- proxyGemini: Gemini on Vertex AI, reduced to {text, model, usage}
- performOcr: image to text through an OpenAI vision model

Request shape:
    {"data": {<vendor payload>}, "endpoint": ..., "feature": ..., "imageData": ...}
"""

from __future__ import annotations
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from app.api.auth import Caller, require_auth
from app.core.callable import CallableRequest, CallableResponse, CallableRoute
from app.core.config import config
from app.core.credentials import credentials
from app.core.errors import (
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    ResourceExhaustedError,
)
from app.core.proxy import AuthStrategy, VendorClient, VendorProfile
from app.core.rate_limit import QuotaTracker
from app.core.repair import repair_completion, to_json
from app.core.usage import UsageEstimate, UsageLog
from app.core.validation import (
    ensure_data_uri,
    extract_base64_from_data_uri,
    require_fields,
    validate_chat_request,
    validate_gemini_request,
    validate_vision_request,
)

logger = logging.getLogger("functions.gateway")

router = APIRouter(
    prefix="/callable",
    tags=["AI Proxy"],
    route_class=CallableRoute,
    default_response_class=CallableResponse,
)


# =============================================================================
# PROVIDER PROFILES
# =============================================================================

OPENAI_BASE_URL = "https://api.openai.com/v1"
DEEPSEEK_BASE_URL = "https://api.deepseek.com/v1"
MISTRAL_BASE_URL = "https://api.mistral.ai/v1"
VISION_URL = "https://vision.googleapis.com/v1/images:annotate"

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash-preview-04-17"
DEFAULT_GEMINI_GENERATION_CONFIG = {"temperature": 0.7, "max_output_tokens": 1000}

OCR_MODEL = "gpt-4.1-mini"
OCR_SYSTEM_PROMPT = (
    "あなたは画像からテキストを抽出するOCRアシスタントです。"
    "画像内のテキストをすべて正確に抽出し、元のフォーマットをできるだけ保持してください。"
    "数式や表、リストなど特殊な形式も適切に処理してください。"
)
OCR_USER_PROMPT = "画像内のすべてのテキストを抽出してください。"

LARGE_IMAGE_BYTES = 10 * 1024 * 1024


def deepseek_fallback(error_message: str) -> Dict[str, Any]:
    """A chat completion shaped reply carrying a minimal mnemonic."""
    mnemonic = {
        "name": "シンプル暗記法",
        "description": "重要ポイントを覚えよう",
        "type": "concept",
        "tags": ["学習"],
        "contentKeywords": ["キーワード"],
        "flashcards": [{"question": "質問", "answer": "回答"}],
    }
    return {
        "choices": [{"message": {"content": to_json(mnemonic)}}],
        "error_info": error_message,
    }


OPENAI_CHAT = VendorProfile(
    name="openai",
    label="OpenAI",
    url=f"{OPENAI_BASE_URL}/chat/completions",
    timeout_seconds=90.0,
)

VISION = VendorProfile(
    name="vision",
    label="Vision",
    url=VISION_URL,
    auth=AuthStrategy.QUERY_KEY,
    timeout_seconds=30.0,
)

DEEPSEEK_CHAT = VendorProfile(
    name="deepseek",
    label="DeepSeek",
    url=f"{DEEPSEEK_BASE_URL}/chat/completions",
    timeout_seconds=300.0,
    degrade_on_error=True,
    fallback=deepseek_fallback,
)

GEMINI = VendorProfile(
    name="gemini",
    label="Gemini",
    url="",
    auth=AuthStrategy.GOOGLE_CLOUD,
    timeout_seconds=90.0,
)

OPENAI_OCR = VendorProfile(
    name="openai",
    label="OCR",
    url=f"{OPENAI_BASE_URL}/chat/completions",
    timeout_seconds=45.0,
)


def gemini_url(project: str, location: str, model: str) -> str:
    return (
        f"https://{location}-aiplatform.googleapis.com/v1/projects/{project}"
        f"/locations/{location}/publishers/google/models/{model}:generateContent"
    )


def endpoint_path(endpoint: str) -> str:
    """Relative vendor path such as "chat/completions" or "embeddings"."""
    path = endpoint.strip().lstrip("/")
    if not path or ".." in path or "://" in path:
        raise InvalidArgumentError("Invalid endpoint", {"received": endpoint})
    return path


# Shared per process
vendor_client = VendorClient()
quota_tracker = QuotaTracker()
usage_log = UsageLog()


async def enforce_quota(caller: Caller, provider: str) -> None:
    if not await quota_tracker.check(caller.uid, provider):
        raise ResourceExhaustedError(
            f"Daily {provider} quota exceeded",
            {"provider": provider},
        )


def log_inline_images(messages: List[Any]) -> None:
    """Log the size of base64 images embedded in chat messages."""
    for message in messages or []:
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            continue
        for part in content:
            if not isinstance(part, dict) or part.get("type") != "image_url":
                continue
            image = part.get("image_url")
            url = image.get("url") if isinstance(image, dict) else image
            if not isinstance(url, str) or not url.startswith("data:"):
                continue
            size = len(extract_base64_from_data_uri(url)) * 3 // 4
            if size > LARGE_IMAGE_BYTES:
                logger.warning(f"Inline image is {size / 1024 / 1024:.1f}MB, over the 10MB guideline")
            else:
                logger.info(f"Inline image size: {size / 1024:.0f}KB")


# =============================================================================
# OPENAI
# =============================================================================

@router.post("/proxyOpenAI")
async def proxy_openai(envelope: CallableRequest, caller: Caller = Depends(require_auth)):
    """Forward a chat completion to OpenAI and return the reply verbatim."""
    api_key = credentials.openai()
    payload = validate_chat_request(envelope.payload)

    logger.info(f"OpenAI request from {caller.uid}: model={payload['model']}, messages={len(payload['messages'])}")
    log_inline_images(payload["messages"])
    await enforce_quota(caller, "openai")

    return await vendor_client.dispatch(OPENAI_CHAT, payload, api_key)


@router.post("/proxyOpenAIV2")
async def proxy_openai_v2(envelope: CallableRequest, caller: Caller = Depends(require_auth)):
    """Like proxyOpenAI, with an optional endpoint path under /v1."""
    api_key = credentials.openai()
    payload = validate_chat_request(envelope.payload)

    endpoint = envelope.get("endpoint")
    profile = OPENAI_CHAT
    if endpoint:
        profile = OPENAI_CHAT.with_url(f"{OPENAI_BASE_URL}/{endpoint_path(endpoint)}")

    logger.info(f"OpenAI V2 request from {caller.uid}: {profile.url}")
    await enforce_quota(caller, "openai")

    return await vendor_client.dispatch(profile, payload, api_key)


# =============================================================================
# VISION
# =============================================================================

def build_vision_request(payload: Dict[str, Any], feature: str) -> Dict[str, Any]:
    if payload.get("requests"):
        return payload

    return {
        "requests": [
            {
                "image": {"content": extract_base64_from_data_uri(payload["imageContent"])},
                "features": [{"type": feature, "maxResults": 50}],
            }
        ]
    }


@router.post("/proxyVision")
async def proxy_vision(envelope: CallableRequest, caller: Caller = Depends(require_auth)):
    api_key = credentials.vision()
    payload = validate_vision_request(envelope.payload)

    feature = envelope.get("feature") or payload.get("feature") or "TEXT_DETECTION"
    body = build_vision_request(payload, feature)

    logger.info(f"Vision request from {caller.uid}: feature={feature}")
    await enforce_quota(caller, "vision")

    return await vendor_client.dispatch(VISION, body, api_key)


# =============================================================================
# DEEPSEEK
# =============================================================================

@router.post("/proxyDeepSeekV2")
async def proxy_deepseek_v2(envelope: CallableRequest, caller: Caller = Depends(require_auth)):
    """
    Forward a chat completion to DeepSeek.

    The first choice is coerced into JSON when possible. Vendor failures are
    answered with a canned mnemonic instead of an error.
    """
    api_key = credentials.deepseek()
    payload = validate_chat_request(envelope.payload)

    logger.info(f"DeepSeek request from {caller.uid}: model={payload['model']}")
    await enforce_quota(caller, "deepseek")

    return await vendor_client.dispatch(
        DEEPSEEK_CHAT,
        payload,
        api_key,
        post_process=repair_completion,
    )


# =============================================================================
# GEMINI
# =============================================================================

def extract_gemini_text(data: Dict[str, Any]) -> str:
    """Text of the first part of the first candidate; '' when that part has none."""
    try:
        parts = data["candidates"][0]["content"]["parts"]
        first = parts[0]
    except (KeyError, IndexError, TypeError):
        raise InternalError(
            "Could not read text from the Gemini response",
            {"apiResponse": data},
        )
    text = first.get("text") if isinstance(first, dict) else None
    return text if isinstance(text, str) else ""


@router.post("/proxyGemini")
async def proxy_gemini(envelope: CallableRequest, caller: Caller = Depends(require_auth)):
    """Generate content with Gemini on Vertex AI and record the usage."""
    payload = validate_gemini_request(envelope.payload)

    model = payload.get("model") or DEFAULT_GEMINI_MODEL
    contents = payload["contents"]
    generation_config = payload.get("generation_config") or dict(DEFAULT_GEMINI_GENERATION_CONFIG)

    project = config.google_cloud_project
    if not project:
        raise FailedPreconditionError("GOOGLE_CLOUD_PROJECT is not configured")

    used_today = usage_log.count_today(caller.uid, "gemini")
    logger.info(f"Gemini usage today for {caller.uid}: {used_today}")
    if config.quota_enforced_for("gemini") and used_today >= config.gemini_daily_limit:
        raise ResourceExhaustedError(
            "Daily Gemini quota exceeded",
            {"provider": "gemini", "limit": config.gemini_daily_limit},
        )

    profile = GEMINI.with_url(gemini_url(project, config.vertex_location, model))
    data = await vendor_client.dispatch(
        profile,
        {"contents": contents, "generationConfig": generation_config},
    )

    text = extract_gemini_text(data)
    usage = UsageEstimate.from_texts(to_json(contents), text)
    usage_log.record(caller.uid, "gemini", model, usage)

    return {
        "text": text,
        "model": model,
        "usage": usage.to_dict(),
    }


# =============================================================================
# OCR
# =============================================================================

@router.post("/performOcr")
async def perform_ocr(envelope: CallableRequest, caller: Caller = Depends(require_auth)):
    """Extract the text of an image with an OpenAI vision model."""
    api_key = credentials.openai(substitute_project_keys=False)
    request = require_fields(envelope.as_dict(), ("imageData",))

    image_url = ensure_data_uri(request["imageData"])
    body = {
        "model": OCR_MODEL,
        "messages": [
            {"role": "system", "content": OCR_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": OCR_USER_PROMPT},
                    {"type": "image_url", "image_url": {"url": image_url}},
                ],
            },
        ],
        "max_tokens": 1000,
        "temperature": 0.1,
    }

    logger.info(f"OCR request from {caller.uid}")
    await enforce_quota(caller, "openai")

    response = await vendor_client.call(OPENAI_OCR, body, api_key)
    choices = (response.data or {}).get("choices") or [{}]
    text = ((choices[0] or {}).get("message") or {}).get("content") or ""

    return {
        "success": True,
        "text": text,
        "model": OCR_MODEL,
        "responseStatus": response.status_code,
    }
