# prakriti/panel_renderer.py
import asyncio
import base64
import binascii
import logging
import os
import ssl
from typing import Dict, List, Optional, Sequence

import httpx

from prakriti.config import Settings
from prakriti.schemas import PanelArt, PanelPlan, RenderResult

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_PANEL = "/story-panels/smog-city/p1.png"
GENERATED_ROOT = "generated-quests"

VISUAL_STYLE = (
    "kid-friendly vibrant climate action comic, clean lines, dynamic lighting, expressive characters"
)

BASE64_KEYS = ("image_base64", "base64", "imageData", "image_base_64")
URL_KEYS = ("image_url", "url", "imageUrl")

MIME_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp"}


def panel_id_for(plan: PanelPlan, index: int) -> str:
    return plan.panel_id or f"p{index + 1}"


def fallback_assets(
    panel_plans: Sequence[PanelPlan], fallback_paths: Sequence[str]
) -> List[PanelArt]:
    """Maps every panel onto the placeholder rotation."""
    return [
        PanelArt(panel_id=panel_id_for(plan, index), image_path=_rotation(fallback_paths, index))
        for index, plan in enumerate(panel_plans)
    ]


def _rotation(fallback_paths: Sequence[str], index: int) -> str:
    if not fallback_paths:
        return DEFAULT_FALLBACK_PANEL
    return fallback_paths[index % len(fallback_paths)]


def _backfill(
    panel_plans: Sequence[PanelPlan],
    resolved: Dict[int, str],
    fallback_paths: Sequence[str],
) -> List[PanelArt]:
    art = []
    for index, plan in enumerate(panel_plans):
        image_path = resolved.get(index) or _rotation(fallback_paths, index)
        art.append(PanelArt(panel_id=panel_id_for(plan, index), image_path=image_path))
    return art


def _is_tls_verification_error(exc: BaseException) -> bool:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, ssl.SSLCertVerificationError):
            return True
        if "CERTIFICATE_VERIFY_FAILED" in str(current):
            return True
        current = current.__cause__ or current.__context__
    return False


def write_panel_image(
    settings: Settings, quest_id: str, index: int, data: bytes, extension: str = "png"
) -> str:
    """Writes panel bytes under the quest's static directory; returns the web path."""
    asset_dir = os.path.join(settings.static_dir, GENERATED_ROOT, quest_id)
    os.makedirs(asset_dir, exist_ok=True)
    filename = f"panel-{index + 1}.{extension}"
    with open(os.path.join(asset_dir, filename), "wb") as f:
        f.write(data)
    return f"/{GENERATED_ROOT}/{quest_id}/{filename}"


async def _post_json(
    url: str,
    payload: dict,
    settings: Settings,
    headers: Optional[dict] = None,
    params: Optional[dict] = None,
    verify: bool = True,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    async with httpx.AsyncClient(
        timeout=settings.http_timeout, verify=verify, transport=transport
    ) as client:
        resp = await client.post(url, json=payload, headers=headers, params=params)
        resp.raise_for_status()
        return resp.json()


async def post_with_tls_retry(
    url: str,
    payload: dict,
    settings: Settings,
    headers: Optional[dict] = None,
    params: Optional[dict] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """
    POSTs JSON. A certificate verification failure is retried once without
    verification, and only when allow_insecure_tls_retry is on.
    """
    try:
        return await _post_json(url, payload, settings, headers, params, transport=transport)
    except httpx.ConnectError as e:
        if not (settings.allow_insecure_tls_retry and _is_tls_verification_error(e)):
            raise
        logger.warning("TLS verification failed for %s; retrying once without verification", url)
        return await _post_json(
            url, payload, settings, headers, params, verify=False, transport=transport
        )


# --- Nanobanana intermediary service ---

def build_render_payload(quest_title: str, panel_plans: Sequence[PanelPlan]) -> dict:
    return {
        "story_title": quest_title,
        "max_panels": len(panel_plans),
        "layout_rules": {
            "first_panel_layout": "full",
            "default_panel_layout": "split",
            "max_images_per_panel": 3,
        },
        "visual_style": VISUAL_STYLE,
        "panels": [
            {
                "panel_id": panel_id_for(plan, index),
                "layout": plan.layout,
                "headline": plan.headline,
                "narration": plan.narration,
                "realtime_anchor": plan.realtime_anchor,
                "sustainable_actions": plan.sustainable_actions,
                "dialogue": [line.model_dump() for line in plan.dialogue],
                "sdg_alignment": plan.sdg_alignment,
                "nep2020_link": plan.nep2020_link,
                "image_prompt": plan.image_prompt,
            }
            for index, plan in enumerate(panel_plans)
        ],
    }


def _first_string(entry: dict, keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _resolve_nanobanana_panels(
    body: dict, quest_id: str, panel_plans: Sequence[PanelPlan], settings: Settings
) -> Dict[int, str]:
    panels = body.get("panels") if isinstance(body, dict) else None
    if not isinstance(panels, list):
        panels = []
    panels = [p for p in panels if isinstance(p, dict)]
    by_id = {p.get("panel_id"): p for p in panels if p.get("panel_id")}

    resolved: Dict[int, str] = {}
    for index, plan in enumerate(panel_plans):
        panel_id = panel_id_for(plan, index)
        match = by_id.get(panel_id) or (panels[index] if index < len(panels) else None)
        if match is None:
            logger.warning("Nanobanana response missing panel asset for %s", panel_id)
            continue

        encoded = _first_string(match, BASE64_KEYS)
        if encoded:
            try:
                data = base64.b64decode(encoded, validate=True)
            except (binascii.Error, ValueError):
                logger.warning("Nanobanana panel %s carried undecodable image data", panel_id)
            else:
                resolved[index] = write_panel_image(settings, quest_id, index, data)
                continue

        image_url = _first_string(match, URL_KEYS)
        if image_url:
            resolved[index] = image_url
            continue

        logger.warning("Nanobanana panel %s did not include image data", panel_id)
    return resolved


async def render_with_nanobanana(
    quest_id: str,
    quest_title: str,
    panel_plans: Sequence[PanelPlan],
    settings: Settings,
    fallback_paths: Sequence[str],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RenderResult:
    if settings.use_nanobanana_stub:
        return RenderResult(art=fallback_assets(panel_plans, fallback_paths), degraded=True, reason="stubbed")
    if not settings.nanobanana_api_key:
        logger.warning("NANOBANANA_API_KEY is not set; using placeholder panels.")
        return RenderResult(
            art=fallback_assets(panel_plans, fallback_paths), degraded=True, reason="missing credential"
        )

    payload = build_render_payload(quest_title, panel_plans)
    headers = {"Authorization": f"Bearer {settings.nanobanana_api_key}"}

    body = None
    for endpoint in settings.nanobanana_endpoints:
        try:
            body = await post_with_tls_retry(endpoint, payload, settings, headers=headers, transport=transport)
            logger.info("Nanobanana rendered %d panels via %s", len(panel_plans), endpoint)
            break
        except (httpx.HTTPError, ValueError):
            logger.warning("Nanobanana endpoint %s failed", endpoint, exc_info=True)

    if body is None:
        logger.info("Falling back to offline panel assets for quest %s", quest_id)
        return RenderResult(
            art=fallback_assets(panel_plans, fallback_paths), degraded=True, reason="service unreachable"
        )

    resolved = _resolve_nanobanana_panels(body, quest_id, panel_plans, settings)
    missing = len(panel_plans) - len(resolved)
    return RenderResult(
        art=_backfill(panel_plans, resolved, fallback_paths),
        degraded=missing > 0,
        reason=f"{missing} panels backfilled" if missing else None,
    )


# --- Direct Gemini image generation ---

def build_panel_image_prompt(quest_title: str, plan: PanelPlan, index: int) -> str:
    if plan.layout == "full" or index == 0:
        layout = "Single full-bleed hero image that sets the scene."
    else:
        layout = "Split collage panel combining up to 3 key moments in one frame."
    lines = [
        f"Comic panel for the children's climate quest '{quest_title}'.",
        f"Style: {VISUAL_STYLE}.",
        f"Layout: {layout}",
        f"Headline: {plan.headline}",
        f"Narration: {plan.narration}",
    ]
    if plan.dialogue:
        lines.append(
            "Dialogue: " + " | ".join(f"{line.speaker}: {line.line}" for line in plan.dialogue)
        )
    if plan.sustainable_actions:
        lines.append("Sustainable actions shown: " + ", ".join(plan.sustainable_actions))
    if plan.image_prompt:
        lines.append(f"Visual direction: {plan.image_prompt}")
    return "\n".join(lines)


def _extract_inline_image(body: dict):
    candidates = body.get("candidates") or []
    if not candidates:
        raise ValueError("Gemini image response carried no candidates")
    parts = (candidates[0].get("content") or {}).get("parts") or []
    for part in parts:
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            return inline["data"], inline.get("mimeType") or inline.get("mime_type") or "image/png"
    raise ValueError("Gemini image response carried no inline image")


async def _render_gemini_panel(
    quest_id: str,
    quest_title: str,
    plan: PanelPlan,
    index: int,
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport],
) -> str:
    url = f"{settings.gemini_api_url}/models/{settings.gemini_image_model}:generateContent"
    payload = {
        "contents": [{"role": "user", "parts": [{"text": build_panel_image_prompt(quest_title, plan, index)}]}],
        "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
    }
    body = await post_with_tls_retry(
        url, payload, settings, params={"key": settings.gemini_api_key}, transport=transport
    )
    encoded, mime_type = _extract_inline_image(body)
    data = base64.b64decode(encoded)
    return write_panel_image(settings, quest_id, index, data, MIME_EXTENSIONS.get(mime_type, "png"))


async def render_with_gemini(
    quest_id: str,
    quest_title: str,
    panel_plans: Sequence[PanelPlan],
    settings: Settings,
    fallback_paths: Sequence[str],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RenderResult:
    if settings.use_image_stub:
        return RenderResult(art=fallback_assets(panel_plans, fallback_paths), degraded=True, reason="stubbed")
    if not settings.gemini_api_key:
        logger.warning("GEMINI_API_KEY is not set; using placeholder panels.")
        return RenderResult(
            art=fallback_assets(panel_plans, fallback_paths), degraded=True, reason="missing credential"
        )

    results = await asyncio.gather(
        *(
            _render_gemini_panel(quest_id, quest_title, plan, index, settings, transport)
            for index, plan in enumerate(panel_plans)
        ),
        return_exceptions=True,
    )

    resolved: Dict[int, str] = {}
    for index, result in enumerate(results):
        if isinstance(result, (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError, OSError)):
            logger.warning(
                "Gemini image generation failed for panel %s",
                panel_id_for(panel_plans[index], index),
                exc_info=result,
            )
        elif isinstance(result, BaseException):
            raise result
        else:
            resolved[index] = result

    missing = len(panel_plans) - len(resolved)
    return RenderResult(
        art=_backfill(panel_plans, resolved, fallback_paths),
        degraded=missing > 0,
        reason=f"{missing} panels backfilled" if missing else None,
    )


async def render_panels(
    quest_id: str,
    quest_title: str,
    panel_plans: Sequence[PanelPlan],
    settings: Settings,
    fallback_paths: Sequence[str] = (),
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RenderResult:
    """Returns exactly one PanelArt per plan, in plan order."""
    if settings.panel_backend == "gemini":
        return await render_with_gemini(
            quest_id, quest_title, panel_plans, settings, fallback_paths, transport
        )
    return await render_with_nanobanana(
        quest_id, quest_title, panel_plans, settings, fallback_paths, transport
    )
