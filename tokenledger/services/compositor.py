"""HTTP client for the RoomPrintz compositor (the image generation backend)."""

import base64
from dataclasses import dataclass, field
from typing import Optional

import requests
from flask import current_app

from tokenledger.billing.errors import DownstreamGenerationFailure
from tokenledger.observability import log_event

MODEL_HIGH_FIDELITY = "gemini-3"
MODEL_STANDARD = "gemini-2.5"
MODEL_VERSIONS = (MODEL_HIGH_FIDELITY, MODEL_STANDARD)

TOOL_FLAGS = (
    "enhancePhoto",
    "cleanupRoom",
    "repairDamage",
    "emptyRoom",
    "renovateRoom",
    "repaintWalls",
)


@dataclass
class StagingOptions:
    style_id: Optional[str] = None
    flooring_preset: Optional[str] = None
    room_type: Optional[str] = None
    model_version: str = MODEL_HIGH_FIDELITY
    tools: dict = field(default_factory=dict)

    def has_work(self) -> bool:
        return bool(self.style_id or self.flooring_preset or any(self.tools.values()))

    def to_payload(self) -> dict:
        payload = {flag: bool(self.tools.get(flag)) for flag in TOOL_FLAGS}
        payload.update({
            "styleId": self.style_id,
            "flooringPreset": self.flooring_preset,
            "roomType": self.room_type,
            "modelVersion": self.model_version,
        })
        return payload


@dataclass(frozen=True)
class CompositorResult:
    image_url: str
    original_image_url: Optional[str] = None


def call_compositor(image_bytes: bytes, options: StagingOptions) -> CompositorResult:
    """
    POST the image and staging options; return the staged image URL.
    Any failure is raised as DownstreamGenerationFailure.
    """
    cfg = current_app.config
    endpoint = (cfg.get("COMPOSITOR_URL") or "").strip()
    if not endpoint:
        raise DownstreamGenerationFailure("COMPOSITOR_URL is not configured")

    headers = {"Content-Type": "application/json"}
    api_key = cfg.get("COMPOSITOR_API_KEY")
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    payload = options.to_payload()
    payload["imageBase64"] = base64.b64encode(image_bytes).decode("ascii")

    log_event(
        "compositor.request",
        style_id=options.style_id,
        model_version=options.model_version,
        payload_size=len(payload["imageBase64"]),
    )
    try:
        r = requests.post(endpoint, headers=headers, json=payload, timeout=cfg.get("COMPOSITOR_TIMEOUT", 120))
    except requests.RequestException as exc:
        raise DownstreamGenerationFailure(f"Compositor unreachable: {exc}") from exc

    if r.status_code >= 400:
        log_event("compositor.http_error", level="error", status=r.status_code, body=r.text[:500])
        raise DownstreamGenerationFailure(f"Compositor backend error: {r.status_code}", status_code=r.status_code)

    try:
        data = r.json()
    except ValueError as exc:
        raise DownstreamGenerationFailure("Compositor returned a non-JSON response") from exc

    if not isinstance(data, dict) or data.get("error") or not data.get("imageUrl"):
        message = (data.get("error") if isinstance(data, dict) else None) or "Compositor did not return imageUrl"
        log_event("compositor.logical_error", level="error", error=message)
        raise DownstreamGenerationFailure(message)

    return CompositorResult(image_url=data["imageUrl"], original_image_url=data.get("originalImageUrl"))
