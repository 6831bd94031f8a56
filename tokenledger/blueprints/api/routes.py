import hmac
import uuid

from flask import request, jsonify, current_app, abort
from flask_login import login_required, current_user
from flask_wtf.csrf import generate_csrf

from . import bp
from tokenledger.billing import ledger, spend
from tokenledger.billing.errors import MissingCustomerMapping
from tokenledger.extensions import csrf, limiter
from tokenledger.services import staging
from tokenledger.services.compositor import MODEL_VERSIONS, TOOL_FLAGS, StagingOptions


def _bad_request(message: str):
    return jsonify({"error": message}), 400


def _clean_str(value, limit: int = 255):
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value[:limit] or None


# ----- Session helpers -----

@bp.get("/csrf-token")
@login_required
def csrf_token():
    """JSON clients echo this back in the X-CSRFToken header on POSTs."""
    return jsonify({"csrfToken": generate_csrf()})


# ----- Token RPCs -----

@bp.get("/tokens/balance")
@login_required
def token_balance():
    return jsonify({"balance": ledger.balance_of(current_user.id)})


@bp.post("/tokens/spend")
@login_required
def token_spend():
    data = request.get_json(silent=True) or {}
    cost = data.get("cost")
    external_id = _clean_str(data.get("externalId"))
    reason = _clean_str(data.get("reason")) or "spend"

    if not isinstance(cost, int) or isinstance(cost, bool) or cost <= 0:
        return _bad_request("cost must be a positive integer")
    if not external_id:
        return _bad_request("externalId is required")

    result = spend.try_spend(current_user.id, cost, external_id, reason)
    return jsonify(result.to_dict()), (200 if result.success else 402)


def _valid_service_key() -> bool:
    secret = current_app.config.get("INTERNAL_API_KEY")
    if not secret:
        return False
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return False
    return hmac.compare_digest(auth[len("Bearer "):].encode("utf-8"), secret.encode("utf-8"))


# Generation pipeline only: customers never refund their own jobs
@csrf.exempt
@bp.post("/tokens/refund")
def token_refund():
    if not _valid_service_key():
        abort(403)

    data = request.get_json(silent=True) or {}
    user_id = data.get("userId")
    external_id = _clean_str(data.get("externalId"))
    reason = _clean_str(data.get("reason")) or "refund"
    if not isinstance(user_id, int) or isinstance(user_id, bool) or user_id <= 0:
        return _bad_request("userId must be a positive integer")
    if not external_id:
        return _bad_request("externalId is required")

    try:
        result = spend.refund(user_id, external_id, reason)
    except MissingCustomerMapping:
        return jsonify({"error": "unknown_user"}), 404
    return jsonify({
        "ok": True,
        "applied": result.applied,
        "balance": ledger.balance_of(user_id),
    })


# ----- Generation -----

def _flag(name: str) -> bool:
    return (request.form.get(name) or "").strip().lower() == "true"


def _staging_options():
    flooring = _clean_str(request.form.get("flooringPreset"), 64)
    model_version = _clean_str(request.form.get("modelVersion"), 32) or current_app.config.get("DEFAULT_MODEL_VERSION")
    if model_version not in MODEL_VERSIONS:
        return None, f"modelVersion must be one of {', '.join(MODEL_VERSIONS)}"
    return StagingOptions(
        style_id=_clean_str(request.form.get("styleId"), 64),
        flooring_preset=None if flooring == "none" else flooring,
        room_type=_clean_str(request.form.get("roomType"), 64),
        model_version=model_version,
        tools={name: _flag(name) for name in TOOL_FLAGS},
    ), None


@bp.post("/stage-room")
@limiter.limit("30/minute")
@login_required
def stage_room():
    upload = request.files.get("file")
    if upload is None:
        return _bad_request("Missing or invalid file in form-data (expected 'file').")

    options, error = _staging_options()
    if error:
        return _bad_request(error)
    if not options.has_work():
        return _bad_request("No styleId and no photo tools selected. Nothing to do for stage-room.")

    image_bytes = upload.read()
    if not image_bytes:
        return _bad_request("Uploaded file is empty.")

    # Client retries reuse their Idempotency-Key so one job is charged once
    job_id = _clean_str(request.headers.get("Idempotency-Key"), 128) or str(uuid.uuid4())

    outcome = staging.stage_room(current_user.id, image_bytes, options, job_id)
    if outcome.insufficient_balance:
        return jsonify({
            "error": "insufficient_balance",
            "balance": outcome.balance,
            "cost": outcome.cost,
        }), 402
    if not outcome.success:
        status = 409 if outcome.error in ("job_already_refunded", "job_already_charged") else 502
        return jsonify({"error": outcome.error, "jobId": outcome.job_id, "balance": outcome.balance}), status

    return jsonify({
        "imageUrl": outcome.image_url,
        "originalImageUrl": outcome.original_image_url,
        "jobId": outcome.job_id,
        "cost": outcome.cost,
        "balance": outcome.balance,
    })
