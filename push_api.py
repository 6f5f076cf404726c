from flask import Blueprint, current_app, jsonify, request

from dispatcher import DEFAULT_BODY, DEFAULT_TITLE, DEFAULT_URL
from errors import ConfigurationError, InvalidSubscription

push_api = Blueprint("push_api", __name__)

# -------------------------------
# Helpers
# -------------------------------

def _registry():
    return current_app.extensions["push_registry"]

def _dispatcher():
    return current_app.extensions["push_dispatcher"]

def _json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None

def _text(data: dict, key: str, default: str) -> str:
    value = data.get(key)
    if value is None:
        return default
    value = str(value).strip()
    return value or default

# -------------------------------
# Error mapping
# -------------------------------

@push_api.app_errorhandler(405)
def method_not_allowed(_e):
    return jsonify({"error": "Method not allowed"}), 405

@push_api.errorhandler(InvalidSubscription)
def invalid_subscription(e):
    return jsonify({"ok": False, "error": str(e) or "Invalid subscription payload"}), 400

@push_api.errorhandler(ConfigurationError)
def configuration_error(e):
    return jsonify({"error": str(e)}), 500

# -------------------------------
# Public endpoints (user opt-in)
# -------------------------------

@push_api.get("/api/push/public-key")
def push_public_key():
    vapid = current_app.config["PUSH_SETTINGS"].vapid
    if not vapid.public_key:
        return jsonify({"ok": False, "error": "VAPID_PUBLIC_KEY not configured"}), 500
    return jsonify({"ok": True, "publicKey": vapid.public_key})

@push_api.post("/api/push/register")
@push_api.post("/api/subscribe")
def push_register():
    # A non-object body is rejected by parse_subscription.
    result = _registry().register(request.get_json(silent=True))
    return jsonify(result.to_response())

@push_api.post("/api/push/unregister")
def push_unregister():
    data = _json_body() or {}
    endpoint = str(data.get("endpoint") or "").strip()
    if not endpoint:
        return jsonify({"ok": False, "error": "Missing endpoint"}), 400
    return jsonify({"ok": True, "deactivated": _registry().deactivate(endpoint)})

# -------------------------------
# Operator endpoints
# -------------------------------

@push_api.post("/api/push/broadcast")
@push_api.post("/api/send-all")
def push_broadcast():
    data = _json_body() or {}
    result = _dispatcher().broadcast_all(
        title=_text(data, "title", DEFAULT_TITLE),
        body=_text(data, "body", DEFAULT_BODY),
        url=_text(data, "url", DEFAULT_URL),
    )
    return jsonify(result.to_response())
