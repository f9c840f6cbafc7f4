import os
import sys
import logging
import uuid

from flask import Flask, request, jsonify, g
from flask_wtf.csrf import CSRFProtect, generate_csrf
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

import analysis_sessions
from currency import resolve_country, tier_prices
from errors import InvalidInput, PlotScoreError, ProviderUnavailable
from location_validator import validate
from models import init_db
from payment_gateway import RazorpayClient
from places import PlacesClient, parse_coordinate
from scoring_config import normalize_tier

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking: gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            # Places/geocoding upstream outages
            if exc_type is not None and issubclass(exc_type, ProviderUnavailable):
                sentry_sdk.add_breadcrumb(
                    category="places",
                    message=msg,
                    level="warning",
                )
                return None
            # Gateway / narrative / geo-IP request failures
            if exc_type is not None and issubclass(exc_type, requests.exceptions.RequestException):
                sentry_sdk.add_breadcrumb(
                    category="http",
                    message=msg,
                    level="warning",
                )
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("GIT_COMMIT_SHA"),
        environment=os.environ.get("PLOTSCORE_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'plotscore-dev-key')
if (not app.config['SECRET_KEY'] or app.config['SECRET_KEY'] == 'plotscore-dev-key') and os.environ.get('FLASK_DEBUG') != '1':
    print("FATAL: SECRET_KEY is not set. Refusing to start with insecure default.", file=sys.stderr)
    print("Set SECRET_KEY in your environment or .env file.", file=sys.stderr)
    sys.exit(1)

# Behind a reverse proxy: trust one X-Forwarded-For hop so the limiter,
# the free-usage counter and geo-IP all see the real client address.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

# CSRF protection: browser clients fetch a token from /api/csrf-token and
# send it as an X-CSRFToken header on every POST.
csrf = CSRFProtect(app)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: protects cost-sensitive endpoints from abuse.
# In-memory storage is per-process; the effective limit scales with the
# number of workers.
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_ANALYZE = os.environ.get("RATE_LIMIT_ANALYZE", "10/hour")
RATE_LIMIT_ORDER = os.environ.get("RATE_LIMIT_ORDER", "5/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

# ---------------------------------------------------------------------------
# Startup: warn immediately if required config is missing
# ---------------------------------------------------------------------------
if not os.environ.get("GOOGLE_MAPS_API_KEY"):
    logger.warning(
        "GOOGLE_MAPS_API_KEY is not set. "
        "Analyses will fail until it is configured. "
        "For local development, copy .env.example to .env and add your key."
    )
if not os.environ.get("RAZORPAY_KEY_ID") or not os.environ.get("RAZORPAY_KEY_SECRET"):
    logger.warning("Razorpay keys are not set; paid tiers cannot be checked out.")


def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = _generate_request_id()


def _check_service_config():
    """
    Validate required service configuration.
    Returns (is_ok, missing_keys) tuple.
    """
    missing = []
    if not os.environ.get("GOOGLE_MAPS_API_KEY"):
        missing.append("GOOGLE_MAPS_API_KEY")
    return (len(missing) == 0, missing)


def _maps_client():
    config_ok, missing = _check_service_config()
    if not config_ok:
        logger.error("[%s] Missing required env vars: %s", g.request_id, missing)
        raise ProviderUnavailable(
            "Location services are not configured: " + ", ".join(missing)
        )
    return PlacesClient(os.environ["GOOGLE_MAPS_API_KEY"])


def _gateway():
    return RazorpayClient()


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidInput("Request body must be a JSON object")
    return data


def _client_ip():
    return request.remote_addr or None


def _request_country():
    return resolve_country(
        timezone=request.headers.get("X-Timezone", ""),
        locale=request.headers.get("Accept-Language", ""),
        client_ip=request.remote_addr,
    )


# ---------------------------------------------------------------------------
# Analysis pipeline
# ---------------------------------------------------------------------------

@app.route("/api/csrf-token")
def csrf_token():
    return jsonify({"csrfToken": generate_csrf()})


@app.route("/api/analysis", methods=["POST"])
@limiter.limit(RATE_LIMIT_ANALYZE)
def create_analysis():
    """Validate, score and persist an analysis session.

    Body: {lat, lng, amount, propertyType, tier, address?, acknowledgeRisk?}
    A hard-blocked location still gets a session id but canProceed=false
    and no report.
    """
    data = _json_body()
    client_ip = _client_ip()
    if client_ip is None and normalize_tier(data.get("tier")) == "free":
        raise InvalidInput("Free analyses require an identifiable client address")
    created = analysis_sessions.create_session(
        _maps_client(),
        data.get("lat"),
        data.get("lng"),
        data.get("amount"),
        data.get("propertyType"),
        data.get("tier"),
        address=data.get("address"),
        acknowledge_risk=data.get("acknowledgeRisk") is True,
        client_ip=client_ip,
        request_id=g.request_id,
    )
    validation = created.validation.to_dict()
    validation["canProceed"] = created.validation.can_proceed
    return jsonify({
        "sessionId": created.session_id,
        "tier": created.tier,
        "blocked": created.blocked,
        "validation": validation,
    }), 201


@app.route("/api/analysis/<session_id>/order", methods=["POST"])
@limiter.limit(RATE_LIMIT_ORDER)
def create_order(session_id):
    """Create a gateway order for a paid/pro session. Body: {tier?}"""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    order = analysis_sessions.create_order(
        _gateway(),
        session_id,
        tier=data.get("tier"),
        country_code=_request_country(),
    )
    return jsonify(order)


@app.route("/api/payment/verify", methods=["POST"])
def verify_payment():
    """Checkout success callback from the browser.

    Body: {orderId, paymentId, signature}. Untrusted: the signature is
    verified server-side before the session is marked paid.
    """
    data = _json_body()
    session_id = analysis_sessions.confirm_payment(
        _gateway(),
        data.get("orderId"),
        data.get("paymentId"),
        data.get("signature"),
    )
    return jsonify({"sessionId": session_id, "status": "paid"})


@app.route("/api/result/<session_id>")
def get_result(session_id):
    return jsonify(analysis_sessions.get_result(session_id))


@app.route("/api/validate", methods=["POST"])
@limiter.limit(RATE_LIMIT_ANALYZE)
def validate_location():
    data = _json_body()
    coordinate = parse_coordinate(data.get("lat"), data.get("lng"))
    result = validate(_maps_client(), coordinate)
    body = result.to_dict()
    body["canProceed"] = result.can_proceed
    return jsonify(body)


@app.route("/api/geocode", methods=["POST"])
@limiter.limit("30/minute")
def geocode():
    data = _json_body()
    address = data.get("address")
    if not isinstance(address, str) or not address.strip():
        raise InvalidInput("address is required")
    if len(address) > analysis_sessions.MAX_ADDRESS_LENGTH:
        raise InvalidInput(
            f"address must be at most {analysis_sessions.MAX_ADDRESS_LENGTH} characters"
        )
    coordinate, formatted = _maps_client().geocode(address.strip())
    return jsonify({
        "lat": coordinate.lat,
        "lng": coordinate.lng,
        "formattedAddress": formatted,
    })


@app.route("/api/pricing")
def pricing():
    country = _request_country()
    return jsonify({"country": country, "tiers": tier_prices(country)})


@app.route("/api/usage-status")
def usage_status():
    return jsonify(analysis_sessions.free_usage_status(_client_ip()))


# ---------------------------------------------------------------------------
# Razorpay Webhook: server-to-server payment confirmation
# ---------------------------------------------------------------------------

@app.route("/webhook/razorpay", methods=["POST"])
@limiter.exempt
@csrf.exempt  # Server-to-server; Razorpay signs payloads with the webhook secret.
def razorpay_webhook():
    """Receive gateway webhook events (payment.captured, order.paid, payment.failed).

    Always returns 200 to acknowledge receipt, except on verification failure.
    """
    payload = request.get_data()
    signature = request.headers.get("X-Razorpay-Signature", "")

    if not _gateway().verify_webhook_signature(payload, signature):
        logger.warning("[%s] Razorpay webhook verification failed", g.request_id)
        return "", 400

    event = request.get_json(silent=True)
    if not isinstance(event, dict):
        return "", 400

    outcome = analysis_sessions.apply_gateway_event(event)
    logger.info("[%s] Webhook %s -> %s", g.request_id, event.get("event"), outcome)
    return "", 200


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    config_ok, missing = _check_service_config()
    return jsonify({
        "status": "ok" if config_ok else "degraded",
        "missing_keys": missing,
    }), 200 if config_ok else 503


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(PlotScoreError)
def plotscore_error(e):
    request_id = getattr(g, "request_id", None)
    if e.status_code >= 500:
        logger.error("[%s] %s: %s", request_id, type(e).__name__, e)
    else:
        logger.info("[%s] %s: %s", request_id, type(e).__name__, e)
    return jsonify({
        "error": e.error_code,
        "message": str(e),
        "request_id": request_id,
    }), e.status_code


@app.errorhandler(429)
def rate_limit_exceeded(e):
    return jsonify({
        "error": "rate_limited",
        "message": "Too many requests. Please wait and try again.",
        "request_id": getattr(g, "request_id", None),
    }), 429


@app.errorhandler(404)
def not_found(e):
    return jsonify({
        "error": "not_found",
        "message": "Not found",
        "request_id": getattr(g, "request_id", None),
    }), 404


@app.errorhandler(500)
def internal_error(e):
    return jsonify({
        "error": "internal_error",
        "message": "Something went wrong. Please try again.",
        "request_id": getattr(g, "request_id", None),
    }), 500


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

# Initialize database on import (safe to call repeatedly)
init_db()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
