"""
Analysis pipeline and payment/session correlator.

create_session() runs validate -> score (-> narrative for pro) and only
persists once every collaborator call has finished, so a provider outage
never leaves a half-built session behind.  The stored result is the full,
ungated ScoredReport; tier gating happens at read time in plan_gate.

Session state machine, owned exclusively by this module:

    pending --(verified payment)--> paid
    pending --(signature mismatch)--> failed

paid and failed are terminal.  A gateway-side checkout failure only fails
the order; the session stays pending so the payer can start a new order.
"""

import logging
import math
import os
import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional

import models
import plan_gate
from currency import convert, to_minor_units
from errors import (
    AcknowledgementRequired,
    AlreadyPaid,
    FreeLimitReached,
    InvalidInput,
    LocationBlocked,
    NotPaid,
    SessionFailed,
    UnknownOrder,
    UnknownSession,
    VerificationFailed,
)
from location_validator import ValidationResult, validate
from narrative import generate_recommendations
from payment_gateway import RazorpayClient
from places import Coordinate, PlacesClient, parse_coordinate
from ps_trace import TraceContext, clear_trace, set_trace
from score_engine import ScoredReport, score
from scoring_config import PROPERTY_TYPES, TIER_BASE_PRICES, normalize_tier

logger = logging.getLogger(__name__)

FREE_DAILY_LIMIT = int(os.environ.get("FREE_DAILY_LIMIT", "3"))
MAX_ADDRESS_LENGTH = 500
MIN_AMOUNT = 1
MAX_AMOUNT = 1_000_000_000

# Webhook events that mean the money was captured.
_PAID_EVENTS = ("payment.captured", "order.paid")


@dataclass
class AnalysisRequest:
    coordinate: Coordinate
    amount: int
    property_type: str
    tier: str
    address: Optional[str] = None


@dataclass
class CreatedSession:
    session_id: str
    tier: str
    validation: ValidationResult
    blocked: bool = False


# ---------------------------------------------------------------------------
# Input shape checks (no I/O)
# ---------------------------------------------------------------------------

def _parse_amount(amount) -> int:
    if isinstance(amount, bool):
        raise InvalidInput("amount must be a whole number")
    if isinstance(amount, float):
        if not math.isfinite(amount) or not amount.is_integer():
            raise InvalidInput("amount must be a whole number")
        amount = int(amount)
    elif isinstance(amount, str):
        try:
            amount = int(amount.strip())
        except ValueError:
            raise InvalidInput("amount must be a whole number") from None
    elif not isinstance(amount, int):
        raise InvalidInput("amount must be a whole number")
    if amount < MIN_AMOUNT or amount > MAX_AMOUNT:
        raise InvalidInput(f"amount must be between {MIN_AMOUNT} and {MAX_AMOUNT:,}")
    return amount


def parse_request(lat, lng, amount, property_type, tier, address=None) -> AnalysisRequest:
    """Reject malformed input before any collaborator is called."""
    coordinate = parse_coordinate(lat, lng)
    parsed_amount = _parse_amount(amount)

    if not isinstance(property_type, str) or property_type.strip().lower() not in PROPERTY_TYPES:
        raise InvalidInput(
            f"propertyType must be one of: {', '.join(PROPERTY_TYPES)}"
        )
    canonical_tier = normalize_tier(tier)
    if not canonical_tier:
        raise InvalidInput("tier must be one of: free, paid, pro")

    if address is not None:
        if not isinstance(address, str):
            raise InvalidInput("address must be a string")
        address = address.strip() or None
        if address and len(address) > MAX_ADDRESS_LENGTH:
            raise InvalidInput(f"address must be at most {MAX_ADDRESS_LENGTH} characters")

    return AnalysisRequest(
        coordinate=coordinate,
        amount=parsed_amount,
        property_type=property_type.strip().lower(),
        tier=canonical_tier,
        address=address,
    )


# ---------------------------------------------------------------------------
# createSession
# ---------------------------------------------------------------------------

def _narrative_facts(req: AnalysisRequest, report: ScoredReport) -> dict:
    return {
        "address": req.address,
        "coordinate": req.coordinate.as_param(),
        "property_type": req.property_type,
        "amount": req.amount,
        "location_score": report.location_score,
        "essential_coverage": report.essential_coverage,
        "growth_prediction": report.growth_prediction,
        "top_places": [p.name for p in report.nearby_places[:5]],
    }


def free_usage_status(client_ip: Optional[str], daily_limit: Optional[int] = None) -> dict:
    """Free quota for *client_ip*; an unidentifiable client gets none."""
    limit = FREE_DAILY_LIMIT if daily_limit is None else daily_limit
    used = models.get_free_usage_count(client_ip) if client_ip else 0
    return {
        "freeUsageCount": used,
        "canUseFree": bool(client_ip) and used < limit,
        "dailyLimit": limit,
    }


def create_session(
    maps: PlacesClient,
    lat,
    lng,
    amount,
    property_type,
    tier,
    address=None,
    acknowledge_risk: bool = False,
    client_ip: Optional[str] = None,
    narrative_fn: Optional[Callable[[dict], Optional[List[str]]]] = None,
    request_id: Optional[str] = None,
) -> CreatedSession:
    """Validate and score a location, then persist it as a pending session.

    A hard-blocked location is still persisted (blocked, no result) so the
    block can be reported against a session id; ordering or reading it
    raises LocationBlocked.  ProviderUnavailable propagates and nothing is
    stored.
    """
    req = parse_request(lat, lng, amount, property_type, tier, address)
    narrative_fn = narrative_fn or generate_recommendations

    if req.tier == "free" and client_ip:
        if models.get_free_usage_count(client_ip) >= FREE_DAILY_LIMIT:
            raise FreeLimitReached(
                f"Free analysis limit of {FREE_DAILY_LIMIT} per day reached"
            )

    trace = TraceContext(trace_id=request_id or uuid.uuid4().hex[:10])
    set_trace(trace)
    try:
        with trace.stage("validate"):
            places = maps.nearby_places(req.coordinate)
            validation = validate(maps, req.coordinate, places)

        if not validation.can_proceed:
            session_id = models.create_session(
                req.coordinate.lat, req.coordinate.lng, req.amount,
                req.property_type, req.tier,
                validation=validation.to_dict(), result=None, blocked=True,
                address=req.address, client_ip=client_ip,
            )
            models.log_event("location_blocked", session_id, {"tier": req.tier})
            logger.warning("[%s] Location blocked for session %s", trace.trace_id, session_id)
            return CreatedSession(session_id, req.tier, validation, blocked=True)

        if validation.requires_acknowledgement and not acknowledge_risk:
            raise AcknowledgementRequired(
                "This location has very limited essential services; "
                "resubmit with acknowledgeRisk=true to continue."
            )

        with trace.stage("score"):
            report = score(req.coordinate, places)

        if req.tier == "pro":
            with trace.stage("narrative"):
                report.recommendations = narrative_fn(_narrative_facts(req, report))
            if report.recommendations is None:
                report.warnings.append(plan_gate.RECOMMENDATIONS_UNAVAILABLE)

        if req.tier == "free" and client_ip:
            if not models.consume_free_usage(client_ip, FREE_DAILY_LIMIT):
                raise FreeLimitReached(
                    f"Free analysis limit of {FREE_DAILY_LIMIT} per day reached"
                )

        result = report.to_dict()
        result["_trace"] = trace.summary_dict()
        session_id = models.create_session(
            req.coordinate.lat, req.coordinate.lng, req.amount,
            req.property_type, req.tier,
            validation=validation.to_dict(), result=result,
            risk_acknowledged=validation.requires_acknowledgement,
            address=req.address, client_ip=client_ip,
        )
    finally:
        trace.log_summary()
        clear_trace()

    models.log_event("session_created", session_id, {
        "tier": req.tier,
        "risk_level": validation.risk_level,
        "location_score": report.location_score,
    })
    logger.info("[%s] Created %s session %s", trace.trace_id, req.tier, session_id)
    return CreatedSession(session_id, req.tier, validation)


# ---------------------------------------------------------------------------
# createOrder
# ---------------------------------------------------------------------------

def _order_view(order: dict, session_id: str) -> dict:
    return {
        "orderId": order["order_id"],
        "sessionId": session_id,
        "amount": order["amount"],
        "amountMinor": order["amount_minor"],
        "currencyCode": order["currency_code"],
        "gatewayKey": order["gateway_key"],
        "status": order["status"],
    }


def _load_session(session_id: str) -> dict:
    session = models.get_session(session_id) if session_id else None
    if not session:
        raise UnknownSession(f"Unknown session: {session_id}")
    return session


def create_order(
    gateway: RazorpayClient,
    session_id: str,
    tier: Optional[str] = None,
    country_code: Optional[str] = None,
) -> dict:
    """Create (or return the existing paid) payment order for a session.

    Reads the session status before touching the gateway.  A session that
    is already paid gets its paying order back with no new charge.
    """
    session = _load_session(session_id)
    if session["blocked"]:
        raise LocationBlocked("This location is blocked; payment is not available.")

    session_tier = session["plan_tier"]
    if tier is not None and normalize_tier(tier) != session_tier:
        raise InvalidInput("tier cannot be changed after the session is created")
    if session_tier == "free":
        raise InvalidInput("The free tier does not require payment")

    if session["status"] == "paid":
        order = models.get_paid_order_for_session(session_id)
        if order:
            logger.info("Session %s already paid; returning order %s", session_id, order["order_id"])
            return _order_view(order, session_id)
        raise AlreadyPaid(f"Session {session_id} is already paid")
    if session["status"] == "failed":
        raise SessionFailed(f"Session {session_id} has failed; start a new analysis")

    price = convert(TIER_BASE_PRICES[session_tier], country_code)
    amount_minor = to_minor_units(price)
    gateway_order = gateway.create_order(
        amount_minor,
        price.currency_code,
        receipt=f"ps_{session_id}",
        notes={"session_id": session_id, "tier": session_tier},
    )
    order_id = gateway_order["id"]
    models.create_order(
        order_id, session_id, price.amount, amount_minor,
        price.currency_code, gateway.key_id,
    )
    models.log_event("order_created", session_id, {
        "order_id": order_id,
        "currency": price.currency_code,
        "amount": price.amount,
    })
    logger.info(
        "Created order %s for session %s: %s %s",
        order_id, session_id, price.amount, price.currency_code,
    )
    return _order_view(models.get_order(order_id), session_id)


# ---------------------------------------------------------------------------
# confirmPayment
# ---------------------------------------------------------------------------

def _settle(order_id: str, payment_id: str, session_id: str) -> str:
    """Apply the paid transition; resolve races by re-reading state."""
    if models.mark_order_paid(order_id, payment_id):
        models.log_event("payment_confirmed", session_id, {
            "order_id": order_id, "payment_id": payment_id,
        })
        logger.info("Session %s paid via order %s", session_id, order_id)
        return session_id

    order = models.get_order(order_id)
    if order and order["status"] == "paid":
        return session_id
    session = _load_session(session_id)
    if session["status"] == "paid":
        raise AlreadyPaid(f"Session {session_id} was paid by a different order")
    if session["status"] == "failed":
        raise SessionFailed(f"Session {session_id} has failed")
    raise UnknownOrder(f"Order {order_id} cannot be settled")


def confirm_payment(
    gateway: RazorpayClient,
    order_id: str,
    payment_id: str,
    signature: Optional[str],
) -> str:
    """Verify a checkout callback and mark its session paid. Returns the session id.

    The browser callback is untrusted: the signature is always checked
    against HMAC(order_id|payment_id) before anything about the session is
    revealed or changed.  Repeating a confirmation with the same valid
    signature for an already-paid order returns the same session id.
    """
    order = models.get_order(order_id) if order_id else None
    if not order:
        raise UnknownOrder(f"Unknown order: {order_id}")
    session_id = order["session_id"]

    if not gateway.verify_payment_signature(order_id, payment_id, signature):
        # paid is terminal; a forged callback against it changes nothing
        if order["status"] != "paid":
            models.mark_session_failed(session_id, order_id)
        models.log_event("verification_failed", session_id, {"order_id": order_id})
        logger.warning("Signature mismatch for order %s (session %s)", order_id, session_id)
        raise VerificationFailed("Payment signature verification failed")

    if order["status"] == "paid":
        return session_id
    return _settle(order_id, payment_id, session_id)


def record_payment_failure(order_id: str, reason: str = "") -> str:
    """Gateway reported a failed checkout. The session stays pending."""
    order = models.get_order(order_id) if order_id else None
    if not order:
        raise UnknownOrder(f"Unknown order: {order_id}")
    if models.mark_order_failed(order_id):
        models.log_event("payment_failed", order["session_id"], {
            "order_id": order_id, "reason": reason,
        })
        logger.info("Order %s failed: %s", order_id, reason or "no reason given")
    return order["session_id"]


def apply_gateway_event(event: dict) -> str:
    """Apply an already signature-verified webhook event. Returns what happened."""
    event_type = event.get("event", "")
    payload = event.get("payload") or {}
    payment = (payload.get("payment") or {}).get("entity") or {}
    order = (payload.get("order") or {}).get("entity") or {}
    order_id = payment.get("order_id") or order.get("id")

    if event_type in _PAID_EVENTS:
        payment_id = payment.get("id")
        if not order_id or not payment_id:
            logger.warning("Webhook %s missing order/payment id", event_type)
            return "ignored"
        stored = models.get_order(order_id)
        if not stored:
            logger.warning("Webhook %s for unknown order %s", event_type, order_id)
            return "ignored"
        try:
            _settle(order_id, payment_id, stored["session_id"])
        except (AlreadyPaid, SessionFailed, UnknownOrder) as e:
            # Captured money with no session to credit; needs manual reconciliation.
            models.log_event("payment_orphaned", stored["session_id"], {
                "order_id": order_id, "payment_id": payment_id, "reason": str(e),
            })
            logger.error(
                "Webhook %s for order %s captured payment %s but was not applied: %s",
                event_type, order_id, payment_id, e,
            )
            return "orphaned"
        return "paid"

    if event_type == "payment.failed":
        if not order_id or not models.get_order(order_id):
            return "ignored"
        reason = payment.get("error_description") or payment.get("error_code") or ""
        record_payment_failure(order_id, reason)
        return "failed"

    logger.info("Ignoring webhook event %s", event_type or "<none>")
    return "ignored"


# ---------------------------------------------------------------------------
# getResult
# ---------------------------------------------------------------------------

def get_result(session_id: str) -> dict:
    """Return the tier-gated view of a session's stored report."""
    session = _load_session(session_id)
    if session["blocked"] or session["result"] is None:
        raise LocationBlocked("No report is available for a blocked location")
    tier = session["plan_tier"]
    if tier != "free" and session["status"] != "paid":
        raise NotPaid(f"Session {session_id} has not been paid for")

    report = ScoredReport.from_dict(session["result"])
    view = plan_gate.project(report, tier)
    view["session_id"] = session_id
    view["status"] = session["status"]
    models.log_event("result_viewed", session_id, {"tier": tier})
    return view
