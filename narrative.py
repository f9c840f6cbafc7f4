"""
Narrative recommendations for pro-tier reports.

Turns structured facts about a scored location into a few short
recommendation strings using the Gemini generateContent REST endpoint.

This collaborator is optional.  Every failure mode (missing key, timeout,
HTTP error, unparseable reply) returns None so the caller can omit the
recommendations and attach a warning instead of failing the report.
"""

import logging
import os
import re
import time
from typing import List, Optional

import requests

from ps_trace import get_trace

logger = logging.getLogger(__name__)

_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"
GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-1.5-flash")
NARRATIVE_TIMEOUT = float(os.environ.get("NARRATIVE_TIMEOUT_SECONDS", "8"))
MAX_RECOMMENDATIONS = 3
MIN_LINE_CHARS = 10

_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


def build_prompt(facts: dict) -> str:
    """Render the fact sheet the model is allowed to use."""
    places = ", ".join(facts.get("top_places") or []) or "limited amenities detected"
    covered = ", ".join(facts.get("essential_coverage") or []) or "none"
    return (
        "You are a real estate location analyst. Using ONLY the facts below, "
        f"write exactly {MAX_RECOMMENDATIONS} short recommendations (25-40 words each) "
        "as plain text lines without numbering or bullets.\n\n"
        f"Location: {facts.get('address') or facts.get('coordinate')}\n"
        f"Property type: {facts.get('property_type')}\n"
        f"Budget: {facts.get('amount')}\n"
        f"Location score: {facts.get('location_score')} / 5\n"
        f"Essential services covered: {covered}\n"
        f"Estimated annual growth: {facts.get('growth_prediction')}%\n"
        f"Nearby places: {places}\n"
    )


def parse_recommendations(text: str) -> List[str]:
    """Split model output into cleaned recommendation lines."""
    lines = []
    for raw in text.splitlines():
        line = _BULLET_RE.sub("", raw).strip()
        if len(line) > MIN_LINE_CHARS:
            lines.append(line)
    return lines[:MAX_RECOMMENDATIONS]


def generate_recommendations(
    facts: dict,
    api_key: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Optional[List[str]]:
    """Return up to three recommendation strings, or None on any failure."""
    api_key = api_key if api_key is not None else os.environ.get("GEMINI_API_KEY")
    if not api_key:
        logger.warning("GEMINI_API_KEY is not set; skipping recommendations")
        return None
    if timeout is None:
        timeout = NARRATIVE_TIMEOUT

    url = f"{_API_BASE}/{GEMINI_MODEL}:generateContent"
    body = {"contents": [{"parts": [{"text": build_prompt(facts)}]}]}
    trace = get_trace()
    t0 = time.time()
    try:
        resp = requests.post(url, params={"key": api_key}, json=body, timeout=timeout)
    except requests.Timeout:
        logger.warning("Narrative service timed out after %.1fs", timeout)
        if trace:
            trace.record_call("gemini", "generateContent",
                              int((time.time() - t0) * 1000), 0, "TIMEOUT")
        return None
    except requests.RequestException as e:
        logger.warning("Narrative service request failed: %s", e)
        return None

    if trace:
        trace.record_call("gemini", "generateContent",
                          int((time.time() - t0) * 1000), resp.status_code,
                          "OK" if resp.ok else "ERROR")
    if not resp.ok:
        logger.warning("Narrative service returned HTTP %d", resp.status_code)
        return None

    try:
        data = resp.json()
        text = data["candidates"][0]["content"]["parts"][0]["text"]
    except (ValueError, KeyError, IndexError, TypeError):
        logger.warning("Narrative service returned an unexpected payload")
        return None

    recommendations = parse_recommendations(text)
    if not recommendations:
        logger.warning("Narrative service reply contained no usable lines")
        return None
    return recommendations
