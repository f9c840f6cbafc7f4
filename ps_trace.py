"""
Request-scoped tracing for the PlotScore analysis pipeline.

A TraceContext lives in thread-local storage for the duration of one
analysis request and collects:
  - pipeline stages (validate, score, narrative) with timing and errors
  - outbound calls (google_maps, gemini, razorpay, geoip) with status

Outbound clients call get_trace() and record into it when one is active,
so nothing needs to be threaded through function signatures.

Usage:
    ctx = TraceContext(trace_id=request_id)
    set_trace(ctx)
    try:
        with ctx.stage("validate"):
            ...
    finally:
        ctx.log_summary()
        clear_trace()
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class CallRecord:
    """One outbound HTTP call."""
    service: str          # "google_maps" | "gemini" | "razorpay" | "geoip"
    endpoint: str
    elapsed_ms: int
    status_code: int
    provider_status: str = ""
    stage: str = ""


@dataclass
class StageRecord:
    stage_name: str
    elapsed_ms: int = 0
    calls: int = 0
    error: str = ""


@dataclass
class TraceContext:
    """Timing data for a single analysis request."""
    trace_id: str
    started: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    calls: List[CallRecord] = field(default_factory=list)
    _current_stage: str = ""

    @contextmanager
    def stage(self, name: str):
        """Time a pipeline stage; exceptions are recorded and re-raised."""
        previous = self._current_stage
        self._current_stage = name
        t0 = time.time()
        error = ""
        try:
            yield self
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            raise
        finally:
            elapsed_ms = int((time.time() - t0) * 1000)
            calls = sum(1 for c in self.calls if c.stage == name)
            self.stages.append(StageRecord(name, elapsed_ms, calls, error))
            logger.info(
                "  [stage] trace=%s %s %s %dms calls=%d",
                self.trace_id, name, "ERR" if error else "OK", elapsed_ms, calls,
            )
            self._current_stage = previous

    def record_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
    ):
        self.calls.append(CallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            stage=self._current_stage,
        ))
        logger.info(
            "  [call] trace=%s stage=%s svc=%s ep=%s ms=%d http=%d provider=%s",
            self.trace_id, self._current_stage or "-", service, endpoint,
            elapsed_ms, status_code, provider_status,
        )

    def summary_dict(self) -> Dict[str, Any]:
        errored = [s for s in self.stages if s.error]
        if not self.stages:
            outcome = "empty"
        elif errored:
            outcome = "error" if len(errored) == len(self.stages) else "partial"
        else:
            outcome = "success"
        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": int((time.time() - self.started) * 1000),
            "total_calls": len(self.calls),
            "outcome": outcome,
            "stages": [
                {
                    "stage": s.stage_name,
                    "elapsed_ms": s.elapsed_ms,
                    "calls": s.calls,
                    "error": s.error or None,
                }
                for s in self.stages
            ],
        }

    def log_summary(self):
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d calls=%d stages=%d outcome=%s",
            s["trace_id"], s["total_elapsed_ms"], s["total_calls"],
            len(s["stages"]), s["outcome"],
        )


_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    _trace_local.ctx = ctx


def clear_trace():
    _trace_local.ctx = None
