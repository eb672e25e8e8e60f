"""
Cycle-scoped tracing for Aparto poll cycles and enrichment batches.

Provides a thread-local TraceContext that records:
  - Per-stage timing (fetch, sync, dispatch, ...), with error class if any
  - Per-outbound-call timing (service, endpoint, elapsed_ms, status)
  - One summary log line at the end of the cycle

Usage:
    from ap_trace import TraceContext, get_trace, set_trace, clear_trace

    ctx = TraceContext(trace_id="poll-1a2b3c")
    set_trace(ctx)
    with ctx.stage("fetch"):
        ...
    ctx.log_summary()
    clear_trace()

    # In HTTP clients:
    trace = get_trace()
    if trace:
        trace.record_api_call(...)
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class APICallRecord:
    """One outbound HTTP call (e-housing, Overpass, Routes, push)."""
    service: str          # "ehousing" | "overpass" | "google_routes" | "webpush"
    endpoint: str         # mirror host, "search", "computeRoutes", ...
    elapsed_ms: int
    status_code: int
    provider_status: str = ""
    stage: str = ""


@dataclass
class StageRecord:
    stage_name: str
    elapsed_ms: int = 0
    api_calls_made: int = 0
    error_class: str = ""
    error_message: str = ""


@dataclass
class TraceContext:
    """Accumulates timing data for a single cycle or batch."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    _current_stage: str = ""

    @contextmanager
    def stage(self, name: str):
        """Time a stage; exceptions are recorded and re-raised."""
        self._current_stage = name
        start = time.time()
        error_class = ""
        error_message = ""
        try:
            yield
        except Exception as e:
            error_class = type(e).__name__
            error_message = str(e)[:200]
            raise
        finally:
            self._current_stage = ""
            self._record_stage(name, start, time.time(), error_class, error_message)

    def _record_stage(self, name, start_ts, end_ts, error_class, error_message):
        rec = StageRecord(
            stage_name=name,
            elapsed_ms=int((end_ts - start_ts) * 1000),
            api_calls_made=sum(1 for c in self.api_calls if c.stage == name),
            error_class=error_class,
            error_message=error_message,
        )
        self.stages.append(rec)
        err_info = f" err={error_class}: {error_message}" if error_class else ""
        logger.info(
            "  [stage] trace=%s %s %s %dms api_calls=%d%s",
            self.trace_id,
            name,
            "ERR" if error_class else "OK",
            rec.elapsed_ms,
            rec.api_calls_made,
            err_info,
        )

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
    ):
        rec = APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            stage=self._current_stage,
        )
        self.api_calls.append(rec)
        logger.info(
            "  [api] trace=%s stage=%s svc=%s ep=%s ms=%d http=%d provider=%s",
            self.trace_id,
            self._current_stage or "-",
            service,
            endpoint,
            elapsed_ms,
            status_code,
            provider_status,
        )

    def summary_dict(self) -> Dict[str, Any]:
        total_elapsed = int((time.time() - self.request_start) * 1000)
        errored = [s for s in self.stages if s.error_class]
        if not self.stages:
            outcome = "empty"
        elif errored:
            outcome = "error"
        else:
            outcome = "success"
        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": total_elapsed,
            "total_api_calls": len(self.api_calls),
            "stages_completed": len(self.stages) - len(errored),
            "stages_errored": len(errored),
            "final_outcome": outcome,
        }

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d "
            "completed=%d errored=%d outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            s["stages_completed"],
            s["stages_errored"],
            s["final_outcome"],
        )


_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current thread's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    _trace_local.ctx = ctx


def clear_trace():
    _trace_local.ctx = None
