"""
Langfuse tracing for import sessions.

Each import stage (decode, validate, commit) is recorded as a span under a
trace per session so slow or failing imports can be inspected. Tracing is
off unless LANGFUSE_PUBLIC_KEY is set, and a Langfuse failure is logged but
never interrupts the import.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
from langfuse import Langfuse
from langfuse.types import TraceContext

from household_ledger.config import TracingSettings, get_settings

logger = structlog.get_logger(__name__)


@dataclass
class TraceHandle:
    """Lightweight wrapper for Langfuse trace context."""

    client: Any
    trace_context: TraceContext
    root_span: Optional[object] = None

    def end(self):
        """End the root span if it is still open."""
        if self.root_span:
            try:
                self.root_span.end()
            except Exception as e:
                logger.warning("trace_end_failed", error=str(e))
            finally:
                self.root_span = None


class ImportTracer:
    """Wrapper for the Langfuse client with import-pipeline span helpers."""

    def __init__(self, settings: Optional[TracingSettings] = None):
        settings = settings or get_settings().tracing
        self.enabled = bool(settings.public_key)
        self.client = None

        if self.enabled:
            try:
                self.client = Langfuse(
                    public_key=settings.public_key,
                    secret_key=settings.secret_key,
                    host=settings.host,
                    debug=settings.debug,
                )
                logger.info("langfuse_initialized", host=settings.host)
            except Exception as e:
                logger.warning("langfuse_init_failed", error=str(e))
                self.enabled = False

    def create_trace(
        self,
        name: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[TraceHandle]:
        """
        Create a new trace for one import operation.

        Args:
            name: Name of the operation (e.g., "import_upload")
            user_id: Owner of the import session
            metadata: Session id, file name, counts

        Returns:
            TraceHandle or None if tracing is disabled
        """
        if not self.enabled or not self.client:
            return None

        try:
            trace_id = self.client.create_trace_id()
            trace_context = TraceContext(trace_id=trace_id, user_id=user_id or "system")
            root_span = self.client.start_span(
                trace_context=trace_context,
                name=name,
                metadata=metadata or {},
            )
            return TraceHandle(client=self.client, trace_context=trace_context, root_span=root_span)
        except Exception as e:
            logger.warning("trace_create_failed", name=name, error=str(e))
            return None

    def add_span(
        self,
        trace: Optional[TraceHandle],
        name: str,
        input_text: Optional[str] = None,
        output_text: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Log one pipeline stage to the trace.

        Args:
            trace: Trace object from create_trace()
            name: Stage name (decode, validate, commit)
            input_text: Optional input summary
            output_text: Optional output summary
            metadata: Optional additional metadata
        """
        if not trace or not self.client:
            return

        try:
            span = self.client.start_span(
                trace_context=trace.trace_context,
                name=name,
                input=input_text or "",
                metadata=metadata or {},
            )
            if output_text:
                span.update(output=output_text)
            span.end()
        except Exception as e:
            logger.warning("trace_span_failed", name=name, error=str(e))

    def end_trace(self, trace: Optional[TraceHandle]) -> None:
        """Close the root span and flush pending events."""
        if not trace:
            return
        try:
            trace.end()
            if self.client:
                self.client.flush()
        except Exception as e:
            logger.warning("trace_flush_failed", error=str(e))


_tracer: Optional[ImportTracer] = None


def get_tracer() -> ImportTracer:
    """Get or create the global tracer instance."""
    global _tracer
    if _tracer is None:
        _tracer = ImportTracer()
    return _tracer
