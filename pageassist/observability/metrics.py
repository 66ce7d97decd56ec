"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from pageassist.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OUTCOME = "outcome"
    KIND = "kind"
    DOMAIN = "domain"
    ERROR_TYPE = "error_type"


class PageAssistMetrics:
    """
    Centralized metrics for the PageAssist API.

    Covers:
    - HTTP requests (rate, duration, in flight)
    - Chat turns (rate by outcome and domain)
    - LLM gateway (latency, tokens)
    - Ledger (entries by kind, debit amounts)
    - Write verification and errors
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "pageassist_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "pageassist_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "pageassist_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        )

        self.http_requests_in_progress = Gauge(
            "pageassist_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.METHOD],
        )

        # ====================================================================
        # Chat Metrics
        # ====================================================================
        self.chat_turns_total = Counter(
            "pageassist_chat_turns_total",
            "Total chat turns by outcome",
            [MetricLabels.OUTCOME, MetricLabels.DOMAIN],
        )

        # ====================================================================
        # LLM Gateway Metrics
        # ====================================================================
        self.llm_request_duration_seconds = Histogram(
            "pageassist_llm_request_duration_seconds",
            "LLM gateway call duration in seconds",
            ["success"],
            buckets=(0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0),
        )

        self.llm_tokens_total = Counter(
            "pageassist_llm_tokens_total",
            "Total tokens billed",
            ["direction"],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_entries_total = Counter(
            "pageassist_ledger_entries_total",
            "Total ledger entries appended",
            [MetricLabels.KIND],
        )

        self.debit_amount = Histogram(
            "pageassist_debit_amount",
            "Usage debit amounts in currency units",
            buckets=(0.0001, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
        )

        self.db_write_verifications_total = Counter(
            "pageassist_db_write_verifications_total",
            "Total write verification checks",
            ["success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "pageassist_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.ENDPOINT],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_chat_turn(self, outcome: str, domain: str) -> None:
        """Record one chat turn outcome (answered, replayed, insufficient_balance, ...)."""
        self.chat_turns_total.labels(outcome=outcome, domain=domain).inc()

    def record_llm_call(
        self, success: bool, duration: float, input_tokens: int = 0, output_tokens: int = 0
    ) -> None:
        """Record LLM gateway call metrics."""
        self.llm_request_duration_seconds.labels(success=str(success)).observe(duration)
        if success:
            self.llm_tokens_total.labels(direction="input").inc(input_tokens)
            self.llm_tokens_total.labels(direction="output").inc(output_tokens)

    def record_ledger_entry(self, kind: str, amount: float) -> None:
        """Record an appended ledger entry."""
        self.ledger_entries_total.labels(kind=kind).inc()
        if kind == "usage":
            self.debit_amount.observe(abs(amount))

    def record_write_verification(self, success: bool) -> None:
        """Record a write verification outcome."""
        self.db_write_verifications_total.labels(success=str(success)).inc()

    def record_error(self, error_type: str, endpoint: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, endpoint=endpoint).inc()


# Global metrics instance
metrics = PageAssistMetrics()
