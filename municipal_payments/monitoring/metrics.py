"""
Prometheus metrics for payment and QR code monitoring.

Tracks:
- Payment initiations by service type and currency
- Status transitions
- QR code issuance and validation outcomes
- Expiration sweeps
- API request duration
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payments_created_total = Counter(
    "payments_created_total",
    "Total number of payments initiated",
    ["service_type", "currency"],
)

payment_amount = Histogram(
    "payment_amount",
    "Initiated payment amounts in major currency units",
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 5000, 10000),
)

payment_status_transitions_total = Counter(
    "payment_status_transitions_total",
    "Total payment status transitions",
    ["to_status", "result"],  # result: applied, rejected
)

# QR code metrics
qr_codes_generated_total = Counter(
    "qr_codes_generated_total",
    "Total QR codes bound to payments",
    ["operation"],  # generate, regenerate
)

qr_code_validations_total = Counter(
    "qr_code_validations_total",
    "Total QR code validation attempts",
    ["result"],  # valid, invalid_code, code_expired, code_no_longer_valid
)

# Expiration metrics
payments_expired_total = Counter(
    "payments_expired_total",
    "Total payments expired by the sweeper",
    ["sweep"],
)

expiration_sweep_duration_seconds = Histogram(
    "expiration_sweep_duration_seconds",
    "Expiration sweep duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

expiration_sweep_last_run_timestamp = Gauge(
    "expiration_sweep_last_run_timestamp",
    "Timestamp of last expiration sweep",
)

# API metrics
api_request_duration_seconds = Histogram(
    "api_request_duration_seconds",
    "API request duration in seconds",
    ["method", "status_code"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment_created(service_type: str, currency: str, amount: float) -> None:
        """Record a payment initiation."""
        payments_created_total.labels(service_type=service_type, currency=currency).inc()
        payment_amount.observe(amount)

    @staticmethod
    def record_status_transition(to_status: str, result: str) -> None:
        """Record an applied or rejected status transition."""
        payment_status_transitions_total.labels(to_status=to_status, result=result).inc()

    @staticmethod
    def record_qr_code_generated(operation: str) -> None:
        """Record a QR code bound to a payment."""
        qr_codes_generated_total.labels(operation=operation).inc()

    @staticmethod
    def record_qr_code_validation(result: str) -> None:
        """Record a QR code validation outcome."""
        qr_code_validations_total.labels(result=result).inc()

    @staticmethod
    def record_expiration_sweep(sweep: str, expired_count: int, duration_seconds: float) -> None:
        """Record an expiration sweep."""
        payments_expired_total.labels(sweep=sweep).inc(expired_count)
        expiration_sweep_duration_seconds.observe(duration_seconds)
        expiration_sweep_last_run_timestamp.set(time.time())

    @staticmethod
    def record_request_duration(method: str, status_code: int, duration_seconds: float) -> None:
        """Record API request duration."""
        api_request_duration_seconds.labels(
            method=method, status_code=str(status_code)
        ).observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
