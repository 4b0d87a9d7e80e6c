"""OpenTelemetry metric instruments for booking and reconciliation flows.

Instruments are created lazily from the global MeterProvider, so recording
before ``init_metrics`` is a silent no-op.

Instruments
-----------
  slotkeeper.bookings.created_total        Counter
  slotkeeper.bookings.compensated_total    Counter
  slotkeeper.bookings.cancelled_total      Counter  (label: external=deleted|failed|none)
  slotkeeper.webhook.notifications_total   Counter  (label: outcome)
  slotkeeper.reconcile.actions_total       Counter  (label: action)
  slotkeeper.watches.renewals_total        Counter  (label: result=renewed|failed)
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "slotkeeper"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, installs a MeterProvider with a
    periodic OTLP gRPC exporter.  Otherwise the global no-op provider stays
    in place.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    return metrics.get_meter(_METER_NAME)


class SlotkeeperMetrics:
    """Lazily-created counters for the core flows.

    Safe to construct at import time; instruments bind to whatever provider
    is installed when they are first used.
    """

    def __init__(self) -> None:
        self._counters: dict[str, metrics.Counter] = {}

    def _counter(self, name: str, description: str, unit: str) -> metrics.Counter:
        counter = self._counters.get(name)
        if counter is None:
            counter = get_meter().create_counter(name=name, description=description, unit=unit)
            self._counters[name] = counter
        return counter

    def booking_created(self) -> None:
        self._counter(
            "slotkeeper.bookings.created_total",
            "Bookings committed to both the local store and the provider",
            "bookings",
        ).add(1)

    def booking_compensated(self) -> None:
        self._counter(
            "slotkeeper.bookings.compensated_total",
            "Local bookings rolled back after the provider write failed",
            "bookings",
        ).add(1)

    def booking_cancelled(self, external: str) -> None:
        self._counter(
            "slotkeeper.bookings.cancelled_total",
            "Bookings cancelled, labelled by the external delete result",
            "bookings",
        ).add(1, {"external": external})

    def notification(self, outcome: str) -> None:
        self._counter(
            "slotkeeper.webhook.notifications_total",
            "Inbound provider notifications by terminal outcome",
            "notifications",
        ).add(1, {"outcome": outcome})

    def reconcile_action(self, action: str) -> None:
        self._counter(
            "slotkeeper.reconcile.actions_total",
            "Per-booking reconciliation actions",
            "bookings",
        ).add(1, {"action": action})

    def watch_renewal(self, result: str) -> None:
        self._counter(
            "slotkeeper.watches.renewals_total",
            "Watch renewal attempts by result",
            "watches",
        ).add(1, {"result": result})


core_metrics = SlotkeeperMetrics()
