"""
Prometheus metrics for the EventGate service.

Distinct from the aggregate counters in the key/value backend: everything
here is per-process and resets on restart.
"""
from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry
import psutil
import os

# Steps finish in milliseconds unless they are retrying with backoff
STEP_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60)


class Telemetry:
    """Owns one CollectorRegistry and every metric exported at /metrics."""

    def __init__(self, service_name: str = "eventgate", version: str = "0.1.0", registry=None):
        self.service_name = service_name
        self.version = version
        self.registry = registry or CollectorRegistry()

        self._setup_http_metrics()
        self._setup_ingestion_metrics()
        self._setup_process_metrics()

        self.app_info = Info("app", "Application information", registry=self.registry)
        self.app_info.info({"service": service_name, "version": version})
        self.app_up = Gauge(
            "app_up",
            "Application up status (1=up, 0=down)",
            ["service", "version"],
            registry=self.registry,
        )
        self.app_up.labels(service=service_name, version=version).set(1)

    def _setup_http_metrics(self):
        labels = ["service", "method", "path"]
        self.http_requests_total = Counter(
            "http_requests_total", "Total HTTP requests", labels + ["status"], registry=self.registry
        )
        self.http_request_duration = Histogram(
            "http_request_duration_seconds", "HTTP request duration in seconds", labels, registry=self.registry
        )
        self.http_requests_active = Gauge(
            "http_requests_active", "Number of active HTTP requests", ["service"], registry=self.registry
        )
        self.http_requests_active.labels(service=self.service_name).set(0)

    def _setup_ingestion_metrics(self):
        self.rate_limit_decisions_total = Counter(
            "eventgate_rate_limit_decisions_total",
            "Front-door admission decisions",
            ["policy", "outcome"],
            registry=self.registry,
        )
        self.pipeline_runs_total = Counter(
            "eventgate_pipeline_runs_total",
            "Completed pipeline runs by terminal status",
            ["status"],
            registry=self.registry,
        )
        self.pipeline_runs_active = Gauge(
            "eventgate_pipeline_runs_active",
            "Pipeline runs currently in flight",
            registry=self.registry,
        )
        self.step_duration = Histogram(
            "eventgate_step_duration_seconds",
            "Pipeline step duration in seconds, including retries",
            ["step", "status"],
            buckets=STEP_BUCKETS,
            registry=self.registry,
        )
        self.step_retries_total = Counter(
            "eventgate_step_retries_total",
            "Step attempts that failed and were retried",
            ["step"],
            registry=self.registry,
        )

    def _setup_process_metrics(self):
        """Process-level metrics sampled from psutil."""
        self._process = psutil.Process(os.getpid())
        self._last_cpu_total = 0.0
        self.process_cpu_seconds = Counter(
            "process_cpu_seconds_total", "Total CPU time consumed by process", ["service"], registry=self.registry
        )
        self.process_memory_bytes = Gauge(
            "process_resident_memory_bytes", "Resident memory size in bytes", ["service"], registry=self.registry
        )
        self.process_open_fds = Gauge(
            "process_open_fds", "Number of open file descriptors", ["service"], registry=self.registry
        )
        self.update_system_metrics()

    def update_system_metrics(self):
        """Refresh CPU, memory and file descriptor gauges."""
        service = self.service_name
        try:
            cpu_times = self._process.cpu_times()
            cpu_total = cpu_times.user + cpu_times.system
            if cpu_total > self._last_cpu_total:
                self.process_cpu_seconds.labels(service=service).inc(cpu_total - self._last_cpu_total)
            self._last_cpu_total = cpu_total

            self.process_memory_bytes.labels(service=service).set(self._process.memory_info().rss)
            if hasattr(self._process, "num_fds"):
                self.process_open_fds.labels(service=service).set(self._process.num_fds())
        except psutil.Error:
            # Process metrics are best-effort
            return

    def record_admission(self, policy: str, allowed: bool):
        self.rate_limit_decisions_total.labels(
            policy=policy, outcome="allowed" if allowed else "rejected"
        ).inc()

    def record_step(self, step: str, status: str, duration_s: float, retries: int = 0):
        self.step_duration.labels(step=step, status=status).observe(duration_s)
        if retries:
            self.step_retries_total.labels(step=step).inc(retries)

    def record_run(self, status: str):
        self.pipeline_runs_total.labels(status=status).inc()
