"""Prometheus-compatible metrics for HTTP requests and background jobs."""

import time
import logging
from typing import Dict, List, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)


class MetricsCollector:
    """Collects request and job metrics in Prometheus exposition format."""

    def __init__(self):
        self.request_count: Dict[str, int] = {}
        self.error_count: Dict[int, int] = {}
        self.active_requests: int = 0
        self.job_count: Dict[Tuple[str, str], int] = {}
        self.job_duration: Dict[str, List[float]] = {}

    def record_request(self, method: str, path: str, status: int, duration: float):
        key = f"{method} {self._normalize_path(path)}"
        self.request_count[key] = self.request_count.get(key, 0) + 1
        if status >= 400:
            self.error_count[status] = self.error_count.get(status, 0) + 1

    def record_job(self, job_type: str, outcome: str, duration: float):
        """Record one job execution. ``outcome`` is completed, retried or failed."""
        key = (job_type, outcome)
        self.job_count[key] = self.job_count.get(key, 0) + 1
        durations = self.job_duration.setdefault(job_type, [])
        durations.append(duration)
        if len(durations) > 1000:
            self.job_duration[job_type] = durations[-1000:]

    def reset(self) -> None:
        self.__init__()

    @staticmethod
    def _normalize_path(path: str) -> str:
        """Replace numeric IDs with :id to limit cardinality."""
        parts = path.split("/")
        return "/".join(":id" if p.isdigit() else p for p in parts)

    def get_prometheus_metrics(self) -> str:
        lines: List[str] = []
        lines.append("# HELP http_requests_total Total HTTP requests")
        lines.append("# TYPE http_requests_total counter")
        for key, count in sorted(self.request_count.items()):
            method, path = key.split(" ", 1)
            lines.append(f'http_requests_total{{method="{method}",path="{path}"}} {count}')

        lines.append("# HELP http_errors_total Total HTTP errors by status code")
        lines.append("# TYPE http_errors_total counter")
        for code, count in sorted(self.error_count.items()):
            lines.append(f'http_errors_total{{status="{code}"}} {count}')

        lines.append("# HELP http_active_requests Current active requests")
        lines.append("# TYPE http_active_requests gauge")
        lines.append(f"http_active_requests {self.active_requests}")

        lines.append("# HELP jobs_processed_total Background jobs processed by type and outcome")
        lines.append("# TYPE jobs_processed_total counter")
        for (job_type, outcome), count in sorted(self.job_count.items()):
            lines.append(f'jobs_processed_total{{job_type="{job_type}",outcome="{outcome}"}} {count}')

        lines.append("# HELP job_duration_seconds Background job duration")
        lines.append("# TYPE job_duration_seconds summary")
        for job_type, durations in sorted(self.job_duration.items()):
            if durations:
                avg = sum(durations) / len(durations)
                p99 = sorted(durations)[int(len(durations) * 0.99)] if len(durations) > 1 else durations[0]
                lines.append(f'job_duration_seconds{{job_type="{job_type}",quantile="0.99"}} {p99:.4f}')
                lines.append(f'job_duration_seconds{{job_type="{job_type}",quantile="0.5"}} {avg:.4f}')

        return "\n".join(lines) + "\n"


metrics = MetricsCollector()


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware that records request metrics."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        metrics.active_requests += 1
        start = time.time()
        try:
            response = await call_next(request)
            metrics.record_request(
                request.method,
                request.url.path,
                response.status_code,
                time.time() - start,
            )
            return response
        except Exception:
            metrics.record_request(request.method, request.url.path, 500, time.time() - start)
            raise
        finally:
            metrics.active_requests -= 1
