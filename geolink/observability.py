from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
import time

# Metrics definitions
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"]
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0]
)

CACHE_HITS = Counter("cache_hits_total", "Total cache hits", ["cache"])
CACHE_MISSES = Counter("cache_misses_total", "Total cache misses", ["cache"])
REDIRECT_TOTAL = Counter("redirect_total", "Total redirects", ["matched"])
REDIRECT_404_TOTAL = Counter("redirect_404_total", "Total failed redirects (404)")
REDIRECT_ERRORS_TOTAL = Counter("redirect_errors_total", "Redirects that ended in a 500")
GEO_LOOKUPS = Counter("geo_lookups_total", "External geolocation lookups", ["result"])
VISIT_WRITE_FAILURES = Counter("visit_write_failures_total", "Visits that could not be recorded", ["reason"])


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()

        response = await call_next(request)

        process_time = time.perf_counter() - start_time

        status_code = str(response.status_code)
        method = request.method
        path = request.url.path

        # Collapse ids and short codes to keep label cardinality bounded
        if path.startswith("/v1/links/rules/"):
             metric_path = "/v1/links/rules/{rule_id}"
        elif path.startswith("/v1/links/check-short-code/"):
             metric_path = "/v1/links/check-short-code/{code}"
        elif path.startswith("/v1/links/") and path.endswith("/rules"):
             metric_path = "/v1/links/{link_id}/rules"
        elif path.startswith("/v1/links/"):
             metric_path = "/v1/links/{link_id}"
        elif path in ("/v1/links", "/metrics", "/health"):
             metric_path = path
        elif len(path) > 1 and "/" not in path[1:]: # Root redirect /{code}
             metric_path = "/{code}"
        else:
             metric_path = "other"

        HTTP_REQUESTS_TOTAL.labels(method=method, path=metric_path, status=status_code).inc()
        HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=metric_path).observe(process_time)

        return response

def metrics_endpoint(request: Request):
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
