from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

chunks_received_total = Counter("chunks_received_total", "Total chunks received")
bytes_received_total = Counter("bytes_received_total", "Total chunk bytes received")
duplicate_chunks_total = Counter("duplicate_chunks_total", "Chunks re-sent after already being stored")
merges_completed_total = Counter("merges_completed_total", "Upload sessions merged successfully")
merges_failed_total = Counter("merges_failed_total", "Upload sessions whose merge failed")
instant_uploads_total = Counter("instant_uploads_total", "Dedup checks that found an identical file")
images_uploaded_total = Counter("images_uploaded_total", "Images stored through the batch endpoint")

merges_inflight = Gauge("merges_inflight", "Merge jobs currently running")

merge_duration_seconds = Histogram("merge_duration_seconds", "Time spent assembling chunks into a file")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
