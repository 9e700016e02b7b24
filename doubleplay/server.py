from fastapi import FastAPI, Depends, HTTPException, Header
from fastapi.responses import PlainTextResponse
from typing import Optional
from .config import settings
from .progress import ProgressMonitor
from .scan_queue import ScanQueue

app = FastAPI(title="KEXP Double Play Scanner")
scan_queue: Optional[ScanQueue] = None
progress_monitor: Optional[ProgressMonitor] = None

def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")

@app.get("/healthz")
def healthz():
    if not scan_queue:
        return {"status": "starting"}

    health = scan_queue.source.health_status()
    snap = scan_queue.snapshot()
    if not snap.is_running:
        status = "stopped"
    elif not health.is_healthy:
        # Upstream trouble is retried, so report it without failing the probe
        status = "degraded"
    else:
        status = "ok"
    return {"status": status, "upstream": health.model_dump()}

@app.get("/status", dependencies=[Depends(get_token)])
def status():
    if not scan_queue:
        return {"status": "not_ready"}

    data = scan_queue.data
    return {
        "scanner": scan_queue.snapshot().model_dump(mode="json"),
        "upstream": scan_queue.source.health_status().model_dump(),
        "progress": progress_monitor.report().model_dump(mode="json") if progress_monitor else None,
        "data": {
            "start_time": data.start_time.isoformat(),
            "end_time": data.end_time.isoformat(),
            "counts": data.counts.model_dump(),
            "historical_floor": scan_queue.historical_floor().isoformat(),
            "backward_complete": scan_queue.backward_complete,
        },
        "config": {
            "scan_interval_minutes": settings.SCAN_INTERVAL_MINUTES,
            "max_hours_per_request": settings.MAX_HOURS_PER_REQUEST,
        }
    }

@app.get("/metrics", response_class=PlainTextResponse)
def metrics():
    # Simple prometheus-style text format
    if not scan_queue:
        return ""

    snap = scan_queue.snapshot()
    health = scan_queue.source.health_status()
    counts = scan_queue.data.counts
    lines = [
        f'doubleplay_requests_total {snap.total_requests}',
        f'doubleplay_requests{{direction="forward"}} {snap.forward_requests}',
        f'doubleplay_requests{{direction="backward"}} {snap.backward_requests}',
        f'doubleplay_queue_length {snap.queue_length}',
        f'doubleplay_retry_count {snap.current_retry_count}',
        f'doubleplay_running {int(snap.is_running)}',
        f'doubleplay_upstream_healthy {int(health.is_healthy)}',
        f'doubleplay_upstream_consecutive_failures {health.consecutive_failures}',
        f'doubleplay_data_start_timestamp {scan_queue.data.start_time.timestamp()}',
        f'doubleplay_data_end_timestamp {scan_queue.data.end_time.timestamp()}',
    ]
    for name in ("legitimate", "partial", "mistake"):
        lines.append(f'doubleplay_double_plays{{classification="{name}"}} {getattr(counts, name)}')
    return "\n".join(lines)
