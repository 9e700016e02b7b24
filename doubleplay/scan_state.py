from datetime import datetime
from .models import ScanDirection, ScanStateSnapshot


class ScanStateRecorder:
    """
    Mutable scan state owned by the scan queue.
    Readers only ever get a copy via snapshot().
    """

    def __init__(self):
        self._state = ScanStateSnapshot()

    def update_scan_job(self, direction: ScanDirection, start: datetime, end: datetime):
        # Forward request counts are per forward scan
        if direction == "forward" and self._state.current_scan_type != "forward":
            self._state.forward_requests = 0
        self._state.current_scan_type = direction
        self._state.current_scan_start = start
        self._state.current_scan_end = end

    def set_idle(self):
        self._state.current_scan_type = "idle"
        self._state.current_scan_start = None
        self._state.current_scan_end = None

    def increment_requests(self, count: int = 1):
        self._state.total_requests += count
        if self._state.current_scan_type == "forward":
            self._state.forward_requests += count
        elif self._state.current_scan_type == "backward":
            self._state.backward_requests += count

    def increment_retry_count(self) -> int:
        self._state.current_retry_count += 1
        return self._state.current_retry_count

    def reset_retry_count(self):
        self._state.current_retry_count = 0

    @property
    def retry_count(self) -> int:
        return self._state.current_retry_count

    def set_running(self, running: bool):
        self._state.is_running = running

    def set_queue_length(self, length: int):
        self._state.queue_length = length

    def snapshot(self) -> ScanStateSnapshot:
        return self._state.model_copy()
