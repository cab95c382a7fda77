"""Request metrics: a daily JSONL audit log plus Prometheus text exposition.

Every finished request appends one record to ``requests-YYYYMMDD.jsonl`` and
updates ``lightup_requests_total`` / ``lightup_request_latency_seconds``. The
rendered exposition is served on ``/metrics`` and mirrored to
``prometheus.prom`` in the metrics directory.
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
import time
from collections import defaultdict
from typing import Any, Optional

_PROM_FILE = "prometheus.prom"
_HISTOGRAM_BUCKETS: tuple[float, ...] = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)


def _new_histogram_state() -> dict[str, Any]:
    return {"buckets": [0] * (len(_HISTOGRAM_BUCKETS) + 1), "count": 0, "sum": 0.0}


class PromMetrics:
    __slots__ = ("_lock", "_counter", "_histogram")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter: defaultdict[tuple[str, str, str], int] = defaultdict(int)
        self._histogram: defaultdict[tuple[str, str], dict[str, Any]] = defaultdict(_new_histogram_state)

    def record(self, payload: dict[str, Any]) -> None:
        provider = str(payload.get("provider") or "unknown")
        mode = str(payload.get("mode") or "unknown")
        outcome = str(payload.get("status") or "unknown")
        latency_seconds = max(float(payload.get("latency_ms") or 0.0) / 1000.0, 0.0)

        with self._lock:
            self._counter[(provider, mode, outcome)] += 1
            hist_state = self._histogram[(provider, outcome)]
            buckets = hist_state["buckets"]
            for idx, bound in enumerate(_HISTOGRAM_BUCKETS):
                if latency_seconds <= bound:
                    buckets[idx] += 1
            buckets[-1] += 1
            hist_state["count"] += 1
            hist_state["sum"] += latency_seconds

    def render(self) -> str:
        with self._lock:
            return self._render_locked()

    def _render_locked(self) -> str:
        lines: list[str] = [
            "# HELP lightup_requests_total Total number of dispatched requests",
            "# TYPE lightup_requests_total counter",
        ]
        for (provider, mode, outcome), value in sorted(self._counter.items()):
            lines.append(
                f'lightup_requests_total{{provider="{provider}",mode="{mode}",status="{outcome}"}} {value}'
            )
        lines.append("# HELP lightup_request_latency_seconds Time from dispatch to the terminal event")
        lines.append("# TYPE lightup_request_latency_seconds histogram")
        for (provider, outcome), state in sorted(self._histogram.items()):
            buckets = state["buckets"]
            for idx, bound in enumerate(_HISTOGRAM_BUCKETS):
                le_value = format(bound, ".6g")
                lines.append(
                    f'lightup_request_latency_seconds_bucket{{provider="{provider}",status="{outcome}",le="{le_value}"}} {buckets[idx]}'
                )
            lines.append(
                f'lightup_request_latency_seconds_bucket{{provider="{provider}",status="{outcome}",le="+Inf"}} {buckets[-1]}'
            )
            lines.append(
                f'lightup_request_latency_seconds_count{{provider="{provider}",status="{outcome}"}} {state["count"]}'
            )
            lines.append(
                f'lightup_request_latency_seconds_sum{{provider="{provider}",status="{outcome}"}} {state["sum"]}'
            )
        return "\n".join(lines) + "\n"

    def write(self, dirpath: str) -> None:
        os.makedirs(dirpath, exist_ok=True)
        prom_path = os.path.join(dirpath, _PROM_FILE)
        tmp_path = f"{prom_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(self.render())
        os.replace(tmp_path, prom_path)


class MetricsLogger:
    """Writes audit records; ``dirpath=None`` keeps metrics in memory only."""

    def __init__(self, dirpath: Optional[str] = None):
        self.dir = dirpath
        if self.dir:
            os.makedirs(self.dir, exist_ok=True)
        self._lock: Optional[asyncio.Lock] = None
        self.prom = PromMetrics()

    @staticmethod
    def _file(dirpath: str) -> str:
        return os.path.join(dirpath, f"requests-{time.strftime('%Y%m%d')}.jsonl")

    async def write(self, record: dict[str, Any]) -> None:
        self.prom.record(record)
        dirpath = self.dir
        if not dirpath:
            return
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            with open(self._file(dirpath), "a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")
            self.prom.write(dirpath)

    def render(self) -> str:
        return self.prom.render()
