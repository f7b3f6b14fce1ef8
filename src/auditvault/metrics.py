"""
Operational metrics for the ingestion pipeline.

Tracks: per-operation latency and failures, upload strategy usage, process memory.
Logs structured entries to runtime_cache/metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import threading
import time
from collections import defaultdict
from pathlib import Path

import psutil

from .config import CACHE_DIR


class _OperationStats:
    __slots__ = ("count", "failures", "total_latency_ms", "max_latency_ms")

    def __init__(self):
        self.count = 0
        self.failures = 0
        self.total_latency_ms = 0.0
        self.max_latency_ms = 0.0


class IngestMetrics:
    """Thread-safe ingestion metrics tracker with JSONL file logging."""

    def __init__(self, log_dir: str | Path = CACHE_DIR):
        self._lock = threading.Lock()
        self._start_time: float = time.time()

        self._operations: dict[str, _OperationStats] = defaultdict(_OperationStats)
        self._strategy_success: dict[str, int] = defaultdict(int)
        self._strategy_failure: dict[str, int] = defaultdict(int)

        # Logging.
        self._log_dir = Path(log_dir)
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._log_path = self._log_dir / "metrics.jsonl"

        # Process handle for memory tracking.
        self._process = psutil.Process(os.getpid())

    def record_operation(self, operation: str, latency_ms: float, success: bool, **fields) -> None:
        """Records one orchestrator call and appends it to the JSONL log."""
        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "operation": str(operation),
            "latency_ms": round(float(latency_ms), 2),
            "success": bool(success),
            **fields,
        }

        with self._lock:
            stats = self._operations[str(operation)]
            stats.count += 1
            stats.total_latency_ms += float(latency_ms)
            if latency_ms > stats.max_latency_ms:
                stats.max_latency_ms = float(latency_ms)
            if not success:
                stats.failures += 1

        # Append to JSONL file outside the lock.
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True, default=str) + "\n")
        except OSError:
            pass

    def record_strategy(self, strategy: str, success: bool) -> None:
        with self._lock:
            if success:
                self._strategy_success[str(strategy)] += 1
            else:
                self._strategy_failure[str(strategy)] += 1

    def get_summary(self) -> dict:
        """Returns a metrics snapshot."""
        with self._lock:
            operations = {
                name: {
                    "count": stats.count,
                    "failures": stats.failures,
                    "avg_latency_ms": round(stats.total_latency_ms / stats.count, 2) if stats.count else 0.0,
                    "max_latency_ms": round(stats.max_latency_ms, 2),
                }
                for name, stats in self._operations.items()
            }
            strategies = {
                name: {
                    "succeeded": self._strategy_success.get(name, 0),
                    "failed": self._strategy_failure.get(name, 0),
                }
                for name in sorted(set(self._strategy_success) | set(self._strategy_failure))
            }

        mem_info = self._process.memory_info()
        return {
            "uptime_seconds": round(time.time() - self._start_time, 1),
            "operations": operations,
            "upload_strategies": strategies,
            "memory": {
                "rss_mb": round(mem_info.rss / (1024 * 1024), 1),
                "vms_mb": round(mem_info.vms / (1024 * 1024), 1),
            },
        }


# Module-level singleton shared by the orchestrators and the API server.
metrics_collector = IngestMetrics()
