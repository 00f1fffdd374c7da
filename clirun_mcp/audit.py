"""Token audit trail for clirun-mcp."""

from __future__ import annotations

import csv
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock


class TokenAuditWriter:
    """CSV writer for the per-call token audit trail.

    One row per tool call, recording estimated tokens in and out and whether
    the response was compacted. The file and its header are created on the
    first write.
    """

    CSV_HEADERS = [
        "timestamp",
        "correlation_id",
        "server",
        "tool",
        "tokens_in",
        "tokens_out",
        "compacted",
        "latency_ms",
        "success",
    ]

    def __init__(self, csv_path: str | Path, enabled: bool = True):
        self.csv_path = Path(csv_path)
        self.enabled = enabled
        self._lock = Lock()
        self._initialized = False

    def _ensure_file(self) -> None:
        if self._initialized:
            return
        self.csv_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.csv_path.exists():
            with open(self.csv_path, "w", newline="") as f:
                csv.writer(f).writerow(self.CSV_HEADERS)
        self._initialized = True

    def record(
        self,
        correlation_id: str,
        server: str,
        tool: str,
        tokens_in: int,
        tokens_out: int,
        compacted: bool,
        latency_ms: float,
        success: bool,
    ) -> None:
        """Append a row to the audit CSV."""
        if not self.enabled:
            return

        with self._lock:
            self._ensure_file()
            with open(self.csv_path, "a", newline="") as f:
                csv.writer(f).writerow([
                    datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                    correlation_id,
                    server,
                    tool,
                    tokens_in,
                    tokens_out,
                    int(compacted),
                    round(latency_ms, 2),
                    "ok" if success else "error",
                ])
