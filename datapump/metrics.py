"""Loader metrics, pushed to Dynatrace in line protocol.

Every line carries the environment and the target table as dimensions, so
several loaders can report into the same tenant:

    datapump.batches.loaded,env=prod,table=analytics.orders count=1
"""

from pathlib import Path

import httpx
import structlog

from datapump.config import MetricsConfig

log = structlog.get_logger()

METRIC_PREFIX = "datapump"
INGEST_PATH = "/api/v2/metrics/ingest"


class MetricsClient:
    """Buffers loader metrics until the end of each loop iteration."""

    def __init__(self, config: MetricsConfig, table: str = "") -> None:
        self.config = config
        self.dimensions = {"env": config.env}
        if table:
            self.dimensions["table"] = table
        self._lines: list[str] = []
        self._token: str | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.config.endpoint)

    @property
    def pending(self) -> list[str]:
        return list(self._lines)

    def batch_loaded(self, data_files: int, duration_seconds: float) -> None:
        self._add("batches.loaded", "count", 1)
        self._add("data_files.loaded", "count", data_files)
        self._add("batch.duration_seconds", "gauge", round(duration_seconds, 3))

    def batch_failed(self, policy: str) -> None:
        self._add("batches.failed", "count", 1, policy=policy)

    def idle(self) -> None:
        """An iteration that found no new control file."""
        self._add("polls.empty", "count", 1)

    def _add(self, name: str, kind: str, value: float, **extra: str) -> None:
        dims = {**self.dimensions, **extra}
        key = ",".join([f"{METRIC_PREFIX}.{name}", *(f"{k}={v}" for k, v in dims.items())])
        self._lines.append(f"{key} {kind}={value}")

    def _read_token(self) -> str | None:
        if self._token is None:
            path = Path(self.config.token_path)
            if not path.is_file():
                log.debug("dynatrace_token_not_found", path=str(path))
                return None
            self._token = path.read_text().strip()
        return self._token

    def flush(self) -> None:
        """Push the buffered lines. Failures are logged, never raised."""
        lines, self._lines = self._lines, []
        if not lines or not self.enabled:
            return

        token = self._read_token()
        if not token:
            log.debug("metrics_flush_skipped", reason="no token", dropped=len(lines))
            return

        try:
            response = httpx.post(
                self.config.endpoint.rstrip("/") + INGEST_PATH,
                headers={
                    "Authorization": f"Api-Token {token}",
                    "Content-Type": "text/plain; charset=utf-8",
                },
                content="\n".join(lines),
                timeout=10,
            )
        except httpx.HTTPError as e:
            log.warning("metrics_flush_error", error=str(e), dropped=len(lines))
            return

        if response.status_code != 202:
            log.error(
                "metrics_flush_failed",
                status=response.status_code,
                body=response.text[:500],
            )
            return

        log.debug("metrics_flushed", count=len(lines))
