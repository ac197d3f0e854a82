"""
Token accounting for the chat path.

Every /chat outcome is counted (latency, tokens, estimated cost, error code) and
appended as one JSON line to <metrics_dir>/metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import threading
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path

import psutil

from .observability import get_logger

logger = get_logger(__name__)

# USD per million tokens.
_OPENAI_PRICING: dict[str, tuple[float, float]] = {
    "gpt-3.5-turbo": (0.50, 1.50),
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
}
_FALLBACK_PRICING = _OPENAI_PRICING["gpt-3.5-turbo"]


def estimate_cost_usd(model: str, input_tokens: int, output_tokens: int) -> float:
    input_price, output_price = _OPENAI_PRICING.get(model, _FALLBACK_PRICING)
    return (input_tokens * input_price + output_tokens * output_price) / 1_000_000


class MetricsCollector:
    """Lock-guarded chat counters plus a best-effort JSONL log."""

    def __init__(self, log_dir: str | Path = "logs"):
        self._lock = threading.Lock()
        self._chats = 0
        self._latency_total_ms = 0.0
        self._latency_min_ms: float | None = None
        self._latency_max_ms = 0.0
        self._input_tokens = 0
        self._output_tokens = 0
        self._tokens_used = 0
        self._cost_usd = 0.0
        self._errors_by_code: Counter[str] = Counter()

        self._log_path = Path(log_dir) / "metrics.jsonl"
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._process = psutil.Process(os.getpid())

    @property
    def log_path(self) -> Path:
        return self._log_path

    def record_request(
        self,
        latency_ms: float,
        success: bool,
        input_tokens: int = 0,
        output_tokens: int = 0,
        tokens_used: int | None = None,
        model: str = "",
        error_code: str | None = None,
    ) -> None:
        cost_usd = estimate_cost_usd(model, input_tokens, output_tokens)
        if tokens_used is None:
            tokens_used = input_tokens + output_tokens

        with self._lock:
            self._chats += 1
            self._latency_total_ms += latency_ms
            if self._latency_min_ms is None or latency_ms < self._latency_min_ms:
                self._latency_min_ms = latency_ms
            self._latency_max_ms = max(self._latency_max_ms, latency_ms)
            self._input_tokens += input_tokens
            self._output_tokens += output_tokens
            self._tokens_used += tokens_used
            self._cost_usd += cost_usd
            if not success:
                self._errors_by_code[error_code or "UNKNOWN"] += 1

        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "success": success,
            "model": model,
            "latency_ms": round(latency_ms, 2),
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "tokens_used": tokens_used,
            "cost_usd": round(cost_usd, 8),
        }
        if error_code:
            entry["error_code"] = error_code
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry) + "\n")
        except OSError as exc:
            logger.warning("metrics_write_failed", path=str(self._log_path), error=str(exc))

    def get_summary(self) -> dict:
        with self._lock:
            chats = self._chats
            summary = {
                "total_requests": chats,
                "latency": {
                    "avg_ms": round(self._latency_total_ms / chats, 2) if chats else 0.0,
                    "min_ms": round(self._latency_min_ms or 0.0, 2),
                    "max_ms": round(self._latency_max_ms, 2),
                },
                "tokens": {
                    "total_input_tokens": self._input_tokens,
                    "total_output_tokens": self._output_tokens,
                    "total_tokens_used": self._tokens_used,
                },
                "cost": {
                    "total_usd": round(self._cost_usd, 6),
                    "avg_per_chat_usd": round(self._cost_usd / chats, 6) if chats else 0.0,
                },
                "errors": {
                    "count": sum(self._errors_by_code.values()),
                    "by_code": dict(self._errors_by_code),
                },
            }
        summary["memory_rss_mb"] = round(self._process.memory_info().rss / (1024 * 1024), 1)
        return summary
