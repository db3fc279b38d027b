# services/webhook_gateway/metrics.py
"""Prometheus-метрики для *webhook gateway*.

> Запуск: вызовите `start_metrics_server()` один раз при старте процесса – он
> поднимет HTTP-endpoint `/metrics` на `API_METRICS_PORT` (по умолчанию 9101).
"""
from __future__ import annotations

import contextlib
import logging

from prometheus_client import Counter, start_http_server

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Metric objects (module-level singletons)
# ---------------------------------------------------------------------------
WEBHOOKS = Counter(
    "chatbudget_webhooks_total",
    "Входящие вебхуки по исходу (processed / duplicate / ignored)",
    ["outcome"],
)
INTENTS = Counter(
    "chatbudget_intents_total",
    "Намерения, определённые Gemini",
    ["intent"],
)
TRANSACTIONS_POSTED = Counter(
    "chatbudget_transactions_posted_total",
    "Транзакции, записанные в Actual",
    ["detail"],
)
BRANCH_FAILURES = Counter(
    "chatbudget_branch_failures_total",
    "Ветки, завершившиеся исключением",
    ["branch"],
)


def start_metrics_server(port: int) -> None:  # pragma: no cover – network
    """Запускает HTTP-эндпоинт `/metrics` в отдельном треде."""
    with contextlib.suppress(OSError):  # порт уже занят при повторном старте
        start_http_server(port)
        log.info("Prometheus metrics available on http://0.0.0.0:%s/metrics", port)
