# services/webhook_gateway/main.py
"""FastAPI шлюз, принимающий вебхуки WAHA и отвечающий пользователю в WhatsApp.

* **POST  /webhook**  события WAHA (``message`` обрабатывается, прочие – нет).
* **GET   /health**   простая проверка живости (ping БД идемпотентности).

❗ DTO-модели вынесены в `services.webhook_gateway.schemas`, бизнес-логика –
в `services.webhook_gateway.orchestrator`.
"""
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Any, Callable, Dict

import ngrok
import uvicorn
from fastapi import Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse

from db.idempotency import WebhookEventStore
from db.session import get_sessionmaker
from libs.actual import ActualClient
from libs.config import Settings, get_settings
from libs.errors import UpstreamError
from libs.gemini import GeminiAssistant
from libs.sentry import init_sentry, sentry_capture
from libs.waha import WahaClient

from services.webhook_gateway.metrics import start_metrics_server
from services.webhook_gateway.orchestrator import WebhookOrchestrator
from services.webhook_gateway.schemas import WebhookRequest, WebhookResponse

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[Settings], WebhookOrchestrator]


def build_orchestrator(settings: Settings) -> WebhookOrchestrator:
    """Собирает оркестратор из настроек окружения."""
    return WebhookOrchestrator(
        store=WebhookEventStore(get_sessionmaker(), ttl_seconds=settings.idempotency_ttl_seconds),
        messenger=WahaClient.from_settings(settings),
        llm=GeminiAssistant.from_settings(settings),
        budget=ActualClient.from_settings(settings),
    )


def _setup_file_logging(settings: Settings) -> None:
    if settings.log_dir is None:
        return
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(settings.log_dir / "webhook_gateway.log", encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    logging.getLogger().addHandler(handler)


# ---------------------------------------------------------------------------#
# ngrok helpers                                                              #
# ---------------------------------------------------------------------------#
_NGROK_LISTENER: Any = None


def _start_ngrok(settings: Settings) -> None:  # pragma: no cover
    """Запускает ngrok-туннель, чтобы WAHA мог достучаться до /webhook."""
    global _NGROK_LISTENER

    if not settings.enable_ngrok:
        return
    if not settings.ngrok_authtoken:
        logger.info("NGROK_AUTHTOKEN не задан - туннель не поднимаю.")
        return

    ngrok_cfg: dict[str, Any] = {"authtoken": settings.ngrok_authtoken}
    if settings.ngrok_domain:
        ngrok_cfg["domain"] = settings.ngrok_domain

    local_url = f"http://127.0.0.1:{settings.api_port}"
    try:
        _NGROK_LISTENER = ngrok.forward(local_url, **ngrok_cfg)
        logger.info("🌐  ngrok tunnel: %s  ➜  %s", _NGROK_LISTENER.url(), local_url)
    except Exception as exc:
        sentry_capture(exc)
        logger.exception("Не удалось поднять ngrok-туннель")


def _stop_ngrok() -> None:  # pragma: no cover
    global _NGROK_LISTENER
    if _NGROK_LISTENER:
        logger.info("Закрываю ngrok-туннель…")
        try:
            _NGROK_LISTENER.close()
        except Exception:
            logger.warning("Не удалось закрыть туннель корректно", exc_info=True)
        _NGROK_LISTENER = None


# ---------------------------------------------------------------------------#
# App factory                                                                #
# ---------------------------------------------------------------------------#
def get_orchestrator(request: Request) -> WebhookOrchestrator:
    return request.app.state.orchestrator


def create_app(orchestrator_factory: OrchestratorFactory = build_orchestrator) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        app.state.orchestrator = orchestrator_factory(settings)
        logger.info("Webhook gateway started")
        yield
        logger.info("Webhook gateway shutting down…")
        _stop_ngrok()
        await app.state.orchestrator.aclose()

    app = FastAPI(title="Chat Budget Webhook Gateway", version="0.1.0", lifespan=lifespan)

    @app.exception_handler(UpstreamError)
    async def _upstream_error(request: Request, exc: UpstreamError) -> JSONResponse:
        logger.error("Request %s %s failed: %s", request.method, request.url.path, exc.message)
        sentry_capture(exc, extras={"path": request.url.path})
        return JSONResponse(
            status_code=exc.status_code,
            content={"code": exc.status_code, "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Request %s %s failed", request.method, request.url.path, exc_info=exc)
        sentry_capture(exc, extras={"path": request.url.path})
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
        return JSONResponse(
            status_code=code,
            content={"code": code, "message": str(exc) or HTTPStatus(code).phrase},
        )

    @app.post("/webhook", status_code=status.HTTP_200_OK, response_model=WebhookResponse)
    async def handle_webhook(
        body: WebhookRequest,
        orchestrator: WebhookOrchestrator = Depends(get_orchestrator),
    ) -> WebhookResponse:
        """Принимаем событие WAHA и обрабатываем сообщение синхронно."""
        result = await orchestrator.handle(body.event, body.payload)
        return WebhookResponse(status=result.value)

    @app.get("/health", status_code=status.HTTP_200_OK, response_model=None)
    async def health(
        orchestrator: WebhookOrchestrator = Depends(get_orchestrator),
    ) -> Dict[str, Any] | JSONResponse:
        """Проверка готовности: ping к БД идемпотентности."""
        try:
            await orchestrator.store.ping()
            return {"status": "ok"}
        except Exception as exc:
            logger.warning("Health check failed", exc_info=True)
            sentry_capture(exc)
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "db_down"},
            )

    return app


app = create_app()

# ---------------------------------------------------------------------------#
# Entrypoint                                                                 #
# ---------------------------------------------------------------------------#
def main() -> None:  # pragma: no cover
    settings = get_settings()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _setup_file_logging(settings)
    init_sentry(release="webhook_gateway@0.1.0")
    start_metrics_server(settings.api_metrics_port)
    _start_ngrok(settings)

    uvicorn.run(
        "services.webhook_gateway.main:app",
        host=settings.api_host,
        port=settings.api_port,
        lifespan="on",
    )


if __name__ == "__main__":
    main()
