"""HTTP front end for the lifecycle manager."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .logging import get_logger, mask_secret
from .manager import LifecycleManager
from .model import Subscription
from .runtime.api import RuntimeUnavailable
from .settings import SubscriptionRequest

logger = get_logger(__name__)


def _subscription_view(subscription: Subscription) -> dict[str, Any]:
    return {
        "api_key": mask_secret(subscription.api_key),
        "room_id": subscription.room_id,
        "sender": subscription.sender,
        "target_url": subscription.target_url,
        "poll_interval": subscription.poll_interval,
        "digest": subscription.digest(),
    }


def create_app(manager: LifecycleManager) -> FastAPI:
    app = FastAPI(title="roomrelay", docs_url=None, redoc_url=None)
    app.state.manager = manager

    @app.exception_handler(RuntimeUnavailable)
    async def runtime_unavailable(request: Request, exc: RuntimeUnavailable) -> JSONResponse:
        logger.error("server.runtime_unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @app.post("/add_subscription")
    async def add_subscription(body: SubscriptionRequest) -> dict[str, bool]:
        started = await manager.start(body.to_subscription())
        return {"started": started}

    @app.post("/remove_subscription")
    async def remove_subscription(body: SubscriptionRequest) -> dict[str, bool]:
        stopped = await manager.stop(body.to_subscription())
        return {"stopped": stopped}

    @app.post("/check_subscription")
    async def check_subscription(body: SubscriptionRequest) -> dict[str, bool]:
        running = await manager.is_running(body.to_subscription())
        return {"running": running}

    @app.post("/subscription_logs")
    async def subscription_logs(body: SubscriptionRequest) -> dict[str, str | None]:
        logs = await manager.recent_logs(body.to_subscription())
        return {"logs": logs}

    @app.get("/subscriptions")
    async def list_subscriptions() -> dict[str, list[dict[str, Any]]]:
        active = await manager.list_active()
        return {"subscriptions": [_subscription_view(sub) for sub in active]}

    return app
