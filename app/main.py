from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import HTMLResponse, JSONResponse
from loguru import logger
from sqlalchemy import text

from app.core.billing.api.v1.routes_plans import router as plans_router
from app.core.billing.api.v1.routes_subscriptions import (
    router as subscriptions_router,
)
from app.core.billing.api.v1.routes_webhooks import router as webhooks_router
from app.core.billing.services import build_billing_service
from app.database.session import SessionLocal
from app.utils.redis_client import get_redis
from app.response import REQUEST_ID_HEADER, StandardResponse, make_error_response
from app.response.response import APIError


app = FastAPI()
app.state.billing_service = build_billing_service()


@app.exception_handler(APIError)
async def api_error_handler(
    request: Request,
    exc: APIError,
) -> JSONResponse:
    response: StandardResponse = exc.to_response(
        request_id=request.headers.get(REQUEST_ID_HEADER)
    )
    return JSONResponse(
        status_code=exc.http_code,
        content=jsonable_encoder(response),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    logger.opt(exception=exc).error(
        "Unhandled error", method=request.method, path=request.url.path
    )
    response: StandardResponse = make_error_response(
        code="INTERNAL_ERROR",
        http_code=500,
        message="Something went wrong. Please try again.",
        request_id=request.headers.get(REQUEST_ID_HEADER),
    )
    return JSONResponse(
        status_code=500,
        content=jsonable_encoder(response),
    )


app.title = "UNextDoor API"
app.version = "1.0.0"


@app.get("/", response_class=HTMLResponse, include_in_schema=False)
def root() -> str:
    # Health checks
    api_ok = True

    # DB
    db_ok = False
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except Exception:
        db_ok = False
    finally:
        db.close()

    # Redis
    redis_ok = False
    try:
        redis = get_redis()
        redis.ping()
        redis_ok = True
    except Exception:
        redis_ok = False

    # Celery worker
    worker_ok = False
    try:
        from unextdoor_bg_worker.celery_app import celery_app

        replies = celery_app.control.ping(timeout=0.5)
        worker_ok = bool(replies)
    except Exception:
        worker_ok = False

    def row(label: str, ok: bool) -> str:
        color = "#10B981" if ok else "#EF4444"
        text = "Online" if ok else "Offline"
        return f"""
                <div class="info-row">
                    <span>{label}</span>
                    <span style="color:{color}; font-weight:600;">{text}</span>
                </div>
        """

    status_rows = (
        row("API:", api_ok)
        + row("Database:", db_ok)
        + row("Redis:", redis_ok)
        + row("BG worker:", worker_ok)
        + row("Payments:", app.state.billing_service.payments_enabled)
    )

    html = """
    <!DOCTYPE html>
    <html lang="en">
    <head>
        <meta charset="UTF-8" />
        <title>UNextDoor API - Status</title>
        <style>
            body {
                font-family: Inter, system-ui, sans-serif;
                background: #0F0F13;
                color: #E5E5E5;
                min-height: 100vh;
                display: flex;
                align-items: center;
                justify-content: center;
                margin: 0;
            }

            .container {
                text-align: center;
                background: #18181B;
                padding: 40px;
                border-radius: 16px;
                border: 1px solid rgba(255, 255, 255, 0.08);
                width: 100%;
                max-width: 480px;
            }

            .info-box {
                background: #111113;
                border-radius: 12px;
                padding: 16px;
                text-align: left;
                margin: 24px 0;
            }

            .info-row {
                display: flex;
                justify-content: space-between;
                margin-bottom: 8px;
                font-size: 14px;
            }

            a.btn {
                padding: 10px 20px;
                border-radius: 10px;
                text-decoration: none;
                color: #E5E5E5;
                border: 1px solid rgba(255, 255, 255, 0.08);
            }
        </style>
    </head>
    <body>
        <div class="container">
            <h1>UNextDoor Backend</h1>
            <p>Subscriptions and payments API.</p>

            <div class="info-box">
__STATUS_ROWS__
            </div>

            <a class="btn" href="/docs">Swagger UI</a>
            <a class="btn" href="/redoc">ReDoc</a>
        </div>
    </body>
    </html>
    """
    return html.replace("__STATUS_ROWS__", status_rows)


app.include_router(plans_router, prefix="/api/v1")
app.include_router(subscriptions_router, prefix="/api/v1")
app.include_router(webhooks_router, prefix="/api/v1")


__all__ = ["app"]
