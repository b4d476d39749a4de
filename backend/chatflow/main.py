# /chatflow/main.py

import os
import time
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from chatflow.config.settings import settings
from chatflow.errors import SessionStoreUnavailable
from chatflow.utils.lifecycle import lifespan
from chatflow.utils.metrics import response_time_histogram
from chatflow.utils.rate_limiter import limiter
from chatflow.routes import flows, orders, public, sessions, webhooks

app = FastAPI(
    title="Chatflow WhatsApp Interpreter",
    version="1.0.0",
    description="Runs editor-authored conversational flows over WhatsApp",
    lifespan=lifespan,
    openapi_url=f"/api/{settings.api_version}/openapi.json" if settings.environment != "production" else None,
    docs_url=f"/api/{settings.api_version}/docs" if settings.environment != "production" else None,
    redoc_url=None,
)

# --- Rate Limiting ---
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)


@app.exception_handler(SessionStoreUnavailable)
async def session_store_unavailable_handler(request: Request, exc: SessionStoreUnavailable):
    return JSONResponse({"detail": "Session store unavailable"}, status_code=503)


@app.middleware("http")
async def performance_middleware(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response_time_histogram.labels(endpoint=request.url.path).observe(process_time)
    response.headers["X-Process-Time"] = str(process_time)
    return response

# --- API Routers ---
app.include_router(public.router)
app.include_router(webhooks.router, prefix=f"/api/{settings.api_version}/webhooks")
app.include_router(sessions.router, prefix=f"/api/{settings.api_version}")
app.include_router(orders.router, prefix=f"/api/{settings.api_version}")
app.include_router(flows.router, prefix=f"/api/{settings.api_version}")

# --- Main Entry Point for Uvicorn (for local development) ---
if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    host = os.getenv("HOST", "127.0.0.1")

    uvicorn.run(
        "chatflow.main:app",
        host=host,
        port=port,
        reload=settings.environment == "development",
        workers=settings.workers if settings.environment == "production" else 1
    )
