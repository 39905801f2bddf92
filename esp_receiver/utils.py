import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .settings import settings

log = logging.getLogger("api")

def add_cors(app: FastAPI) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

def add_request_logging(app: FastAPI) -> None:
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        client = request.client.host if request.client else "-"
        log.info("--> %s %s from %s", request.method, request.url.path, client)
        response = await call_next(request)
        ms = (time.perf_counter() - start) * 1000
        log.info("<-- %s %s %s %.0fms", request.method, request.url.path, response.status_code, ms)
        return response
