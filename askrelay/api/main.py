import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as SettingsError
from starlette.exceptions import HTTPException as StarletteHTTPException

from askrelay.config import get_settings
from askrelay.services.errors import ValidationError
from askrelay.utils.logging import configure_logging

configure_logging()

# The upstream credential is read once, here; without it the process must not start
try:
    settings = get_settings()
except SettingsError as e:
    logging.critical(f"Missing or invalid configuration (is UPSTREAM_API_KEY set?): {e}")
    sys.exit(1)

from .deps import get_connector, get_history_writer, get_upstream_client  # noqa: E402
from .routers import ask, history  # noqa: E402


@asynccontextmanager
async def lifespan(app: FastAPI):
    upstream = get_upstream_client()
    yield
    if get_history_writer.cache_info().currsize:
        await get_history_writer().drain()
    await upstream.aclose()
    if get_connector.cache_info().currsize:
        get_connector().close()


app = FastAPI(
    title="AI Ask Relay",
    description="Streams model answers to questions over server-sent events and keeps a history.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', 'invalid')}"
        for err in exc.errors()
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": f"Invalid request: {problems}"},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


app.include_router(ask.router)
app.include_router(history.router)


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    # Run locally; Cloud Run and friends start uvicorn themselves
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
