from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from return_mailer.observability import log_event
from return_mailer.routers import observability, returns, sera

app = FastAPI(title="Return Mailer", version="0.1.0")


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    error = "Method Not Allowed" if exc.status_code == 405 else str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
        content={"ok": False, "error": error},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    summary = f"{exc.__class__.__name__}: {exc}"
    log_event(
        "unhandled_error",
        request_id=getattr(request.state, "request_id", None),
        path=request.url.path,
        error=summary,
    )
    return JSONResponse(status_code=500, content={"ok": False, "error": summary})


app.include_router(returns.router)
app.include_router(sera.router)
app.include_router(observability.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "return-mailer"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
