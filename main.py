import logging
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth_router import router as auth_router
from ban_router import router as ban_router
from db import connect_db
from db_migrations import apply_migrations
from doctrine_router import router as doctrine_router
from fc_router import router as fc_router
from fleet_router import router as fleet_router
from mail_router import router as mail_router
from public_router import router as public_router
from srp_router import router as srp_router

app = FastAPI(title="Bombers Bar")
app.include_router(auth_router)
app.include_router(fleet_router)
app.include_router(fc_router)
app.include_router(doctrine_router)
app.include_router(srp_router)
app.include_router(ban_router)
app.include_router(mail_router)
app.include_router(public_router)


# ── Error envelope ─────────────────────────────────────────

@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    message = first.get("msg") or "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": f"{field}: {message}" if field else message},
    )


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logging.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


# ── Lifecycle ──────────────────────────────────────────────

@app.on_event("startup")
def _startup():
    conn = connect_db()
    try:
        apply_migrations(conn)
        conn.commit()
    finally:
        conn.close()

    if getattr(app.state, "mail_gateway", None) is None:
        app.state.mail_gateway = None
        print("[startup] no mail gateway installed; mail endpoints will answer 503")


@app.get("/api/health")
def api_health() -> Dict[str, Any]:
    conn = connect_db()
    try:
        conn.execute("SELECT 1")
    finally:
        conn.close()
    return {
        "ok": True,
        "service": "bombersbar-db",
    }
