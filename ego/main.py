"""
Ego token service: session tokens, API keys and provider SSO.
Process-wide collaborators (signing keys, SSO flow store, provider bridge, rate limiters) are
built once in the lifespan and kept on app.state. Error kinds map to HTTP status codes here only.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ego.api_key_endpoint import router as api_key_router
from ego.config import (
    RATE_LIMIT_CHECK_PER_MINUTE,
    RATE_LIMIT_TOKEN_PER_MINUTE,
    SIGNING_KEY_PATH,
    SIGNING_KEY_PREVIOUS_PATH,
)
from ego.database import SessionLocal, init_db
from ego.errors import EgoError, ErrorKind, InvalidScopeError, InvalidTokenError
from ego.flow_store import FlowStore
from ego.keys import SigningKeyProvider
from ego.providers import OAuthIdentityBridge
from ego.rate_limit import RateLimiter
from ego.seed import seed_from_env
from ego.sso_endpoint import router as sso_router
from ego.token_endpoint import router as token_router

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_SCOPE: 400,
    ErrorKind.INVALID_TOKEN: 401,
    ErrorKind.FORBIDDEN: 403,
    # Normally turned into SSO error redirects; 403 if one reaches an API caller
    ErrorKind.NO_PRIMARY_EMAIL: 403,
    ErrorKind.USER_DENIED_AUTHORIZATION: 403,
    ErrorKind.INTERNAL: 500,
}


def configure_state(app: FastAPI) -> None:
    """Build the process-wide collaborators unless a test already installed its own."""
    state = app.state
    if getattr(state, "keys", None) is None:
        state.keys = SigningKeyProvider(SIGNING_KEY_PATH, SIGNING_KEY_PREVIOUS_PATH)
    if getattr(state, "flows", None) is None:
        state.flows = FlowStore()
    if getattr(state, "bridge", None) is None:
        state.bridge = OAuthIdentityBridge()
    if getattr(state, "token_limiter", None) is None:
        state.token_limiter = RateLimiter(RATE_LIMIT_TOKEN_PER_MINUTE)
    if getattr(state, "check_limiter", None) is None:
        state.check_limiter = RateLimiter(RATE_LIMIT_CHECK_PER_MINUTE)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, load signing key, seed admin/application from env on startup."""
    init_db()
    configure_state(app)
    app.state.keys.signing_key()
    db = SessionLocal()
    try:
        seed_from_env(db)
    finally:
        db.close()
    yield
    app.state.bridge.http.close()


app = FastAPI(title="Ego", version="0.1.0", lifespan=lifespan)
# Login first: /oauth/login/token must not be taken for a provider named "login"
app.include_router(sso_router, tags=["sso"])
app.include_router(token_router, tags=["token"])
app.include_router(api_key_router, tags=["api-key"])


@app.exception_handler(EgoError)
async def ego_error_handler(request: Request, exc: EgoError):
    status_code = STATUS_BY_KIND.get(exc.kind, 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    elif isinstance(exc, InvalidTokenError):
        logger.info("%s %s rejected token: %s", request.method, request.url.path, exc.reason)
    body = {"error": exc.kind.value, "error_description": exc.message}
    if isinstance(exc, InvalidScopeError):
        body["missing_scopes"] = exc.missing_scopes
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(status_code=status_code, content=body, headers=headers)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "ego"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "ego.main:app",
        host="127.0.0.1",
        port=8081,
        reload=True,
    )
