import asyncio
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, Optional

import httpx
import uvicorn
from fastapi import Body, Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from kcc_issuer.bootstrap import register, run_bootstrap_once
from kcc_issuer.config import Settings, get_settings
from kcc_issuer.exceptions import AuthorizationError, KccError, NotRegisteredError
from kcc_issuer.identity import IdentityClient
from kcc_issuer.issuance import issue_and_sign_credential
from kcc_issuer.models import CredentialResponse, HealthResponse
from kcc_issuer.permission import ensure_permission, get_permission, mark_permission
from kcc_issuer.records import get_record
from kcc_issuer.storage import AUTH_URL, DID_URI, REGISTERED, StateStore, is_flag_set, open_state_store

logger = logging.getLogger(__name__)


@lru_cache
def get_store() -> StateStore:
    return open_state_store(get_settings())


def get_identity_connector():
    return IdentityClient.connect


def get_transport() -> Optional[httpx.AsyncBaseTransport]:
    return None


def _provide(app: FastAPI, dependency):
    return app.dependency_overrides.get(dependency, dependency)()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = _provide(app, get_settings)
    store = _provide(app, get_store)
    # registration runs alongside the server, like the original listen callback
    app.state.bootstrap_task = asyncio.create_task(run_bootstrap_once(
        settings, store,
        register_fn=register,
        connect=_provide(app, get_identity_connector),
        transport=_provide(app, get_transport),
    ))
    logger.info("Server is running on port %s", settings.port)
    yield
    await app.state.bootstrap_task


app = FastAPI(title="KCC Issuer", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def http_error(error: KccError) -> HTTPException:
    if isinstance(error, NotRegisteredError):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=502, detail=str(error))


def error_body(error: Exception) -> dict:
    return {"name": type(error).__name__, "message": str(error)}


def customer_did(body: Any) -> Any:
    # custDid is passed on unchecked; a non-object body simply has none
    return body.get("custDid") if isinstance(body, dict) else None


@app.post("/")
async def query_record(
    body: Any = Body(default=None),
    settings: Settings = Depends(get_settings),
    store: StateStore = Depends(get_store),
    connect=Depends(get_identity_connector),
    transport=Depends(get_transport),
):
    cust_did = customer_did(body)
    try:
        return await get_record(cust_did, settings, store, connect=connect, transport=transport)
    except KccError as e:
        if settings.strict_errors:
            raise http_error(e)
        logger.error("Record query for %s failed: %s", cust_did, e)
        return error_body(e)


@app.post("/get-credential", response_model=CredentialResponse)
async def get_credential(
    body: Any = Body(default=None),
    settings: Settings = Depends(get_settings),
    store: StateStore = Depends(get_store),
    connect=Depends(get_identity_connector),
    transport=Depends(get_transport),
):
    cust_did = customer_did(body)
    await ensure_permission(settings, store, transport=transport)

    try:
        issued = await issue_and_sign_credential(
            cust_did, settings, store, connect=connect, transport=transport)
        result = issued.to_response()
    except KccError as e:
        if settings.strict_errors:
            raise http_error(e)
        logger.exception("Issuing a credential to %s failed", cust_did)
        return CredentialResponse.from_result({})
    return CredentialResponse.from_result(result)


@app.post("/get-permission")
async def permission(
    settings: Settings = Depends(get_settings),
    store: StateStore = Depends(get_store),
    transport=Depends(get_transport),
):
    try:
        data = await get_permission(settings, store, transport=transport)
    except AuthorizationError as e:
        mark_permission(store)
        if settings.strict_errors:
            raise http_error(e)
        logger.exception("Permission check failed")
        return None
    mark_permission(store)
    return data


@app.get("/health", response_model=HealthResponse)
def health(store: StateStore = Depends(get_store)):
    return HealthResponse(
        registered=is_flag_set(store, REGISTERED),
        didURI=store.get(DID_URI),
        authURL=store.get(AUTH_URL),
    )


def run():
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
