import logging
from typing import Any, Optional

import httpx

from kcc_issuer.config import Settings
from kcc_issuer.exceptions import AuthorizationError
from kcc_issuer.storage import DID_URI, PERMISSION, TRUE, StateStore, is_flag_set

logger = logging.getLogger(__name__)


async def get_permission(settings: Settings, store: StateStore,
                         transport: Optional[httpx.AsyncBaseTransport] = None) -> Any:
    did = store.get(DID_URI)
    # an unregistered issuer is sent as the literal "null"
    params = {"issuerDid": did if did is not None else "null"}
    try:
        async with httpx.AsyncClient(transport=transport, **settings.http_client_options()) as client:
            r = await client.get(settings.auth_base_url, params=params)
            data = r.json()
    except (httpx.HTTPError, ValueError) as e:
        raise AuthorizationError(f"Get permission failed: {e}") from e

    logger.info("Authorization gateway answered: %s", data)
    return data


def mark_permission(store: StateStore):
    # set whatever the gateway answered; a denial is not inspected
    store.set(PERMISSION, TRUE)


async def ensure_permission(settings: Settings, store: StateStore,
                            transport: Optional[httpx.AsyncBaseTransport] = None):
    if is_flag_set(store, PERMISSION):
        return
    try:
        await get_permission(settings, store, transport=transport)
    except AuthorizationError:
        logger.exception("Permission check failed")
    mark_permission(store)
