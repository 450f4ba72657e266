import logging
from dataclasses import dataclass
from typing import Optional

from kcc_issuer.config import Settings
from kcc_issuer.descriptors import KCC_PROFILE, CredentialProfile
from kcc_issuer.exceptions import BootstrapError, DwnError
from kcc_issuer.identity import IdentityClient
from kcc_issuer.serialization import dumps_without_cycles
from kcc_issuer.storage import AUTH_URL, BEARER_DID, DID_URI, REGISTERED, TRUE, StateStore, is_flag_set

logger = logging.getLogger(__name__)


@dataclass
class Registration:
    did: str
    auth_url: str


async def register(settings: Settings, store: StateStore,
                   profile: CredentialProfile = KCC_PROFILE,
                   connect=IdentityClient.connect, **connect_options) -> Registration:
    """Create the issuer DID, publish the credential protocol and persist the result.

    ``registered`` is only set once every step has succeeded, so a partial
    failure makes the next start run the whole registration again.
    """
    try:
        async with connect(settings, store, create_did=True, **connect_options) as client:
            did = client.did
            bearer = await client.identity_get(did)

            protocol = await client.dwn.protocols_configure(bearer, profile.protocol_definition)
            status = await protocol.send(did)
            if not status.ok:
                raise DwnError(f"Protocol configure rejected: {status.detail}", status=status)

            store.set(DID_URI, did)
            auth_url = settings.authorization_url(did)
            store.set(AUTH_URL, auth_url)

            bearer = await client.identity_get(store.get(DID_URI))
            store.set(BEARER_DID, dumps_without_cycles(bearer.to_dict()))
    except Exception as e:
        raise BootstrapError(f"Initialization failed: {e}") from e

    store.set(REGISTERED, TRUE)
    logger.info("Issuer %s registered, authorize at %s", did, auth_url)
    return Registration(did=did, auth_url=auth_url)


async def run_bootstrap_once(settings: Settings, store: StateStore,
                             register_fn=register, **kwargs) -> Optional[Registration]:
    if is_flag_set(store, REGISTERED):
        logger.info("Already registered: DID URI %s, auth URL %s",
                    store.get(DID_URI), store.get(AUTH_URL))
        return None

    try:
        return await register_fn(settings, store, **kwargs)
    except Exception:
        logger.exception("Initialization failed, continuing unregistered")
        return None
