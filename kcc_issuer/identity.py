import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import httpx

from kcc_issuer.config import Settings
from kcc_issuer.dids import BearerDid, create_did_jwk
from kcc_issuer.dwn import DwnClient
from kcc_issuer.exceptions import DidResolutionError
from kcc_issuer.storage import BEARER_DID, StateStore

logger = logging.getLogger(__name__)


class IdentityClient:
    """One session against the identity network and its DWN endpoints.

    Use ``IdentityClient.connect`` rather than building one directly, so the
    underlying HTTP client is closed when the session ends.
    """

    def __init__(self, settings: Settings, store: StateStore, http: httpx.AsyncClient):
        self.settings = settings
        self.store = store
        self.http = http
        self.dwn = DwnClient(http, settings.dwn_endpoints, dht_gateway=settings.did_dht_gateway)
        self.did: Optional[str] = None
        self._identities: Dict[str, BearerDid] = {}

    @classmethod
    @asynccontextmanager
    async def connect(cls, settings: Settings, store: StateStore, create_did: bool = False,
                      transport: Optional[httpx.AsyncBaseTransport] = None
                      ) -> AsyncIterator["IdentityClient"]:
        async with httpx.AsyncClient(transport=transport, **settings.http_client_options()) as http:
            client = cls(settings, store, http)
            if create_did:
                await client.create_identity()
            yield client

    async def create_identity(self) -> BearerDid:
        bearer = create_did_jwk()
        await self.dwn.register_tenant(bearer.uri)
        logger.info("Registration succeeded for %s", bearer.uri)
        self._identities[bearer.uri] = bearer
        self.did = bearer.uri
        return bearer

    async def identity_get(self, did_uri: Optional[str]) -> BearerDid:
        """Look up the bearer identity for ``did_uri``.

        Identities created in this session are returned directly; otherwise
        the serialized identity kept in the state store is loaded.
        """
        if not did_uri:
            raise DidResolutionError("No DID URI given for identity lookup")
        if did_uri in self._identities:
            return self._identities[did_uri]

        stored = self.store.get(BEARER_DID)
        if not stored:
            raise DidResolutionError(f"No stored identity for {did_uri}")
        try:
            bearer = BearerDid.from_dict(json.loads(stored))
        except ValueError as e:
            raise DidResolutionError(f"Stored identity is not valid JSON: {e}") from e
        if bearer.uri != did_uri:
            raise DidResolutionError(f"Stored identity belongs to {bearer.uri}, not {did_uri}")

        self._identities[did_uri] = bearer
        return bearer
