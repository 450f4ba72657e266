import logging
from typing import Any, Optional

from jose import jwt
from jose.exceptions import JOSEError

from kcc_issuer.config import Settings
from kcc_issuer.descriptors import KCC_PROFILE, CredentialProfile
from kcc_issuer.dwn import Record
from kcc_issuer.exceptions import NotRegisteredError, RecordQueryError
from kcc_issuer.identity import IdentityClient
from kcc_issuer.issuance import record_filter
from kcc_issuer.storage import DID_URI, StateStore

logger = logging.getLogger(__name__)


def record_content(record: Record) -> Optional[dict]:
    vc_jwt = record.data_text()
    if vc_jwt is None:
        return None
    try:
        claims = jwt.get_unverified_claims(vc_jwt)
    except JOSEError:
        logger.warning("Record %s does not hold a readable JWT", record.message.get("recordId"))
        claims = None
    return {"jwt": vc_jwt, "claims": claims}


async def get_record(cust_did: Any, settings: Settings, store: StateStore,
                     profile: CredentialProfile = KCC_PROFILE,
                     connect=IdentityClient.connect, **connect_options) -> dict:
    """Return the newest credential record issued to ``cust_did`` and its content."""
    issuer_did = store.get(DID_URI)
    if not issuer_did:
        raise NotRegisteredError("Issuer DID is not registered yet")

    try:
        async with connect(settings, store, **connect_options) as client:
            bearer = await client.identity_get(issuer_did)
            records = await client.dwn.records_query(
                bearer, cust_did, record_filter(profile, issuer_did))

        if not records:
            return {"record": None, "content": None}
        record = records[-1]
        return {"record": record.to_dict(), "content": record_content(record)}
    except Exception as e:
        raise RecordQueryError(f"Record query failed: {e}") from e
