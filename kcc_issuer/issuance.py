import logging
from dataclasses import dataclass
from typing import Any, Optional

from kcc_issuer.config import Settings
from kcc_issuer.credentials import VerifiableCredential, get_expiration_date
from kcc_issuer.descriptors import KCC_PROFILE, CredentialProfile
from kcc_issuer.dwn import Record, Status
from kcc_issuer.exceptions import IssuanceError, NotRegisteredError
from kcc_issuer.identity import IdentityClient
from kcc_issuer.storage import DID_URI, StateStore

logger = logging.getLogger(__name__)


@dataclass
class IssuedCredential:
    status: Status
    record: Record
    latest: Optional[Record]
    kcc: str

    def to_response(self) -> dict:
        return {
            "status": self.status.to_dict(),
            "record": self.record.to_dict(),
            "id": self.latest.to_dict() if self.latest else "",
            "KCC": self.kcc,
        }


def record_filter(profile: CredentialProfile, author: str) -> dict:
    return {"dataFormat": profile.data_format, "author": author}


async def issue_and_sign_credential(cust_did: Any, settings: Settings, store: StateStore,
                                    profile: CredentialProfile = KCC_PROFILE,
                                    connect=IdentityClient.connect,
                                    **connect_options) -> IssuedCredential:
    issuer_did = store.get(DID_URI)
    if not issuer_did:
        raise NotRegisteredError("Issuer DID is not registered yet")

    try:
        vc = VerifiableCredential.create(
            issuer=issuer_did,
            subject=cust_did,
            type=profile.credential_type,
            expiration_date=get_expiration_date(profile.validity_days),
            data=profile.claims,
            credential_schema=profile.credential_schema,
            evidence=profile.evidence,
        )

        async with connect(settings, store, **connect_options) as client:
            bearer = await client.identity_get(issuer_did)
            signed_vc = vc.sign(bearer)

            record = await client.dwn.records_create(
                bearer,
                signed_vc,
                protocol=profile.protocol,
                protocol_path=profile.protocol_path,
                schema=profile.schema,
                recipient=cust_did,
                data_format=profile.data_format,
                protocol_role=profile.protocol_role,
            )
            status = await record.send(cust_did)
            logger.info("Record %s sent to %s: %s", record.id, cust_did, status)

            # the newest record is assumed to be last; nothing ties it to record.id
            records = await client.dwn.records_query(
                bearer, cust_did, record_filter(profile, issuer_did))
    except Exception as e:
        raise IssuanceError(f"Issue and sign credential failed: {e}") from e

    return IssuedCredential(
        status=status,
        record=record,
        latest=records[-1] if records else None,
        kcc=signed_vc,
    )
