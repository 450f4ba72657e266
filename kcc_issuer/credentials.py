import copy
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from jwcrypto import jwt

from kcc_issuer.dids import BearerDid
from kcc_issuer.exceptions import CredentialError

VC_CONTEXT = "https://www.w3.org/2018/credentials/v1"
VC_BASE_TYPE = "VerifiableCredential"


def to_iso(dt: datetime) -> str:
    """Millisecond-precision UTC timestamp ending in ``Z``."""
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def get_expiration_date(days: int = 30, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return to_iso(now + timedelta(days=days))


@dataclass
class VerifiableCredential:
    vc_data_model: Dict[str, Any]

    @property
    def issuer(self) -> str:
        return self.vc_data_model["issuer"]

    @property
    def subject(self) -> str:
        return self.vc_data_model["credentialSubject"]["id"]

    @property
    def types(self) -> List[str]:
        return self.vc_data_model["type"]

    @classmethod
    def create(cls, issuer: Optional[str], subject: Any, data: Dict[str, Any],
               type: Optional[str] = None, expiration_date: Optional[str] = None,
               issuance_date: Optional[str] = None,
               credential_schema: Optional[Dict[str, Any]] = None,
               evidence: Optional[List[Dict[str, Any]]] = None) -> "VerifiableCredential":
        if not issuer:
            raise CredentialError("Credential issuer is required")
        if not subject:
            raise CredentialError("Credential subject is required")
        if not isinstance(subject, str):
            raise CredentialError(f"Credential subject must be a DID string, got {subject!r}")

        vc = {
            "@context": [VC_CONTEXT],
            "type": [VC_BASE_TYPE] + ([type] if type else []),
            "id": f"urn:uuid:{uuid4()}",
            "issuer": issuer,
            "issuanceDate": issuance_date or to_iso(datetime.now(timezone.utc)),
            "credentialSubject": {"id": subject, **copy.deepcopy(data)},
        }
        if expiration_date:
            vc["expirationDate"] = expiration_date
        if credential_schema:
            vc["credentialSchema"] = copy.deepcopy(credential_schema)
        if evidence:
            vc["evidence"] = copy.deepcopy(evidence)
        return cls(vc)

    def sign(self, did: BearerDid) -> str:
        """Sign as a VC-JWT with the issuer's key and return the compact token."""
        if did.uri != self.issuer:
            raise CredentialError("Signing DID does not match the credential issuer")

        claims = {
            "iss": self.issuer,
            "sub": self.subject,
            "jti": self.vc_data_model["id"],
            "nbf": int(from_iso(self.vc_data_model["issuanceDate"]).timestamp()),
            "vc": self.vc_data_model,
        }
        if "expirationDate" in self.vc_data_model:
            claims["exp"] = int(from_iso(self.vc_data_model["expirationDate"]).timestamp())

        token = jwt.JWT(
            header={"alg": "EdDSA", "typ": "JWT", "kid": did.key_id},
            claims=claims,
        )
        token.make_signed_token(did.signing_key())
        return token.serialize()
