from dataclasses import dataclass, field
from typing import Any, Dict, List

VC_PROTOCOL = "https://vc-to-dwn.tbddev.org/vc-protocol"
VC_JWT_FORMAT = "application/vc+jwt"


def _protocol_definition() -> Dict[str, Any]:
    return {
        "protocol": VC_PROTOCOL,
        "published": True,
        "types": {
            "credential": {
                "schema": f"{VC_PROTOCOL}/schema/credential",
                "dataFormats": [VC_JWT_FORMAT],
            },
            "issuer": {
                "schema": f"{VC_PROTOCOL}/schema/issuer",
                "dataFormats": ["text/plain"],
            },
            "judge": {
                "schema": f"{VC_PROTOCOL}/schema/judge",
                "dataFormats": ["text/plain"],
            },
        },
        "structure": {
            "issuer": {"$role": True},
            "judge": {"$role": True},
            "credential": {
                "$actions": [
                    {"role": "issuer", "can": ["create"]},
                    {"role": "judge", "can": ["query", "read"]},
                ]
            },
        },
    }


def _kcc_claims() -> Dict[str, Any]:
    return {
        "countryOfResidence": "KE",  # 2 letter country code
        "tier": "Bonafide Customer Tier",
        "jurisdiction": {"country": "KE"},
    }


def _kcc_evidence() -> List[Dict[str, Any]]:
    return [
        {"kind": "document_verification", "checks": ["passport", "utility_bill"]},
        {"kind": "sanction_screening", "checks": ["PEP"]},
    ]


@dataclass
class CredentialProfile:
    """Everything that shapes an issued credential and the record carrying it."""

    protocol_definition: Dict[str, Any] = field(default_factory=_protocol_definition)
    protocol_path: str = "credential"
    protocol_role: str = "issuer"
    data_format: str = VC_JWT_FORMAT
    credential_type: str = "KnownCustomerCredential"
    claims: Dict[str, Any] = field(default_factory=_kcc_claims)
    credential_schema: Dict[str, str] = field(default_factory=lambda: {
        "id": "https://vc.schemas.host/kcc.schema.json",
        "type": "JsonSchema",
    })
    evidence: List[Dict[str, Any]] = field(default_factory=_kcc_evidence)
    validity_days: int = 365

    @property
    def protocol(self) -> str:
        return self.protocol_definition["protocol"]

    @property
    def schema(self) -> str:
        return self.protocol_definition["types"][self.protocol_path]["schema"]


KCC_PROFILE = CredentialProfile()
