import base64
import json
from dataclasses import dataclass
from typing import List, Sequence
from urllib.parse import unquote

import dns.exception
import dns.message
import dns.rdatatype
import httpx
from jwcrypto import jwk

from kcc_issuer.exceptions import DidResolutionError


DWN_SERVICE_TYPE = "DecentralizedWebNode"
DEFAULT_DHT_GATEWAY = "https://diddht.tbddev.org"
# signature (64 bytes) and sequence number (8 bytes) precede the DNS packet
DHT_PACKET_OFFSET = 72
VERIFICATION_RELATIONSHIPS = (
    "authentication",
    "assertionMethod",
    "capabilityInvocation",
    "capabilityDelegation",
)


@dataclass
class BearerDid:
    """A DID together with the private key needed to act as it."""

    uri: str
    document: dict
    private_jwk: dict

    @property
    def key_id(self) -> str:
        return self.document["verificationMethod"][0]["id"]

    def signing_key(self) -> jwk.JWK:
        return jwk.JWK.from_json(json.dumps(self.private_jwk))

    def to_dict(self) -> dict:
        return {
            "uri": self.uri,
            "document": self.document,
            "privateKeys": [self.private_jwk],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BearerDid":
        keys = data.get("privateKeys") or []
        if not data.get("uri") or not keys:
            raise DidResolutionError("Stored identity is missing its DID URI or key")
        return cls(uri=data["uri"], document=data.get("document") or {}, private_jwk=keys[0])


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def did_jwk_document(did: str, public_jwk: dict) -> dict:
    method_id = f"{did}#0"
    document = {
        "@context": ["https://www.w3.org/ns/did/v1"],
        "id": did,
        "verificationMethod": [{
            "id": method_id,
            "type": "JsonWebKey2020",
            "controller": did,
            "publicKeyJwk": public_jwk,
        }],
    }
    for relationship in VERIFICATION_RELATIONSHIPS:
        document[relationship] = [method_id]
    return document


def create_did_jwk() -> BearerDid:
    key = jwk.JWK.generate(kty="OKP", crv="Ed25519")
    pub = key.export(private_key=False, as_dict=True)

    # Base64URL-encode the public JWK
    pub_str = json.dumps(pub, separators=(",", ":")).encode("utf-8")
    did = f"did:jwk:{_b64url(pub_str)}"
    return BearerDid(
        uri=did,
        document=did_jwk_document(did, pub),
        private_jwk=key.export(private_key=True, as_dict=True),
    )


def extract_did_jwk(did: str) -> dict:
    prefix = "did:jwk:"
    if not did.startswith(prefix):
        raise DidResolutionError("Not a did:jwk")
    b64 = did[len(prefix):].split("#")[0]
    padded = b64 + "=" * (-len(b64) % 4)
    try:
        return json.loads(base64.urlsafe_b64decode(padded.encode()).decode())
    except ValueError as e:
        raise DidResolutionError(f"Malformed did:jwk: {e}") from e


def did_web_url(did: str) -> str:
    parts = did.split(":")[2:]
    if not parts or not parts[0]:
        raise DidResolutionError(f"Malformed did:web: {did}")
    host = unquote(parts[0])
    if len(parts) == 1:
        return f"https://{host}/.well-known/did.json"
    path = "/".join(unquote(p) for p in parts[1:])
    return f"https://{host}/{path}/did.json"


def dwn_service_endpoints(document: dict) -> List[str]:
    endpoints = []
    for service in document.get("service") or []:
        if service.get("type") != DWN_SERVICE_TYPE:
            continue
        endpoint = service.get("serviceEndpoint")
        if isinstance(endpoint, str):
            endpoints.append(endpoint)
        elif isinstance(endpoint, list):
            endpoints.extend(e for e in endpoint if isinstance(e, str))
    return endpoints


def _txt_properties(rdata) -> dict:
    text = b"".join(rdata.strings).decode("utf-8", errors="replace")
    return dict(part.split("=", 1) for part in text.split(";") if "=" in part)


def dht_service_endpoints(packet: bytes) -> List[str]:
    """DWN endpoints listed in a did:dht DNS packet.

    Services are TXT records under ``_sN._did.<id>`` shaped like
    ``id=dwn;t=DecentralizedWebNode;se=https://a,https://b``.
    """
    try:
        message = dns.message.from_wire(packet)
    except dns.exception.DNSException as e:
        raise DidResolutionError(f"Malformed did:dht packet: {e}") from e

    endpoints = []
    for rrset in message.answer:
        if rrset.rdtype != dns.rdatatype.TXT:
            continue
        for rdata in rrset:
            props = _txt_properties(rdata)
            if props.get("t") == DWN_SERVICE_TYPE and props.get("se"):
                endpoints.extend(e for e in props["se"].split(",") if e)
    return endpoints


async def _fetch(http: httpx.AsyncClient, did: str, url: str) -> httpx.Response:
    try:
        r = await http.get(url)
        r.raise_for_status()
    except httpx.HTTPError as e:
        raise DidResolutionError(f"Failed to resolve {did}: {e}") from e
    return r


async def resolve_dwn_endpoints(did: str, http: httpx.AsyncClient,
                                default_endpoints: Sequence[str],
                                dht_gateway: str = DEFAULT_DHT_GATEWAY) -> List[str]:
    """Find the DWN endpoints serving ``did``.

    ``did:web`` documents and ``did:dht`` packets (fetched from the gateway)
    are searched for DecentralizedWebNode services. A ``did:jwk`` carries no
    services and falls back to ``default_endpoints``. Other methods are not
    resolvable here.
    """
    if not isinstance(did, str) or not did.startswith("did:"):
        raise DidResolutionError(f"Invalid DID: {did!r}")

    if did.startswith("did:web:"):
        r = await _fetch(http, did, did_web_url(did))
        try:
            endpoints = dwn_service_endpoints(r.json())
        except (ValueError, AttributeError) as e:
            raise DidResolutionError(f"Malformed DID document for {did}: {e}") from e
    elif did.startswith("did:dht:"):
        identifier = did.split(":")[2]
        if not identifier:
            raise DidResolutionError(f"Malformed did:dht: {did}")
        r = await _fetch(http, did, f"{dht_gateway.rstrip('/')}/{identifier}")
        endpoints = dht_service_endpoints(r.content[DHT_PACKET_OFFSET:])
    elif did.startswith("did:jwk:"):
        extract_did_jwk(did)
        if not default_endpoints:
            raise DidResolutionError(f"No DWN endpoint known for {did}")
        return list(default_endpoints)
    else:
        raise DidResolutionError(f"Unsupported DID method: {did}")

    if not endpoints:
        raise DidResolutionError(f"{did} does not list a DWN endpoint")
    return endpoints
