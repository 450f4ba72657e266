import base64
import json

import dns.flags
import dns.message
import dns.rrset
import httpx
import pytest
from jwcrypto import jwk, jws

from kcc_issuer.config import Settings
from kcc_issuer.dids import create_did_jwk, extract_did_jwk
from kcc_issuer.dwn import DWN_REQUEST_HEADER, author_of, compute_cid
from kcc_issuer.exceptions import DidResolutionError, DwnError
from kcc_issuer.serialization import dumps_without_cycles
from kcc_issuer.storage import BEARER_DID, DID_URI, REGISTERED, TRUE, MemoryStateStore

DWN_ENDPOINT = "https://dwn.test"
DHT_GATEWAY = "https://dht.test"
AUTH_BASE_URL = "https://auth.test/authorize"
CUSTOMER_DID = "did:dht:customer123"


def dht_packet(identifier, endpoints):
    """Gateway reply for a did:dht: zeroed signature, sequence number, DNS packet."""
    message = dns.message.Message(id=0)
    message.flags |= dns.flags.QR | dns.flags.AA
    message.answer.append(dns.rrset.from_text(
        f"_did.{identifier}.", 7200, "IN", "TXT", '"v=0;vm=k0;srv=s0,s1"'))
    message.answer.append(dns.rrset.from_text(
        f"_s0._did.{identifier}.", 7200, "IN", "TXT",
        f'"id=dwn;t=DecentralizedWebNode;se={",".join(endpoints)}"'))
    message.answer.append(dns.rrset.from_text(
        f"_s1._did.{identifier}.", 7200, "IN", "TXT",
        '"id=site;t=LinkedDomains;se=https://customer.example"'))
    return bytes(64) + (1).to_bytes(8, "big") + message.to_wire()


def verify_authorization(message):
    """Check a did:jwk-authored message signature and return its payload."""
    author = author_of(message)
    try:
        key = jwk.JWK.from_json(json.dumps(extract_did_jwk(author)))
    except DidResolutionError as e:
        raise DwnError(f"Cannot verify author {author}: {e}") from e

    token = jws.JWS()
    try:
        token.deserialize(json.dumps(message["authorization"]["signature"]), key)
    except (jws.InvalidJWSSignature, jws.InvalidJWSObject) as e:
        raise DwnError(f"Invalid authorization signature: {e}") from e

    payload = json.loads(token.payload)
    if payload.get("descriptorCid") != compute_cid(message["descriptor"]):
        raise DwnError("Authorization does not cover the message descriptor")
    return payload


class FakeDwn:
    """In-process stand-in for a DWN server, the did:dht gateway and the authorization gateway."""

    def __init__(self):
        self.tenants = []
        self.protocols = {}
        self.records = {}
        self.rpc_requests = []
        self.auth_requests = []
        self.fail_methods = set()
        self.extra_entries = []
        self.permission_reply = {"status": "approved"}

    def handler(self, request: httpx.Request) -> httpx.Response:
        if str(request.url).startswith(AUTH_BASE_URL):
            self.auth_requests.append(request)
            return httpx.Response(200, json=self.permission_reply)

        if str(request.url).startswith(DHT_GATEWAY):
            identifier = request.url.path.strip("/")
            return httpx.Response(200, content=dht_packet(identifier, [DWN_ENDPOINT]))

        if request.url.path == "/registration":
            self.tenants.append(json.loads(request.content)["registrationData"]["did"])
            return httpx.Response(200, json={"success": True})

        rpc = json.loads(request.headers[DWN_REQUEST_HEADER])
        self.rpc_requests.append(rpc)
        target = rpc["params"]["target"]
        message = rpc["params"]["message"]
        descriptor = message["descriptor"]
        kind = descriptor["interface"] + descriptor["method"]

        if kind in self.fail_methods:
            return httpx.Response(500, text="boom")

        verify_authorization(message)

        if kind == "ProtocolsConfigure":
            self.protocols.setdefault(target, []).append(descriptor["definition"])
            reply = {"status": {"code": 202, "detail": "Accepted"}}
        elif kind == "RecordsWrite":
            self.records.setdefault(target, []).append((message, request.content))
            reply = {"status": {"code": 202, "detail": "Accepted"}}
        elif kind == "RecordsQuery":
            f = descriptor["filter"]
            entries = [
                dict(m, encodedData=base64.urlsafe_b64encode(data).decode().rstrip("="))
                for m, data in self.records.get(target, [])
                if m["descriptor"]["dataFormat"] == f["dataFormat"] and author_of(m) == f["author"]
            ]
            reply = {"status": {"code": 200, "detail": "OK"}, "entries": entries + self.extra_entries}
        else:
            reply = {"status": {"code": 400, "detail": f"Unsupported {kind}"}}

        return httpx.Response(200, json={"jsonrpc": "2.0", "id": rpc["id"], "result": {"reply": reply}})


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        scratch_dir=str(tmp_path / "scratch"),
        dwn_endpoints=[DWN_ENDPOINT],
        did_dht_gateway=DHT_GATEWAY,
        auth_base_url=AUTH_BASE_URL,
    )


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def fake_dwn():
    return FakeDwn()


@pytest.fixture
def transport(fake_dwn):
    return httpx.MockTransport(fake_dwn.handler)


@pytest.fixture
def issuer(store):
    """Store state as left behind by a successful registration."""
    bearer = create_did_jwk()
    store.set(DID_URI, bearer.uri)
    store.set(BEARER_DID, dumps_without_cycles(bearer.to_dict()))
    store.set(REGISTERED, TRUE)
    return bearer
