"""Client for decentralized web node (DWN) endpoints.

Messages travel as JSON-RPC ``dwn.processMessage`` calls: the request sits in
the ``dwn-request`` header and record data, when there is any, is the raw
request body. Every message carries an authorization JWS over its descriptor,
signed by the author's DID key.
"""
import base64
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union
from uuid import uuid4

import dag_cbor
import httpx
from jwcrypto import jws
from multiformats import CID, multihash

from kcc_issuer.dids import DEFAULT_DHT_GATEWAY, BearerDid, resolve_dwn_endpoints
from kcc_issuer.exceptions import DwnError

logger = logging.getLogger(__name__)

DWN_REQUEST_HEADER = "dwn-request"
# what a malformed message from a DWN raises while being read
MALFORMED = (KeyError, IndexError, TypeError, ValueError, AttributeError)


def _b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def canonical_json(value: Any) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":")).encode("utf-8")


def compute_cid(value: Any) -> str:
    """CIDv1 (dag-cbor, sha2-256) of a message part, as DWNs address descriptors."""
    digest = multihash.digest(dag_cbor.encode(value), "sha2-256")
    return str(CID("base32", 1, "dag-cbor", digest))


def data_cid(data: bytes) -> str:
    # raw-leaf CID; matches the UnixFS CID a DWN computes while the data fits one chunk
    digest = multihash.digest(data, "sha2-256")
    return str(CID("base32", 1, "raw", digest))


def message_timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def sign_authorization(signer: BearerDid, descriptor: dict, **fields) -> dict:
    payload = {"descriptorCid": compute_cid(descriptor), **fields}
    token = jws.JWS(canonical_json(payload))
    token.add_signature(
        signer.signing_key(),
        alg="EdDSA",
        protected=json.dumps({"alg": "EdDSA", "kid": signer.key_id}),
    )
    flat = json.loads(token.serialize())
    return {
        "signature": {
            "payload": flat["payload"],
            "signatures": [{"protected": flat["protected"], "signature": flat["signature"]}],
        }
    }


def _signature(message: dict) -> dict:
    try:
        return message["authorization"]["signature"]
    except (KeyError, TypeError):
        raise DwnError("Message is not authorized")


def authorization_payload(message: dict) -> dict:
    try:
        return json.loads(_b64url_decode(_signature(message)["payload"]))
    except MALFORMED as e:
        raise DwnError(f"Unreadable authorization payload: {e!r}") from e


def author_of(message: dict) -> str:
    try:
        protected = _signature(message)["signatures"][0]["protected"]
        kid = json.loads(_b64url_decode(protected))["kid"]
        return kid.split("#")[0]
    except MALFORMED as e:
        raise DwnError(f"Message author cannot be read: {e!r}") from e


@dataclass
class Status:
    code: int
    detail: str = ""

    @classmethod
    def from_reply(cls, reply: dict) -> "Status":
        status = reply.get("status") or {}
        return cls(code=int(status.get("code", 0)), detail=status.get("detail", ""))

    @property
    def ok(self) -> bool:
        return 200 <= self.code < 300

    def to_dict(self) -> dict:
        return {"code": self.code, "detail": self.detail}


@dataclass
class Protocol:
    definition: dict
    message: dict
    dwn: "DwnClient" = field(repr=False, compare=False)

    async def send(self, target: str) -> Status:
        reply = await self.dwn.process_message(target, self.message)
        return Status.from_reply(reply)


@dataclass
class Record:
    message: dict
    data: Optional[bytes] = None
    dwn: Optional["DwnClient"] = field(default=None, repr=False, compare=False)

    @property
    def descriptor(self) -> dict:
        return self.message["descriptor"]

    @property
    def id(self) -> str:
        return self.message["recordId"]

    @property
    def author(self) -> str:
        return author_of(self.message)

    @property
    def protocol_role(self) -> Optional[str]:
        return authorization_payload(self.message).get("protocolRole")

    def data_text(self) -> Optional[str]:
        if self.data is None:
            return None
        return self.data.decode("utf-8")

    async def send(self, target: str) -> Status:
        if self.dwn is None:
            raise DwnError("Record is not bound to a DWN client")
        reply = await self.dwn.process_message(target, self.message, self.data)
        return Status.from_reply(reply)

    def to_dict(self) -> dict:
        """Summary of the record; a DWN entry missing required parts raises ``DwnError``."""
        try:
            d = self.descriptor
            return {
                "id": self.id,
                "contextId": self.message.get("contextId"),
                "author": self.author,
                "recipient": d.get("recipient"),
                "protocol": d.get("protocol"),
                "protocolPath": d.get("protocolPath"),
                "protocolRole": self.protocol_role,
                "schema": d.get("schema"),
                "dataFormat": d.get("dataFormat"),
                "dataCid": d.get("dataCid"),
                "dataSize": d.get("dataSize"),
                "published": d.get("published", False),
                "dateCreated": d.get("dateCreated"),
                "messageTimestamp": d.get("messageTimestamp"),
            }
        except MALFORMED as e:
            raise DwnError(f"Malformed record entry: {e!r}") from e


class DwnClient:
    def __init__(self, http: httpx.AsyncClient, default_endpoints: Sequence[str],
                 dht_gateway: str = DEFAULT_DHT_GATEWAY):
        self.http = http
        self.default_endpoints = list(default_endpoints)
        self.dht_gateway = dht_gateway

    async def endpoints_for(self, did: str) -> List[str]:
        return await resolve_dwn_endpoints(did, self.http, self.default_endpoints,
                                           dht_gateway=self.dht_gateway)

    async def register_tenant(self, did: str):
        for endpoint in self.default_endpoints:
            url = f"{endpoint.rstrip('/')}/registration"
            try:
                r = await self.http.post(url, json={"registrationData": {"did": did}})
            except httpx.HTTPError as e:
                raise DwnError(f"Tenant registration at {endpoint} failed: {e}") from e
            if r.status_code == 404:
                logger.info("DWN %s does not require tenant registration", endpoint)
                continue
            if r.status_code >= 400:
                raise DwnError(
                    f"Tenant registration at {endpoint} rejected: {r.text}",
                    status=Status(r.status_code, r.text),
                )
            logger.info("Registered %s as tenant of %s", did, endpoint)

    async def process_message(self, target: str, message: dict,
                              data: Optional[bytes] = None) -> dict:
        request = {
            "jsonrpc": "2.0",
            "id": str(uuid4()),
            "method": "dwn.processMessage",
            "params": {"target": target, "message": message},
        }
        headers = {
            DWN_REQUEST_HEADER: json.dumps(request),
            "content-type": "application/octet-stream",
        }

        last_error = None
        for endpoint in await self.endpoints_for(target):
            try:
                r = await self.http.post(endpoint, headers=headers, content=data or b"")
                r.raise_for_status()
                body = r.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("DWN endpoint %s failed: %s", endpoint, e)
                last_error = e
                continue

            if body.get("error"):
                raise DwnError(f"DWN {endpoint} returned an error: {body['error'].get('message')}")
            return body["result"]["reply"]

        raise DwnError(f"No DWN endpoint accepted the message for {target}: {last_error}")

    async def protocols_configure(self, author: BearerDid, definition: dict) -> Protocol:
        descriptor = {
            "interface": "Protocols",
            "method": "Configure",
            "messageTimestamp": message_timestamp(),
            "definition": definition,
        }
        message = {
            "descriptor": descriptor,
            "authorization": sign_authorization(author, descriptor),
        }
        return Protocol(definition=definition, message=message, dwn=self)

    async def records_create(self, author: BearerDid, data: Union[str, bytes], *,
                             protocol: str, protocol_path: str, schema: str,
                             recipient: str, data_format: str,
                             protocol_role: Optional[str] = None,
                             published: bool = False) -> Record:
        """Build and sign a RecordsWrite message without storing it anywhere.

        The returned record only reaches a DWN once ``Record.send`` is called.
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        timestamp = message_timestamp()
        descriptor = {
            "interface": "Records",
            "method": "Write",
            "protocol": protocol,
            "protocolPath": protocol_path,
            "schema": schema,
            "recipient": recipient,
            "dataFormat": data_format,
            "dataCid": data_cid(data),
            "dataSize": len(data),
            "dateCreated": timestamp,
            "messageTimestamp": timestamp,
            "published": published,
        }
        record_id = compute_cid({**descriptor, "author": author.uri})

        fields = {"recordId": record_id, "contextId": record_id}
        if protocol_role:
            fields["protocolRole"] = protocol_role
        message = {
            "recordId": record_id,
            "contextId": record_id,
            "descriptor": descriptor,
            "authorization": sign_authorization(author, descriptor, **fields),
        }
        return Record(message=message, data=data, dwn=self)

    async def records_query(self, author: BearerDid, from_did: str,
                            filter: Dict[str, Any]) -> List[Record]:
        descriptor = {
            "interface": "Records",
            "method": "Query",
            "messageTimestamp": message_timestamp(),
            "filter": filter,
        }
        message = {
            "descriptor": descriptor,
            "authorization": sign_authorization(author, descriptor),
        }
        reply = await self.process_message(from_did, message)
        status = Status.from_reply(reply)
        if not status.ok:
            raise DwnError(f"Records query on {from_did} failed: {status.detail}", status=status)

        records = []
        for entry in reply.get("entries") or []:
            entry = dict(entry)
            encoded = entry.pop("encodedData", None)
            data = _b64url_decode(encoded) if encoded is not None else None
            records.append(Record(message=entry, data=data, dwn=self))
        return records
