"""Tests for credential creation and VC-JWT signing."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from jwcrypto import jwk, jwt

from kcc_issuer.credentials import VerifiableCredential, from_iso, get_expiration_date, to_iso
from kcc_issuer.descriptors import KCC_PROFILE
from kcc_issuer.dids import create_did_jwk, extract_did_jwk
from kcc_issuer.exceptions import CredentialError


def _create(issuer_did, subject="did:dht:customer123"):
    return VerifiableCredential.create(
        issuer=issuer_did,
        subject=subject,
        type=KCC_PROFILE.credential_type,
        expiration_date=get_expiration_date(365),
        data=KCC_PROFILE.claims,
        credential_schema=KCC_PROFILE.credential_schema,
        evidence=KCC_PROFILE.evidence,
    )


class TestExpirationDate:
    def test_one_year_ahead(self):
        now = datetime(2026, 10, 17, 8, 30, 15, 123456, tzinfo=timezone.utc)

        assert get_expiration_date(365, now=now) == "2027-10-17T08:30:15.123Z"

    def test_crosses_leap_day_by_calendar(self):
        now = datetime(2027, 3, 1, 12, 0, tzinfo=timezone.utc)

        assert get_expiration_date(365, now=now) == "2028-02-29T12:00:00.000Z"

    def test_default_is_thirty_days(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)

        assert get_expiration_date(now=now) == "2026-01-31T00:00:00.000Z"

    def test_relative_to_current_time(self):
        before = datetime.now(timezone.utc)
        expires = from_iso(get_expiration_date(365))
        after = datetime.now(timezone.utc)

        assert before + timedelta(days=365) - timedelta(milliseconds=1) <= expires
        assert expires <= after + timedelta(days=365)

    def test_to_iso_converts_to_utc(self):
        eat = timezone(timedelta(hours=3))

        assert to_iso(datetime(2026, 5, 1, 3, 0, tzinfo=eat)) == "2026-05-01T00:00:00.000Z"


class TestVerifiableCredential:
    def test_create_carries_kcc_claims(self):
        vc = _create("did:jwk:issuer")
        model = vc.vc_data_model

        assert vc.issuer == "did:jwk:issuer"
        assert vc.subject == "did:dht:customer123"
        assert vc.types == ["VerifiableCredential", "KnownCustomerCredential"]
        assert model["credentialSubject"]["countryOfResidence"] == "KE"
        assert model["credentialSubject"]["tier"] == "Bonafide Customer Tier"
        assert model["credentialSubject"]["jurisdiction"] == {"country": "KE"}
        assert model["credentialSchema"]["id"] == "https://vc.schemas.host/kcc.schema.json"
        assert [e["kind"] for e in model["evidence"]] == ["document_verification", "sanction_screening"]
        assert model["id"].startswith("urn:uuid:")

    def test_create_does_not_share_profile_claims(self):
        vc = _create("did:jwk:issuer")
        vc.vc_data_model["credentialSubject"]["jurisdiction"]["country"] = "UG"

        assert KCC_PROFILE.claims["jurisdiction"]["country"] == "KE"

    def test_subject_is_required(self):
        with pytest.raises(CredentialError):
            _create("did:jwk:issuer", subject=None)

    @pytest.mark.parametrize("subject", [123, ["did:dht:abc"], {"id": "did:dht:abc"}])
    def test_subject_must_be_a_string(self, subject):
        with pytest.raises(CredentialError, match="must be a DID string"):
            _create("did:jwk:issuer", subject=subject)

    def test_issuer_is_required(self):
        with pytest.raises(CredentialError):
            _create(None)

    def test_sign_produces_verifiable_jwt(self):
        bearer = create_did_jwk()
        token = _create(bearer.uri).sign(bearer)

        key = jwk.JWK.from_json(json.dumps(extract_did_jwk(bearer.uri)))
        verified = jwt.JWT(jwt=token, key=key)
        claims = json.loads(verified.claims)
        header = json.loads(verified.header)

        assert header["alg"] == "EdDSA"
        assert header["kid"] == f"{bearer.uri}#0"
        assert claims["iss"] == bearer.uri
        assert claims["sub"] == "did:dht:customer123"
        assert claims["vc"]["credentialSubject"]["id"] == "did:dht:customer123"
        assert claims["exp"] - claims["nbf"] == pytest.approx(365 * 86400, abs=5)

    def test_sign_rejects_other_did(self):
        vc = _create("did:jwk:someone-else")

        with pytest.raises(CredentialError):
            vc.sign(create_did_jwk())
