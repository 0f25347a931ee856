import base64
import zlib
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
from lxml import etree
from signxml import XMLSigner
from signxml.algorithms import CanonicalizationMethod

from convergeauth.service.errors import (
    InvalidCredentialError,
    InvalidStateError,
    MissingEmailError,
    NotFoundError,
    ValidationError,
)
from convergeauth.service.providers.saml import EMAIL_NAMEID_FORMAT, STATUS_SUCCESS

SAMLP = "urn:oasis:names:tc:SAML:2.0:protocol"
SAML = "urn:oasis:names:tc:SAML:2.0:assertion"
IDP_ENTITY = "https://idp.example.com/metadata"
PERSISTENT_FORMAT = "urn:oasis:names:tc:SAML:2.0:nameid-format:persistent"


def _iso(moment):
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


@pytest.fixture
def saml_response(idp_certificate):
    """Build a base64 SAML Response whose assertion is signed by the test IdP."""

    def _build(
        request_id,
        *,
        email="saml.user@example.com",
        name_id=None,
        name_id_format=EMAIL_NAMEID_FORMAT,
        audience="http://localhost:3000",
        issuer=IDP_ENTITY,
        status=STATUS_SUCCESS,
        lifetime=timedelta(minutes=5),
        attributes=None,
        tamper=None,
    ):
        now = datetime.now(timezone.utc)
        attributes = attributes if attributes is not None else {
            "email": email,
            "givenName": "Saml",
            "surname": "User",
        }
        attribute_xml = "".join(
            f'<saml:Attribute Name="{name}"><saml:AttributeValue>{value}</saml:AttributeValue></saml:Attribute>'
            for name, value in attributes.items()
        )
        statement = (
            f"<saml:AttributeStatement>{attribute_xml}</saml:AttributeStatement>"
            if attribute_xml
            else ""
        )
        assertion = etree.fromstring(
            f'<saml:Assertion xmlns:saml="{SAML}" ID="_assertion-1" Version="2.0" '
            f'IssueInstant="{_iso(now)}">'
            f"<saml:Issuer>{issuer}</saml:Issuer>"
            f'<saml:Subject><saml:NameID Format="{name_id_format}">{name_id or email}</saml:NameID>'
            f'<saml:SubjectConfirmation Method="urn:oasis:names:tc:SAML:2.0:cm:bearer">'
            f'<saml:SubjectConfirmationData InResponseTo="{request_id}" '
            f'NotOnOrAfter="{_iso(now + lifetime)}" Recipient="http://localhost:3000/auth/saml"/>'
            f"</saml:SubjectConfirmation></saml:Subject>"
            f'<saml:Conditions NotBefore="{_iso(now - timedelta(minutes=1))}" '
            f'NotOnOrAfter="{_iso(now + lifetime)}">'
            f"<saml:AudienceRestriction><saml:Audience>{audience}</saml:Audience>"
            f"</saml:AudienceRestriction></saml:Conditions>"
            f"{statement}</saml:Assertion>"
        )
        signed = XMLSigner(
            c14n_algorithm=CanonicalizationMethod.EXCLUSIVE_XML_CANONICALIZATION_1_0
        ).sign(
            assertion,
            key=idp_certificate["key_pem"],
            cert=idp_certificate["cert_pem"],
            reference_uri="#_assertion-1",
        )
        response = etree.fromstring(
            f'<samlp:Response xmlns:samlp="{SAMLP}" xmlns:saml="{SAML}" ID="_response-1" '
            f'Version="2.0" IssueInstant="{_iso(now)}" InResponseTo="{request_id}" '
            f'Destination="http://localhost:3000/auth/saml">'
            f"<saml:Issuer>{issuer}</saml:Issuer>"
            f'<samlp:Status><samlp:StatusCode Value="{status}"/></samlp:Status>'
            f"</samlp:Response>"
        )
        response.append(signed)
        payload = etree.tostring(response)
        if tamper:
            payload = payload.replace(*tamper)
        return base64.b64encode(payload).decode()

    return _build


def test_begin_requires_domain(runtime):
    with pytest.raises(ValidationError) as exc:
        runtime.saml.begin(None)
    assert exc.value.message == "Domain is required"


def test_begin_unknown_domain(runtime):
    with pytest.raises(NotFoundError):
        runtime.saml.begin("unknown.org")


def test_begin_builds_redirect_binding_request(runtime):
    begin = runtime.saml.begin("someone@Example.com")

    assert begin.domain == "example.com"
    parsed = urlparse(begin.url)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://idp.example.com/sso"
    encoded = parse_qs(parsed.query)["SAMLRequest"][0]
    request = etree.fromstring(zlib.decompress(base64.b64decode(encoded), -15))
    assert request.get("ID") == begin.request_id
    assert request.get("AssertionConsumerServiceURL") == "http://localhost:3000/auth/saml"
    assert request.findtext(f"{{{SAML}}}Issuer") == "http://localhost:3000"


def test_complete_extracts_verified_identity(runtime, saml_response):
    identity = runtime.saml.complete(saml_response("_req-1"), "_req-1", "example.com")

    assert identity.email == "saml.user@example.com"
    assert identity.email_verified is True
    assert identity.display_name == "Saml User"
    assert identity.kind.value == "saml"


def test_name_id_stands_in_for_missing_email_attribute(runtime, saml_response):
    encoded = saml_response("_req-1", attributes={"displayName": "Nameid Person"})

    identity = runtime.saml.complete(encoded, "_req-1", "example.com")
    assert identity.email == "saml.user@example.com"
    assert identity.display_name == "Nameid Person"


def test_assertion_without_email_is_missing_email(runtime, saml_response):
    encoded = saml_response(
        "_req-1", name_id="opaque-id", name_id_format=PERSISTENT_FORMAT, attributes={}
    )
    with pytest.raises(MissingEmailError):
        runtime.saml.complete(encoded, "_req-1", "example.com")


def test_missing_cookies_are_invalid_state(runtime, saml_response):
    encoded = saml_response("_req-1")
    with pytest.raises(InvalidStateError):
        runtime.saml.complete(encoded, None, "example.com")
    with pytest.raises(InvalidStateError):
        runtime.saml.complete(encoded, "_req-1", None)


def test_in_response_to_must_match(runtime, saml_response):
    with pytest.raises(InvalidCredentialError):
        runtime.saml.complete(saml_response("_other"), "_req-1", "example.com")


def test_audience_must_match(runtime, saml_response):
    encoded = saml_response("_req-1", audience="https://someone-else.example")
    with pytest.raises(InvalidCredentialError):
        runtime.saml.complete(encoded, "_req-1", "example.com")


def test_expired_assertion(runtime, saml_response):
    encoded = saml_response("_req-1", lifetime=timedelta(minutes=-10))
    with pytest.raises(InvalidCredentialError):
        runtime.saml.complete(encoded, "_req-1", "example.com")


def test_issuer_must_match_configured_idp(runtime, saml_response):
    encoded = saml_response("_req-1", issuer="https://evil.example.com")
    with pytest.raises(InvalidCredentialError):
        runtime.saml.complete(encoded, "_req-1", "example.com")


def test_tampered_assertion_fails_signature(runtime, saml_response):
    encoded = saml_response(
        "_req-1", tamper=(b"saml.user@example.com", b"attacker@example.com")
    )
    with pytest.raises(InvalidCredentialError):
        runtime.saml.complete(encoded, "_req-1", "example.com")


def test_failure_status(runtime, saml_response):
    encoded = saml_response("_req-1", status="urn:oasis:names:tc:SAML:2.0:status:Requester")
    with pytest.raises(InvalidCredentialError):
        runtime.saml.complete(encoded, "_req-1", "example.com")


def test_garbage_payload(runtime):
    with pytest.raises(InvalidCredentialError):
        runtime.saml.complete("%%%not-base64%%%", "_req-1", "example.com")
    with pytest.raises(InvalidCredentialError):
        runtime.saml.complete(base64.b64encode(b"<not-xml").decode(), "_req-1", "example.com")


def test_begin_route_without_domain_is_400_without_cookies(client):
    response = client.get("/auth/saml")

    assert response.status_code == 400
    assert response.json()["error"] == "Domain is required"
    assert response.headers.get_list("set-cookie") == []


def test_begin_route_sets_request_cookies(client):
    response = client.get("/auth/saml?domain=example.com")

    assert response.status_code == 302
    assert response.headers["location"].startswith("https://idp.example.com/sso?SAMLRequest=")
    cookies = response.headers.get_list("set-cookie")
    assert any(c.startswith("saml_request_id=_") for c in cookies)
    domain_cookie = next(c for c in cookies if c.startswith("saml_domain="))
    assert domain_cookie.startswith("saml_domain=example.com")
    assert "HttpOnly" in domain_cookie
    assert "samesite=lax" in domain_cookie.lower()


def test_post_callback_signs_user_in(client, runtime, saml_response):
    begin = client.get("/auth/saml?domain=example.com")
    request_id = begin.cookies.get("saml_request_id") or client.cookies.get("saml_request_id")

    response = client.post("/auth/saml", data={"SAMLResponse": saml_response(request_id)})
    assert response.status_code == 302
    assert response.headers["location"] == "/home"
    cookies = response.headers.get_list("set-cookie")
    assert any(c.startswith("session=") for c in cookies)
    assert any(c.startswith("saml_request_id=") and "Max-Age=0" in c for c in cookies)
    user = runtime.store.get_user_by_email("saml.user@example.com")
    assert user.email_verified is True


def test_post_callback_without_cookies_redirects(client, saml_response):
    response = client.post("/auth/saml", data={"SAMLResponse": saml_response("_req-1")})

    assert response.status_code == 302
    assert response.headers["location"] == "/login?error=invalid_state"


def test_replayed_response_is_rejected(client, runtime, saml_response):
    begin = client.get("/auth/saml?domain=example.com")
    request_id = begin.cookies.get("saml_request_id") or client.cookies.get("saml_request_id")
    payload = {"SAMLResponse": saml_response(request_id)}

    first = client.post("/auth/saml", data=payload)
    assert first.headers["location"] == "/home"

    client.cookies.set("saml_request_id", request_id)
    client.cookies.set("saml_domain", "example.com")
    replay = client.post("/auth/saml", data=payload)
    assert replay.headers["location"] == "/login?error=invalid_state"
    assert not any(c.startswith("session=") for c in replay.headers.get_list("set-cookie"))


def test_request_id_never_issued_is_rejected(client, saml_response):
    client.cookies.set("saml_request_id", "_forged-request")
    client.cookies.set("saml_domain", "example.com")

    response = client.post("/auth/saml", data={"SAMLResponse": saml_response("_forged-request")})
    assert response.headers["location"] == "/login?error=invalid_state"


def test_domain_cookie_must_match_issued_request(client, saml_response):
    begin = client.get("/auth/saml?domain=example.com")
    request_id = begin.cookies.get("saml_request_id") or client.cookies.get("saml_request_id")

    client.cookies.set("saml_domain", "other.example")
    response = client.post("/auth/saml", data={"SAMLResponse": saml_response(request_id)})
    assert response.headers["location"] == "/login?error=invalid_state"
