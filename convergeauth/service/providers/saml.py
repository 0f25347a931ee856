"""SAML 2.0 service-provider side: HTTP-Redirect AuthnRequest, HTTP-POST response."""

from __future__ import annotations

import base64
import binascii
import uuid
import zlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

from lxml import etree
from signxml import XMLVerifier
from signxml.exceptions import InvalidInput, InvalidSignature

from convergeauth.config import SamlConnection, Settings
from convergeauth.logging import get_logger
from convergeauth.service.errors import (
    InvalidCredentialError,
    InvalidStateError,
    MissingEmailError,
    NotFoundError,
    ValidationError,
)
from convergeauth.service.identity import ExternalIdentity, IdentityKind, default_display_name

logger = get_logger(__name__)

NS = {
    "samlp": "urn:oasis:names:tc:SAML:2.0:protocol",
    "saml": "urn:oasis:names:tc:SAML:2.0:assertion",
    "ds": "http://www.w3.org/2000/09/xmldsig#",
}
STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
POST_BINDING = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
EMAIL_NAMEID_FORMAT = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"
EMAIL_ATTRIBUTES = (
    "email",
    "mail",
    "emailaddress",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress",
    "urn:oid:0.9.2342.19200300.100.1.3",
)
CLOCK_SKEW = timedelta(seconds=120)

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)


@dataclass
class SamlBegin:
    url: str
    request_id: str
    domain: str


def _pem(cert: str) -> str:
    cert = cert.strip()
    if "BEGIN CERTIFICATE" in cert:
        return cert
    body = "".join(cert.split())
    lines = [body[i : i + 64] for i in range(0, len(body), 64)]
    return "-----BEGIN CERTIFICATE-----\n" + "\n".join(lines) + "\n-----END CERTIFICATE-----\n"


def _instant(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def domain_from(value: Optional[str]) -> Optional[str]:
    """Accept either ``example.com`` or a full address and return the domain."""
    if not value or not value.strip():
        return None
    value = value.strip().lower()
    return value.rsplit("@", 1)[-1] or None


class SamlProvider:
    name = "saml"

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.sp_entity_id = settings.resolved_sp_entity_id
        self.acs_url = settings.callback_url(self.name)

    def connection(self, domain: str) -> SamlConnection:
        conn = self.settings.saml_connections.get(domain.lower())
        if conn is None:
            raise NotFoundError("No SAML connection for domain")
        return conn

    def _authn_request(self, request_id: str, destination: str) -> bytes:
        root = etree.Element(
            etree.QName(NS["samlp"], "AuthnRequest"),
            nsmap={"samlp": NS["samlp"], "saml": NS["saml"]},
        )
        root.set("ID", request_id)
        root.set("Version", "2.0")
        root.set("IssueInstant", _iso(datetime.now(timezone.utc)))
        root.set("Destination", destination)
        root.set("AssertionConsumerServiceURL", self.acs_url)
        root.set("ProtocolBinding", POST_BINDING)
        issuer = etree.SubElement(root, etree.QName(NS["saml"], "Issuer"))
        issuer.text = self.sp_entity_id
        policy = etree.SubElement(root, etree.QName(NS["samlp"], "NameIDPolicy"))
        policy.set("Format", EMAIL_NAMEID_FORMAT)
        policy.set("AllowCreate", "true")
        return etree.tostring(root)

    def begin(self, domain: Optional[str]) -> SamlBegin:
        normalized = domain_from(domain)
        if not normalized:
            raise ValidationError("Domain is required")
        conn = self.connection(normalized)
        request_id = f"_{uuid.uuid4().hex}"
        xml = self._authn_request(request_id, conn.entry_point)
        # HTTP-Redirect binding: raw DEFLATE, then base64
        compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -15)
        deflated = compressor.compress(xml) + compressor.flush()
        query = urlencode({"SAMLRequest": base64.b64encode(deflated).decode()})
        separator = "&" if "?" in conn.entry_point else "?"
        logger.info("saml_begin", domain=normalized)
        return SamlBegin(
            url=f"{conn.entry_point}{separator}{query}",
            request_id=request_id,
            domain=normalized,
        )

    def _verified_root(self, payload: bytes, conn: SamlConnection) -> tuple[etree._Element, etree._Element]:
        """Return ``(document, signed_element)``; only the latter is trusted."""
        try:
            root = etree.fromstring(payload, parser=_PARSER)
        except etree.XMLSyntaxError as exc:
            raise InvalidCredentialError("SAML response could not be parsed") from exc

        cert = _pem(conn.idp_cert)
        verifier = XMLVerifier()
        try:
            return root, verifier.verify(root, x509_cert=cert, expect_references=1).signed_xml
        except (InvalidSignature, InvalidInput) as exc:
            assertion = root.find(".//saml:Assertion", NS)
            if assertion is not None and assertion.find("ds:Signature", NS) is not None:
                try:
                    result = verifier.verify(assertion, x509_cert=cert, expect_references=1)
                    return root, result.signed_xml
                except (InvalidSignature, InvalidInput) as inner_exc:
                    exc = inner_exc
            logger.warning("saml_signature_invalid", error=str(exc))
            raise InvalidCredentialError("SAML signature could not be verified") from exc

    def complete(
        self,
        saml_response: Optional[str],
        request_id: Optional[str],
        domain: Optional[str],
    ) -> ExternalIdentity:
        if not request_id or not domain:
            raise InvalidStateError("Invalid state")
        try:
            conn = self.connection(domain)
        except NotFoundError as exc:
            raise InvalidStateError("Invalid state") from exc
        if not saml_response:
            raise InvalidCredentialError("Missing SAML response")
        try:
            payload = base64.b64decode(saml_response, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidCredentialError("SAML response is not base64") from exc

        root, signed = self._verified_root(payload, conn)

        status = root.find("samlp:Status/samlp:StatusCode", NS)
        if status is None or status.get("Value") != STATUS_SUCCESS:
            logger.warning("saml_status_failure", status=status.get("Value") if status is not None else None)
            raise InvalidCredentialError("Identity provider reported a failure")

        if signed.tag == etree.QName(NS["saml"], "Assertion").text:
            assertion = signed
        else:
            assertion = signed.find("saml:Assertion", NS)
        if assertion is None:
            raise InvalidCredentialError("SAML response carries no signed assertion")

        self._check_in_response_to(root, assertion, request_id)
        self._check_issuer(assertion, conn)
        self._check_conditions(assertion)

        return self._identity(assertion)

    def _check_in_response_to(
        self, root: etree._Element, assertion: etree._Element, request_id: str
    ) -> None:
        candidates = [root.get("InResponseTo")]
        candidates.extend(
            node.get("InResponseTo")
            for node in assertion.findall(
                "saml:Subject/saml:SubjectConfirmation/saml:SubjectConfirmationData", NS
            )
        )
        present = [value for value in candidates if value]
        if not present or any(value != request_id for value in present):
            logger.warning("saml_in_response_to_mismatch")
            raise InvalidCredentialError("SAML response does not answer our request")

    def _check_issuer(self, assertion: etree._Element, conn: SamlConnection) -> None:
        if not conn.idp_entity_id:
            return
        issuer = assertion.findtext("saml:Issuer", namespaces=NS)
        if not issuer or issuer.strip() != conn.idp_entity_id:
            logger.warning("saml_issuer_mismatch", issuer=issuer)
            raise InvalidCredentialError("SAML issuer mismatch")

    def _check_conditions(self, assertion: etree._Element) -> None:
        conditions = assertion.find("saml:Conditions", NS)
        if conditions is None:
            raise InvalidCredentialError("SAML assertion has no conditions")
        now = datetime.now(timezone.utc)
        not_before = _instant(conditions.get("NotBefore"))
        if not_before and now + CLOCK_SKEW < not_before:
            raise InvalidCredentialError("SAML assertion not yet valid")
        not_on_or_after = _instant(conditions.get("NotOnOrAfter"))
        if not_on_or_after and now - CLOCK_SKEW >= not_on_or_after:
            raise InvalidCredentialError("SAML assertion expired")
        audiences = [
            (node.text or "").strip()
            for node in conditions.findall("saml:AudienceRestriction/saml:Audience", NS)
        ]
        if self.sp_entity_id not in audiences:
            logger.warning("saml_audience_mismatch", audiences=audiences)
            raise InvalidCredentialError("SAML audience mismatch")

    @staticmethod
    def _attributes(assertion: etree._Element) -> dict[str, list[str]]:
        found: dict[str, list[str]] = {}
        for attribute in assertion.findall("saml:AttributeStatement/saml:Attribute", NS):
            name = attribute.get("Name")
            if not name:
                continue
            values = [
                (value.text or "").strip()
                for value in attribute.findall("saml:AttributeValue", NS)
                if (value.text or "").strip()
            ]
            found.setdefault(name, []).extend(values)
            friendly = attribute.get("FriendlyName")
            if friendly:
                found.setdefault(friendly, []).extend(values)
        return found

    def _identity(self, assertion: etree._Element) -> ExternalIdentity:
        name_id = assertion.find("saml:Subject/saml:NameID", NS)
        name_id_value = (name_id.text or "").strip() if name_id is not None else ""
        attributes = self._attributes(assertion)
        lowered = {key.lower(): values for key, values in attributes.items()}

        email = None
        for key in EMAIL_ATTRIBUTES:
            values = lowered.get(key.lower())
            if values:
                email = values[0]
                break
        if not email and name_id is not None and name_id.get("Format") == EMAIL_NAMEID_FORMAT:
            email = name_id_value or None
        if not email or "@" not in email:
            raise MissingEmailError("SAML assertion has no email address")

        def first(*keys: str) -> Optional[str]:
            for key in keys:
                values = lowered.get(key.lower())
                if values:
                    return values[0]
            return None

        display_name = first("displayName", "http://schemas.microsoft.com/identity/claims/displayname")
        if not display_name:
            given = first("givenName", "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/givenname")
            surname = first("surname", "sn", "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/surname")
            display_name = " ".join(part for part in (given, surname) if part) or None

        return ExternalIdentity(
            kind=IdentityKind.SAML,
            provider=self.name,
            subject=name_id_value or email.lower(),
            email=email,
            email_verified=True,
            display_name=display_name or default_display_name(email),
        )
