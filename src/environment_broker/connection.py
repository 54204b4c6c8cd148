"""
environment_broker.connection — Per-type credential brokers.

Every environment type exposes the same two calls:

    get_auth_credentials(instance_id, context) -> {"url": ...}
    get_connection_instructions()              -> str

The instruction text embeds a link placeholder,
``#{"type":"link","hrefKey":"url","text":...}``, that the UI swaps for the
``url`` value of the credentials. Nothing here renders UI.

Strategies (one class each):
    TokenLookupConnectionService         bearer token from SSM Parameter Store
    SessionTokenLookupConnectionService  token + session id JSON from SSM
    ChallengeResponseConnectionService   RSA-encrypted sign-in credentials
    DirectIntrospectionConnectionService public DNS read straight from EC2
    DirectLinkConnectionService          synthetic hostname, no secret
"""

from __future__ import annotations

import base64
import hashlib
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from environment_broker.access import CrossAccountAccessGateway, ScopedClients
from environment_broker.config import SecureConnectionMetadata, require_secure_connection
from environment_broker.dns import application_hostname
from environment_broker.exceptions import (
    ConfigurationError,
    NotFound,
    ValidationError,
    client_error_code,
    translate_client_error,
)
from environment_broker.models import ConnectionContext

logger = Logger(service="connection-broker")

ACCESS_TOKEN_PARAMETER = "/{product}/access-token/sc-environments/ec2-instance/{instance_id}"
PUBLIC_KEY_PARAMETER = "/{product}/publickey/sc-environments/ec2-instance/{instance_id}"

SIGN_IN_USERNAME = "ec2-user"
SIGN_IN_PATH = "/auth-do-sign-in"
SIGN_IN_QUERY_KEY = "v"

_HEX = re.compile(r"^[0-9a-fA-F]+$")
_INSTANCE_NOT_FOUND_CODES = frozenset({"InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"})


@dataclass(frozen=True)
class ConnectionLink:
    """Structured link placeholder the presentation layer renders."""

    text: str
    href_key: str = "url"
    type: str = "link"

    def placeholder(self) -> str:
        return json.dumps(
            {"type": self.type, "hrefKey": self.href_key, "text": self.text},
            separators=(",", ":"),
        )


def access_token_parameter(product: str, instance_id: str) -> str:
    return ACCESS_TOKEN_PARAMETER.format(product=product, instance_id=instance_id)


def public_key_parameter(product: str, instance_id: str) -> str:
    return PUBLIC_KEY_PARAMETER.format(product=product, instance_id=instance_id)


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------


class EnvironmentConnectionService(ABC):
    """Shared plumbing: link text, hosting-account access and SSM reads."""

    def __init__(
        self,
        env_type: str,
        *,
        gateway: CrossAccountAccessGateway,
        display_name: str,
        link_text: str,
        secure_connection: SecureConnectionMetadata | None = None,
    ) -> None:
        self.env_type = env_type
        self.display_name = display_name
        self.link = ConnectionLink(text=link_text)
        self._gateway = gateway
        self._secure_connection = secure_connection

    def get_connection_instructions(self) -> str:
        # "url" is the key of the mapping returned by get_auth_credentials
        return f"To access {self.display_name}, open #{self.link.placeholder()}"

    @abstractmethod
    def get_auth_credentials(self, instance_id: str, context: ConnectionContext) -> dict[str, str]:
        """Return {"url": <authorized url>} for the environment's instance."""

    def secret_parameter_names(self, instance_id: str) -> list[str]:
        """SSM parameters holding per-instance connection secrets."""
        return []

    def _hostname(self, context: ConnectionContext) -> str:
        metadata = require_secure_connection(self._secure_connection)
        return application_hostname(self.env_type, context.env_id, metadata.partner_domain)

    def _hosting_clients(self, context: ConnectionContext) -> ScopedClients:
        hint = f"{self.env_type}Connect"
        return self._gateway.assume(context.role_arn, context.external_id, hint)

    def _read_parameter(self, clients: ScopedClients, name: str) -> str:
        try:
            response = clients.ssm.get_parameter(Name=name, WithDecryption=True)
        except (ClientError, BotoCoreError) as exc:
            if client_error_code(exc) == "ParameterNotFound":
                raise NotFound(resource="Parameter", identifier=name) from exc
            raise translate_client_error(exc, service="ssm", operation="GetParameter") from exc
        value = response.get("Parameter", {}).get("Value")
        if not value:
            raise NotFound(resource="Parameter", identifier=name)
        return str(value)


# ---------------------------------------------------------------------------
# Token lookup
# ---------------------------------------------------------------------------


class TokenLookupConnectionService(EnvironmentConnectionService):
    """Reads a bearer token the instance wrote to Parameter Store at boot."""

    def __init__(self, env_type: str, *, product: str, path: str = "", **kwargs: Any) -> None:
        super().__init__(env_type, **kwargs)
        self.product = product
        self.path = path

    def secret_parameter_names(self, instance_id: str) -> list[str]:
        return [access_token_parameter(self.product, instance_id)]

    def get_auth_credentials(self, instance_id: str, context: ConnectionContext) -> dict[str, str]:
        host = self._hostname(context)
        clients = self._hosting_clients(context)
        token = self._read_parameter(clients, access_token_parameter(self.product, instance_id))
        return {"url": self.build_url(host, token)}

    def build_url(self, host: str, token: str) -> str:
        return f"https://{host}{self.path}?{urlencode({'token': token})}"


class SessionTokenLookupConnectionService(TokenLookupConnectionService):
    """Token lookup where the parameter holds {"auth_token": ..., "session_id": ...}."""

    def build_url(self, host: str, token: str) -> str:
        try:
            data = json.loads(token)
            auth_token = str(data["auth_token"])
            session_id = str(data["session_id"])
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            raise ValidationError(
                f"Access token parameter for {self.env_type} is not a session token document"
            ) from exc
        return f"https://{host}{self.path}/?{urlencode({'authToken': auth_token})}#{session_id}"


# ---------------------------------------------------------------------------
# Challenge-response (RSA)
# ---------------------------------------------------------------------------


def load_public_key(material: str) -> rsa.RSAPublicKey:
    """Build an RSA public key from "{exponentHex}:{modulusHex}".

    Anything other than exactly two non-empty hex components is rejected.
    """
    parts = material.strip().split(":")
    if len(parts) != 2 or not all(_HEX.match(part) for part in parts):
        raise ValidationError("Public key must be '<exponent hex>:<modulus hex>'")
    exponent, modulus = (int(part, 16) for part in parts)
    try:
        return rsa.RSAPublicNumbers(exponent, modulus).public_key()
    except ValueError as exc:
        raise ValidationError(f"Invalid RSA public key components: {exc}") from exc


def sign_in_password(instance_id: str, shared_secret: str) -> str:
    return hashlib.sha256(f"{instance_id}{shared_secret}".encode()).hexdigest()


def sign_in_credentials(instance_id: str, shared_secret: str) -> str:
    return f"{SIGN_IN_USERNAME}\n{sign_in_password(instance_id, shared_secret)}"


def encrypt_credentials(public_key: rsa.RSAPublicKey, credentials: str) -> str:
    """PKCS#1 v1.5 encrypt and base64 encode."""
    try:
        ciphertext = public_key.encrypt(credentials.encode(), padding.PKCS1v15())
    except ValueError as exc:
        raise ValidationError(f"Public key cannot encrypt sign-in credentials: {exc}") from exc
    return base64.b64encode(ciphertext).decode()


class ChallengeResponseConnectionService(EnvironmentConnectionService):
    """Pre-authenticated sign-in URL for servers using encrypted form sign-in.

    The instance publishes its RSA public key; the password is derived from
    the instance id and a secret shared with the instance bootstrap.
    """

    def __init__(
        self,
        env_type: str,
        *,
        product: str,
        shared_secret: str | None,
        **kwargs: Any,
    ) -> None:
        super().__init__(env_type, **kwargs)
        self.product = product
        self._shared_secret = shared_secret

    def secret_parameter_names(self, instance_id: str) -> list[str]:
        return [public_key_parameter(self.product, instance_id)]

    def get_auth_credentials(self, instance_id: str, context: ConnectionContext) -> dict[str, str]:
        if not self._shared_secret:
            raise ConfigurationError(f"No connection shared secret configured for {self.env_type}")
        host = self._hostname(context)
        clients = self._hosting_clients(context)
        material = self._read_parameter(clients, public_key_parameter(self.product, instance_id))
        public_key = load_public_key(material)
        payload = encrypt_credentials(
            public_key, sign_in_credentials(instance_id, self._shared_secret)
        )
        sign_in_url = f"https://{host}{SIGN_IN_PATH}"
        return {"url": f"{sign_in_url}?{urlencode({SIGN_IN_QUERY_KEY: payload})}"}


# ---------------------------------------------------------------------------
# Direct introspection
# ---------------------------------------------------------------------------


class DirectIntrospectionConnectionService(EnvironmentConnectionService):
    """Builds the URL from the instance's public DNS name; no stored secret."""

    def __init__(
        self,
        env_type: str,
        *,
        port: int = 8443,
        fragment: str = "swb-session",
        **kwargs: Any,
    ) -> None:
        super().__init__(env_type, **kwargs)
        self.port = port
        self.fragment = fragment

    def get_auth_credentials(self, instance_id: str, context: ConnectionContext) -> dict[str, str]:
        clients = self._hosting_clients(context)
        try:
            response = clients.ec2.describe_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as exc:
            if client_error_code(exc) in _INSTANCE_NOT_FOUND_CODES:
                raise NotFound(resource="Instance", identifier=instance_id) from exc
            raise translate_client_error(exc, service="ec2", operation="DescribeInstances") from exc

        instances = [
            instance
            for reservation in response.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]
        if not instances:
            raise NotFound(resource="Instance", identifier=instance_id)
        public_dns = str(instances[0].get("PublicDnsName") or "")
        if not public_dns:
            raise NotFound(resource="Public DNS name for instance", identifier=instance_id)
        query = urlencode({"authToken": instance_id})
        return {"url": f"https://{public_dns}:{self.port}/?{query}#{self.fragment}"}


# ---------------------------------------------------------------------------
# Direct link
# ---------------------------------------------------------------------------


class DirectLinkConnectionService(EnvironmentConnectionService):
    """The synthetic hostname is the whole URL; auth happens at the ALB."""

    def get_auth_credentials(self, instance_id: str, context: ConnectionContext) -> dict[str, str]:
        return {"url": f"https://{self._hostname(context)}"}
