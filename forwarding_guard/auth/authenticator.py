"""
Authentication module — Supports certificate-based and delegated device-code auth.
Uses MSAL for token acquisition against Microsoft Identity Platform.
Separate tokens are issued for Microsoft Graph and Exchange Online.
"""

from __future__ import annotations

import base64
import getpass
import logging
import os
from typing import Optional

from cryptography.hazmat.primitives.serialization import pkcs12, Encoding, PrivateFormat, NoEncryption
from cryptography.hazmat.primitives.hashes import SHA1
import msal

from ..config import AuthConfig, GRAPH_SCOPE, EXCHANGE_SCOPE, REQUIRED_PERMISSIONS

logger = logging.getLogger("forwarding_guard.auth")

CERT_PASSWORD_ENV = "FWDGUARD_CERT_PASSWORD"


class AuthenticationError(Exception):
    """Raised when authentication fails."""
    pass


class Authenticator:
    """
    Handles MSAL-based authentication.
    Supports:
      - Certificate-based app-only authentication
      - Delegated interactive authentication (device code flow)
    """

    def __init__(self, config: AuthConfig):
        self.config = config
        self._app: Optional[msal.ClientApplication] = None
        self._tokens: dict[str, str] = {}

    def acquire_token(self, scope: str = GRAPH_SCOPE) -> str:
        """Acquire an access token for one resource scope."""
        if scope in self._tokens:
            return self._tokens[scope]
        if self.config.mode == "certificate":
            token = self._acquire_certificate_token(scope)
        elif self.config.mode == "delegated":
            token = self._acquire_delegated_token(scope)
        else:
            raise AuthenticationError(f"Unknown auth mode: {self.config.mode}")
        self._tokens[scope] = token
        return token

    def acquire_graph_token(self) -> str:
        return self.acquire_token(GRAPH_SCOPE)

    def acquire_exchange_token(self) -> str:
        return self.acquire_token(EXCHANGE_SCOPE)

    def _load_certificate(self) -> tuple[str, str]:
        """Return (private key PEM, thumbprint) from the base64-encoded PFX."""
        cert_config = self.config.certificate
        if not cert_config:
            raise AuthenticationError("Certificate auth config not provided.")

        cert_path = cert_config.certificate_path
        password = cert_config.certificate_password
        if not password:
            password = os.environ.get(CERT_PASSWORD_ENV, "")
        if not password:
            password = getpass.getpass("Enter the certificate password: ")

        try:
            with open(cert_path, "r") as f:
                cert_base64 = f.read().strip()

            cert_bytes = base64.b64decode(cert_base64)
            password_bytes = password.encode("utf-8") if password else None

            private_key, certificate, _ = pkcs12.load_key_and_certificates(
                cert_bytes, password_bytes
            )
            if private_key is None or certificate is None:
                raise AuthenticationError("PFX does not contain a key and certificate.")

            private_key_pem = private_key.private_bytes(
                Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
            ).decode("utf-8")
            thumbprint = certificate.fingerprint(SHA1()).hex()

        except FileNotFoundError:
            raise AuthenticationError(f"Certificate file not found: {cert_path}.")
        except AuthenticationError:
            raise
        except Exception as e:
            raise AuthenticationError(f"Failed to load certificate: {e}")

        logger.info(f"Certificate loaded. Thumbprint: {thumbprint}")
        return private_key_pem, thumbprint

    def _acquire_certificate_token(self, scope: str) -> str:
        """Acquire token using certificate-based client credentials."""
        cert_config = self.config.certificate
        if not cert_config:
            raise AuthenticationError("Certificate auth config not provided.")

        if self._app is None:
            logger.info("Authenticating with certificate-based app credentials...")
            private_key_pem, thumbprint = self._load_certificate()
            self._app = msal.ConfidentialClientApplication(
                client_id=cert_config.client_id,
                authority=f"https://login.microsoftonline.com/{cert_config.tenant_id}",
                client_credential={
                    "thumbprint": thumbprint,
                    "private_key": private_key_pem,
                },
            )

        result = self._app.acquire_token_for_client(scopes=[scope])
        return self._token_from_result(result, "Certificate", scope)

    def _acquire_delegated_token(self, scope: str) -> str:
        """Acquire token using delegated (device code) flow."""
        deleg_config = self.config.delegated
        if not deleg_config:
            raise AuthenticationError("Delegated auth config not provided.")

        if self._app is None:
            self._app = msal.PublicClientApplication(
                client_id=deleg_config.client_id,
                authority=f"https://login.microsoftonline.com/{deleg_config.tenant_id}",
            )

        # A second resource can usually be acquired silently after the first sign-in
        accounts = self._app.get_accounts()
        if accounts:
            result = self._app.acquire_token_silent([scope], account=accounts[0])
            if result and "access_token" in result:
                return result["access_token"]

        logger.info("Initiating device code authentication flow...")
        flow = self._app.initiate_device_flow(scopes=[scope])
        if "user_code" not in flow:
            raise AuthenticationError(
                f"Device code flow failed: {flow.get('error_description', 'Unknown')}"
            )

        print(f"\n{'='*60}")
        print(f"  To sign in, open: {flow['verification_uri']}")
        print(f"  Enter code: {flow['user_code']}")
        print(f"{'='*60}\n")

        result = self._app.acquire_token_by_device_flow(flow)
        return self._token_from_result(result, "Delegated", scope)

    @staticmethod
    def _token_from_result(result: dict, mode: str, scope: str) -> str:
        if "access_token" in result:
            logger.info(f"{mode} authentication successful for {scope}.")
            return result["access_token"]
        error = result.get("error_description", result.get("error", "Unknown"))
        raise AuthenticationError(f"{mode} auth failed for {scope}: {error}")

    @staticmethod
    def list_required_permissions() -> dict[str, str]:
        return REQUIRED_PERMISSIONS
