"""
Authentication module — Supports certificate-based and delegated device-code auth.
Uses MSAL for token acquisition against Microsoft Identity Platform.
"""

from __future__ import annotations

import base64
import logging

from cryptography.hazmat.primitives.serialization import pkcs12, Encoding, PrivateFormat, NoEncryption
from cryptography.hazmat.primitives.hashes import SHA1
import msal

from ..config import AuthConfig, REQUIRED_PERMISSIONS

logger = logging.getLogger("membership_resolver.auth")

# Default scopes for app-only auth
APP_SCOPES = ["https://graph.microsoft.com/.default"]


class AuthenticationError(Exception):
    """Raised when authentication fails."""
    pass


def load_pfx_credential(cert_path: str, password: str) -> dict:
    """
    Read a base64-encoded PFX and return an MSAL client credential
    ({"thumbprint": ..., "private_key": ...}).
    """
    try:
        with open(cert_path, "r") as f:
            cert_base64 = f.read().strip()

        cert_bytes = base64.b64decode(cert_base64)
        password_bytes = password.encode("utf-8") if password else None

        private_key, certificate, _ = pkcs12.load_key_and_certificates(
            cert_bytes, password_bytes
        )
    except FileNotFoundError:
        raise AuthenticationError(f"Certificate file not found: {cert_path}")
    except ValueError as e:
        raise AuthenticationError(f"Failed to load certificate: {e}")

    if private_key is None or certificate is None:
        raise AuthenticationError(f"Certificate file holds no key pair: {cert_path}")

    private_key_pem = private_key.private_bytes(
        Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
    ).decode("utf-8")
    thumbprint = certificate.fingerprint(SHA1()).hex()
    logger.info(f"Certificate loaded. Thumbprint: {thumbprint}")

    return {"thumbprint": thumbprint, "private_key": private_key_pem}


class Authenticator:
    """
    Handles MSAL-based authentication for Microsoft Graph.
    Supports:
      - Certificate-based app-only authentication
      - Delegated authentication (device code flow)
    """

    def __init__(self, config: AuthConfig, certificate_password: str = ""):
        self.config = config
        self.certificate_password = certificate_password

    def acquire_token(self) -> str:
        """Acquire an access token based on configured auth mode."""
        if self.config.mode == "certificate":
            return self._acquire_certificate_token()
        elif self.config.mode == "delegated":
            return self._acquire_delegated_token()
        else:
            raise AuthenticationError(f"Unknown auth mode: {self.config.mode}")

    def _acquire_certificate_token(self) -> str:
        """Acquire token using certificate-based client credentials."""
        cert_config = self.config.certificate
        if not cert_config:
            raise AuthenticationError("Certificate auth config not provided.")

        logger.info("Authenticating with certificate-based app credentials...")
        credential = load_pfx_credential(cert_config.certificate_path, self.certificate_password)

        app = msal.ConfidentialClientApplication(
            client_id=cert_config.client_id,
            authority=f"https://login.microsoftonline.com/{cert_config.tenant_id}",
            client_credential=credential,
        )
        result = app.acquire_token_for_client(scopes=APP_SCOPES)
        return self._accept(result, "Certificate")

    def _acquire_delegated_token(self) -> str:
        """Acquire token using delegated (device code) flow."""
        deleg_config = self.config.delegated
        if not deleg_config:
            raise AuthenticationError("Delegated auth config not provided.")

        logger.info("Initiating device code authentication flow...")

        app = msal.PublicClientApplication(
            client_id=deleg_config.client_id,
            authority=f"https://login.microsoftonline.com/{deleg_config.tenant_id}",
        )

        flow = app.initiate_device_flow(scopes=deleg_config.scopes)
        if "user_code" not in flow:
            raise AuthenticationError(
                f"Device code flow failed: {flow.get('error_description', 'Unknown')}"
            )

        # MSAL's message carries the verification URL and the code
        print(flow["message"])

        result = app.acquire_token_by_device_flow(flow)
        return self._accept(result, "Delegated")

    def _accept(self, result: dict, label: str) -> str:
        if "access_token" in result:
            logger.info(f"{label} authentication successful.")
            return result["access_token"]
        error = result.get("error_description", result.get("error", "Unknown"))
        raise AuthenticationError(f"{label} auth failed: {error}")

    @staticmethod
    def list_required_permissions() -> dict[str, str]:
        """Return the map of required Graph API permissions."""
        return REQUIRED_PERMISSIONS
