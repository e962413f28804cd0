"""Per-session secure transport for the row API client.

Trust and key material is applied to the ``requests.Session`` owned by one
client rather than to process-wide defaults, so sessions with different
trust settings can coexist in one process.
"""

import logging
import ssl
from dataclasses import dataclass, field
from typing import Optional

import requests
from requests.adapters import HTTPAdapter

from .exceptions import TransportSetupError

logger = logging.getLogger("kinetica_spark.transport")

KEY_STORE_FORMAT = "expected one PEM file holding the client certificate and its private key"
PKCS12_SUFFIXES = (".p12", ".pfx")


@dataclass(frozen=True)
class TransportConfig:
    """
    Secure transport overrides for one session.

    The trust store is a PEM bundle of CA certificates. The key store is a
    PEM file with the client certificate followed by its private key, which
    ``key_store_password`` decrypts; PKCS#12 archives must be converted first.
    """

    bypass_cert_check: bool = False
    trust_store_path: Optional[str] = None
    trust_store_password: Optional[str] = field(default=None, repr=False)
    key_store_path: Optional[str] = None
    key_store_password: Optional[str] = field(default=None, repr=False)

    @property
    def override(self) -> Optional[str]:
        """Name of the trust override in effect; bypass wins over a trust store."""
        if self.bypass_cert_check:
            return "bypass"
        if self.trust_store_path:
            return "trust_store"
        return None


class SSLContextAdapter(HTTPAdapter):
    """HTTP adapter that hands a prepared SSL context to urllib3."""

    def __init__(self, ssl_context: ssl.SSLContext, **kwargs):
        self.ssl_context = ssl_context
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs["ssl_context"] = self.ssl_context
        return super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, *args, **kwargs):
        kwargs["ssl_context"] = self.ssl_context
        return super().proxy_manager_for(*args, **kwargs)


def build_ssl_context(config: TransportConfig) -> Optional[ssl.SSLContext]:
    """
    Build the SSL context for the configured overrides.

    Returns:
        An SSL context, or None when no override is configured

    Raises:
        TransportSetupError: If a store cannot be read or its password is wrong
    """
    override = config.override
    if override is None and not config.key_store_path:
        return None

    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)

    if override == "bypass":
        logger.info("Installing trust settings that bypass the certificate check")
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        if config.trust_store_path:
            logger.warning(
                f"Ignoring trust store {config.trust_store_path}: certificate check bypass takes precedence"
            )
        if config.key_store_path:
            logger.warning(
                f"Ignoring key store {config.key_store_path}: certificate check bypass is active"
            )
        return context

    if override == "trust_store":
        logger.info(f"Installing custom trust store: {config.trust_store_path}")
        if config.trust_store_password:
            logger.warning("Trust store password given but PEM trust stores are not encrypted; ignoring it")
        try:
            context.load_verify_locations(cafile=config.trust_store_path)
        except (OSError, ssl.SSLError) as err:
            raise TransportSetupError(
                f"Cannot load trust store '{config.trust_store_path}': {err}"
            ) from err

    if config.key_store_path:
        logger.info(f"Installing custom key store: {config.key_store_path}")
        if config.key_store_path.lower().endswith(PKCS12_SUFFIXES):
            raise TransportSetupError(
                f"Key store '{config.key_store_path}' looks like a PKCS#12 archive; {KEY_STORE_FORMAT}. "
                f"Convert it with: openssl pkcs12 -in <store.p12> -out <store.pem>"
            )
        try:
            context.load_cert_chain(
                certfile=config.key_store_path,
                password=config.key_store_password,
            )
        except (OSError, ssl.SSLError) as err:
            raise TransportSetupError(
                f"Cannot load key store '{config.key_store_path}' ({KEY_STORE_FORMAT}): {err}"
            ) from err

    return context


def build_http_session(config: TransportConfig) -> requests.Session:
    """Create a ``requests.Session`` carrying the transport overrides."""
    session = requests.Session()
    context = build_ssl_context(config)
    if context is not None:
        session.mount("https://", SSLContextAdapter(context))
    if config.bypass_cert_check:
        session.verify = False
    elif config.trust_store_path:
        session.verify = config.trust_store_path
    return session
