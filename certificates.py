# -----------------------------------------------------------------------------
# Certificate Helpers
#
# Subject derivation and inspection for the self-signed proxy certificate.
# The certificate's common name tracks the host's public address, so the
# installed certificate is only replaced when that address changes.
# -----------------------------------------------------------------------------

from typing import List, Optional

from cryptography import x509
from cryptography.x509.oid import NameOID

from proxy_config import CertificatePolicy


def installed_common_name(pem: Optional[str]) -> Optional[str]:
    """
    Return the subject common name of a PEM certificate.

    Args:
        pem: Certificate content as read from the host, or None if absent

    Returns:
        Optional[str]: The CN, or None when the content is missing or unreadable
    """
    if not pem or "BEGIN CERTIFICATE" not in pem:
        return None
    try:
        cert = x509.load_pem_x509_certificate(pem.encode("utf-8"))
    except ValueError:
        return None
    names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not names:
        return None
    value = names[0].value
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


def needs_regeneration(installed_pem: Optional[str], address: str, key_present: bool) -> bool:
    """Return True unless the installed certificate already names *address*."""
    if not key_present:
        return True
    return installed_common_name(installed_pem) != address


def openssl_request_command(policy: CertificatePolicy, address: str) -> List[str]:
    """Build the ``openssl req`` argv generating a self-signed pair for *address*."""
    return [
        "openssl",
        "req",
        "-x509",
        "-nodes",
        "-days",
        str(policy.days),
        "-newkey",
        f"rsa:{policy.key_bits}",
        "-keyout",
        policy.key_path,
        "-out",
        policy.cert_path,
        "-subj",
        policy.subject(address),
    ]
