from collections.abc import Mapping
import hashlib

from fastapi import Request

MIN_CREDENTIAL_LENGTH = 10


def extract_client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for", "").strip()
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def extract_bearer_token(headers: Mapping[str, str]) -> str | None:
    auth_header = ""
    for name, value in headers.items():
        if name.lower() == "authorization":
            auth_header = (value or "").strip()
            break
    if not auth_header:
        return None
    if auth_header[:7].lower() == "bearer ":
        return auth_header[7:].strip() or None
    return auth_header


def resolve_client_identity(headers: Mapping[str, str], source_ip: str | None) -> str:
    """Derive the admission-control key for a request.

    Authenticated callers are partitioned by ``ip + sha256(credential)[:8]``
    so the hot path never parses an untrusted token; everyone else is
    keyed on the source address alone.
    """
    ip = (source_ip or "").strip() or "unknown"
    token = extract_bearer_token(headers)
    if token and len(token) > MIN_CREDENTIAL_LENGTH:
        token_hash = hashlib.sha256(token.encode("utf-8")).hexdigest()[:8]
        return f"auth:{ip}:{token_hash}"
    return f"ip:{ip}"


def resolve_request_identity(request: Request) -> str:
    return resolve_client_identity(request.headers, extract_client_ip(request))
