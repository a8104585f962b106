import hashlib
import hmac

from fastapi import Header, HTTPException

from ranksync.errors import InvalidSignature

SIGNATURE_PREFIX = "sha256="


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def validate_signature(raw_body: bytes, signature: str | None, secret: str) -> None:
    """
    Check an HMAC-SHA256 hex digest over the exact request bytes.
    A leading ``sha256=`` on the header value is accepted.
    """
    if not signature:
        raise InvalidSignature("missing signature")
    if not secret:
        raise InvalidSignature("no webhook secret configured")
    candidate = signature.strip()
    if candidate.startswith(SIGNATURE_PREFIX):
        candidate = candidate[len(SIGNATURE_PREFIX):]
    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(expected, candidate.lower()):
        raise InvalidSignature("invalid signature")


def bearer_token_guard(token: str | None):
    """
    Build a FastAPI dependency enforcing ``Authorization: Bearer <token>`` when a token is configured.
    """

    def require_bearer_token(authorization: str | None = Header(None, alias="Authorization")):
        if not token:
            return
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="Unauthorized")
        supplied = authorization.split(" ", 1)[1].strip()
        if not hmac.compare_digest(supplied, token):
            raise HTTPException(status_code=401, detail="Unauthorized")

    return require_bearer_token
