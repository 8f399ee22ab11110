import base64
import hashlib
import hmac


def prehash(timestamp: str, method: str, request_path: str, body: str = "") -> str:
    """timestamp + METHOD + requestPath(?query) + body"""
    return f"{timestamp}{method.upper()}{request_path}{body}"


def sign(secret: str, message: str) -> str:
    digest = hmac.new(
        secret.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("utf-8")
