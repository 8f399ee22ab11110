import hashlib
import hmac


def prehash(timestamp: str, api_key: str, recv_window: int, payload: str = "") -> str:
    """timestamp + apiKey + recvWindow + (query string for GET, JSON body for POST)"""
    return f"{timestamp}{api_key}{recv_window}{payload}"


def sign(secret: str, message: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
