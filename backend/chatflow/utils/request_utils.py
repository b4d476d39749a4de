# /chatflow/utils/request_utils.py
from fastapi import Request


def get_remote_address(request: Request) -> str:
    """
    Returns the client's IP address, preferring the first hop of
    X-Forwarded-For when running behind a proxy.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"
