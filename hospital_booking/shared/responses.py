"""Response envelope shared by every router"""

from typing import Any, Optional


def success(message: str, data: Any = None, **extra) -> dict:
    payload = {"success": True, "message": message, "data": data}
    payload.update(extra)
    return payload


def failure(message: str, error: str, step: Optional[str] = None, details: Any = None) -> dict:
    payload = {"success": False, "message": message, "error": error}
    if step:
        payload["step"] = step
    if details is not None:
        payload["details"] = details
    return payload
