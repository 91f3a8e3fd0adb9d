import re
from typing import Optional, Dict, Any

from fastapi import Header, HTTPException, WebSocket
from jose import jwt, JWTError
from loguru import logger

from rendezvous.core.config import AUTH_MODE, AUTH_JWT_SECRET

# Token issuance lives upstream; this module only turns an already-issued
# credential into the validated user id every operation receives.

USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------
def is_valid_user_id(value: Any) -> bool:
    return isinstance(value, str) and bool(USER_ID_PATTERN.match(value))


def _get_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid Authorization header format")

    token = parts[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    return token


def _verify_jwt_hs256(token: str) -> Dict[str, Any]:
    if not AUTH_JWT_SECRET:
        raise HTTPException(status_code=500, detail="AUTH_JWT_SECRET not set")

    try:
        return jwt.decode(
            token,
            AUTH_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def _user_id_from_token(token: str) -> str:
    payload = _verify_jwt_hs256(token)

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="Token missing sub claim")

    return str(sub)


def resolve_user_id(
    authorization: Optional[str] = None,
    x_user_id: Optional[str] = None,
) -> str:
    if AUTH_MODE == "hs256":
        user_id = _user_id_from_token(_get_bearer_token(authorization))
    elif AUTH_MODE == "header":
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Missing X-User-Id header")
        user_id = x_user_id
    else:
        raise HTTPException(
            status_code=500,
            detail=f"Invalid AUTH_MODE: {AUTH_MODE}",
        )

    if not is_valid_user_id(user_id):
        raise HTTPException(status_code=401, detail="Invalid user id")

    return user_id


# ------------------------------------------------------------
# Main Dependency
# ------------------------------------------------------------
def get_current_user_id(
    authorization: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
) -> str:
    return resolve_user_id(authorization, x_user_id)


def get_websocket_user_id(websocket: WebSocket) -> Optional[str]:
    """
    Browsers cannot set headers on a websocket handshake, so the credential
    may also arrive as ?token= (hs256) or ?user_id= (header mode).
    Returns None instead of raising; the caller closes the socket.
    """
    params = websocket.query_params
    headers = websocket.headers

    authorization = headers.get("authorization")
    if not authorization and params.get("token"):
        authorization = f"Bearer {params['token']}"

    x_user_id = headers.get("x-user-id") or params.get("user_id")

    try:
        return resolve_user_id(authorization, x_user_id)
    except HTTPException as exc:
        logger.info(f"[ws] rejected handshake: {exc.detail}")
        return None
