from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

import jwt
from jwt import InvalidTokenError

from ..domain.identity import CallerIdentity, Role


def create_access_token(
    *,
    user_id: int,
    secret: str,
    role: Role = Role.TUTOR,
    email: Optional[str] = None,
    name: Optional[str] = None,
    algorithm: str = "HS256",
    expires_delta: timedelta | None = None,
) -> str:
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(minutes=30))
    payload = {"sub": str(user_id), "role": role.value, "iat": now, "exp": exp}
    if email:
        payload["email"] = email
    if name:
        payload["name"] = name
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_access_token(
    token: str,
    *,
    secret: str,
    algorithms: Sequence[str],
) -> CallerIdentity:
    try:
        payload = jwt.decode(token, secret, algorithms=list(algorithms))
    except InvalidTokenError as exc:  # includes ExpiredSignatureError
        raise ValueError("invalid token") from exc

    sub = payload.get("sub")
    if sub is None:
        raise ValueError("token missing sub")
    try:
        user_id = int(sub)
    except (TypeError, ValueError) as exc:
        raise ValueError("token sub is not an integer") from exc

    try:
        role = Role(payload.get("role", Role.TUTOR.value))
    except ValueError as exc:
        raise ValueError("token role is unknown") from exc
    # Guests never hold a token
    if role == Role.GUEST:
        raise ValueError("token role is unknown")
    return CallerIdentity(user_id=user_id, role=role, email=payload.get("email"), name=payload.get("name"))
