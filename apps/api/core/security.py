"""
Capa de seguridad: validación de los JWT HS256 emitidos por el proveedor
de autenticación. El claim "sub" contiene el UUID del usuario dueño de los aportes.

NUNCA loguear ni exponer SECRET_KEY ni el token completo.
"""

import uuid
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from core.config import settings

ALGORITHM = "HS256"


def create_access_token(user_id: uuid.UUID, expires_minutes: int | None = None) -> str:
    """
    Genera un JWT para user_id. En producción los tokens los emite el proveedor
    de autenticación; esta función se usa en tests y herramientas internas.
    """
    minutes = expires_minutes if expires_minutes is not None else settings.ACCESS_TOKEN_EXPIRE_MINUTES
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    payload = {"sub": str(user_id), "exp": expire, "aud": "authenticated"}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> uuid.UUID:
    """
    Valida el JWT y retorna el UUID del usuario.
    Lanza ValueError si el token es inválido, expirado o sin subject UUID.
    """
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[ALGORITHM],
            audience="authenticated",
        )
    except JWTError as exc:
        raise ValueError(f"Token inválido: {exc}") from exc

    sub = payload.get("sub")
    try:
        return uuid.UUID(str(sub))
    except (TypeError, ValueError) as exc:
        raise ValueError("Token con subject inválido") from exc
