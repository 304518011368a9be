from typing import Optional, Protocol

import jwt
from fastapi import WebSocket, status
from starlette.concurrency import run_in_threadpool
from starlette.requests import HTTPConnection

from constants import JWT_SECRET, JWT_ALGORITHM, JWT_USER_CLAIM
from logging_config import get_logger
from realtime.errors import AuthenticationFailure
from schemas.chat import Identity

logger = get_logger(__name__)


class IdentityDirectory(Protocol):
    def get_user(self, user_id: str) -> Optional[Identity]: ...


class IdentityProvider(Protocol):
    async def verify(self, token: Optional[str]) -> Identity: ...


class JwtIdentityProvider:
    """Verifies signed tokens and resolves the user they name through the directory."""

    def __init__(self, directory: IdentityDirectory, secret: str = JWT_SECRET, algorithm: str = JWT_ALGORITHM, user_claim: str = JWT_USER_CLAIM):
        self.directory = directory
        self.secret = secret
        self.algorithms = [algorithm]
        self.user_claim = user_claim

    async def verify(self, token: Optional[str]) -> Identity:
        if not token:
            raise AuthenticationFailure("Missing token")
        try:
            claims = jwt.decode(token, self.secret, algorithms=self.algorithms)
        except jwt.ExpiredSignatureError as e:
            raise AuthenticationFailure("Token expired") from e
        except jwt.InvalidTokenError as e:
            raise AuthenticationFailure("Invalid token") from e

        user_id = claims.get(self.user_claim)
        if user_id is None:
            raise AuthenticationFailure("Invalid token")
        identity = await run_in_threadpool(self.directory.get_user, str(user_id))
        if identity is None:
            raise AuthenticationFailure("User not found")
        return identity


def extract_token(connection: HTTPConnection) -> Optional[str]:
    """Token from the `token` query parameter, or a Bearer Authorization header."""
    token = connection.query_params.get("token")
    if token:
        return token
    auth_header = connection.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.removeprefix("Bearer ").strip() or None
    return None


async def admit(websocket: WebSocket, provider: IdentityProvider) -> Optional[Identity]:
    """Authenticate a WebSocket handshake.

    Returns the identity to bind to the connection, or closes the handshake
    with a policy violation and returns None.
    """
    client = websocket.client.host if websocket.client else "unknown"
    try:
        identity = await provider.verify(extract_token(websocket))
    except AuthenticationFailure as e:
        logger.warning(f"WebSocket connection rejected from {client}: {e}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(e))
        return None
    logger.info(f"WebSocket connection authenticated for {identity.display_name} ({identity.id}) from {client}")
    return identity
