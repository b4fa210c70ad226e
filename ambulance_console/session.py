import logging
import time
from typing import Optional

from jose import JWTError, jwt

from .errors import ConsoleError
from .gateway import ApiGateway
from .models import Role, SessionUser
from .storage import CredentialStore, Persistence

logger = logging.getLogger("ambulance_console")


def token_expired(token: str) -> bool:
    """True only for a JWT whose exp claim has passed. Opaque tokens are left to the server."""
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return False
    exp = claims.get("exp")
    if exp is None:
        return False
    try:
        return float(exp) < time.time()
    except (TypeError, ValueError):
        return False


class SessionState:
    """
    Current identity for the console. init() resolves it once at startup;
    login() and logout() are the only mutators.
    """

    def __init__(self, gateway: ApiGateway, credentials: CredentialStore):
        self.gateway = gateway
        self.credentials = credentials
        self.user: Optional[SessionUser] = None
        self.loading = True
        gateway.on_unauthorized = self._reset

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def is_admin(self) -> bool:
        return self.user is not None and self.user.role == Role.ADMIN

    @property
    def is_dispatcher(self) -> bool:
        return self.user is not None and self.user.role == Role.DISPATCHER

    @property
    def is_staff(self) -> bool:
        return self.is_admin or self.is_dispatcher

    async def init(self) -> Optional[SessionUser]:
        self.loading = True
        try:
            # unparseable stored user purges every credential
            stored = self.credentials.stored_user()
            if not self.credentials.has_credentials():
                return None
            token = self.credentials.token()
            if stored:
                logger.info(f"Restoring stored session for {stored.get('username')}")
            if token_expired(token):
                logger.info("Stored token has expired, purging credentials")
                self.logout()
                return None
            try:
                me = await self.gateway.users.me()
            except ConsoleError as e:
                logger.error(f"Error fetching current user: {e}")
                self.logout()
                return None
            self.user = SessionUser(username=me.username, role=me.role)
            logger.info(f"Session restored for {me.username} ({me.role.value})")
            return self.user
        finally:
            self.loading = False

    async def login(self, identifier: str, secret: str, remember: bool = False) -> SessionUser:
        response = await self.gateway.auth.login(identifier, secret)
        persistence = Persistence.DURABLE if remember else Persistence.EPHEMERAL
        user = SessionUser(username=response.username, role=response.role)

        self.credentials.purge()
        self.credentials.save(response.token, user.to_wire(), persistence)
        self.user = user
        logger.info(f"User {user.username} logged in ({persistence.value})")
        return user

    def logout(self) -> None:
        """Clear every stored credential and drop the identity, with no network call."""
        self.credentials.purge()
        if self.user:
            logger.info(f"User {self.user.username} logged out")
        self.user = None

    def _reset(self) -> None:
        self.user = None
