from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from errors import InvalidCredential
from settings import Settings, settings

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.BCRYPT_ROUNDS,
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


class TokenIssuer:
    """Signs and verifies the bearer tokens shared by HTTP and WebSocket clients."""

    def __init__(self, secret: str, algorithm: str = "HS256", expires: timedelta = timedelta(days=7)):
        self.secret = secret
        self.algorithm = algorithm
        self.expires = expires

    @classmethod
    def from_settings(cls, config: Settings) -> "TokenIssuer":
        return cls(
            config.SECRET_KEY,
            config.ALGORITHM,
            timedelta(days=config.ACCESS_TOKEN_EXPIRE_DAYS),
        )

    def issue(self, user_id: str, expires_delta: Optional[timedelta] = None) -> str:
        expire = datetime.now(timezone.utc) + (expires_delta if expires_delta is not None else self.expires)
        return jwt.encode({"sub": user_id, "exp": expire}, self.secret, algorithm=self.algorithm)

    def decode(self, token: Optional[str]) -> str:
        """Return the user id bound to `token` or raise InvalidCredential."""
        if not token:
            raise InvalidCredential("No token provided")
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError:
            raise InvalidCredential("Invalid token")
        user_id = payload.get("sub")
        if not user_id:
            raise InvalidCredential("Invalid token")
        return user_id
