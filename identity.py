import hashlib
import hmac
import os
import time
from dataclasses import dataclass
from typing import Optional, Tuple

from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError

from constants import GUEST_TOKEN_TTL_SECONDS, JWT_ALGORITHM, JWT_SECRET, STAFF_TOKEN_TTL_SECONDS
from errors import AuthFailure
from logging_config import get_logger

logger = get_logger(__name__)

ROLE_GUEST = "GUEST"
ROLE_SUPPORT = "SUPPORT"
ROLE_MENTOR = "MENTOR"
ROLES = (ROLE_GUEST, ROLE_SUPPORT, ROLE_MENTOR)
STAFF_ROLES = (ROLE_SUPPORT, ROLE_MENTOR)

PBKDF2_ITERATIONS = 120_000


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


class IdentityService:
    """Issues and verifies bearer credentials.

    Tokens are HS256 JWTs carrying `sub` (user id) and `role`. Staff logins
    get a longer lifetime than guest sessions. Verification is pure CPU work.
    """

    def __init__(
        self,
        secret: str = JWT_SECRET,
        algorithm: str = JWT_ALGORITHM,
        staff_ttl: int = STAFF_TOKEN_TTL_SECONDS,
        guest_ttl: int = GUEST_TOKEN_TTL_SECONDS,
    ):
        self.secret = secret
        self.algorithm = algorithm
        self.staff_ttl = staff_ttl
        self.guest_ttl = guest_ttl

    def lifetime_for(self, role: str) -> int:
        return self.guest_ttl if role == ROLE_GUEST else self.staff_ttl

    def issue_token(self, user_id: str, role: str, now: Optional[float] = None) -> Tuple[str, int]:
        if role not in ROLES:
            raise ValueError(f"Unknown role {role!r}")
        issued_at = int(now if now is not None else time.time())
        expires_at = issued_at + self.lifetime_for(role)
        claims = {"sub": user_id, "role": role, "iat": issued_at, "exp": expires_at}
        token = jwt.encode(claims, self.secret, algorithm=self.algorithm)
        logger.debug(f"Issued {role} token for user {user_id}, expires at {expires_at}")
        return token, expires_at

    def verify_token(self, token: Optional[str]) -> Identity:
        if not token:
            raise AuthFailure("Authentication error: no token")
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            logger.info("Token rejected: expired")
            raise AuthFailure("Authentication error: token expired")
        except JWTError as e:
            logger.info(f"Token rejected: {e}")
            raise AuthFailure("Authentication error: invalid token")

        user_id = claims.get("sub")
        role = claims.get("role")
        if not user_id or role not in ROLES:
            logger.info(f"Token rejected: bad claims (sub={user_id!r}, role={role!r})")
            raise AuthFailure("Authentication error: invalid token claims")
        return Identity(user_id=str(user_id), role=role)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def hash_password(password: str, salt: Optional[bytes] = None) -> str:
    salt = salt or os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt.hex()}${digest.hex()}"


def check_password(password: str, encoded: Optional[str]) -> bool:
    if not encoded:
        return False
    try:
        _, iterations, salt_hex, digest_hex = encoded.split("$")
        digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt_hex), int(iterations))
    except ValueError:
        return False
    return hmac.compare_digest(digest.hex(), digest_hex)
