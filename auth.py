import base64
import hashlib
import hmac
import os

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from errors import Unauthorized
from models import Role
from policy import Identity

PBKDF2_ITERATIONS = 200_000


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="access-token")


def issue_token(user_id: int, role: Role) -> str:
    return _serializer().dumps({"u": user_id, "r": role.value})


def verify_token(token: str) -> Identity:
    settings = get_settings()
    try:
        data = _serializer().loads(token, max_age=settings.token_max_age_hours * 3600)
    except SignatureExpired as exc:
        raise Unauthorized("Token expired") from exc
    except BadSignature as exc:
        raise Unauthorized("Invalid token") from exc

    if not isinstance(data, dict):
        raise Unauthorized("Invalid token payload")
    try:
        return Identity(id=int(data["u"]), role=Role(data["r"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise Unauthorized("Invalid token payload") from exc


def _pbkdf2(password: str, salt: bytes, iterations: int) -> bytes:
    return hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), salt, iterations, dklen=32
    )


def hash_password(password: str, iterations: int = PBKDF2_ITERATIONS) -> str:
    salt = os.urandom(16)
    dk = _pbkdf2(password, salt, iterations)
    return f"pbkdf2_sha256${iterations}${base64.b64encode(salt).decode()}${dk.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        _algo, iters_str, salt_b64, hexhash = stored.split("$")
        salt = base64.b64decode(salt_b64)
        iterations = int(iters_str)
    except ValueError:
        return False
    dk = _pbkdf2(password, salt, iterations)
    return hmac.compare_digest(dk.hex(), hexhash)
