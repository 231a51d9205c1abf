import logging
from datetime import timedelta
from typing import Any
from uuid import UUID

from ..auth_utils import ACCESS_TOKEN, VERIFICATION_TOKEN, decode_token, hash_password, issue_token, verify_password
from ..config import Settings
from ..errors import InvalidCredentials, InvalidToken, Unauthorized
from ..mailer import OutgoingEmail, verification_email
from ..persistence import Persistence
from ..schemas import RegisterRequest

logger = logging.getLogger(__name__)


class AuthService:
    def __init__(self, persistence: Persistence, settings: Settings) -> None:
        self.persistence = persistence
        self.settings = settings

    def register(self, payload: RegisterRequest) -> OutgoingEmail:
        """Create the user with its default ledger and return the verification e-mail to send."""
        user = self.persistence.register_user(payload.name, payload.email, hash_password(payload.password))
        token = issue_token(
            str(user["id"]),
            VERIFICATION_TOKEN,
            self.settings.jwt_secret,
            timedelta(hours=self.settings.verification_token_hours),
            self.settings.jwt_algorithm,
        )
        link = f"{self.settings.public_base_url}/auth/verify?token={token}"
        logger.info("registered user %s", user["id"])
        return verification_email(user["email"], user["name"], link, self.settings.verification_token_hours)

    def verify(self, token: str) -> bool:
        """Mark the token's user as verified. Returns False if it already was."""
        claims = decode_token(token, VERIFICATION_TOKEN, self.settings.jwt_secret, self.settings.jwt_algorithm)
        try:
            user_id = UUID(str(claims["sub"]))
        except ValueError as exc:
            raise InvalidToken("invalid token") from exc
        user = self.persistence.get_user_by_id(user_id)
        if user is None:
            raise InvalidToken("user not found")
        if user["is_verified"]:
            return False
        self.persistence.mark_user_verified(user_id)
        logger.info("verified user %s", user_id)
        return True

    def login(self, email: str, password: str) -> tuple[str, dict[str, Any]]:
        user = self.persistence.get_user_by_email(email)
        if user is None or not verify_password(password, user["password_hash"]):
            raise InvalidCredentials("invalid credentials")
        if not user["is_verified"]:
            raise InvalidCredentials("email not verified; check your inbox")
        token = issue_token(
            str(user["id"]),
            ACCESS_TOKEN,
            self.settings.jwt_secret,
            timedelta(minutes=self.settings.access_token_minutes),
            self.settings.jwt_algorithm,
        )
        return token, user

    def authenticate(self, token: str) -> UUID:
        try:
            claims = decode_token(token, ACCESS_TOKEN, self.settings.jwt_secret, self.settings.jwt_algorithm)
            user_id = UUID(str(claims["sub"]))
        except (InvalidToken, ValueError) as exc:
            raise Unauthorized("invalid or expired token") from exc
        if self.persistence.get_user_by_id(user_id) is None:
            raise Unauthorized("user not found")
        return user_id
