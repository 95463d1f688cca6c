"""
auth/reset.py -- Password-reset token issuance and single-use consumption.

Delivering the token (email, SMS) is the host application's concern. This
module creates it, stores it, and later decides whether a presented token may
authorise one password change.
"""

from __future__ import annotations

import logging

from auth.errors import AlreadyUsedError, NotFoundError
from auth.models import PasswordResetToken
from auth.store import IdentityStore
from auth.tokens import TokenIssuer

logger = logging.getLogger("credcore.auth.reset")


class PasswordResetService:
    def __init__(self, store: IdentityStore, issuer: TokenIssuer) -> None:
        self.store = store
        self.issuer = issuer

    def issue(self, user_id: str) -> PasswordResetToken:
        if self.store.get_user_by_id(user_id) is None:
            raise NotFoundError("User not found.")
        token = self.issuer.issue_reset_token(user_id)
        self.store.save_password_reset_token(token)
        logger.info("Password reset token issued user_id=%s expires_at=%s", user_id, token.expires_at.isoformat())
        return token

    def consume(self, token: str, user_id: str) -> PasswordResetToken:
        """Validate and spend a reset token.

        Raises NotFoundError if the token does not exist or belongs to another
        user, ExpiredError past expires_at, AlreadyUsedError on second use.
        """
        record = self.store.get_password_reset_token(token)
        if record is None or record.user_id != user_id:
            raise NotFoundError("Password reset token not recognised.")
        record.consume(self.issuer.clock.now())
        if not self.store.mark_password_reset_token_used(record.id):
            # Lost a race with a concurrent consumer.
            raise AlreadyUsedError("Password reset token has already been used.")
        return record
