from __future__ import annotations

import asyncio
import secrets
import string
from typing import Any

from taskgate.logging import get_logger, sanitize_error_message
from taskgate.service.errors import (
    InactiveUserError,
    LoginFailedError,
    MissingEmailError,
)
from taskgate.storage.errors import ConstraintViolation, StoreUnavailable
from taskgate.storage.models import AuthProfile, Provider

logger = get_logger(__name__)

_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase
USERNAME_SUFFIX_LENGTH = 4


def username_suffix() -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(USERNAME_SUFFIX_LENGTH))


class IdentityResolver:
    """Maps a verified login profile onto exactly one local user.

    A known email always lands on its existing user, gaining an account row
    for a provider it has not used before. A new email creates the user and
    its first account together; if only the derived username is taken, the
    new user gets a suffixed username instead.
    """

    def __init__(self, store: Any) -> None:
        self.store = store

    async def resolve(self, profile: AuthProfile) -> str:
        provider = Provider(profile.provider)
        if not profile.email:
            raise MissingEmailError(detail={"provider": provider.value})

        email = profile.email.strip().lower()
        username = email.split("@", 1)[0]
        display_name = profile.display_name or username

        found = await asyncio.to_thread(
            self.store.find_login_candidate, email, username, provider.value
        )
        if found is not None:
            user, account = found
            if not user.is_active:
                logger.warning("auth_inactive_user", user_id=user.id, provider=provider.value)
                raise InactiveUserError()
            if user.email == email:
                if provider.is_oauth:
                    await asyncio.to_thread(
                        self.store.update_user_profile,
                        user.id,
                        display_name=display_name,
                        avatar_url=profile.avatar_url,
                    )
                if account is None:
                    await asyncio.to_thread(
                        self.store.create_account,
                        user.id,
                        provider.value,
                        profile.provider_account_id or user.id,
                    )
                    logger.info("auth_account_linked", user_id=user.id, provider=provider.value)
                return user.id
            username = f"{username}_{username_suffix()}"
            logger.info("auth_username_suffixed", username=username)

        try:
            user = await asyncio.to_thread(
                self.store.create_user_with_account,
                email=email,
                username=username,
                display_name=display_name,
                avatar_url=profile.avatar_url,
                provider=provider.value,
                provider_account_id=profile.provider_account_id,
            )
        except (ConstraintViolation, StoreUnavailable) as exc:
            logger.error(
                "auth_user_create_error",
                provider=provider.value,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise LoginFailedError() from exc
        logger.info("auth_user_created", user_id=user.id, provider=provider.value)
        return user.id
