"""Credential vault keyed by user id"""

import logging
import time

from mmbot.errors import ConfigurationError
from mmbot.storage.database import Database
from mmbot.storage.models import ApiCredentials

logger = logging.getLogger(__name__)


class CredentialVault:
    def __init__(self, db: Database):
        self.db = db

    async def get_credentials(self, user_id: str) -> ApiCredentials:
        creds = await self.db.get_credentials(user_id)
        if creds is None or not creds.api_key or not creds.api_secret:
            raise ConfigurationError(f"API credentials not configured for user {user_id}")
        return creds

    async def has_credentials(self, user_id: str) -> bool:
        return await self.db.get_credentials(user_id) is not None

    async def save(self, user_id: str, api_key: str, api_secret: str) -> ApiCredentials:
        if not api_key or not api_secret:
            raise ConfigurationError("API key and secret are required")
        creds = ApiCredentials(
            user_id=user_id,
            api_key=api_key,
            api_secret=api_secret,
            updated_at=int(time.time() * 1000),
        )
        await self.db.save_credentials(creds)
        logger.info(f"API credentials saved for user {user_id}")
        return creds

    async def remove(self, user_id: str) -> ApiCredentials | None:
        creds = await self.db.get_credentials(user_id)
        await self.db.delete_credentials(user_id)
        logger.info(f"API credentials removed for user {user_id}")
        return creds
