"""Resolution of per-property channel configuration into an injectable context."""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from .crypto import CredentialCipher
from .database import ChannelConfigDB, DatabaseManager, as_utc
from .models import ChannelContext

logger = logging.getLogger(__name__)


class ChannelNotConfiguredError(Exception):
    """No live configuration exists for the property and channel."""
    pass


class ConfigResolver:
    """Builds ChannelContext values from stored configs.

    Callers resolve once per request or at worker startup and pass the
    context down instead of consulting shared state.
    """

    def __init__(self, db_manager: DatabaseManager, cipher: Optional[CredentialCipher]):
        self.db_manager = db_manager
        self.cipher = cipher
        self.logger = logger.getChild('resolver')

    def to_context(self, config: ChannelConfigDB) -> ChannelContext:
        api_key = webhook_secret = None
        if self.cipher is not None:
            api_key = self.cipher.decrypt(config.api_key_encrypted)
            webhook_secret = self.cipher.decrypt(config.webhook_secret_encrypted)
        elif config.api_key_encrypted or config.webhook_secret_encrypted:
            self.logger.warning(f"No cipher configured; credentials for {config.channel} not loaded")

        return ChannelContext(
            config_id=config.id,
            property_id=config.property_id,
            channel=config.channel,
            base_url=config.base_url,
            external_hotel_id=config.external_hotel_id,
            api_key=api_key,
            webhook_secret=webhook_secret,
            sync_enabled=config.sync_enabled,
            push_sync_enabled=config.push_sync_enabled,
            pull_sync_enabled=config.pull_sync_enabled,
            sync_availability=config.sync_availability,
            sync_rates=config.sync_rates,
            last_successful_sync=as_utc(config.last_successful_sync),
        )

    def resolve(self, property_id: str, channel: str, session: Optional[Session] = None) -> ChannelContext:
        """Resolve the context for a property and channel.

        Raises:
            ChannelNotConfiguredError: If no live config exists
        """
        own_session = session is None
        session = session or self.db_manager.get_session()
        try:
            config = self.db_manager.get_channel_config(session, property_id, channel)
            if config is None:
                raise ChannelNotConfiguredError(f"{channel} is not configured for property {property_id}")
            return self.to_context(config)
        finally:
            if own_session:
                session.close()

    def register(
        self,
        property_id: str,
        channel: str,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        external_hotel_id: Optional[str] = None,
        **flags: bool
    ) -> ChannelContext:
        """Store a new channel config with encrypted credentials."""
        if self.cipher is None and (api_key or webhook_secret):
            raise ChannelNotConfiguredError("Cannot store credentials without ENCRYPTION_KEY")

        with self.db_manager.get_session() as session:
            config = self.db_manager.create_channel_config(
                session,
                property_id=property_id,
                channel=channel,
                api_key_encrypted=self.cipher.encrypt(api_key) if api_key else None,
                webhook_secret_encrypted=self.cipher.encrypt(webhook_secret) if webhook_secret else None,
                base_url=base_url,
                external_hotel_id=external_hotel_id,
                **flags
            )
            self.logger.info(f"Registered {config.channel} for property {property_id}")
            return self.to_context(config)
